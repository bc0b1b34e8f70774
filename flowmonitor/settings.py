from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from fastapi import Depends
from pydantic import BaseModel, Field, field_validator

from flowmonitor.errors import EngineConfigurationError

# Environment variable -> setting name. Later entries win over earlier aliases.
_ENV_KEYS: Dict[str, tuple] = {
    "engine_url": ("KESTRA_URL", "FLOWMONITOR_ENGINE_URL"),
    "namespace": ("KESTRA_NAMESPACE", "FLOWMONITOR_NAMESPACE"),
    "webhook_key": ("KESTRA_WEBHOOK_KEY", "FLOWMONITOR_WEBHOOK_KEY"),
    "request_timeout_seconds": ("FLOWMONITOR_REQUEST_TIMEOUT_SECONDS",),
    "poll_interval_seconds": ("FLOWMONITOR_POLL_INTERVAL_SECONDS",),
    "stream_retry_base_seconds": ("FLOWMONITOR_STREAM_RETRY_BASE_SECONDS",),
    "stream_retry_cap_seconds": ("FLOWMONITOR_STREAM_RETRY_CAP_SECONDS",),
    "stream_max_retries": ("FLOWMONITOR_STREAM_MAX_RETRIES",),
    "close_grace_seconds": ("FLOWMONITOR_CLOSE_GRACE_SECONDS",),
    "fallback_poll_seconds": ("FLOWMONITOR_FALLBACK_POLL_SECONDS",),
    "reconnect_max_attempts": ("FLOWMONITOR_RECONNECT_MAX_ATTEMPTS",),
    "reconnect_base_ms": ("FLOWMONITOR_RECONNECT_BASE_MS",),
    "reconnect_cap_ms": ("FLOWMONITOR_RECONNECT_CAP_MS",),
}


class MonitorSettings(BaseModel):
    """Runtime configuration supplied by the hosting environment."""

    engine_url: str = "http://localhost:8080"
    namespace: str = ""
    webhook_key: str = ""
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Status streamer
    poll_interval_seconds: float = Field(default=1.0, ge=0)
    stream_retry_base_seconds: float = Field(default=1.0, ge=0)
    stream_retry_cap_seconds: float = Field(default=5.0, ge=0)
    stream_max_retries: int = Field(default=3, ge=0)
    close_grace_seconds: float = Field(default=0.5, ge=0)

    # Monitor session
    fallback_poll_seconds: float = Field(default=5.0, ge=0)
    reconnect_max_attempts: int = Field(default=5, ge=0)
    reconnect_base_ms: int = Field(default=1000, ge=0)
    reconnect_cap_ms: Optional[int] = Field(default=5000, ge=0)

    @field_validator("engine_url")
    @classmethod
    def validate_engine_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("Engine URL cannot be blank.")
        return normalized

    @field_validator("namespace", "webhook_key")
    @classmethod
    def strip_value(cls, value: str) -> str:
        return value.strip()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MonitorSettings":
        source = os.environ if environ is None else environ
        values: Dict[str, str] = {}
        for field_name, keys in _ENV_KEYS.items():
            for key in keys:
                raw = source.get(key)
                if raw not in (None, ""):
                    values[field_name] = raw
        return cls.model_validate(values)

    @property
    def api_base_url(self) -> str:
        return f"{self.engine_url}/api/v1"

    def require_trigger_config(self) -> None:
        if not self.namespace or not self.webhook_key:
            raise EngineConfigurationError(
                "Engine configuration missing. Check environment variables."
            )

    def require_namespace(self) -> None:
        if not self.namespace:
            raise EngineConfigurationError(
                "Engine configuration missing. Check environment variables."
            )


_settings: Optional[MonitorSettings] = None


def get_settings() -> MonitorSettings:
    """FastAPI dependency returning the process-wide settings."""
    global _settings
    if _settings is None:
        _settings = MonitorSettings.from_env()
    return _settings


SettingsDep = Depends(get_settings)
