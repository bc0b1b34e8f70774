from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends

from flowmonitor.constants import WEBHOOK_TRIGGER_TYPE
from flowmonitor.errors import EngineError, TransientFetchFailure
from flowmonitor.settings import MonitorSettings, get_settings

LOGGER = logging.getLogger("flowmonitor.engine")


def _error_message(response: httpx.Response) -> str:
    fallback = f"Failed with status: {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return str(message)
    return fallback


class EngineClient:
    """Async client for the orchestration engine's REST API."""

    def __init__(
        self,
        settings: MonitorSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def settings(self) -> MonitorSettings:
        return self._settings

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            headers={"Content-Type": "application/json"},
            timeout=self._settings.request_timeout_seconds,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            LOGGER.warning("Engine request %s %s failed: %s", method, path, exc)
            raise TransientFetchFailure(f"Engine unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientFetchFailure(_error_message(response), status_code=response.status_code)
        if response.status_code >= 400:
            raise EngineError(_error_message(response), status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientFetchFailure(f"Engine returned invalid JSON for {path}") from exc

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/executions/{execution_id}")
        if not isinstance(data, dict):
            raise TransientFetchFailure("Engine returned an unexpected execution document")
        return data

    async def trigger_webhook(self, flow_id: str, inputs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._settings.require_trigger_config()
        namespace = self._settings.namespace
        key = self._settings.webhook_key
        try:
            data = await self._request(
                "POST",
                f"/executions/webhook/{namespace}/{flow_id}/{key}",
                json=inputs or {},
            )
        except TransientFetchFailure as exc:
            # Triggers are not retried; surface as a plain engine failure.
            raise EngineError(exc.message, status_code=exc.status_code) from exc
        LOGGER.info("Triggered %s/%s as execution %s", namespace, flow_id, data.get("id"))
        return data

    async def list_flows(self) -> List[Dict[str, Any]]:
        self._settings.require_namespace()
        data = await self._request("GET", f"/flows/{self._settings.namespace}")
        return data if isinstance(data, list) else []

    async def search_executions(self, flow_id: str, size: int = 10) -> List[Dict[str, Any]]:
        self._settings.require_namespace()
        data = await self._request(
            "GET",
            "/executions/search",
            params={"namespace": self._settings.namespace, "flowId": flow_id, "size": size},
        )
        if isinstance(data, dict):
            results = data.get("results") or []
        else:
            results = data or []
        return [item for item in results if isinstance(item, dict)]


def summarize_flow(flow: Dict[str, Any]) -> Dict[str, Any]:
    triggers = flow.get("triggers") or []
    revision = flow.get("revision")
    last_modified = revision.get("date") if isinstance(revision, dict) else None
    return {
        "id": flow.get("id"),
        "namespace": flow.get("namespace"),
        "description": flow.get("description") or "",
        "lastModified": last_modified,
        "hasWebhookTrigger": any(
            isinstance(trigger, dict) and trigger.get("type") == WEBHOOK_TRIGGER_TYPE
            for trigger in triggers
        ),
    }


_engine_client: Optional[EngineClient] = None


def get_engine_client(settings: MonitorSettings = Depends(get_settings)) -> EngineClient:
    global _engine_client
    if _engine_client is None or _engine_client.settings is not settings:
        _engine_client = EngineClient(settings)
    return _engine_client


EngineDep = Depends(get_engine_client)
