from __future__ import annotations

from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

from flowmonitor.errors import MonitorError
from flowmonitor.main import app
from flowmonitor.services.engine import get_engine_client
from flowmonitor.services.streamer import StatusStreamer, get_streamer
from flowmonitor.settings import MonitorSettings, get_settings


class FakeEngine:
    """In-memory stand-in for EngineClient; queued results are consumed in order."""

    def __init__(self, settings: MonitorSettings) -> None:
        self.settings = settings
        self.executions: List[Any] = []
        self.flows: List[Dict[str, Any]] = []
        self.search_results: List[Dict[str, Any]] = []
        self.trigger_result: Any = {"id": "exec-1", "namespace": "demo", "flowId": "hello", "state": "CREATED"}
        self.flows_error: Optional[MonitorError] = None
        self.triggered: List[Dict[str, Any]] = []
        self.fetched: List[str] = []

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        self.fetched.append(execution_id)
        item = self.executions.pop(0) if len(self.executions) > 1 else self.executions[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def trigger_webhook(self, flow_id: str, inputs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.settings.require_trigger_config()
        self.triggered.append({"flow_id": flow_id, "inputs": inputs or {}})
        if isinstance(self.trigger_result, Exception):
            raise self.trigger_result
        return self.trigger_result

    async def list_flows(self) -> List[Dict[str, Any]]:
        if self.flows_error is not None:
            raise self.flows_error
        return self.flows

    async def search_executions(self, flow_id: str, size: int = 10) -> List[Dict[str, Any]]:
        return self.search_results[:size]


@pytest.fixture
def settings() -> MonitorSettings:
    return MonitorSettings(
        engine_url="http://engine.test/",
        namespace="demo",
        webhook_key="secret",
        poll_interval_seconds=0,
        stream_retry_base_seconds=0,
        stream_retry_cap_seconds=0,
        close_grace_seconds=0,
    )


@pytest.fixture
def engine(settings: MonitorSettings) -> FakeEngine:
    return FakeEngine(settings)


@pytest.fixture
def client(settings: MonitorSettings, engine: FakeEngine) -> Generator[TestClient, None, None]:
    """Provide a TestClient wired to the fake engine and zero-delay settings."""
    streamer = StatusStreamer(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_engine_client] = lambda: engine
    app.dependency_overrides[get_streamer] = lambda: streamer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
