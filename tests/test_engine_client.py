from __future__ import annotations

import json

import httpx
import pytest
import respx

from flowmonitor.errors import EngineConfigurationError, EngineError, TransientFetchFailure
from flowmonitor.services.engine import EngineClient, summarize_flow
from flowmonitor.settings import MonitorSettings

ENGINE_API = "http://engine.test/api/v1"


@pytest.fixture
def engine_client(settings: MonitorSettings) -> EngineClient:
    return EngineClient(settings)


@pytest.mark.asyncio
async def test_get_execution_returns_document(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.get("/executions/exec-1").mock(
            return_value=httpx.Response(200, json={"id": "exec-1", "state": {"current": "RUNNING"}})
        )

        data = await engine_client.get_execution("exec-1")

    assert data["id"] == "exec-1"


@pytest.mark.asyncio
async def test_server_errors_are_transient(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.get("/executions/exec-1").mock(
            return_value=httpx.Response(503, json={"message": "Engine warming up"})
        )

        with pytest.raises(TransientFetchFailure) as excinfo:
            await engine_client.get_execution("exec-1")

    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "Engine warming up"


@pytest.mark.asyncio
async def test_network_errors_are_transient(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.get("/executions/exec-1").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(TransientFetchFailure) as excinfo:
            await engine_client.get_execution("exec-1")

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_client_errors_pass_status_through(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.get("/executions/missing").mock(
            return_value=httpx.Response(404, json={"message": "Execution not found"})
        )

        with pytest.raises(EngineError) as excinfo:
            await engine_client.get_execution("missing")

    assert not isinstance(excinfo.value, TransientFetchFailure)
    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Execution not found"


@pytest.mark.asyncio
async def test_trigger_webhook_posts_inputs(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        route = respx_mock.post("/executions/webhook/demo/hello/secret").mock(
            return_value=httpx.Response(200, json={"id": "exec-9", "namespace": "demo", "flowId": "hello"})
        )

        data = await engine_client.trigger_webhook("hello", {"name": "Ada"})

    assert data["id"] == "exec-9"
    assert json.loads(route.calls.last.request.content) == {"name": "Ada"}


@pytest.mark.asyncio
async def test_trigger_webhook_failures_are_not_transient(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.post("/executions/webhook/demo/hello/secret").mock(
            return_value=httpx.Response(500, text="boom")
        )

        with pytest.raises(EngineError) as excinfo:
            await engine_client.trigger_webhook("hello")

    assert not isinstance(excinfo.value, TransientFetchFailure)
    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Failed with status: 500"


@pytest.mark.asyncio
async def test_trigger_requires_configuration() -> None:
    client = EngineClient(MonitorSettings(engine_url="http://engine.test", namespace="demo"))
    with pytest.raises(EngineConfigurationError):
        await client.trigger_webhook("hello")


@pytest.mark.asyncio
async def test_search_executions_reads_results(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        route = respx_mock.get("/executions/search").mock(
            return_value=httpx.Response(200, json={"results": [{"id": "a"}, {"id": "b"}, "junk"], "total": 3})
        )

        results = await engine_client.search_executions("hello", size=5)

    assert [item["id"] for item in results] == ["a", "b"]
    params = route.calls.last.request.url.params
    assert params["namespace"] == "demo"
    assert params["flowId"] == "hello"
    assert params["size"] == "5"


@pytest.mark.asyncio
async def test_list_flows(engine_client: EngineClient) -> None:
    async with respx.mock(base_url=ENGINE_API) as respx_mock:
        respx_mock.get("/flows/demo").mock(return_value=httpx.Response(200, json=[{"id": "hello"}]))

        flows = await engine_client.list_flows()

    assert flows == [{"id": "hello"}]


@pytest.mark.unit
def test_summarize_flow_detects_webhook_trigger() -> None:
    flow = {
        "id": "hello",
        "namespace": "demo",
        "revision": {"date": "2024-05-01T00:00:00Z"},
        "triggers": [{"id": "hook", "type": "io.kestra.plugin.core.trigger.Webhook"}],
    }
    summary = summarize_flow(flow)
    assert summary == {
        "id": "hello",
        "namespace": "demo",
        "description": "",
        "lastModified": "2024-05-01T00:00:00Z",
        "hasWebhookTrigger": True,
    }
    assert summarize_flow({"id": "bare", "revision": 3})["hasWebhookTrigger"] is False
