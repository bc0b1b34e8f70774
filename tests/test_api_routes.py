from __future__ import annotations

import json
from typing import List

from fastapi.testclient import TestClient

from conftest import FakeEngine
from flowmonitor.errors import EngineError, TransientFetchFailure
from flowmonitor.settings import MonitorSettings


def _data_frames(response) -> List[dict]:
    return [json.loads(line[len("data:"):]) for line in response.iter_lines() if line.startswith("data:")]


def test_engine_config(client: TestClient) -> None:
    resp = client.get("/api/engine-config")
    assert resp.status_code == 200
    assert resp.json() == {"namespace": "demo", "engineUrl": "http://engine.test"}


def test_list_workflows_summarizes_flows(client: TestClient, engine: FakeEngine) -> None:
    engine.flows = [
        {
            "id": "hello",
            "namespace": "demo",
            "description": "Says hello",
            "revision": {"date": "2024-05-01T00:00:00Z"},
            "triggers": [{"type": "io.kestra.plugin.core.trigger.Webhook"}],
        },
        {"id": "nightly", "namespace": "demo", "triggers": [{"type": "io.kestra.plugin.core.trigger.Schedule"}]},
        {"namespace": "demo"},
    ]

    resp = client.get("/api/workflows")

    assert resp.status_code == 200
    workflows = resp.json()
    assert [item["id"] for item in workflows] == ["hello", "nightly"]
    assert workflows[0]["hasWebhookTrigger"] is True
    assert workflows[0]["lastModified"] == "2024-05-01T00:00:00Z"
    assert workflows[1]["hasWebhookTrigger"] is False


def test_list_workflow_executions(client: TestClient, engine: FakeEngine) -> None:
    engine.search_results = [
        {"id": "e2", "state": {"current": "RUNNING"}},
        {"id": "e1", "state": {"current": "SUCCESS"}, "taskRunList": [{"id": "t", "state": {"current": "SUCCESS"}}]},
    ]

    resp = client.get("/api/workflows/hello/executions", params={"size": 5})

    assert resp.status_code == 200
    body = resp.json()
    assert [item["state"] for item in body] == ["RUNNING", "SUCCESS"]
    assert body[1]["tasks"][0]["state"] == "SUCCESS"

    resp = client.get("/api/workflows/hello/executions", params={"size": 0})
    assert resp.status_code == 400
    assert resp.json() == {"error": "size must be a positive integer"}


def test_trigger_workflow(client: TestClient, engine: FakeEngine) -> None:
    resp = client.post("/api/trigger-workflow", json={"workflowId": "hello", "inputs": {"name": "Ada"}})

    assert resp.status_code == 200
    assert resp.json() == {
        "executionId": "exec-1",
        "namespace": "demo",
        "flowId": "hello",
        "status": "CREATED",
        "message": "Workflow triggered successfully",
    }
    assert engine.triggered == [{"flow_id": "hello", "inputs": {"name": "Ada"}}]


def test_trigger_workflow_requires_workflow_id(client: TestClient, engine: FakeEngine) -> None:
    resp = client.post("/api/trigger-workflow", json={"inputs": {}})
    assert resp.status_code == 400
    assert resp.json() == {"error": "workflowId is required in the request body"}

    resp = client.post("/api/trigger-workflow", json={"workflowId": "   "})
    assert resp.status_code == 400
    assert engine.triggered == []


def test_trigger_workflow_without_configuration(client: TestClient, settings: MonitorSettings) -> None:
    settings.webhook_key = ""

    resp = client.post("/api/trigger-workflow", json={"workflowId": "hello"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Engine configuration missing. Check environment variables."}


def test_trigger_workflow_passes_engine_status_through(client: TestClient, engine: FakeEngine) -> None:
    engine.trigger_result = EngineError("Flow not found", status_code=404)

    resp = client.post("/api/trigger-workflow", json={"workflowId": "missing"})

    assert resp.status_code == 404
    assert resp.json() == {"error": "Flow not found"}


def test_trigger_workflow_rejects_response_without_id(client: TestClient, engine: FakeEngine) -> None:
    engine.trigger_result = {"namespace": "demo"}

    resp = client.post("/api/trigger-workflow", json={"workflowId": "hello"})

    assert resp.status_code == 502


def test_execution_status(client: TestClient, engine: FakeEngine) -> None:
    engine.executions = [
        {
            "id": "exec-1",
            "state": {"current": "RUNNING", "startDate": "2024-05-01T10:00:00Z"},
            "taskRunList": [{"id": "t1", "state": {"current": "RUNNING"}}],
        }
    ]

    resp = client.get("/api/execution-status", params={"executionId": "exec-1"})

    assert resp.status_code == 200
    assert "no-store" in resp.headers["cache-control"]
    body = resp.json()
    assert body["id"] == "exec-1"
    assert body["state"] == "RUNNING"
    assert body["startDate"] == "2024-05-01T10:00:00Z"
    assert body["tasks"][0]["state"] == "RUNNING"
    assert body["timestamp"]


def test_execution_status_requires_id(client: TestClient) -> None:
    resp = client.get("/api/execution-status")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Execution ID is required"}


def test_execution_status_upstream_failure(client: TestClient, engine: FakeEngine) -> None:
    engine.executions = [TransientFetchFailure("Engine unreachable")]

    resp = client.get("/api/execution-status", params={"executionId": "exec-1"})

    assert resp.status_code == 502
    assert resp.json() == {"error": "Engine unreachable"}


def test_workflow_status_stream(client: TestClient, engine: FakeEngine) -> None:
    engine.executions = [
        {"id": "exec-1", "state": {"current": "RUNNING"}, "taskRunList": [{"id": "t1", "state": {"current": "RUNNING"}}]},
        {"id": "exec-1", "state": {"current": "SUCCESS"}, "taskRunList": [{"id": "t1", "state": {"current": "SUCCESS"}}]},
    ]

    with client.stream("GET", "/api/workflow-status", params={"executionId": "exec-1"}) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        frames = _data_frames(resp)

    assert frames[0] == {"status": "connected"}
    assert [frame["state"] for frame in frames[1:]] == ["RUNNING", "SUCCESS", "SUCCESS"]
    assert frames[-1]["finalUpdate"] is True
    assert engine.fetched == ["exec-1", "exec-1"]


def test_workflow_status_stream_reports_exhausted_retries(client: TestClient, engine: FakeEngine) -> None:
    engine.executions = [TransientFetchFailure("Engine unreachable")]

    with client.stream("GET", "/api/workflow-status", params={"executionId": "exec-1"}) as resp:
        frames = _data_frames(resp)

    assert [frame["status"] for frame in frames] == ["connected", "retrying", "retrying", "retrying", "error"]
    assert frames[-1]["error"] == "Failed to fetch status"


def test_workflow_status_stream_requires_id(client: TestClient) -> None:
    resp = client.get("/api/workflow-status")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Execution ID is required"}
