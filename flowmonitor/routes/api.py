from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from flowmonitor.errors import EngineError, InvalidRequest
from flowmonitor.schemas import EngineConfig, TriggerRequest, TriggerResponse, WorkflowSummary
from flowmonitor.services.engine import EngineClient, EngineDep, summarize_flow
from flowmonitor.services.normalize import normalize_execution, utcnow_iso
from flowmonitor.services.streamer import StatusStreamer, StreamerDep
from flowmonitor.settings import MonitorSettings, SettingsDep

LOGGER = logging.getLogger("flowmonitor.api")

router = APIRouter(prefix="/api", tags=["api"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _require_execution_id(execution_id: Optional[str]) -> str:
    if execution_id is None or not execution_id.strip():
        raise InvalidRequest("Execution ID is required")
    return execution_id.strip()


@router.get("/engine-config", response_model=EngineConfig)
async def engine_config(settings: MonitorSettings = SettingsDep) -> Dict[str, str]:
    return {"namespace": settings.namespace, "engineUrl": settings.engine_url}


@router.get("/workflows", response_model=List[WorkflowSummary])
async def list_workflows(engine: EngineClient = EngineDep) -> List[Dict[str, Any]]:
    flows = await engine.list_flows()
    return [summarize_flow(flow) for flow in flows if flow.get("id")]


@router.get("/workflows/{flow_id}/executions")
async def list_workflow_executions(
    flow_id: str,
    size: int = 10,
    engine: EngineClient = EngineDep,
) -> List[Dict[str, Any]]:
    if size <= 0:
        raise InvalidRequest("size must be a positive integer")
    executions = await engine.search_executions(flow_id, size=size)
    return [normalize_execution(item) for item in executions]


@router.post("/trigger-workflow", response_model=TriggerResponse)
async def trigger_workflow(
    payload: TriggerRequest,
    engine: EngineClient = EngineDep,
) -> Dict[str, Any]:
    engine.settings.require_trigger_config()
    if not payload.workflowId or not payload.workflowId.strip():
        raise InvalidRequest("workflowId is required in the request body")
    data = await engine.trigger_webhook(payload.workflowId.strip(), payload.inputs)
    if not data.get("id"):
        LOGGER.error("Engine accepted trigger for %s without an execution id", payload.workflowId)
        raise EngineError("Engine response did not include an execution id", status_code=502)
    return {
        "executionId": data["id"],
        "namespace": data.get("namespace"),
        "flowId": data.get("flowId"),
        "status": normalize_execution(data)["state"],
        "message": "Workflow triggered successfully",
    }


@router.get("/execution-status")
async def execution_status(
    executionId: Optional[str] = None,
    engine: EngineClient = EngineDep,
) -> JSONResponse:
    execution_id = _require_execution_id(executionId)
    data = await engine.get_execution(execution_id)
    snapshot = normalize_execution(data)
    snapshot["timestamp"] = utcnow_iso()
    return JSONResponse(snapshot, headers={"Cache-Control": "no-store, max-age=0"})


@router.get("/workflow-status")
async def workflow_status_stream(
    executionId: Optional[str] = None,
    engine: EngineClient = EngineDep,
    streamer: StatusStreamer = StreamerDep,
) -> StreamingResponse:
    channel = streamer.open_channel(executionId, engine.get_execution)
    return StreamingResponse(
        channel.frames(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
