from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse

from flowmonitor.errors import MonitorError
from flowmonitor.services.engine import EngineClient, EngineDep, summarize_flow
from flowmonitor.services.normalize import normalize_execution
from flowmonitor.services.reconciler import StatusReconciler
from flowmonitor.templating import parse_datetime, templates

LOGGER = logging.getLogger("flowmonitor.dashboard")

router = APIRouter(tags=["dashboard"])


def _hash_signature(value: Any) -> str:
    serialized = json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha1(serialized.encode("utf-8")).hexdigest()


def _elapsed_ms(snapshot: Dict[str, Any]) -> Optional[int]:
    start = parse_datetime(snapshot.get("startDate"))
    end = parse_datetime(snapshot.get("endDate"))
    if not start or not end:
        return None
    return int((end - start).total_seconds() * 1000)


def _parse_inputs(raw: Optional[str]) -> Dict[str, Any]:
    """Accept either a JSON object or ``key=value`` lines from the run form."""
    if not raw or not raw.strip():
        return {}
    text = raw.strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise ValueError(f"Inputs are not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("Inputs must be a JSON object.")
        return parsed
    inputs: Dict[str, Any] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        if "=" not in line:
            raise ValueError(f"Invalid input line '{line.strip()}'; expected key=value.")
        key, value = line.split("=", 1)
        inputs[key.strip()] = value.strip()
    return inputs


async def _load_workflows(engine: EngineClient) -> Dict[str, Any]:
    try:
        flows = await engine.list_flows()
    except MonitorError as exc:
        LOGGER.warning("Unable to list workflows: %s", exc.message)
        return {"workflows": [], "error": exc.message}
    return {"workflows": [summarize_flow(flow) for flow in flows if flow.get("id")], "error": None}


async def _build_monitor_context(
    engine: EngineClient,
    flow_id: str,
    *,
    execution_id: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    recent: List[Dict[str, Any]] = []
    try:
        recent = [normalize_execution(item) for item in await engine.search_executions(flow_id, size=10)]
    except MonitorError as exc:
        LOGGER.warning("Unable to list executions for %s: %s", flow_id, exc.message)
    for item in recent:
        item["elapsed_ms"] = _elapsed_ms(item)
    return {
        "flow_id": flow_id,
        "execution_id": execution_id,
        "recent_executions": recent,
        "engine_url": engine.settings.engine_url,
        "error": error,
    }


@router.get("/", response_class=HTMLResponse)
async def dashboard_home(
    request: Request,
    flow_id: Optional[str] = None,
    engine: EngineClient = EngineDep,
) -> HTMLResponse:
    context = await _load_workflows(engine)
    context["selected_flow_id"] = flow_id
    context["namespace"] = engine.settings.namespace
    if flow_id:
        context["monitor"] = await _build_monitor_context(engine, flow_id)
    return templates.TemplateResponse(request, "dashboard/index.html", context)


@router.get("/workflows/{flow_id}", response_class=HTMLResponse)
async def workflow_monitor(
    flow_id: str,
    request: Request,
    execution_id: Optional[str] = None,
    engine: EngineClient = EngineDep,
) -> HTMLResponse:
    context = {"monitor": await _build_monitor_context(engine, flow_id, execution_id=execution_id)}
    return templates.TemplateResponse(request, "dashboard/_monitor.html", context)


@router.post("/workflows/{flow_id}/run", response_class=HTMLResponse)
async def run_workflow(
    flow_id: str,
    request: Request,
    inputs: Optional[str] = Form(None),
    engine: EngineClient = EngineDep,
) -> HTMLResponse:
    execution_id: Optional[str] = None
    error: Optional[str] = None
    try:
        data = await engine.trigger_webhook(flow_id, _parse_inputs(inputs))
        execution_id = data.get("id")
        if not execution_id:
            error = "Engine response did not include an execution id"
    except ValueError as exc:
        error = str(exc)
    except MonitorError as exc:
        error = exc.message
    context = {
        "monitor": await _build_monitor_context(engine, flow_id, execution_id=execution_id, error=error)
    }
    return templates.TemplateResponse(request, "dashboard/_monitor.html", context)


@router.get("/executions/{execution_id}/panel", response_class=HTMLResponse)
async def execution_panel(
    execution_id: str,
    request: Request,
    engine: EngineClient = EngineDep,
) -> HTMLResponse:
    """Render one status snapshot for the htmx poller.

    Each poll folds a single fresh snapshot into a new reconciler, so the browser
    panel does not carry terminal pinning or the idle debounce across polls;
    those apply to clients that follow the stream through MonitorSession.
    """
    reconciler = StatusReconciler(execution_id)
    try:
        snapshot = await engine.get_execution(execution_id)
    except MonitorError as exc:
        reconciler.view.last_error = f"Error: {exc.message}"
    else:
        reconciler.apply_snapshot(snapshot)
    view = reconciler.view
    execution = view.execution or {}
    context = {
        "view": view,
        "execution": execution,
        "elapsed_ms": _elapsed_ms(execution),
        "engine_url": engine.settings.engine_url,
    }
    panel_hash = _hash_signature(
        {
            "status": view.status.value,
            "progress": view.progress_percent,
            "tasks": [(task.id, task.state, task.endDate) for task in view.tasks],
            "error": view.last_error,
        }
    )
    response = templates.TemplateResponse(request, "dashboard/_execution_panel.html", context)
    response.headers["X-Flow-Snapshot-Hash"] = panel_hash
    response.headers["X-Flow-Execution-Id"] = execution_id
    return response
