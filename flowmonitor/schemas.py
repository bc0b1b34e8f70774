from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from flowmonitor.services.normalize import normalize_state, state_dates


class ViewStatus(str, Enum):
    idle = "idle"
    running = "running"
    success = "success"
    failed = "failed"
    killed = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_VIEW_STATUSES


TERMINAL_VIEW_STATUSES = frozenset({ViewStatus.success, ViewStatus.failed, ViewStatus.killed})


class ConnectionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    retrying = "retrying"
    completed = "completed"


def _lift_state_dates(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    payload = dict(data)
    start, end = state_dates(payload.get("state"))
    if start and not payload.get("startDate"):
        payload["startDate"] = start
    if end and not payload.get("endDate"):
        payload["endDate"] = end
    return payload


class TaskSnapshot(BaseModel):
    id: str = "Unknown"
    state: str = "RUNNING"
    startDate: Optional[str] = None
    endDate: Optional[str] = None

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def lift_dates(cls, data: Any) -> Any:
        return _lift_state_dates(data)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        if value in (None, ""):
            return "Unknown"
        return str(value)

    @field_validator("state", mode="before")
    @classmethod
    def coerce_state(cls, value: Any) -> str:
        return normalize_state(value)


class ExecutionSnapshot(BaseModel):
    """Point-in-time view of one execution, with every state collapsed to a bare tag."""

    id: Optional[str] = None
    state: str = "RUNNING"
    tasks: List[TaskSnapshot] = Field(default_factory=list)
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def collect_tasks(cls, data: Any) -> Any:
        payload = _lift_state_dates(data)
        if not isinstance(payload, dict):
            return payload
        if not payload.get("tasks") and payload.get("taskRunList"):
            payload["tasks"] = payload.pop("taskRunList")
        if payload.get("tasks") is None:
            payload["tasks"] = []
        return payload

    @field_validator("state", mode="before")
    @classmethod
    def coerce_state(cls, value: Any) -> str:
        return normalize_state(value)

    @field_validator("tasks", mode="before")
    @classmethod
    def coerce_tasks(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("outputs", mode="before")
    @classmethod
    def coerce_outputs(cls, value: Any) -> Optional[Dict[str, Any]]:
        if value is None or isinstance(value, dict):
            return value
        return {"value": value}


class ClientView(BaseModel):
    """UI-facing projection owned by a single reconciler for one execution id."""

    execution_id: Optional[str] = None
    status: ViewStatus = ViewStatus.idle
    progress_percent: float = Field(default=0.0, ge=0, le=100)
    connection_state: ConnectionState = ConnectionState.disconnected
    tasks: List[TaskSnapshot] = Field(default_factory=list)
    last_error: Optional[str] = None
    execution: Optional[Dict[str, Any]] = None
    has_data: bool = False

    model_config = {"validate_assignment": True}


class TriggerRequest(BaseModel):
    workflowId: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class TriggerResponse(BaseModel):
    executionId: str
    namespace: Optional[str] = None
    flowId: Optional[str] = None
    status: Optional[str] = None
    message: str = "Workflow triggered successfully"


class WorkflowSummary(BaseModel):
    id: str
    namespace: Optional[str] = None
    description: str = ""
    lastModified: Optional[str] = None
    hasWebhookTrigger: bool = False


class EngineConfig(BaseModel):
    namespace: str
    engineUrl: str
