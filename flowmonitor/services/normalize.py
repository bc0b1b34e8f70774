from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from flowmonitor.constants import DEFAULT_STATE, TERMINAL_STATES


def normalize_state(value: Any, default: str = DEFAULT_STATE) -> str:
    """Collapse a bare tag or a ``{"current": ...}`` structure into an upper-case tag."""
    if isinstance(value, dict):
        value = value.get("current")
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        return default
    return text.upper()


def state_dates(value: Any) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(value, dict):
        return None, None
    start = value.get("startDate")
    end = value.get("endDate")
    return (str(start) if start else None, str(end) if end else None)


def is_terminal(state: Any) -> bool:
    return normalize_state(state, default="") in TERMINAL_STATES


def task_states(tasks: Iterable[Any]) -> list:
    states = []
    for task in tasks:
        raw = task.get("state") if isinstance(task, dict) else getattr(task, "state", None)
        states.append(normalize_state(raw))
    return states


def normalize_execution(payload: Any) -> Dict[str, Any]:
    """Return the canonical JSON shape of an engine execution document."""
    from flowmonitor.schemas import ExecutionSnapshot

    if not isinstance(payload, dict):
        payload = {}
    return ExecutionSnapshot.model_validate(payload).model_dump(mode="json")


def utcnow_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def encode_frame(event: Dict[str, Any]) -> str:
    """Serialize one event as a server-sent-event ``data:`` frame."""
    return f"data: {json.dumps(event, default=str, separators=(',', ':'))}\n\n"
