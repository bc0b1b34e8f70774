from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi.templating import Jinja2Templates

from flowmonitor.constants import STATE_LABELS

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

STATUS_BADGES = {
    "idle": "secondary",
    "running": "primary",
    "success": "success",
    "failed": "danger",
    "killed": "warning",
}


def parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _format_timestamp(value: Any) -> str:
    if value in (None, ""):
        return "—"
    dt = parse_datetime(value)
    if dt is None:
        return str(value)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def format_task_duration(task: Any) -> str:
    """Elapsed time of one task row: seconds, "Running…" or "N/A"."""
    if not isinstance(task, dict):
        task = task.model_dump() if hasattr(task, "model_dump") else {}
    start = parse_datetime(task.get("startDate"))
    end = parse_datetime(task.get("endDate"))
    if start and end:
        return f"{int((end - start).total_seconds())}s"
    if start:
        return "Running…"
    return "N/A"


def format_duration(milliseconds: Any) -> str:
    try:
        total = int(milliseconds or 0) // 1000
    except (TypeError, ValueError):
        return "N/A"
    if total <= 0:
        return "N/A"
    if total < 60:
        return f"{total}s"
    minutes, seconds = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {seconds}s"


def _state_label(value: Any) -> str:
    if not value:
        return "Unknown"
    key = str(value).upper()
    return STATE_LABELS.get(key, str(value))


def _status_badge(value: Any) -> str:
    return STATUS_BADGES.get(str(value).lower(), "secondary")


templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
templates.env.filters["format_ts"] = _format_timestamp
templates.env.filters["task_duration"] = format_task_duration
templates.env.filters["duration"] = format_duration
templates.env.filters["state_label"] = _state_label
templates.env.filters["status_badge"] = _status_badge
