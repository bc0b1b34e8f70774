from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from flowmonitor.constants import (
    ACTIVE_STATES,
    COMPLETED_TASK_WEIGHT,
    PARSE_FAILURE_NUDGE,
    QUEUED_TASK_WEIGHT,
    QUIET_SNAPSHOT_LIMIT,
    RUNNING_PROGRESS_CAP,
    RUNNING_TASK_WEIGHT,
    STREAM_ENDED_STATE,
    TERMINAL_STATES,
)
from flowmonitor.errors import ParseFailure
from flowmonitor.schemas import ClientView, ConnectionState, TaskSnapshot, ViewStatus
from flowmonitor.services.normalize import normalize_execution, normalize_state, task_states

LOGGER = logging.getLogger("flowmonitor.reconciler")

_TRANSITIONS = {
    ConnectionState.disconnected: {ConnectionState.connecting, ConnectionState.completed},
    ConnectionState.connecting: {
        ConnectionState.connected,
        ConnectionState.retrying,
        ConnectionState.disconnected,
        ConnectionState.completed,
    },
    ConnectionState.connected: {
        ConnectionState.retrying,
        ConnectionState.disconnected,
        ConnectionState.completed,
    },
    ConnectionState.retrying: {
        ConnectionState.connecting,
        ConnectionState.disconnected,
        ConnectionState.completed,
    },
    ConnectionState.completed: set(),
}

_PUSH_STATES = {ConnectionState.connecting, ConnectionState.connected, ConnectionState.retrying}


def _terminal_outcome(states: Sequence[str]) -> Optional[ViewStatus]:
    if not states or any(state not in TERMINAL_STATES for state in states):
        return None
    if all(state == "SUCCESS" for state in states):
        return ViewStatus.success
    return ViewStatus.failed


def derive_status(
    exec_state: Any,
    tasks: Iterable[Any],
    previous_status: ViewStatus = ViewStatus.idle,
    *,
    has_execution: bool = False,
    quiet_streak: int = 0,
) -> ViewStatus:
    """Map an engine snapshot onto the coarse client status."""
    state = normalize_state(exec_state, default="")
    if state in TERMINAL_STATES:
        return ViewStatus(state.lower())

    states = task_states(tasks)
    if any(task_state in ACTIVE_STATES for task_state in states):
        return ViewStatus.running
    outcome = _terminal_outcome(states)
    if outcome is not None:
        return outcome
    if states:
        return ViewStatus.running
    if state in ACTIVE_STATES:
        return ViewStatus.running
    if (
        ViewStatus(previous_status) is ViewStatus.running
        and has_execution
        and quiet_streak < QUIET_SNAPSHOT_LIMIT
    ):
        return ViewStatus.running
    return ViewStatus.idle


def compute_progress(
    tasks: Iterable[Any],
    exec_state: Any,
    status: Optional[ViewStatus] = None,
) -> float:
    if normalize_state(exec_state, default="") in TERMINAL_STATES:
        return 100.0
    if status is not None and ViewStatus(status).is_terminal:
        return 100.0
    states = task_states(tasks)
    if not states:
        return 0.0
    total = 0.0
    for state in states:
        if state in TERMINAL_STATES:
            total += COMPLETED_TASK_WEIGHT
        elif state == "RUNNING":
            total += RUNNING_TASK_WEIGHT
        elif state in ACTIVE_STATES:
            total += QUEUED_TASK_WEIGHT
    return min(100.0 * total / len(states), RUNNING_PROGRESS_CAP)


class StatusReconciler:
    """Owns the ClientView for one execution id and folds snapshots into it."""

    def __init__(self, execution_id: Optional[str] = None) -> None:
        self.generation = 0
        self._quiet_streak = 0
        self.snapshot_count = 0
        self.history: List[ConnectionState] = []
        self.view = ClientView()
        self.reset(execution_id)

    def reset(self, execution_id: Optional[str]) -> ClientView:
        """Replace the view; every execution id gets a fresh object."""
        self.generation += 1
        self._quiet_streak = 0
        self.snapshot_count = 0
        self.history = []
        self.view = ClientView(
            execution_id=execution_id,
            status=ViewStatus.running if execution_id else ViewStatus.idle,
        )
        return self.view

    @property
    def is_terminal(self) -> bool:
        return self.view.status.is_terminal

    @property
    def is_completed(self) -> bool:
        return self.view.connection_state is ConnectionState.completed

    # -- Connection state -------------------------------------------------------
    def transition(self, target: ConnectionState) -> bool:
        current = self.view.connection_state
        if target is current:
            return False
        if target not in _TRANSITIONS[current]:
            LOGGER.debug("Ignoring connection transition %s -> %s", current.value, target.value)
            return False
        self.view.connection_state = target
        self.history.append(target)
        return True

    def mark_connecting(self) -> bool:
        return self.transition(ConnectionState.connecting)

    def mark_connected(self) -> bool:
        return self.transition(ConnectionState.connected)

    def mark_retrying(self, message: Optional[str] = None) -> bool:
        if message:
            self.view.last_error = message
        return self.transition(ConnectionState.retrying)

    def mark_disconnected(self, message: Optional[str] = None) -> bool:
        if message:
            self.view.last_error = message
        return self.transition(ConnectionState.disconnected)

    def mark_completed(self) -> bool:
        return self.transition(ConnectionState.completed)

    # -- Snapshots --------------------------------------------------------------
    def apply_message(self, data: str) -> ClientView:
        """Decode one push-frame payload and apply it; bad frames are tolerated."""
        try:
            snapshot = self._decode(data)
        except ParseFailure as exc:
            LOGGER.warning("Dropping malformed status frame for %s: %s", self.view.execution_id, exc)
            self.view.last_error = "Error parsing status update"
            if self.view.status is ViewStatus.running:
                self.view.progress_percent = min(
                    self.view.progress_percent + PARSE_FAILURE_NUDGE, RUNNING_PROGRESS_CAP
                )
            return self.view
        return self.apply_snapshot(snapshot)

    @staticmethod
    def _decode(data: str) -> Dict[str, Any]:
        try:
            snapshot = json.loads(data)
        except (TypeError, ValueError) as exc:
            raise ParseFailure(f"invalid JSON: {exc}") from exc
        if not isinstance(snapshot, dict):
            raise ParseFailure("status frame is not an object")
        return snapshot

    def apply_snapshot(self, snapshot: Dict[str, Any]) -> ClientView:
        view = self.view
        marker = snapshot.get("status")

        if marker == "connected":
            self.mark_connected()
            return view
        if marker == "retrying":
            view.last_error = (
                f"Reconnecting to engine (attempt {snapshot.get('retryCount')}"
                f"/{snapshot.get('maxRetries')})…"
            )
            return view
        if marker == "error":
            view.last_error = str(snapshot.get("error") or "Status stream failed")
            return view
        if marker == "stream_ended" or normalize_state(snapshot.get("state"), default="") == STREAM_ENDED_STATE:
            return self._end_of_stream(snapshot)

        if view.status.is_terminal:
            # Stale or duplicate frame after the outcome is known.
            view.progress_percent = 100.0
            self.mark_completed()
            return view

        self.snapshot_count += 1
        normalized = normalize_execution(snapshot)
        tasks = normalized["tasks"]
        exec_state = normalized["state"]
        if tasks or exec_state in ACTIVE_STATES or exec_state in TERMINAL_STATES:
            self._quiet_streak = 0
        else:
            self._quiet_streak += 1

        new_status = derive_status(
            exec_state,
            tasks,
            view.status,
            has_execution=bool(view.execution_id),
            quiet_streak=self._quiet_streak,
        )
        if new_status is ViewStatus.idle and view.has_data:
            new_status = view.status

        if tasks or not view.tasks:
            view.tasks = [TaskSnapshot.model_validate(task) for task in tasks]
        view.execution = normalized
        view.has_data = view.has_data or bool(tasks) or exec_state in TERMINAL_STATES
        view.status = new_status
        if new_status.is_terminal or snapshot.get("finalUpdate"):
            view.progress_percent = 100.0
            view.last_error = None
            self.mark_completed()
        else:
            view.progress_percent = compute_progress(view.tasks, exec_state, new_status)
            if view.connection_state in _PUSH_STATES:
                self.mark_connected()
        return view

    def _end_of_stream(self, snapshot: Dict[str, Any]) -> ClientView:
        view = self.view
        if view.status.is_terminal:
            self.mark_completed()
            return view
        tasks = snapshot.get("tasks") or [task.model_dump() for task in view.tasks]
        outcome = _terminal_outcome(task_states(tasks))
        if outcome is not None:
            view.status = outcome
            view.progress_percent = 100.0
        self.mark_completed()
        return view
