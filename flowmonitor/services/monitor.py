from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from flowmonitor.schemas import ClientView, ConnectionState
from flowmonitor.services.reconciler import StatusReconciler
from flowmonitor.settings import MonitorSettings

LOGGER = logging.getLogger("flowmonitor.monitor")

Sleep = Callable[[float], Awaitable[Any]]
UpdateCallback = Callable[[ClientView], None]

STREAM_PATH = "/api/workflow-status"
STATUS_PATH = "/api/execution-status"

_ABORT_ERRORS = (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)


def reconnect_delay(attempt: int, base_ms: int = 1000, cap_ms: Optional[int] = 5000) -> float:
    """Seconds to wait before reconnect ``attempt`` (0-based)."""
    delay_ms = base_ms * (2 ** attempt)
    if cap_ms is not None:
        delay_ms = min(delay_ms, cap_ms)
    return delay_ms / 1000.0


class _StreamClosed(Exception):
    """The push channel ended before the view reached ``completed``."""

    def __init__(
        self,
        received_bytes: bool,
        received_snapshot: bool,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(str(cause) if cause else "stream closed")
        self.received_bytes = received_bytes
        self.received_snapshot = received_snapshot
        self.cause = cause


class MonitorSession:
    """Client-side driver feeding a StatusReconciler from the push channel.

    One session watches at most one execution at a time. Selecting another id
    cancels the running watch task before the new view is created, and every
    watch carries a generation token so late results from a cancelled watch are
    dropped instead of leaking into the new view.
    """

    def __init__(
        self,
        base_url: str,
        *,
        settings: Optional[MonitorSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self._settings = settings or MonitorSettings()
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=None)
        self._owns_client = client is None
        self._sleep = sleep
        self._on_update = on_update
        self.reconciler = StatusReconciler()
        self._task: Optional[asyncio.Task] = None
        self._token = 0
        self.retry_delays: list = []

    @property
    def view(self) -> ClientView:
        return self.reconciler.view

    @property
    def execution_id(self) -> Optional[str]:
        return self.reconciler.view.execution_id

    # -- Lifecycle --------------------------------------------------------------
    def select(self, execution_id: Optional[str]) -> ClientView:
        """Switch the monitor to ``execution_id`` (``None`` clears it)."""
        self._cancel()
        self.retry_delays = []
        view = self.reconciler.reset(execution_id)
        self._notify()
        if execution_id:
            self._start()
        return view

    async def watch(self, execution_id: str) -> ClientView:
        self.select(execution_id)
        await self.wait()
        return self.view

    async def wait(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def visibility_regained(self) -> bool:
        """Reconnect right away when the view is neither live nor finished."""
        state = self.view.connection_state
        if not self.execution_id or state in (ConnectionState.connected, ConnectionState.completed):
            return False
        LOGGER.info("View for %s visible again, reconnecting", self.execution_id)
        self._restart()
        return True

    async def retry(self) -> bool:
        """Manual reconnect affordance offered after retries are exhausted."""
        if not self.execution_id or self.view.connection_state is ConnectionState.completed:
            return False
        self._restart()
        return True

    async def refresh(self) -> ClientView:
        """Fetch the status once over plain request/response."""
        token = self._token
        execution_id = self.execution_id
        if not execution_id:
            return self.view
        await self._poll_once(execution_id, token)
        return self.view

    async def close(self) -> None:
        self._cancel()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MonitorSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _cancel(self) -> None:
        self._token += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def _start(self) -> None:
        token = self._token
        self._task = asyncio.get_running_loop().create_task(self._run(token))

    def _restart(self) -> None:
        self._cancel()
        self.retry_delays = []
        self._start()

    def _is_current(self, token: int) -> bool:
        return token == self._token

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self.view)

    # -- Push channel -----------------------------------------------------------
    async def _run(self, token: int) -> None:
        execution_id = self.execution_id
        if not execution_id:
            return
        reconciler = self.reconciler
        settings = self._settings
        attempt = 0
        immediate_retry_used = False

        while self._is_current(token):
            reconciler.mark_connecting()
            self._notify()
            try:
                await self._consume_stream(execution_id, token)
            except _StreamClosed as exc:
                failure = exc
            else:
                return
            if not self._is_current(token) or reconciler.is_completed:
                return
            if reconciler.is_terminal:
                reconciler.mark_completed()
                self._notify()
                return
            if failure.received_snapshot:
                attempt = 0

            if (
                not immediate_retry_used
                and not failure.received_bytes
                and isinstance(failure.cause, _ABORT_ERRORS)
            ):
                immediate_retry_used = True
                LOGGER.info("Stream for %s aborted before any data, retrying now", execution_id)
                reconciler.mark_retrying()
                self._notify()
                continue

            if attempt >= settings.reconnect_max_attempts:
                break

            delay = reconnect_delay(attempt, settings.reconnect_base_ms, settings.reconnect_cap_ms)
            attempt += 1
            LOGGER.warning(
                "Status stream for %s lost (%s), reconnect %s/%s in %.1fs",
                execution_id,
                failure,
                attempt,
                settings.reconnect_max_attempts,
                delay,
            )
            reconciler.mark_retrying(
                f"Connection lost. Reconnecting (attempt {attempt}/{settings.reconnect_max_attempts})…"
            )
            self.retry_delays.append(delay)
            self._notify()
            await self._sleep(delay)

        if not self._is_current(token):
            return
        LOGGER.error("Giving up on status stream for %s, falling back to polling", execution_id)
        reconciler.mark_disconnected(
            "Lost connection to the status stream. Showing periodic updates; use retry to reconnect."
        )
        self._notify()
        await self._poll_fallback(execution_id, token)

    async def _consume_stream(self, execution_id: str, token: int) -> None:
        """Apply frames until the view completes; raise _StreamClosed otherwise."""
        received = False
        snapshots = False
        start_count = self.reconciler.snapshot_count
        try:
            async with self._client.stream(
                "GET", STREAM_PATH, params={"executionId": execution_id}
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not self._is_current(token):
                        return
                    received = True
                    if not line.startswith("data:"):
                        continue
                    self.reconciler.apply_message(line[len("data:"):].strip())
                    snapshots = self.reconciler.snapshot_count > start_count
                    self._notify()
                    if self.reconciler.is_completed:
                        return
        except httpx.HTTPError as exc:
            raise _StreamClosed(received, snapshots, exc) from exc
        if self._is_current(token) and not self.reconciler.is_completed:
            raise _StreamClosed(received, snapshots)

    # -- Polling fallback -------------------------------------------------------
    async def _poll_fallback(self, execution_id: str, token: int) -> None:
        while self._is_current(token) and not self.reconciler.is_completed:
            await self._poll_once(execution_id, token)
            if self.reconciler.is_completed or not self._is_current(token):
                return
            await self._sleep(self._settings.fallback_poll_seconds)

    async def _poll_once(self, execution_id: str, token: int) -> None:
        try:
            response = await self._client.get(STATUS_PATH, params={"executionId": execution_id})
            response.raise_for_status()
            snapshot: Dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            if self._is_current(token):
                LOGGER.warning("Status poll for %s failed: %s", execution_id, exc)
                self.view.last_error = f"Error fetching status: {exc}"
                self._notify()
            return
        if not self._is_current(token) or not isinstance(snapshot, dict):
            return
        self.reconciler.apply_snapshot(snapshot)
        self._notify()
