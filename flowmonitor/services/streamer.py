from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends

from flowmonitor.errors import EngineError, InvalidRequest, TransientFetchFailure
from flowmonitor.services.normalize import encode_frame, is_terminal, normalize_execution
from flowmonitor.settings import MonitorSettings, get_settings

LOGGER = logging.getLogger("flowmonitor.streamer")

FetchExecution = Callable[[str], Awaitable[Dict[str, Any]]]
Sleep = Callable[[float], Awaitable[Any]]


class ChannelState(str, Enum):
    open = "open"
    closed = "closed"


def retry_delay(attempt: int, base: float, cap: float) -> float:
    """Backoff before retry ``attempt`` (1-based): base, 2*base, 4*base ... capped."""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


class StatusChannel:
    """Push channel translating engine polling into events for one execution id."""

    def __init__(
        self,
        execution_id: str,
        fetch: FetchExecution,
        *,
        poll_interval: float = 1.0,
        retry_base: float = 1.0,
        retry_cap: float = 5.0,
        max_retries: int = 3,
        close_grace: float = 0.5,
        sleep: Sleep = asyncio.sleep,
        on_open: Optional[Callable[["StatusChannel"], None]] = None,
        on_close: Optional[Callable[["StatusChannel"], None]] = None,
    ) -> None:
        self.execution_id = execution_id
        self._fetch = fetch
        self._poll_interval = poll_interval
        self._retry_base = retry_base
        self._retry_cap = retry_cap
        self._max_retries = max_retries
        self._close_grace = close_grace
        self._sleep = sleep
        self._on_open = on_open
        self._on_close = on_close
        self._state = ChannelState.open
        self._timer: Optional[asyncio.Future] = None
        self.fetch_count = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.open

    def close(self) -> None:
        if self._state is ChannelState.closed:
            return
        self._state = ChannelState.closed
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
        LOGGER.info("Closed status channel for execution %s", self.execution_id)
        if self._on_close is not None:
            self._on_close(self)

    async def _wait(self, seconds: float) -> None:
        self._timer = asyncio.ensure_future(self._sleep(seconds))
        try:
            await self._timer
        except asyncio.CancelledError:
            if self.is_open:
                raise
        finally:
            self._timer = None

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        if not self.is_open:
            return
        if self._on_open is not None:
            self._on_open(self)
        failures = 0
        try:
            yield {"status": "connected"}
            while self.is_open:
                try:
                    self.fetch_count += 1
                    payload = await self._fetch(self.execution_id)
                except TransientFetchFailure as exc:
                    failures += 1
                    if failures > self._max_retries:
                        LOGGER.error(
                            "Giving up on execution %s after %s retries: %s",
                            self.execution_id,
                            self._max_retries,
                            exc.message,
                        )
                        yield {"status": "error", "error": "Failed to fetch status"}
                        break
                    delay = retry_delay(failures, self._retry_base, self._retry_cap)
                    LOGGER.warning(
                        "Status fetch for %s failed (%s), retry %s/%s in %.1fs",
                        self.execution_id,
                        exc.message,
                        failures,
                        self._max_retries,
                        delay,
                    )
                    yield {
                        "status": "retrying",
                        "retryCount": failures,
                        "maxRetries": self._max_retries,
                        "delay": int(delay * 1000),
                    }
                    await self._wait(delay)
                    continue
                except EngineError as exc:
                    LOGGER.error("Status fetch for %s rejected: %s", self.execution_id, exc.message)
                    yield {"status": "error", "error": exc.message}
                    break

                failures = 0
                if not self.is_open:
                    break
                snapshot = normalize_execution(payload)
                yield snapshot
                if is_terminal(snapshot["state"]):
                    yield {**snapshot, "finalUpdate": True}
                    await self._wait(self._close_grace)
                    break
                await self._wait(self._poll_interval)
        finally:
            self.close()

    async def frames(self) -> AsyncIterator[str]:
        events = self.events()
        try:
            async for event in events:
                yield encode_frame(event)
        finally:
            await events.aclose()


class StatusStreamer:
    """Hands out one push channel per subscriber and tracks the running ones.

    A channel is tracked from the moment its event loop starts until it closes,
    so a response body that is discarded before iteration leaves nothing behind.
    """

    def __init__(self, settings: MonitorSettings, sleep: Sleep = asyncio.sleep) -> None:
        self._settings = settings
        self._sleep = sleep
        self._channels: Dict[str, List[StatusChannel]] = {}

    @property
    def settings(self) -> MonitorSettings:
        return self._settings

    def open_channel(self, execution_id: Optional[str], fetch: FetchExecution) -> StatusChannel:
        if execution_id is None or not str(execution_id).strip():
            raise InvalidRequest("Execution ID is required")
        execution_id = str(execution_id).strip()
        settings = self._settings
        channel = StatusChannel(
            execution_id,
            fetch,
            poll_interval=settings.poll_interval_seconds,
            retry_base=settings.stream_retry_base_seconds,
            retry_cap=settings.stream_retry_cap_seconds,
            max_retries=settings.stream_max_retries,
            close_grace=settings.close_grace_seconds,
            sleep=self._sleep,
            on_open=self._register,
            on_close=self._forget,
        )
        return channel

    def _register(self, channel: StatusChannel) -> None:
        self._channels.setdefault(channel.execution_id, []).append(channel)
        LOGGER.info("Opened status channel for execution %s", channel.execution_id)

    def _forget(self, channel: StatusChannel) -> None:
        channels = self._channels.get(channel.execution_id, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.execution_id, None)

    def active_channels(self, execution_id: Optional[str] = None) -> List[StatusChannel]:
        if execution_id is not None:
            return list(self._channels.get(execution_id, []))
        return [channel for channels in self._channels.values() for channel in channels]

    def close_all(self) -> None:
        for channel in self.active_channels():
            channel.close()


_streamer: Optional[StatusStreamer] = None


def get_streamer(settings: MonitorSettings = Depends(get_settings)) -> StatusStreamer:
    global _streamer
    if _streamer is None or _streamer.settings is not settings:
        _streamer = StatusStreamer(settings)
    return _streamer


StreamerDep = Depends(get_streamer)
