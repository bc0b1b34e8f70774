from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for errors raised while talking to the engine or a client."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(MonitorError):
    status_code = 400


class EngineConfigurationError(MonitorError):
    status_code = 500


class EngineError(MonitorError):
    """Non-2xx answer from the orchestration engine."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class TransientFetchFailure(EngineError):
    """Network failure, 5xx or undecodable body; worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code if status_code is not None else 502)


class ParseFailure(MonitorError):
    status_code = 502
