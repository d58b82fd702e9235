from __future__ import annotations

from enum import Enum
from typing import Optional


class MonitorError(RuntimeError):
    pass


class TransportError(MonitorError):
    """HTTP failure or dropped connection. Recoverable by retry or fallback."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitedError(TransportError):
    def __init__(self, message: str = "rate limited") -> None:
        super().__init__(message, status=429)


class ProtocolError(TransportError):
    """Malformed payload from the backend. Transient, never ends a session."""


class ResultRetrievalError(MonitorError):
    pass


class ErrorKind(str, Enum):
    JOB_FAILED = "job_failed"
    RESULT_RETRIEVAL_FAILED = "result_retrieval_failed"
    COMPLETED_WITHOUT_RESULTS = "completed_without_results"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
