"""
Error taxonomy for storesync.

Workers and processors raise these to tell the queue and the synchronizer
whether an item may be retried. Anything outside the taxonomy is treated
as an unknown transient failure.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Classified cause of a failed item."""

    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    TERMINAL = "terminal"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({FailureKind.RATE_LIMIT, FailureKind.SERVER_ERROR, FailureKind.UNKNOWN})


class StoreSyncError(Exception):
    """Base error for storesync."""

    kind: FailureKind = FailureKind.UNKNOWN


class RetryableError(StoreSyncError):
    """Temporary errors that should be retried with backoff."""

    kind = FailureKind.SERVER_ERROR

    def __init__(self, message: str = "", suggested_delay_ms: Optional[int] = None):
        super().__init__(message)
        self.suggested_delay_ms = suggested_delay_ms


class RateLimited(RetryableError):
    """Downstream answered 429 / too many requests."""

    kind = FailureKind.RATE_LIMIT


class ServerUnavailable(RetryableError):
    """Downstream 5xx or temporarily overloaded."""

    kind = FailureKind.SERVER_ERROR


class TerminalError(StoreSyncError):
    """Failures that must never be retried."""

    kind = FailureKind.TERMINAL


class NotFound(TerminalError):
    """Record does not exist on one of the two services."""

    kind = FailureKind.NOT_FOUND


class ValidationRejected(TerminalError):
    """Downstream rejected the write (422, conflict, bad payload)."""

    kind = FailureKind.VALIDATION


# Raised by our own code or the caller's, never by a flaky downstream.
PROGRAMMING_ERRORS: tuple[type[BaseException], ...] = (
    TypeError,
    AttributeError,
    NameError,
    AssertionError,
    NotImplementedError,
)


def describe_error(exc: BaseException) -> str:
    """Render an exception as a short readable message."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    if isinstance(exc, StoreSyncError):
        return message
    return f"{type(exc).__name__}: {message}"
