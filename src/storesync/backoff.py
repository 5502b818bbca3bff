"""
Backoff computation and outcome classification.

Shared by the event queue consumer and the batch synchronizer: both ask
``classify`` whether an outcome may be retried and ``compute_backoff`` how
long to wait before doing so.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from .errors import FailureKind, StoreSyncError
from .outcomes import OUTCOME_TYPES, Failed, ProcessResult


@dataclass(frozen=True)
class Classification:
    """Verdict for one outcome."""

    success: bool
    retryable: bool = False
    kind: Optional[FailureKind] = None
    suggested_delay_ms: Optional[int] = None


SUCCESS = Classification(success=True)


def compute_backoff(
    attempt: int, base_ms: int, cap_ms: int, suggested_ms: Optional[int] = None
) -> int:
    """Exponential backoff ``min(base * 2^(attempt-1), cap)`` in milliseconds.

    A server-suggested wait larger than the computed value wins.

    Args:
        attempt: Retry number, 1-based
        base_ms: Delay for the first retry
        cap_ms: Upper bound for the exponential part
        suggested_ms: Optional wait advertised by the downstream service
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay_ms = min(base_ms * (2 ** (attempt - 1)), cap_ms)
    if suggested_ms is not None and suggested_ms > delay_ms:
        return int(suggested_ms)
    return int(delay_ms)


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = 5000
    cap_ms: int = 120_000

    def delay_ms(self, attempt: int, suggested_ms: Optional[int] = None) -> int:
        return compute_backoff(attempt, self.base_ms, self.cap_ms, suggested_ms)


def classify(outcome: Any) -> Classification:
    """Classify an exception, a ProcessResult, or a sync outcome."""
    if isinstance(outcome, BaseException):
        return _classify_exception(outcome)
    if isinstance(outcome, ProcessResult):
        return _classify_process_result(outcome)
    if isinstance(outcome, OUTCOME_TYPES):
        if isinstance(outcome, Failed):
            return Classification(
                success=False,
                retryable=outcome.retryable,
                kind=outcome.kind,
                suggested_delay_ms=outcome.suggested_delay_ms,
            )
        return SUCCESS
    raise TypeError(f"cannot classify {type(outcome).__name__}")


def _classify_exception(exc: BaseException) -> Classification:
    if isinstance(exc, StoreSyncError):
        kind = exc.kind
        return Classification(
            success=False,
            retryable=kind.retryable,
            kind=kind,
            suggested_delay_ms=getattr(exc, "suggested_delay_ms", None),
        )
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return Classification(success=False, retryable=True, kind=FailureKind.SERVER_ERROR)
    # unknown transient: retried up to the cap
    return Classification(success=False, retryable=True, kind=FailureKind.UNKNOWN)


def _classify_process_result(result: ProcessResult) -> Classification:
    if result.success:
        return SUCCESS
    if result.kind is not None:
        retryable = result.kind.retryable
        kind = result.kind
    else:
        retryable = result.retry
        kind = FailureKind.UNKNOWN if result.retry else FailureKind.TERMINAL
    return Classification(
        success=False,
        retryable=retryable,
        kind=kind,
        suggested_delay_ms=result.suggested_delay_ms,
    )
