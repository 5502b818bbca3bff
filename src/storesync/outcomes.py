"""
Outcome types reported by processors and sync workers.

``ProcessResult`` is what an event processor returns. ``SyncOutcome`` is the
discriminated union of per-key batch sync results, one pydantic model per
case, tagged by ``action``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import FailureKind


@dataclass(frozen=True)
class ProcessResult:
    """What a processor reports back for one event.

    Attributes:
        success: True when the event was fully handled
        retry: Caller-tagged retryability, used when ``kind`` is not set
        error: Human readable failure message
        kind: Structured failure cause; wins over ``retry``
        suggested_delay_ms: Server-suggested wait (e.g. Retry-After)
        result: Opaque value stored in the idempotency cache on success
    """

    success: bool = True
    retry: bool = False
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    suggested_delay_ms: Optional[int] = None
    result: Any = None

    @classmethod
    def coerce(cls, value: Any) -> "ProcessResult":
        """Accept a ProcessResult, a mapping with the same keys, or None."""
        if isinstance(value, ProcessResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            kind = value.get("kind")
            if kind is not None:
                try:
                    kind = FailureKind(kind)
                except ValueError:
                    raise TypeError(f"processor returned unknown failure kind: {kind!r}") from None
            return cls(
                # a mapping without "success" counts as handled
                success=value.get("success", True) is not False,
                retry=bool(value.get("retry", False)),
                error=value.get("error"),
                kind=kind,
                suggested_delay_ms=value.get("suggested_delay_ms"),
                result=value.get("result", dict(value)),
            )
        raise TypeError(f"processor returned unsupported value: {type(value).__name__}")


class SyncAction(str, Enum):
    UPDATED = "updated"
    WOULD_UPDATE = "would_update"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"
    ERROR = "error"


class _Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    attempt: int = 0


class Updated(_Outcome):
    action: Literal[SyncAction.UPDATED] = SyncAction.UPDATED
    old: Any = None
    new: Any = None


class WouldUpdate(_Outcome):
    """Dry-run counterpart of Updated: nothing was written."""

    action: Literal[SyncAction.WOULD_UPDATE] = SyncAction.WOULD_UPDATE
    old: Any = None
    new: Any = None


class NoChange(_Outcome):
    action: Literal[SyncAction.NO_CHANGE] = SyncAction.NO_CHANGE
    value: Any = None


class Skipped(_Outcome):
    action: Literal[SyncAction.SKIPPED] = SyncAction.SKIPPED
    reason: str


class Failed(_Outcome):
    action: Literal[SyncAction.ERROR] = SyncAction.ERROR
    error: str
    kind: FailureKind = FailureKind.UNKNOWN
    retryable: bool = True
    suggested_delay_ms: Optional[int] = None

    @property
    def rate_limited(self) -> bool:
        return self.kind is FailureKind.RATE_LIMIT


SyncOutcome = Annotated[
    Union[Updated, WouldUpdate, NoChange, Skipped, Failed],
    Field(discriminator="action"),
]

OUTCOME_TYPES = (Updated, WouldUpdate, NoChange, Skipped, Failed)
