"""
Records and result types for the event queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

RejectReason = Literal["duplicate", "already_queued", "missing_identity"]


@dataclass
class EventRecord:
    """One pending event. ``attempt`` counts retries already scheduled."""

    identity: str
    payload: Any
    category: str
    source: str
    enqueued_at: float
    attempt: int = 0


class EnqueueResult(BaseModel):
    queued: bool
    identity: Optional[str] = None
    reason: Optional[RejectReason] = None
    position: Optional[int] = None
    cache_state: Optional[str] = None


class QueueStats(BaseModel):
    total: int = 0
    processed: int = 0
    duplicates: int = 0
    failed: int = 0
    retries: int = 0


class PendingItem(BaseModel):
    identity: str
    enqueued_at: datetime
    attempt: int


class QueueStatus(BaseModel):
    """Point-in-time snapshot returned by ``EventQueue.get_status``."""

    queue_length: int
    is_processing: bool
    cache_size: int
    stats: QueueStats
    pending_items: list[PendingItem] = Field(default_factory=list)


class RecentEntry(BaseModel):
    identity: str
    state: str
    timestamp: datetime
    error: Optional[str] = None
