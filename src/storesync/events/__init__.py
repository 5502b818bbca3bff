"""Event ingestion: idempotency cache + sequential event queue.

- IdempotencyCache (TTL, lazy + periodic eviction, force-clear)
- EventQueue (single consumer, ordered, exponential backoff retries)
- Status / enqueue result models
"""

from .cache import EntryState, IdempotencyCache, IdempotencyEntry
from .models import (
    EnqueueResult,
    EventRecord,
    PendingItem,
    QueueStats,
    QueueStatus,
    RecentEntry,
)
from .queue import EventQueue, Processor, QueueConfig

__all__ = [
    # cache
    "EntryState",
    "IdempotencyCache",
    "IdempotencyEntry",
    # records / results
    "EnqueueResult",
    "EventRecord",
    "PendingItem",
    "QueueStats",
    "QueueStatus",
    "RecentEntry",
    # runtime
    "EventQueue",
    "Processor",
    "QueueConfig",
]
