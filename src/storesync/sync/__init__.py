"""Batch reconciliation under adaptive concurrency.

- ConcurrencyState (halve on rate limit, +1 on clean chunks, bounded)
- BatchSynchronizer (chunked fan-out, staged retry passes)
- ValueReconciler (compare-and-write worker)
- ThrottleFeedbackBus (concurrency change notifications)
"""

from .concurrency import ABSOLUTE_MAX_CONCURRENCY, ConcurrencyState
from .feedback import ThrottleEvent, ThrottleFeedbackBus, ThrottleReason, ThrottleSubscriber
from .reconciler import ValueReconciler, round_price
from .synchronizer import BatchItem, BatchSynchronizer, SyncOptions, SyncSummary, Worker

__all__ = [
    # control
    "ABSOLUTE_MAX_CONCURRENCY",
    "ConcurrencyState",
    # feedback
    "ThrottleEvent",
    "ThrottleFeedbackBus",
    "ThrottleReason",
    "ThrottleSubscriber",
    # runtime
    "BatchItem",
    "BatchSynchronizer",
    "SyncOptions",
    "SyncSummary",
    "Worker",
    # workers
    "ValueReconciler",
    "round_price",
]
