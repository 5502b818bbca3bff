"""
storesync

Keeps an ERP and a storefront in step: exactly-once webhook processing in
arrival order, and batch reconciliation jobs that throttle themselves when
the downstream API starts rate limiting.

Usage:
    from storesync import EventQueue, QueueConfig, BatchSynchronizer, ValueReconciler

    # Webhooks
    queue = EventQueue(QueueConfig())
    queue.set_processor(create_order)
    queue.enqueue(order_id, payload, "orders/create", shop)

    # Batch jobs
    sync = BatchSynchronizer(ValueReconciler(erp_stock, shop_stock, set_stock))
    summary = await sync.sync_many(skus)
"""

from .backoff import BackoffPolicy, Classification, classify, compute_backoff
from .config import Settings, get_settings
from .errors import (
    FailureKind,
    NotFound,
    RateLimited,
    RetryableError,
    ServerUnavailable,
    StoreSyncError,
    TerminalError,
    ValidationRejected,
    describe_error,
)
from .events import EnqueueResult, EntryState, EventQueue, IdempotencyCache, QueueConfig, QueueStatus
from .outcomes import (
    Failed,
    NoChange,
    ProcessResult,
    Skipped,
    SyncAction,
    SyncOutcome,
    Updated,
    WouldUpdate,
)
from .sync import (
    BatchSynchronizer,
    ConcurrencyState,
    SyncOptions,
    SyncSummary,
    ThrottleFeedbackBus,
    ValueReconciler,
)

__version__ = "1.0.0"
__all__ = [
    # primitives
    "BackoffPolicy",
    "Classification",
    "classify",
    "compute_backoff",
    # config
    "Settings",
    "get_settings",
    # errors
    "FailureKind",
    "NotFound",
    "RateLimited",
    "RetryableError",
    "ServerUnavailable",
    "StoreSyncError",
    "TerminalError",
    "ValidationRejected",
    "describe_error",
    # events
    "EnqueueResult",
    "EntryState",
    "EventQueue",
    "IdempotencyCache",
    "QueueConfig",
    "QueueStatus",
    # outcomes
    "Failed",
    "NoChange",
    "ProcessResult",
    "Skipped",
    "SyncAction",
    "SyncOutcome",
    "Updated",
    "WouldUpdate",
    # sync
    "BatchSynchronizer",
    "ConcurrencyState",
    "SyncOptions",
    "SyncSummary",
    "ThrottleFeedbackBus",
    "ValueReconciler",
]
