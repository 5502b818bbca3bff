"""
Prometheus metrics for the event queue and the batch synchronizer.

Metrics register on the global prometheus REGISTRY at import time.
"""

from prometheus_client import Counter, Gauge, Histogram


# --- Event queue ---

EVENTS_ENQUEUED_TOTAL = Counter(
    "storesync_events_enqueued_total",
    "Enqueue attempts by outcome",
    ["outcome"],
)

EVENTS_PROCESSED_TOTAL = Counter(
    "storesync_events_processed_total",
    "Processor invocations by category and outcome",
    ["category", "outcome"],
)

EVENT_QUEUE_DEPTH = Gauge(
    "storesync_event_queue_depth",
    "Events waiting in the queue (head included)",
)

EVENT_PROCESS_LATENCY_MS = Histogram(
    "storesync_event_process_latency_ms",
    "Processor latency in milliseconds",
    ["category"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

# --- Batch synchronizer ---

SYNC_ITEMS_TOTAL = Counter(
    "storesync_sync_items_total",
    "Batch sync worker outcomes by action",
    ["action"],
)

SYNC_CONCURRENCY = Gauge(
    "storesync_sync_concurrency",
    "Current batch sync chunk size",
)

SYNC_RATE_LIMIT_SIGNALS_TOTAL = Counter(
    "storesync_sync_rate_limit_signals_total",
    "Chunks that contained at least one rate-limit outcome",
)


class MetricsRegistry:
    """Structured access to all storesync metrics."""

    events_enqueued_total = EVENTS_ENQUEUED_TOTAL
    events_processed_total = EVENTS_PROCESSED_TOTAL
    event_queue_depth = EVENT_QUEUE_DEPTH
    event_process_latency_ms = EVENT_PROCESS_LATENCY_MS
    sync_items_total = SYNC_ITEMS_TOTAL
    sync_concurrency = SYNC_CONCURRENCY
    sync_rate_limit_signals_total = SYNC_RATE_LIMIT_SIGNALS_TOTAL


metrics_registry = MetricsRegistry()
