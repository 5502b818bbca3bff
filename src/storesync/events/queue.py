"""
Ordered event queue with a single sequential consumer.

Inbound events (webhooks) are accepted at most once per identity within the
cache TTL, processed strictly one at a time in arrival order, and retried
with exponential backoff while the processor reports a recoverable failure.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..backoff import BackoffPolicy, Classification, classify
from ..config import Settings
from ..errors import PROGRAMMING_ERRORS, describe_error
from ..metrics import (
    EVENT_PROCESS_LATENCY_MS,
    EVENT_QUEUE_DEPTH,
    EVENTS_ENQUEUED_TOTAL,
    EVENTS_PROCESSED_TOTAL,
)
from ..outcomes import ProcessResult
from .cache import EntryState, IdempotencyCache
from .models import (
    EnqueueResult,
    EventRecord,
    PendingItem,
    QueueStats,
    QueueStatus,
    RecentEntry,
)

Processor = Callable[[Any, str, str], Awaitable[Any]]


@dataclass(frozen=True)
class QueueConfig:
    """Event queue thresholds. All delays in milliseconds."""

    cache_ttl_ms: int = 24 * 60 * 60 * 1000
    min_request_delay_ms: int = 1500
    max_retries: int = 5
    base_retry_delay_ms: int = 5000
    max_retry_delay_ms: int = 120_000
    cleanup_interval_ms: int = 60 * 60 * 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            cache_ttl_ms=settings.cache_ttl_ms,
            min_request_delay_ms=settings.min_request_delay_ms,
            max_retries=settings.max_retries,
            base_retry_delay_ms=settings.base_retry_delay_ms,
            max_retry_delay_ms=settings.max_retry_delay_ms,
            cleanup_interval_ms=settings.cleanup_interval_ms,
        )


class EventQueue:
    """
    FIFO of pending events drained by one consumer task.

    Usage:

        queue = EventQueue(QueueConfig(min_request_delay_ms=500))
        queue.set_processor(create_order)
        async with queue:
            queue.enqueue(order["id"], order, "orders/create", shop)
            ...
        # waits for the consumer to go idle on exit
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        *,
        processor: Optional[Processor] = None,
        cache: Optional[IdempotencyCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cfg = config or QueueConfig()
        if self._cfg.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._clock = clock
        self._cache = cache or IdempotencyCache(self._cfg.cache_ttl_ms, clock=clock)
        self._backoff = BackoffPolicy(self._cfg.base_retry_delay_ms, self._cfg.max_retry_delay_ms)
        self._processor = processor

        self._queue: deque[EventRecord] = deque()
        self._queued_ids: set[str] = set()
        self._consumer: Optional[asyncio.Task] = None
        self._stats = QueueStats()

        logger.info(
            f"Event queue initialized: ttl={self._cfg.cache_ttl_ms / 3_600_000:g}h "
            f"min_delay={self._cfg.min_request_delay_ms}ms "
            f"max_retries={self._cfg.max_retries}"
        )

    # --------------- properties

    @property
    def cache(self) -> IdempotencyCache:
        return self._cache

    @property
    def is_processing(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def __len__(self) -> int:
        return len(self._queue)

    # --------------- lifecycle

    async def __aenter__(self) -> "EventQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close(drain=exc_type is None)

    async def start(self) -> None:
        """Start the periodic cache sweep."""
        self._cache.start_sweeper(self._cfg.cleanup_interval_ms)

    async def drain(self) -> None:
        """Wait until the consumer goes idle. Re-raises a consumer crash."""
        while self._consumer is not None:
            task = self._consumer
            await task
            if self._consumer is task:
                break

    async def close(self, *, drain: bool = True) -> None:
        if drain:
            await self.drain()
        elif self.is_processing:
            logger.warning(f"Event queue closing with {len(self._queue)} events pending")
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        await self._cache.stop_sweeper()

    # --------------- public API

    def set_processor(self, processor: Processor) -> None:
        """Register the coroutine that handles ``(payload, category, source)``."""
        self._processor = processor

    def enqueue(
        self, identity: Any, payload: Any = None, category: str = "", source: str = ""
    ) -> EnqueueResult:
        """Accept an event unless it is a duplicate. Starts the consumer if idle.

        Never suspends, so the duplicate checks and the append are atomic
        with respect to other coroutines on the loop.
        """
        if self._processor is None:
            raise RuntimeError("set_processor() must be called before enqueue()")

        identity = str(identity).strip() if identity is not None else ""
        if not identity:
            logger.warning(f"Event without identity ignored (category={category!r})")
            EVENTS_ENQUEUED_TOTAL.labels("missing_identity").inc()
            return EnqueueResult(queued=False, reason="missing_identity")

        self._stats.total += 1

        state = self._cache.lookup(identity)
        if state in (EntryState.PROCESSING, EntryState.COMPLETED):
            self._stats.duplicates += 1
            EVENTS_ENQUEUED_TOTAL.labels("duplicate").inc()
            logger.info(f"Event {identity}: duplicate ({state.value}), ignoring")
            return EnqueueResult(
                queued=False, identity=identity, reason="duplicate", cache_state=state.value
            )

        if identity in self._queued_ids:
            self._stats.duplicates += 1
            EVENTS_ENQUEUED_TOTAL.labels("already_queued").inc()
            logger.info(f"Event {identity}: already waiting in queue, ignoring")
            return EnqueueResult(queued=False, identity=identity, reason="already_queued")

        self._queue.append(
            EventRecord(
                identity=identity,
                payload=payload,
                category=category,
                source=source,
                enqueued_at=self._clock(),
            )
        )
        self._queued_ids.add(identity)
        position = len(self._queue)
        EVENTS_ENQUEUED_TOTAL.labels("queued").inc()
        EVENT_QUEUE_DEPTH.set(position)
        logger.info(f"Event {identity}: queued (position {position})")

        self._ensure_consumer()
        return EnqueueResult(queued=True, identity=identity, position=position)

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            queue_length=len(self._queue),
            is_processing=self.is_processing,
            cache_size=len(self._cache),
            stats=self._stats.model_copy(),
            pending_items=[
                PendingItem(
                    identity=item.identity,
                    enqueued_at=datetime.fromtimestamp(item.enqueued_at, tz=timezone.utc),
                    attempt=item.attempt,
                )
                for item in self._queue
            ],
        )

    def get_recent(self, limit: int = 50) -> list[RecentEntry]:
        """Cached outcomes, newest first."""
        return [
            RecentEntry(
                identity=entry.identity,
                state=entry.state.value,
                timestamp=datetime.fromtimestamp(entry.timestamp, tz=timezone.utc),
                error=entry.error,
            )
            for entry in self._cache.recent(limit)
        ]

    def force_reprocess(self, identity: str) -> bool:
        """Forget ``identity`` so its next enqueue is accepted."""
        self._cache.force_clear(identity)
        logger.info(f"Event {identity}: cache cleared, reprocessing allowed")
        return True

    # --------------- consumer

    def _ensure_consumer(self) -> None:
        if self.is_processing:
            return
        self._consumer = asyncio.get_running_loop().create_task(
            self._consume(), name="event-queue-consumer"
        )
        self._consumer.add_done_callback(self._on_consumer_done)

    def _on_consumer_done(self, task: asyncio.Task) -> None:
        # a crash fails only the head event; whatever waits behind it still gets a consumer
        if task.cancelled() or task.exception() is None or not self._queue:
            return
        logger.warning(f"Event consumer crashed, restarting for {len(self._queue)} pending events")
        self._ensure_consumer()

    async def _consume(self) -> None:
        logger.info(f"Event consumer started ({len(self._queue)} pending)")
        while self._queue:
            await self._process_head(self._queue[0])
            if self._queue:
                await asyncio.sleep(self._cfg.min_request_delay_ms / 1000.0)
        logger.info(f"Event queue empty. stats={self._stats.model_dump()}")

    async def _process_head(self, item: EventRecord) -> None:
        self._cache.mark_processing(item.identity)
        logger.debug(
            f"Event {item.identity}: processing "
            f"(attempt {item.attempt + 1}/{self._cfg.max_retries + 1})"
        )

        started = time.monotonic()
        try:
            raw = await self._processor(item.payload, item.category, item.source)
            result = ProcessResult.coerce(raw)
        except PROGRAMMING_ERRORS as exc:
            self._fail(item, describe_error(exc))
            logger.exception(f"Event {item.identity}: processor crashed")
            raise
        except Exception as exc:
            outcome: Any = exc
            error = describe_error(exc)
        else:
            outcome = result
            error = result.error
        finally:
            EVENT_PROCESS_LATENCY_MS.labels(item.category or "default").observe(
                (time.monotonic() - started) * 1000.0
            )

        verdict = classify(outcome)
        if verdict.success:
            self._complete(item, result.result)
        elif verdict.retryable and item.attempt < self._cfg.max_retries:
            await self._retry_later(item, verdict, error)
        else:
            self._fail(item, error or (verdict.kind.value if verdict.kind else "failed"))

    def _pop_head(self, item: EventRecord) -> None:
        head = self._queue.popleft()
        if head is not item:
            raise RuntimeError(f"queue head changed while processing {item.identity}")
        self._queued_ids.discard(item.identity)
        EVENT_QUEUE_DEPTH.set(len(self._queue))

    def _complete(self, item: EventRecord, result: Any) -> None:
        self._cache.mark_completed(item.identity, result)
        self._stats.processed += 1
        self._pop_head(item)
        EVENTS_PROCESSED_TOTAL.labels(item.category or "default", "completed").inc()
        logger.info(f"Event {item.identity}: completed")

    def _fail(self, item: EventRecord, error: Optional[str]) -> None:
        self._cache.mark_failed(item.identity, error)
        self._stats.failed += 1
        self._pop_head(item)
        EVENTS_PROCESSED_TOTAL.labels(item.category or "default", "failed").inc()
        logger.error(f"Event {item.identity}: failed after {item.attempt + 1} attempt(s) - {error}")

    async def _retry_later(
        self, item: EventRecord, verdict: Classification, error: Optional[str]
    ) -> None:
        item.attempt += 1
        self._stats.retries += 1
        delay_ms = self._backoff.delay_ms(item.attempt, verdict.suggested_delay_ms)
        # no cache entry while waiting: status reads as retry-wait, not terminal
        self._cache.force_clear(item.identity)
        EVENTS_PROCESSED_TOTAL.labels(item.category or "default", "retry").inc()
        logger.warning(
            f"Event {item.identity}: {verdict.kind.value if verdict.kind else 'retryable'} "
            f"({error}), retry {item.attempt}/{self._cfg.max_retries} in {delay_ms}ms"
        )
        await asyncio.sleep(delay_ms / 1000.0)
