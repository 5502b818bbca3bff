"""
Throttle feedback for the batch synchronizer.

The synchronizer publishes a ThrottleEvent each time it changes its chunk
size. Subscribers (dashboards, other jobs sharing the same downstream
quota, logging) react without coupling to the synchronizer itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger


class ThrottleReason(str, Enum):
    """Why the concurrency changed."""

    RATE_LIMITED = "rate_limited"  # chunk saw a rate-limit signal, halved
    RECOVERED = "recovered"  # clean chunk, grown by one step
    RETRY_PASS = "retry_pass"  # reset for a retry pass


@dataclass(frozen=True)
class ThrottleEvent:
    """Immutable concurrency change notice.

    Attributes:
        run_id: Identifies the sync_many invocation
        previous: Chunk size before the change
        current: Chunk size after the change
        reason: What triggered the change
        wait_ms: Pause applied before the next chunk (0 when none)
    """

    run_id: str
    previous: int
    current: int
    reason: ThrottleReason
    wait_ms: int = 0

    @property
    def delta(self) -> int:
        return self.current - self.previous


class ThrottleSubscriber(Protocol):
    async def __call__(self, event: ThrottleEvent) -> None: ...


class ThrottleFeedbackBus:
    """In-process pub/sub for throttle events.

    One subscriber's failure does not affect others. Best-effort delivery.

    Example:
        bus = ThrottleFeedbackBus()

        async def on_throttle(event: ThrottleEvent):
            if event.reason is ThrottleReason.RATE_LIMITED:
                await pause_stock_sync(event.wait_ms)

        bus.subscribe(on_throttle)
        BatchSynchronizer(worker, feedback=bus)
    """

    def __init__(self) -> None:
        self._subs: list[ThrottleSubscriber] = []

    def subscribe(self, callback: ThrottleSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Throttle subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: ThrottleSubscriber) -> None:
        """No-op if callback is not subscribed."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Throttle subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: ThrottleEvent) -> None:
        if not self._subs:
            return

        logger.debug(
            f"Publishing throttle: run={event.run_id} {event.previous}->{event.current} "
            f"reason={event.reason.value} wait={event.wait_ms}ms"
        )

        # copy so subscribers may unsubscribe while being called
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(f"Throttle subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
