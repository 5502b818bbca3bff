"""
Adaptive-concurrency batch synchronizer.

Runs a per-key worker over a large key set in sequential chunks. Every item
of a chunk runs concurrently; chunk boundaries are the only places where
the chunk size changes or pauses happen. Recoverable failures are re-driven
through bounded retry passes at reduced concurrency.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, computed_field

from ..backoff import BackoffPolicy, classify
from ..config import Settings
from ..errors import PROGRAMMING_ERRORS, describe_error
from ..metrics import SYNC_CONCURRENCY, SYNC_ITEMS_TOTAL, SYNC_RATE_LIMIT_SIGNALS_TOTAL
from ..outcomes import (
    OUTCOME_TYPES,
    Failed,
    NoChange,
    Skipped,
    SyncOutcome,
    Updated,
    WouldUpdate,
)
from .concurrency import ABSOLUTE_MAX_CONCURRENCY, ConcurrencyState
from .feedback import ThrottleEvent, ThrottleFeedbackBus, ThrottleReason

Worker = Callable[[str], Awaitable[SyncOutcome]]


@dataclass(frozen=True)
class SyncOptions:
    """Knobs for one ``sync_many`` run. Delays in milliseconds."""

    initial_concurrency: int = 20
    floor: int = 2
    ceiling: int = 20
    max_retries: int = 3  # extra passes; 0 disables retries
    retry_delay_ms: int = 2000
    rate_limit_wait_ms: int = 5000
    max_rate_limit_wait_ms: int = 60_000
    rate_limit_window_ms: int = 10_000
    rate_limit_pass_delay_ms: int = 10_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncOptions":
        return cls(
            initial_concurrency=settings.sync_initial_concurrency,
            floor=settings.sync_floor_concurrency,
            ceiling=settings.sync_ceiling_concurrency,
            max_retries=settings.sync_max_retries,
            retry_delay_ms=settings.sync_retry_delay_ms,
            rate_limit_wait_ms=settings.sync_rate_limit_wait_ms,
            max_rate_limit_wait_ms=settings.sync_max_rate_limit_wait_ms,
            rate_limit_window_ms=settings.sync_rate_limit_window_ms,
            rate_limit_pass_delay_ms=settings.sync_rate_limit_pass_delay_ms,
        )


@dataclass
class BatchItem:
    key: str
    attempt: int = 0
    last_error: Optional[str] = None


class SyncSummary(BaseModel):
    """Aggregate result of ``sync_many``. ``details`` keeps input key order."""

    run_id: str
    total: int = 0
    updated: int = 0
    no_change: int = 0
    skipped: int = 0
    terminal_failed: int = 0
    still_failing: int = 0
    passes: int = 0
    final_concurrency: int = 0
    duration_seconds: float = 0.0
    details: list[SyncOutcome] = []

    @computed_field  # type: ignore[misc]
    @property
    def errors(self) -> int:
        return self.terminal_failed + self.still_failing


class BatchSynchronizer:
    """
    Reconcile many keys with a per-key async worker under adaptive concurrency.

    Usage:

        sync = BatchSynchronizer(ValueReconciler(erp_price, shop_price, write_price))
        summary = await sync.sync_many(skus, SyncOptions(initial_concurrency=10))
        print(summary.updated, summary.errors)
    """

    def __init__(
        self,
        worker: Worker,
        options: Optional[SyncOptions] = None,
        *,
        feedback: Optional[ThrottleFeedbackBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._worker = worker
        self._opts = options or SyncOptions()
        self._feedback = feedback
        self._clock = clock

    async def sync_many(
        self, keys: Iterable[str], options: Optional[SyncOptions] = None
    ) -> SyncSummary:
        opts = options or self._opts
        run_id = uuid.uuid4().hex[:8]
        started = time.monotonic()

        ordered = list(dict.fromkeys(str(k) for k in keys))
        state = self._new_state(opts)
        SYNC_CONCURRENCY.set(state.current)

        if not ordered:
            return SyncSummary(run_id=run_id, final_concurrency=state.current)

        logger.info(
            f"Sync {run_id}: {len(ordered)} keys, concurrency {state.current} "
            f"(floor {state.floor}, ceiling {state.ceiling})"
        )

        items = {key: BatchItem(key) for key in ordered}
        details, carried_ms = await self._run_pass(run_id, list(items.values()), state)
        pending = self._recoverable(items, details)
        self._log_terminal(run_id, details)
        passes = 1

        for retry in range(1, opts.max_retries + 1):
            if not pending:
                break
            last = [details[item.key] for item in pending]
            rate_limited = any(isinstance(o, Failed) and o.rate_limited for o in last)
            wait_ms = opts.rate_limit_pass_delay_ms if rate_limited else opts.retry_delay_ms
            wait_ms = max([wait_ms, carried_ms] + [o.suggested_delay_ms or 0 for o in last])

            previous = state.current
            state.retry_start(rate_limited)
            SYNC_CONCURRENCY.set(state.current)
            await self._publish(run_id, previous, state.current, ThrottleReason.RETRY_PASS, wait_ms)

            logger.info(
                f"Sync {run_id}: retry pass {retry}/{opts.max_retries} for {len(pending)} keys "
                f"at concurrency {state.current} after {wait_ms}ms"
                + (" (rate limited)" if rate_limited else "")
            )
            await asyncio.sleep(wait_ms / 1000.0)

            for item in pending:
                item.attempt = retry
            retried, carried_ms = await self._run_pass(run_id, pending, state)
            details.update(retried)
            passes += 1
            pending = self._recoverable(items, {i.key: details[i.key] for i in pending})

        if pending:
            self._log_still_failing(run_id, pending)

        summary = self._summarize(run_id, ordered, details, passes, state, started)
        logger.info(
            f"Sync {run_id} done in {summary.duration_seconds:.2f}s: "
            f"updated={summary.updated} no_change={summary.no_change} "
            f"skipped={summary.skipped} not_retried={summary.terminal_failed} "
            f"still_failing={summary.still_failing}"
        )
        return summary

    # --------------- internals

    def _new_state(self, opts: SyncOptions) -> ConcurrencyState:
        ceiling = opts.ceiling
        if ceiling > ABSOLUTE_MAX_CONCURRENCY:
            logger.warning(
                f"Concurrency ceiling {ceiling} too high, limiting to {ABSOLUTE_MAX_CONCURRENCY}"
            )
            ceiling = ABSOLUTE_MAX_CONCURRENCY
        return ConcurrencyState(
            current=opts.initial_concurrency,
            floor=opts.floor,
            ceiling=ceiling,
            window_ms=opts.rate_limit_window_ms,
            wait_policy=BackoffPolicy(opts.rate_limit_wait_ms, opts.max_rate_limit_wait_ms),
        )

    async def _run_pass(
        self, run_id: str, items: Sequence[BatchItem], state: ConcurrencyState
    ) -> tuple[dict[str, SyncOutcome], int]:
        """Run one pass in chunks.

        Returns the outcomes and the rate-limit wait still owed when the last
        chunk was limited (0 otherwise); the caller applies it before the next
        pass.
        """
        results: dict[str, SyncOutcome] = {}
        owed_ms = 0
        index = 0
        while index < len(items):
            chunk = items[index : index + state.current]
            index += len(chunk)

            outcomes = await asyncio.gather(*(self._invoke(item) for item in chunk))
            for item, outcome in zip(chunk, outcomes):
                results[item.key] = outcome
                item.last_error = outcome.error if isinstance(outcome, Failed) else None
                SYNC_ITEMS_TOTAL.labels(outcome.action.value).inc()

            limited = [o for o in outcomes if isinstance(o, Failed) and o.rate_limited]
            previous = state.current
            if limited:
                SYNC_RATE_LIMIT_SIGNALS_TOTAL.inc()
                suggested = max(o.suggested_delay_ms or 0 for o in limited) or None
                wait_ms = state.on_rate_limit(self._clock(), suggested)
                logger.warning(
                    f"Sync {run_id}: rate limited ({len(limited)} in chunk), "
                    f"concurrency {previous} -> {state.current}, waiting {wait_ms}ms"
                )
                await self._publish(run_id, previous, state.current, ThrottleReason.RATE_LIMITED, wait_ms)
                if index < len(items):
                    await asyncio.sleep(wait_ms / 1000.0)
                else:
                    owed_ms = wait_ms
            else:
                state.on_clean_chunk()
                if state.current != previous:
                    await self._publish(run_id, previous, state.current, ThrottleReason.RECOVERED)
            SYNC_CONCURRENCY.set(state.current)
            logger.debug(f"Sync {run_id}: {index}/{len(items)} processed")
        return results, owed_ms

    async def _invoke(self, item: BatchItem) -> SyncOutcome:
        try:
            outcome = await self._worker(item.key)
        except PROGRAMMING_ERRORS:
            logger.exception(f"Sync worker crashed on {item.key}")
            raise
        except Exception as exc:
            verdict = classify(exc)
            return Failed(
                key=item.key,
                attempt=item.attempt,
                error=describe_error(exc),
                kind=verdict.kind,
                retryable=verdict.retryable,
                suggested_delay_ms=verdict.suggested_delay_ms,
            )
        if not isinstance(outcome, OUTCOME_TYPES):
            raise TypeError(
                f"worker returned {type(outcome).__name__} for {item.key!r}, expected a sync outcome"
            )
        return outcome.model_copy(update={"key": item.key, "attempt": item.attempt})

    @staticmethod
    def _recoverable(
        items: dict[str, BatchItem], outcomes: dict[str, SyncOutcome]
    ) -> list[BatchItem]:
        return [
            items[key]
            for key, outcome in outcomes.items()
            if isinstance(outcome, Failed) and outcome.retryable
        ]

    async def _publish(
        self, run_id: str, previous: int, current: int, reason: ThrottleReason, wait_ms: int = 0
    ) -> None:
        if self._feedback is None:
            return
        await self._feedback.publish(
            ThrottleEvent(
                run_id=run_id, previous=previous, current=current, reason=reason, wait_ms=wait_ms
            )
        )

    @staticmethod
    def _log_terminal(run_id: str, details: dict[str, SyncOutcome]) -> None:
        terminal = [o for o in details.values() if isinstance(o, Failed) and not o.retryable]
        if not terminal:
            return
        shown = ", ".join(o.key for o in terminal[:10])
        more = f" and {len(terminal) - 10} more" if len(terminal) > 10 else ""
        logger.info(f"Sync {run_id}: {len(terminal)} keys will not be retried: {shown}{more}")

    @staticmethod
    def _log_still_failing(run_id: str, pending: Sequence[BatchItem]) -> None:
        groups: dict[str, list[str]] = defaultdict(list)
        for item in pending:
            groups[item.last_error or "unknown error"].append(item.key)
        for error, keys in groups.items():
            sample = ", ".join(keys[:3]) + ("..." if len(keys) > 3 else "")
            logger.error(f"Sync {run_id}: {len(keys)} keys still failing with {error!r}: {sample}")

    @staticmethod
    def _summarize(
        run_id: str,
        keys: Sequence[str],
        details: dict[str, SyncOutcome],
        passes: int,
        state: ConcurrencyState,
        started: float,
    ) -> SyncSummary:
        summary = SyncSummary(
            run_id=run_id,
            total=len(keys),
            passes=passes,
            final_concurrency=state.current,
            details=[details[key] for key in keys],
        )
        for outcome in summary.details:
            if isinstance(outcome, (Updated, WouldUpdate)):
                summary.updated += 1
            elif isinstance(outcome, NoChange):
                summary.no_change += 1
            elif isinstance(outcome, Skipped):
                summary.skipped += 1
            elif outcome.retryable:
                summary.still_failing += 1
            else:
                summary.terminal_failed += 1
        summary.duration_seconds = round(time.monotonic() - started, 3)
        return summary
