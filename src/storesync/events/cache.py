"""
Time-bounded idempotency cache keyed by event identity.

Entries older than the TTL are treated as absent regardless of state. They
are removed lazily on lookup and by a periodic sweeper task.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger


class EntryState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IdempotencyEntry:
    identity: str
    timestamp: float
    state: EntryState
    result: Any = None
    error: Optional[str] = None


class IdempotencyCache:
    """In-memory identity -> entry store with TTL.

    Args:
        ttl_ms: Age after which an entry counts as absent
        clock: Returns current time in seconds (``time.time`` by default)
    """

    def __init__(self, ttl_ms: int, *, clock: Callable[[], float] = time.time):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        self._ttl = ttl_ms / 1000.0
        self._clock = clock
        self._entries: dict[str, IdempotencyEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        return self.get(identity) is not None

    def _expired(self, entry: IdempotencyEntry, now: float) -> bool:
        return now - entry.timestamp > self._ttl

    # --------------- reads

    def get(self, identity: str) -> Optional[IdempotencyEntry]:
        entry = self._entries.get(identity)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[identity]
            return None
        return entry

    def lookup(self, identity: str) -> Optional[EntryState]:
        """State for ``identity``, or None when absent or expired."""
        entry = self.get(identity)
        return entry.state if entry else None

    def recent(self, limit: int = 50) -> list[IdempotencyEntry]:
        """Live entries, newest first."""
        now = self._clock()
        live = [e for e in self._entries.values() if not self._expired(e, now)]
        live.sort(key=lambda e: e.timestamp, reverse=True)
        return live[:limit]

    # --------------- writes

    def _put(self, identity: str, state: EntryState, result: Any = None, error: Optional[str] = None):
        self._entries[identity] = IdempotencyEntry(
            identity=identity,
            timestamp=self._clock(),
            state=state,
            result=result,
            error=error,
        )

    def mark_processing(self, identity: str) -> None:
        self._put(identity, EntryState.PROCESSING)

    def mark_completed(self, identity: str, result: Any = None) -> None:
        self._put(identity, EntryState.COMPLETED, result=result)

    def mark_failed(self, identity: str, error: Optional[str]) -> None:
        self._put(identity, EntryState.FAILED, error=error)

    def force_clear(self, identity: str) -> bool:
        """Drop the entry unconditionally. Returns True if one existed."""
        return self._entries.pop(identity, None) is not None

    def evict_expired(self) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if self._expired(e, now)]
        for identity in stale:
            del self._entries[identity]
        if stale:
            logger.info(f"Idempotency cache sweep: evicted {len(stale)} expired entries")
        return len(stale)

    # --------------- periodic sweep

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start_sweeper(self, interval_ms: int) -> None:
        """Run ``evict_expired`` every ``interval_ms`` on the running loop."""
        if self.sweeping:
            return
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(interval_ms / 1000.0), name="idempotency-sweeper"
        )
        logger.debug(f"Idempotency cache sweeper started (every {interval_ms}ms)")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.debug("Idempotency cache sweeper stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()
