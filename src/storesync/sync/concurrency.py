"""
Adaptive chunk-size control for the batch synchronizer.

Halve on rate-limit signals, grow by one on clean chunks, never leave
``[floor, ceiling]``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..backoff import BackoffPolicy

# Hard cap regardless of configuration; downstream APIs throttle well below this.
ABSOLUTE_MAX_CONCURRENCY = 50


@dataclass
class ConcurrencyState:
    """Mutable throttle state owned by one ``sync_many`` run.

    Attributes:
        current: Chunk size for the next chunk
        floor: Lower bound (>= 1)
        ceiling: Upper bound
        consecutive_rate_limit_signals: Signals seen within ``window_ms`` of each other
        last_signal_time: Clock reading (seconds) of the last signal
        last_clean: Chunk size of the most recent chunk without a signal
    """

    current: int
    floor: int
    ceiling: int
    consecutive_rate_limit_signals: int = 0
    last_signal_time: Optional[float] = None
    last_clean: Optional[int] = None
    window_ms: int = field(default=10_000, repr=False)
    wait_policy: BackoffPolicy = field(default_factory=lambda: BackoffPolicy(5000, 60_000), repr=False)

    def __post_init__(self) -> None:
        if self.floor < 1:
            raise ValueError("floor must be >= 1")
        if self.floor > self.ceiling:
            raise ValueError(f"floor ({self.floor}) must be <= ceiling ({self.ceiling})")
        self.current = self.clamp(self.current)

    def clamp(self, value: int) -> int:
        return max(self.floor, min(self.ceiling, value))

    def on_rate_limit(self, now: float, suggested_ms: Optional[int] = None) -> int:
        """Halve the chunk size and return how long to pause (ms).

        The pause escalates with consecutive signals; a larger
        server-suggested wait wins.
        """
        recent = (
            self.last_signal_time is not None
            and (now - self.last_signal_time) * 1000.0 < self.window_ms
        )
        self.consecutive_rate_limit_signals = (
            self.consecutive_rate_limit_signals + 1 if recent else 1
        )
        self.last_signal_time = now
        # half rounded up: 7 -> 4, 3 -> 2
        self.current = max(self.floor, (self.current + 1) // 2)
        return self.wait_policy.delay_ms(self.consecutive_rate_limit_signals, suggested_ms)

    def on_clean_chunk(self) -> None:
        """Reward a chunk without rate-limit signals."""
        self.last_clean = self.current
        self.consecutive_rate_limit_signals = 0
        self.current = min(self.ceiling, self.current + 1)

    def retry_start(self, previous_pass_rate_limited: bool) -> int:
        """Chunk size for the next retry pass: about half the last clean value."""
        if previous_pass_rate_limited or self.last_clean is None:
            self.current = self.floor
        else:
            self.current = self.clamp(self.last_clean // 2)
        return self.current
