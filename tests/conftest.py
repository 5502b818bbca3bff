"""
Pytest configuration and fixtures for storesync.

Provides cross-platform event loop configuration, a controllable clock and
fast (millisecond) queue / sync settings.
"""

import asyncio
import sys

import pytest

from storesync.config import get_settings
from storesync.events import QueueConfig
from storesync.sync import SyncOptions

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_queue_config():
    """Queue config with near-zero delays."""
    return QueueConfig(
        cache_ttl_ms=60_000,
        min_request_delay_ms=0,
        max_retries=5,
        base_retry_delay_ms=1,
        max_retry_delay_ms=5,
        cleanup_interval_ms=60_000,
    )


@pytest.fixture
def fast_sync_options():
    """Sync options with near-zero waits."""
    return SyncOptions(
        initial_concurrency=4,
        floor=1,
        ceiling=8,
        max_retries=3,
        retry_delay_ms=1,
        rate_limit_wait_ms=1,
        max_rate_limit_wait_ms=5,
        rate_limit_window_ms=10_000,
        rate_limit_pass_delay_ms=1,
    )


@pytest.fixture
def fresh_settings():
    """Clear the cached Settings before and after the test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def record_sleeps(monkeypatch):
    """Replace asyncio.sleep with a recorder that only yields to the loop."""
    real_sleep = asyncio.sleep
    delays = []

    async def fake_sleep(seconds, *args, **kwargs):
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays
