"""
Unit tests for ConcurrencyState.
"""

import pytest

from storesync.backoff import BackoffPolicy
from storesync.sync import ConcurrencyState


def make_state(current=20, floor=2, ceiling=20, **kwargs):
    kwargs.setdefault("wait_policy", BackoffPolicy(1000, 8000))
    return ConcurrencyState(current=current, floor=floor, ceiling=ceiling, **kwargs)


def test_initial_value_is_clamped():
    assert make_state(current=100).current == 20
    assert make_state(current=0).current == 2


@pytest.mark.parametrize("floor, ceiling", [(0, 10), (5, 4)])
def test_invalid_bounds(floor, ceiling):
    with pytest.raises(ValueError):
        make_state(current=4, floor=floor, ceiling=ceiling)


def test_halving_stops_at_floor():
    state = make_state()
    seen = []
    for i in range(5):
        state.on_rate_limit(now=100.0 + i * 60)
        seen.append(state.current)
    assert seen == [10, 5, 3, 2, 2]


@pytest.mark.parametrize("prev, expected", [(3, 2), (7, 4), (9, 5), (2, 1), (1, 1)])
def test_halving_rounds_half_up(prev, expected):
    state = make_state(current=prev, floor=1)
    state.on_rate_limit(now=0.0)
    assert state.current == expected


def test_wait_escalates_with_consecutive_signals():
    state = make_state(window_ms=10_000)
    assert state.on_rate_limit(now=0.0) == 1000
    assert state.on_rate_limit(now=1.0) == 2000
    assert state.on_rate_limit(now=2.0) == 4000
    assert state.consecutive_rate_limit_signals == 3

    # outside the window the streak restarts
    assert state.on_rate_limit(now=30.0) == 1000
    assert state.consecutive_rate_limit_signals == 1
    assert state.last_signal_time == 30.0


def test_suggested_wait_wins_when_larger():
    state = make_state()
    assert state.on_rate_limit(now=0.0, suggested_ms=5000) == 5000
    assert state.on_rate_limit(now=1.0, suggested_ms=500) == 2000


def test_clean_chunk_grows_by_one_up_to_ceiling():
    state = make_state(current=18)
    state.on_rate_limit(now=0.0)
    assert state.current == 9

    state.on_clean_chunk()
    assert state.current == 10
    assert state.last_clean == 9
    assert state.consecutive_rate_limit_signals == 0

    for _ in range(50):
        state.on_clean_chunk()
    assert state.current == 20


def test_retry_start():
    state = make_state(current=12)
    assert state.retry_start(previous_pass_rate_limited=False) == 2  # no clean chunk yet

    state.current = 12
    state.on_clean_chunk()
    assert state.retry_start(previous_pass_rate_limited=False) == 6
    assert state.retry_start(previous_pass_rate_limited=True) == 2


def test_bounds_hold_under_any_signal_sequence():
    state = make_state(current=7, floor=3, ceiling=11)
    pattern = [True, False, False, True, True, False, False, False, False, False, True] * 5
    for i, limited in enumerate(pattern):
        if limited:
            state.on_rate_limit(now=float(i))
        else:
            state.on_clean_chunk()
        assert state.floor <= state.current <= state.ceiling
