"""
Unit tests for EventQueue (sequential consumer, idempotency, retries).
"""

import asyncio

import pytest

from storesync.errors import FailureKind, NotFound, RateLimited
from storesync.events import EntryState, EventQueue, EventRecord, QueueConfig
from storesync.outcomes import ProcessResult


class RecordingProcessor:
    """Processor that records calls and replays scripted outcomes per identity."""

    def __init__(self, script=None):
        self.calls = []
        self._script = script or {}

    async def __call__(self, payload, category, source):
        identity = payload["id"]
        self.calls.append((identity, category, source))
        await asyncio.sleep(0)
        steps = self._script.get(identity)
        if steps:
            step = steps.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step
        return ProcessResult(success=True, result={"doc": identity})


def make_queue(config, processor, **kwargs):
    q = EventQueue(config, **kwargs)
    q.set_processor(processor)
    return q


def test_enqueue_requires_processor(fast_queue_config):
    q = EventQueue(fast_queue_config)
    with pytest.raises(RuntimeError):
        q.enqueue("A", {"id": "A"})


@pytest.mark.asyncio
async def test_processes_in_arrival_order(fast_queue_config):
    proc = RecordingProcessor()
    q = make_queue(fast_queue_config, proc)

    results = [q.enqueue(i, {"id": i}, "orders/create", "shop.example") for i in "ABC"]
    assert [r.position for r in results] == [1, 2, 3]
    assert all(r.queued for r in results)

    await q.drain()

    assert [c[0] for c in proc.calls] == ["A", "B", "C"]
    assert proc.calls[0][1:] == ("orders/create", "shop.example")
    status = q.get_status()
    assert status.queue_length == 0
    assert not status.is_processing
    assert status.stats.processed == 3
    assert status.stats.total == 3
    assert q.cache.get("A").result == {"doc": "A"}


@pytest.mark.asyncio
async def test_only_one_event_in_flight(fast_queue_config):
    in_flight = 0
    peak = 0

    async def proc(payload, category, source):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001)
        in_flight -= 1

    q = make_queue(fast_queue_config, proc)
    for i in range(5):
        q.enqueue(f"o{i}", {"id": i})
    await q.drain()
    assert peak == 1


@pytest.mark.asyncio
async def test_duplicate_after_completion(fast_queue_config):
    q = make_queue(fast_queue_config, RecordingProcessor())
    q.enqueue("A", {"id": "A"})
    await q.drain()

    second = q.enqueue("A", {"id": "A"})
    assert not second.queued
    assert second.reason == "duplicate"
    assert second.cache_state == "completed"
    assert q.get_status().stats.duplicates == 1


@pytest.mark.asyncio
async def test_duplicate_while_processing(fast_queue_config):
    release = asyncio.Event()

    async def slow(payload, category, source):
        await release.wait()

    q = make_queue(fast_queue_config, slow)
    q.enqueue("A", {"id": "A"})
    await asyncio.sleep(0.01)
    assert q.cache.lookup("A") is EntryState.PROCESSING

    second = q.enqueue("A", {"id": "A"})
    assert second.reason == "duplicate"
    assert second.cache_state == "processing"

    release.set()
    await q.drain()
    assert q.cache.lookup("A") is EntryState.COMPLETED


@pytest.mark.asyncio
async def test_duplicate_while_queued(fast_queue_config):
    proc = RecordingProcessor()
    q = make_queue(fast_queue_config, proc)

    first = q.enqueue("G", {"id": "G"})
    second = q.enqueue("G", {"id": "G"})

    assert first.queued
    assert not second.queued
    assert second.reason == "already_queued"

    await q.drain()
    assert len(proc.calls) == 1


@pytest.mark.asyncio
async def test_missing_identity_is_rejected(fast_queue_config):
    q = make_queue(fast_queue_config, RecordingProcessor())
    for identity in (None, "", "   "):
        result = q.enqueue(identity, {})
        assert not result.queued
        assert result.reason == "missing_identity"
    assert q.get_status().stats.total == 0
    assert not q.is_processing


@pytest.mark.asyncio
async def test_retry_then_success(fast_queue_config):
    limited = ProcessResult(success=False, error="429", kind=FailureKind.RATE_LIMIT)
    proc = RecordingProcessor({"E": [limited, limited, limited]})
    q = make_queue(fast_queue_config, proc)

    q.enqueue("E", {"id": "E"})
    await q.drain()

    assert q.cache.lookup("E") is EntryState.COMPLETED
    stats = q.get_status().stats
    assert stats.retries == 3
    assert stats.processed == 1
    assert stats.failed == 0
    assert len(proc.calls) == 4


@pytest.mark.asyncio
async def test_retry_on_raised_rate_limit(fast_queue_config):
    proc = RecordingProcessor({"E": [RateLimited("429"), RateLimited("429")]})
    q = make_queue(fast_queue_config, proc)

    q.enqueue("E", {"id": "E"})
    await q.drain()

    assert q.cache.lookup("E") is EntryState.COMPLETED
    assert q.get_status().stats.retries == 2


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(fast_queue_config):
    proc = RecordingProcessor({"F": [NotFound("client not found in ERP")]})
    q = make_queue(fast_queue_config, proc)

    q.enqueue("F", {"id": "F"})
    await q.drain()

    entry = q.cache.get("F")
    assert entry.state is EntryState.FAILED
    assert entry.error == "client not found in ERP"
    stats = q.get_status().stats
    assert stats.retries == 0
    assert stats.failed == 1
    assert len(proc.calls) == 1


@pytest.mark.asyncio
async def test_retries_exhausted(fast_queue_config):
    config = QueueConfig(
        min_request_delay_ms=0, max_retries=2, base_retry_delay_ms=1, max_retry_delay_ms=2
    )
    proc = RecordingProcessor({"X": [RateLimited("429")] * 10})
    q = make_queue(config, proc)

    q.enqueue("X", {"id": "X"})
    await q.drain()

    assert q.cache.lookup("X") is EntryState.FAILED
    stats = q.get_status().stats
    assert stats.retries == 2
    assert stats.failed == 1
    assert len(proc.calls) == 3


@pytest.mark.asyncio
async def test_mapping_results_are_accepted(fast_queue_config):
    proc = RecordingProcessor({"M": [{"success": False, "retry": False, "error": "bad comuna"}]})
    q = make_queue(fast_queue_config, proc)

    q.enqueue("M", {"id": "M"})
    await q.drain()

    assert q.cache.get("M").error == "bad comuna"
    assert q.get_status().stats.retries == 0


@pytest.mark.asyncio
async def test_retry_wait_clears_cache_but_keeps_event_queued():
    config = QueueConfig(min_request_delay_ms=0, base_retry_delay_ms=200, max_retry_delay_ms=200)
    proc = RecordingProcessor({"R": [RateLimited("429")]})
    q = make_queue(config, proc)

    q.enqueue("R", {"id": "R"})
    await asyncio.sleep(0.05)

    assert q.cache.lookup("R") is None
    status = q.get_status()
    assert status.is_processing
    assert status.pending_items[0].identity == "R"
    assert status.pending_items[0].attempt == 1
    assert q.enqueue("R", {"id": "R"}).reason == "already_queued"

    await q.drain()
    assert q.cache.lookup("R") is EntryState.COMPLETED


@pytest.mark.asyncio
async def test_backoff_delays_and_suggested_wait(record_sleeps):
    config = QueueConfig(min_request_delay_ms=0, base_retry_delay_ms=10, max_retry_delay_ms=1000)
    proc = RecordingProcessor(
        {"S": [RateLimited("429", suggested_delay_ms=50), RateLimited("429"), RateLimited("429")]}
    )
    q = make_queue(config, proc)

    q.enqueue("S", {"id": "S"})
    await q.drain()

    retry_delays = [d for d in record_sleeps if d > 0]
    # attempt 1: suggested 50ms beats 10ms; attempt 2: 20ms; attempt 3: 40ms
    assert retry_delays == [0.05, 0.02, 0.04]


@pytest.mark.asyncio
async def test_min_request_delay_between_events(record_sleeps):
    config = QueueConfig(min_request_delay_ms=30)
    q = make_queue(config, RecordingProcessor())

    q.enqueue("A", {"id": "A"})
    q.enqueue("B", {"id": "B"})
    await q.drain()

    # once between A and B, not after the last event
    assert record_sleeps.count(0.03) == 1


@pytest.mark.asyncio
async def test_programming_error_propagates(fast_queue_config):
    async def broken(payload, category, source):
        return payload.missing_attribute

    q = make_queue(fast_queue_config, broken)
    q.enqueue("P", {"id": "P"})

    with pytest.raises(AttributeError):
        await q.drain()

    assert q.cache.lookup("P") is EntryState.FAILED
    assert len(q) == 0
    assert not q.is_processing


@pytest.mark.asyncio
async def test_events_behind_a_crash_are_still_processed(fast_queue_config):
    handled = []

    async def picky(payload, category, source):
        if payload["id"] == "X":
            raise TypeError("unexpected payload shape")
        handled.append(payload["id"])

    q = make_queue(fast_queue_config, picky)
    q.enqueue("X", {"id": "X"})
    q.enqueue("Y", {"id": "Y"})

    with pytest.raises(TypeError):
        await q.drain()

    # a fresh consumer picks up the rest without any new enqueue
    await q.drain()
    assert handled == ["Y"]
    assert q.cache.lookup("X") is EntryState.FAILED
    assert q.cache.lookup("Y") is EntryState.COMPLETED
    assert len(q) == 0
    assert not q.is_processing


@pytest.mark.asyncio
async def test_consumer_restarts_after_idle(fast_queue_config):
    proc = RecordingProcessor()
    q = make_queue(fast_queue_config, proc)

    q.enqueue("A", {"id": "A"})
    await q.drain()
    assert not q.is_processing

    assert q.enqueue("B", {"id": "B"}).queued
    assert q.is_processing
    await q.drain()
    assert [c[0] for c in proc.calls] == ["A", "B"]


@pytest.mark.asyncio
async def test_force_reprocess(fast_queue_config):
    proc = RecordingProcessor()
    q = make_queue(fast_queue_config, proc)

    q.enqueue("H", {"id": "H"})
    await q.drain()
    assert q.enqueue("H", {"id": "H"}).reason == "duplicate"

    assert q.force_reprocess("H") is True
    again = q.enqueue("H", {"id": "H"})
    assert again.queued
    await q.drain()
    assert len(proc.calls) == 2


@pytest.mark.asyncio
async def test_failed_events_can_be_redelivered(fast_queue_config):
    proc = RecordingProcessor({"F": [NotFound("missing")]})
    q = make_queue(fast_queue_config, proc)

    q.enqueue("F", {"id": "F"})
    await q.drain()
    assert q.cache.lookup("F") is EntryState.FAILED

    assert q.enqueue("F", {"id": "F"}).queued
    await q.drain()
    assert q.cache.lookup("F") is EntryState.COMPLETED


@pytest.mark.asyncio
async def test_ttl_expiry_allows_enqueue_again(fast_queue_config, clock):
    q = make_queue(fast_queue_config, RecordingProcessor(), clock=clock)

    q.enqueue("T", {"id": "T"})
    await q.drain()
    assert q.enqueue("T", {"id": "T"}).reason == "duplicate"

    clock.advance(fast_queue_config.cache_ttl_ms / 1000 + 1)
    assert q.enqueue("T", {"id": "T"}).queued
    await q.drain()


@pytest.mark.asyncio
async def test_get_recent(fast_queue_config, clock):
    proc = RecordingProcessor({"B": [NotFound("gone")]})
    q = make_queue(fast_queue_config, proc, clock=clock)

    q.enqueue("A", {"id": "A"})
    await q.drain()
    clock.advance(1)
    q.enqueue("B", {"id": "B"})
    await q.drain()

    recent = q.get_recent(limit=10)
    assert [r.identity for r in recent] == ["B", "A"]
    assert recent[0].state == "failed"
    assert recent[0].error == "gone"
    assert recent[1].state == "completed"
    assert recent[1].error is None
    assert len(q.get_recent(limit=1)) == 1


@pytest.mark.asyncio
async def test_status_snapshot(fast_queue_config, clock):
    release = asyncio.Event()

    async def slow(payload, category, source):
        await release.wait()

    q = make_queue(fast_queue_config, slow, clock=clock)
    q.enqueue("A", {"id": "A"})
    q.enqueue("B", {"id": "B"})
    await asyncio.sleep(0.01)

    status = q.get_status()
    assert status.queue_length == 2
    assert status.is_processing
    assert status.cache_size == 1
    assert [p.identity for p in status.pending_items] == ["A", "B"]
    assert status.pending_items[0].enqueued_at.timestamp() == clock.now
    assert status.model_dump()["stats"]["total"] == 2

    release.set()
    await q.drain()


@pytest.mark.asyncio
async def test_context_manager_runs_sweeper_and_drains(fast_queue_config):
    proc = RecordingProcessor()
    async with make_queue(fast_queue_config, proc) as q:
        assert q.cache.sweeping
        q.enqueue("A", {"id": "A"})
        q.enqueue("B", {"id": "B"})

    assert not q.cache.sweeping
    assert len(proc.calls) == 2
    assert not q.is_processing


@pytest.mark.asyncio
async def test_close_without_drain_cancels_consumer(fast_queue_config):
    release = asyncio.Event()

    async def slow(payload, category, source):
        await release.wait()

    q = make_queue(fast_queue_config, slow)
    await q.start()
    q.enqueue("A", {"id": "A"})
    await asyncio.sleep(0.01)

    await q.close(drain=False)
    assert not q.is_processing
    assert not q.cache.sweeping


def test_removing_a_foreign_head_is_refused(fast_queue_config):
    q = EventQueue(fast_queue_config)
    head = EventRecord(identity="H", payload=None, category="", source="", enqueued_at=0.0)
    other = EventRecord(identity="O", payload=None, category="", source="", enqueued_at=0.0)
    q._queue.append(head)

    with pytest.raises(RuntimeError, match="queue head changed"):
        q._pop_head(other)
