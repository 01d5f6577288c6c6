"""Tests for ingest_sdk.buffer module."""

import threading
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import PartialFailureStorage, StubStorage
from ingest_sdk.buffer import BufferManager
from ingest_sdk.config import BufferConfig
from ingest_sdk.errors import BufferFullError, BufferInvariantError
from ingest_sdk.executor import FlushExecutor
from ingest_sdk.ingestion import IngestionService
from ingest_sdk.scheduler import ThreadScheduler


class TestAdmission:
    """Tests for can_accept() and the backpressure threshold."""

    def test_accepts_below_threshold(self, make_buffer, make_event, storage):
        buffer = make_buffer(storage, max_batch_size=100, backpressure_threshold=20)

        for _ in range(19):
            buffer.add(make_event())

        assert buffer.can_accept()

    def test_refuses_at_threshold(self, make_buffer, make_event, storage):
        buffer = make_buffer(storage, max_batch_size=100, backpressure_threshold=20)

        for _ in range(19):
            buffer.add(make_event())
        # Checking does not change the answer
        assert buffer.can_accept()
        assert buffer.can_accept()

        buffer.add(make_event())

        assert not buffer.can_accept()
        assert not buffer.can_accept()

    def test_add_does_not_enforce_threshold(self, make_buffer, make_event, storage):
        """Admission is the caller's job; add() always enqueues."""
        buffer = make_buffer(storage, max_batch_size=100, backpressure_threshold=3)

        for _ in range(5):
            buffer.add(make_event())

        assert buffer.pending_count == 5
        assert not buffer.can_accept()


class TestSizeTrigger:
    """Tests for flushing when a full batch is queued."""

    def test_full_batch_starts_one_flush(self, make_buffer, make_event, storage):
        storage.hold()
        buffer = make_buffer(storage, max_batch_size=5, max_concurrent_flushes=1)
        events = [make_event() for _ in range(5)]

        for event in events:
            buffer.add(event)

        assert storage.wait_for_calls(1)
        stats = buffer.get_stats()
        assert stats.active_flushes == 1
        assert stats.queue_length == 0
        assert storage.batches == [events]

        storage.release()
        assert buffer.wait_for_idle(timeout=5)

        assert storage.count() == 5
        assert len(storage.batches) == 1
        assert buffer.get_stats().active_flushes == 0

    def test_partial_batch_does_not_flush(self, make_buffer, make_event, storage):
        buffer = make_buffer(storage, max_batch_size=5)

        for _ in range(4):
            buffer.add(make_event())

        assert buffer.wait_for_idle(timeout=1)
        assert storage.batches == []
        assert buffer.pending_count == 4

    def test_add_returns_while_storage_is_slow(self, make_buffer, make_event, storage):
        storage.hold()
        buffer = make_buffer(storage, max_batch_size=1, max_concurrent_flushes=1)

        start = time.monotonic()
        buffer.add(make_event())
        elapsed = time.monotonic() - start

        assert storage.wait_for_calls(1)
        assert elapsed < 0.5
        assert buffer.active_flushes == 1


class TestTimeTrigger:
    """Tests for the debounced flush timer."""

    def test_single_event_flushed_after_interval(self, make_buffer, make_event, storage, scheduler):
        buffer = make_buffer(storage, max_batch_size=5, flush_interval_ms=200)
        event = make_event()

        buffer.add(event)
        assert storage.batches == []

        scheduler.advance(0.2)
        assert buffer.wait_for_idle(timeout=5)

        assert storage.batches == [[event]]
        assert buffer.pending_count == 0

    def test_timer_is_debounced(self, make_buffer, make_event, storage, scheduler):
        buffer = make_buffer(storage, max_batch_size=5, flush_interval_ms=200)

        buffer.add(make_event())
        scheduler.advance(0.15)
        buffer.add(make_event())
        scheduler.advance(0.15)

        # 300ms since the first add, but only 150ms of quiet
        assert buffer.wait_for_idle(timeout=1)
        assert storage.batches == []

        scheduler.advance(0.1)
        assert buffer.wait_for_idle(timeout=5)

        assert len(storage.batches) == 1
        assert len(storage.batches[0]) == 2

    def test_timer_noop_when_queue_empty(self, make_buffer, storage, scheduler):
        make_buffer(storage)

        scheduler.advance(1.0)

        assert storage.batches == []

    def test_timer_backs_off_when_slots_busy(self, make_buffer, make_event, storage, scheduler):
        storage.hold()
        buffer = make_buffer(storage, max_batch_size=2, max_concurrent_flushes=1)

        buffer.add(make_event())
        buffer.add(make_event())  # size trigger takes the only slot
        assert storage.wait_for_calls(1)
        buffer.add(make_event())

        scheduler.advance(0.2)

        assert len(storage.batches) == 1
        assert buffer.pending_count == 1

        storage.release()
        assert buffer.wait_for_idle(timeout=5)

        # Flush completion rearmed the timer
        scheduler.advance(0.2)
        assert buffer.wait_for_idle(timeout=5)
        assert len(storage.batches) == 2
        assert buffer.pending_count == 0

    def test_trickle_flushed_with_real_timer(self, make_event):
        storage = StubStorage()
        buffer = BufferManager(
            FlushExecutor(storage),
            BufferConfig(max_batch_size=100, flush_interval_ms=20),
            scheduler=ThreadScheduler(),
        )

        buffer.add(make_event())

        deadline = time.monotonic() + 2.0
        while storage.count() == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert storage.count() == 1
        assert buffer.drain(timeout=5)


class TestConcurrencyCeiling:
    """Tests for max_concurrent_flushes."""

    def test_active_flushes_never_exceed_ceiling(self, make_buffer, make_event, storage):
        storage.hold()
        buffer = make_buffer(
            storage, max_batch_size=5, max_concurrent_flushes=2, backpressure_threshold=100
        )

        # Enough for max_concurrent_flushes + 2 size-triggered flushes
        for _ in range(20):
            buffer.add(make_event())

        assert storage.wait_for_calls(2)
        stats = buffer.get_stats()
        assert stats.active_flushes == 2
        assert stats.queue_length == 10
        assert len(storage.batches) == 2

        storage.release()
        assert buffer.drain(timeout=5)

        assert storage.count() == 20
        assert storage.max_in_flight <= 2

    def test_concurrent_producers_lose_nothing(self, make_buffer, make_event):
        storage = StubStorage()
        buffer = make_buffer(
            storage, max_batch_size=50, max_concurrent_flushes=3, backpressure_threshold=10000
        )
        events = [make_event() for _ in range(2000)]
        chunks = [events[i::8] for i in range(8)]

        def produce(chunk):
            for event in chunk:
                buffer.add(event)

        threads = [threading.Thread(target=produce, args=(chunk,)) for chunk in chunks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert buffer.drain(timeout=10)

        assert storage.max_in_flight <= 3
        assert sorted(storage.event_ids) == sorted(e.event_id for e in events)
        # No event was handed to storage twice
        assert sum(len(batch) for batch in storage.batches) == 2000


class TestFailureHandling:
    """Tests for re-queueing failed batches."""

    def test_failed_batch_requeued_at_head(self, make_buffer, make_event):
        storage = StubStorage(fail_times=1)
        storage.hold()
        buffer = make_buffer(storage, max_batch_size=3, max_concurrent_flushes=1)
        first = [make_event() for _ in range(3)]
        for event in first:
            buffer.add(event)
        assert storage.wait_for_calls(1)

        late = make_event()
        buffer.add(late)  # arrives while the failing flush is in flight

        storage.release()
        assert buffer.wait_for_idle(timeout=5)

        assert buffer.pending_count == 4
        assert buffer.get_stats().failed_flushes == 1

        assert buffer.drain(timeout=5)
        assert storage.batches[1] == first
        assert storage.batches[2] == [late]

    def test_idempotent_retry_after_partial_failure(self, make_buffer, make_event):
        storage = PartialFailureStorage()
        buffer = make_buffer(storage, max_batch_size=10, max_concurrent_flushes=1)
        events = [make_event() for _ in range(10)]

        for event in events:
            buffer.add(event)

        assert buffer.drain(timeout=5)

        assert storage.attempts == 2
        assert sorted(storage.event_ids) == sorted(e.event_id for e in events)
        stats = buffer.get_stats()
        assert stats.duplicate_events == 5
        assert stats.events_persisted == 5
        assert stats.failed_flushes == 1

    def test_events_are_not_mutated(self, make_buffer, make_event):
        storage = StubStorage(fail_times=2)
        buffer = make_buffer(storage, max_batch_size=2, max_concurrent_flushes=1)
        event = make_event(page="/home")
        snapshot = event.to_dict()

        buffer.add(event)
        buffer.add(make_event())
        assert buffer.drain(timeout=5)

        stored = storage.get(event.event_id)
        assert stored is event
        assert stored.to_dict() == snapshot


class TestDrain:
    """Tests for drain()."""

    def test_drain_empties_multiple_batches(self, make_buffer, make_event):
        storage = StubStorage()
        storage.hold()
        buffer = make_buffer(
            storage, max_batch_size=5, max_concurrent_flushes=1, backpressure_threshold=100
        )
        for _ in range(20):
            buffer.add(make_event())
        assert storage.wait_for_calls(1)
        assert buffer.pending_count == 15

        result = {}
        drainer = threading.Thread(target=lambda: result.setdefault("ok", buffer.drain()))
        drainer.start()
        drainer.join(timeout=0.1)
        assert drainer.is_alive()  # blocked behind the in-flight flush

        storage.release()
        drainer.join(timeout=5)

        assert result["ok"] is True
        assert buffer.pending_count == 0
        assert buffer.active_flushes == 0
        assert storage.count() == 20
        assert len(storage.batches) == 4

    def test_drain_retries_until_storage_recovers(self, make_buffer, make_event):
        storage = StubStorage(fail_times=2)
        buffer = make_buffer(storage, max_batch_size=5, max_concurrent_flushes=1)
        for _ in range(3):
            buffer.add(make_event())

        assert buffer.drain()

        assert storage.count() == 3
        assert buffer.get_stats().failed_flushes == 2

    def test_drain_cancels_timer(self, make_buffer, make_event, storage, scheduler):
        buffer = make_buffer(storage)
        buffer.add(make_event())
        assert scheduler.pending_count == 1

        assert buffer.drain()

        assert scheduler.pending_count == 0
        scheduler.advance(1.0)
        assert len(storage.batches) == 1

    def test_drain_on_empty_buffer_returns_immediately(self, make_buffer, storage):
        buffer = make_buffer(storage)

        assert buffer.drain(timeout=1)
        assert storage.batches == []

    def test_drain_timeout_with_dead_storage(self, make_buffer, make_event):
        storage = StubStorage(fail_always=True)
        buffer = make_buffer(storage, max_batch_size=5, max_concurrent_flushes=1)
        for _ in range(3):
            buffer.add(make_event())

        assert buffer.drain(timeout=0.2) is False
        assert buffer.pending_count == 3

    def test_concurrent_drains(self, make_buffer, make_event):
        storage = StubStorage()
        buffer = make_buffer(
            storage, max_batch_size=5, max_concurrent_flushes=2, backpressure_threshold=200
        )
        for _ in range(53):
            buffer.add(make_event())

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(buffer.drain(timeout=5)))
            for _ in range(3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [True, True, True]
        assert storage.count() == 53


class TestStats:
    """Tests for get_stats()."""

    def test_stats_snapshot(self, make_buffer, make_event, storage):
        buffer = make_buffer(
            storage,
            max_batch_size=100,
            flush_interval_ms=250,
            backpressure_threshold=20,
            max_concurrent_flushes=4,
        )
        for _ in range(5):
            buffer.add(make_event())

        stats = buffer.get_stats()

        assert stats.queue_length == 5
        assert stats.active_flushes == 0
        assert stats.max_batch_size == 100
        assert stats.flush_interval_ms == 250
        assert stats.backpressure_threshold == 20
        assert stats.max_concurrent_flushes == 4
        assert stats.buffer_utilization == 0.25
        assert not stats.at_capacity

    def test_oldest_event_age(self, make_buffer, make_event, storage, clock):
        buffer = make_buffer(storage, max_batch_size=100)
        assert buffer.get_stats().oldest_event_age_ms is None

        buffer.add(make_event())
        clock.advance(timedelta(milliseconds=1500))

        assert buffer.get_stats().oldest_event_age_ms == 1500.0

    def test_oldest_event_age_with_naive_received_at(self, make_buffer, make_event, storage, clock):
        buffer = make_buffer(storage, max_batch_size=100)
        event = make_event()
        buffer.add(replace(event, received_at=event.received_at.replace(tzinfo=None)))
        clock.advance(timedelta(milliseconds=1500))

        assert buffer.get_stats().oldest_event_age_ms == 1500.0

    def test_stats_to_dict_keys(self, make_buffer, storage):
        data = make_buffer(storage).get_stats().to_dict()

        assert data["queueLength"] == 0
        assert data["bufferUtilization"] == 0.0
        assert "maxConcurrentFlushes" in data
        assert "oldestEventAgeMs" in data


class TestInvariants:
    """Tests for invariant enforcement."""

    def test_slot_underflow_is_fatal(self, make_buffer, make_event, storage):
        buffer = make_buffer(storage)

        with buffer._cond:
            with pytest.raises(BufferInvariantError):
                buffer._release_slot_locked()

        with pytest.raises(BufferInvariantError):
            buffer.add(make_event())
        with pytest.raises(BufferInvariantError):
            buffer.drain()


class TestSaturatedStorageScenario:
    """10,001 rapid submissions against storage that always fails."""

    def test_backpressure_engages(self, scheduler, clock, make_event):
        storage = StubStorage(fail_always=True)
        buffer = BufferManager(
            FlushExecutor(storage),
            BufferConfig(
                max_batch_size=2000,
                flush_interval_ms=200,
                backpressure_threshold=10000,
                max_concurrent_flushes=3,
            ),
            scheduler=scheduler,
            clock=clock,
        )
        service = IngestionService(buffer, storage, clock=clock)

        accepted = 0
        for _ in range(10001):
            try:
                service.submit([make_event()])
                accepted += 1
            except BufferFullError:
                pass

        assert buffer.wait_for_idle(timeout=10)

        assert accepted >= 10000
        assert buffer.pending_count == accepted  # nothing dropped
        assert not buffer.can_accept()
        assert buffer.get_stats().buffer_utilization >= 1.0
        assert service.metrics.admission_rejections == 10001 - accepted
        assert storage.count() == 0
