"""Pytest fixtures for ingest_sdk tests."""

import itertools
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from ingest_sdk.buffer import BufferManager
from ingest_sdk.clock import IngestClock
from ingest_sdk.config import BufferConfig
from ingest_sdk.errors import StorageError
from ingest_sdk.events import EventType, NormalizedEvent
from ingest_sdk.executor import FlushExecutor
from ingest_sdk.scheduler import ManualScheduler
from ingest_sdk.storage import InsertResult
from ingest_sdk.storage.memory import InMemoryStorage

FROZEN_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class StubStorage(InMemoryStorage):
    """
    InMemoryStorage that records every batch it is handed.

    - hold(): make bulk_insert block until release()
    - fail_times: number of calls that raise StorageError before succeeding
    - fail_always: every call raises StorageError
    """

    def __init__(self, fail_times: int = 0, fail_always: bool = False):
        super().__init__()
        self.batches: List[List[NormalizedEvent]] = []
        self.fail_times = fail_times
        self.fail_always = fail_always
        self.in_flight = 0
        self.max_in_flight = 0
        self._gate: Optional[threading.Event] = None
        self._entered = threading.Semaphore(0)
        self._stub_lock = threading.Lock()

    def hold(self) -> None:
        self._gate = threading.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    def wait_for_calls(self, count: int, timeout: float = 5.0) -> bool:
        """Block until bulk_insert has been entered count more times."""
        return all(self._entered.acquire(timeout=timeout) for _ in range(count))

    def bulk_insert(self, events) -> InsertResult:
        with self._stub_lock:
            self.batches.append(list(events))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            gate = self._gate
        self._entered.release()
        try:
            if gate is not None:
                gate.wait(timeout=10)
            with self._stub_lock:
                should_fail = self.fail_always or self.fail_times > 0
                if self.fail_times > 0:
                    self.fail_times -= 1
            if should_fail:
                raise StorageError("storage unavailable")
            return super().bulk_insert(events)
        finally:
            with self._stub_lock:
                self.in_flight -= 1


class PartialFailureStorage(InMemoryStorage):
    """Stores the first half of every batch on its first attempt, then fails."""

    def __init__(self):
        super().__init__()
        self.attempts = 0
        self._seen_batches = set()

    def bulk_insert(self, events) -> InsertResult:
        self.attempts += 1
        key = tuple(e.event_id for e in events)
        if key not in self._seen_batches:
            self._seen_batches.add(key)
            super().bulk_insert(events[: len(events) // 2])
            raise StorageError("connection reset mid-batch")
        return super().bulk_insert(events)


@pytest.fixture
def scheduler():
    """A scheduler that only fires when advanced."""
    return ManualScheduler()


@pytest.fixture
def clock():
    """A clock frozen at FROZEN_NOW."""
    return IngestClock(frozen_time=FROZEN_NOW)


@pytest.fixture
def make_event(clock):
    """Factory for NormalizedEvents with predictable ids."""
    counter = itertools.count(1)

    def _make(user_id: str = "user-1", event_type: EventType = EventType.PAGE_VIEW,
              occurred_offset_s: int = 0, **payload) -> NormalizedEvent:
        n = next(counter)
        return NormalizedEvent(
            event_id=f"evt-{n:05d}",
            user_id=user_id,
            session_id="session-1",
            type=event_type,
            payload=payload,
            occurred_at=FROZEN_NOW + timedelta(seconds=occurred_offset_s or n),
            received_at=clock.now(),
        )

    return _make


@pytest.fixture
def storage():
    """A StubStorage that succeeds immediately."""
    stub = StubStorage()
    yield stub
    stub.release()


@pytest.fixture
def make_buffer(scheduler, clock):
    """Factory for a BufferManager on a ManualScheduler."""
    storages = []

    def _make(storage, **config_overrides) -> BufferManager:
        values = dict(
            max_batch_size=5,
            flush_interval_ms=200,
            backpressure_threshold=20,
            max_concurrent_flushes=2,
        )
        values.update(config_overrides)
        storages.append(storage)
        return BufferManager(
            FlushExecutor(storage),
            BufferConfig(**values),
            scheduler=scheduler,
            clock=clock,
        )

    yield _make

    for stub in storages:
        if isinstance(stub, StubStorage):
            stub.release()


@pytest.fixture(autouse=True)
def reset_env():
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
