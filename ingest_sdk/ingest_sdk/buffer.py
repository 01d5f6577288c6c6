"""
BufferManager - in-memory event queue with batched, bounded flushing.

Architecture:
    add() → deque → size or debounce-timer trigger → flush thread
          → FlushExecutor → StorageClient.bulk_insert

Flush triggers:
    Size: add() leaves max_batch_size or more events queued
    Time: flush_interval_ms pass with no add() and no flush completing

Limits:
    backpressure_threshold: can_accept() turns False at this queue length
    max_concurrent_flushes: simultaneous writes to storage

Every state change (append, batch extraction, slot counting, head
re-insertion after a failed flush) happens under one Condition. Storage I/O
never runs while the lock is held, so add() never waits on storage.
"""

import itertools
import logging
import threading
import time
from collections import deque
from typing import Deque, List, Optional

from ingest_sdk.clock import IngestClock, _as_utc, ingest_clock
from ingest_sdk.config import BufferConfig
from ingest_sdk.errors import BufferInvariantError
from ingest_sdk.events import NormalizedEvent
from ingest_sdk.executor import FlushExecutor, FlushResult
from ingest_sdk.scheduler import DebounceTimer, Scheduler, ThreadScheduler
from ingest_sdk.stats import BufferStats

logger = logging.getLogger(__name__)

_GROWTH_LOG_EVERY = 1000


class BufferManager:
    """
    Owns the pending-event queue and decides when to flush it.

    Features:
        - Non-blocking add(); flushes run on background threads
        - Size trigger plus debounced time trigger
        - Concurrency ceiling on in-flight flushes
        - Failed batches go back to the head of the queue, in order
        - Blocking drain() for shutdown

    Example:
        buffer = BufferManager(FlushExecutor(storage), BufferConfig())
        if buffer.can_accept():
            buffer.add(event)
        ...
        buffer.drain()
    """

    def __init__(
        self,
        executor: FlushExecutor,
        config: Optional[BufferConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[IngestClock] = None,
    ):
        """
        Initialize the buffer.

        Args:
            executor: Performs the storage write for each batch
            config: Buffer limits. If None, uses defaults from env.
            scheduler: Timer source for the time trigger. Defaults to
                ThreadScheduler.
            clock: Used only to report the age of the oldest queued event
        """
        self.config = config or BufferConfig.from_env()
        self._executor = executor
        self._clock = clock or ingest_clock

        self._queue: Deque[NormalizedEvent] = deque()
        self._cond = threading.Condition(threading.Lock())
        self._active_flushes = 0
        self._drainers = 0
        self._fatal: Optional[BaseException] = None
        self._thread_ids = itertools.count(1)

        self._total_flushes = 0
        self._failed_flushes = 0
        self._events_persisted = 0
        self._duplicate_events = 0

        self._timer = DebounceTimer(
            scheduler or ThreadScheduler(),
            self.config.flush_interval_sec,
            self._on_timer,
        )

        logger.info(
            f"BufferManager initialized: max_batch_size={self.config.max_batch_size}, "
            f"flush_interval_ms={self.config.flush_interval_ms}, "
            f"backpressure_threshold={self.config.backpressure_threshold}, "
            f"max_concurrent_flushes={self.config.max_concurrent_flushes}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def can_accept(self) -> bool:
        """False once the queue has reached backpressure_threshold."""
        return len(self._queue) < self.config.backpressure_threshold

    def add(self, event: NormalizedEvent) -> None:
        """
        Append an event to the queue (non-blocking).

        Does not check can_accept(); admission control is the caller's job.
        Starts a background flush when the queue holds a full batch and a
        flush slot is free, and pushes back the flush timer.

        Raises:
            BufferInvariantError: If an earlier flush broke the buffer
        """
        with self._cond:
            self._raise_if_broken()
            self._queue.append(event)
            queue_length = len(self._queue)

            batch = None
            if queue_length >= self.config.max_batch_size:
                batch = self._take_batch_locked()

            if queue_length % _GROWTH_LOG_EVERY == 0:
                logger.debug(f"Buffer size: {queue_length}")

            self._rearm_locked()

        if batch is not None:
            logger.debug(f"Size threshold reached, flushing {len(batch)} events")
            self._start_background_flush(batch)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Flush until the queue is empty (blocking).

        Cancels the flush timer, then repeatedly waits for a free flush slot
        and runs one flush on the calling thread. Returns only when the queue
        is empty and no flush is in flight. Safe to call from several threads
        at once.

        Args:
            timeout: Seconds to wait before giving up. None waits until empty.

        Returns:
            True if the buffer is empty, False if timeout elapsed first

        Raises:
            BufferInvariantError: If a flush broke the buffer
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            self._raise_if_broken()
            self._drainers += 1
            self._timer.cancel()
            logger.info(
                f"Draining buffer: {len(self._queue)} events queued, "
                f"{self._active_flushes} flushes in flight"
            )

        flushes = 0
        try:
            while True:
                with self._cond:
                    while True:
                        self._raise_if_broken()
                        if not self._queue and self._active_flushes == 0:
                            logger.info(f"Drain complete after {flushes} flushes, buffer empty")
                            return True

                        remaining = None
                        if deadline is not None:
                            remaining = deadline - time.monotonic()
                            if remaining <= 0:
                                logger.warning(
                                    f"Drain timed out with {len(self._queue)} events queued"
                                )
                                return False

                        if self._queue and self._active_flushes < self.config.max_concurrent_flushes:
                            batch = self._take_batch_locked()
                            break
                        # Wait for an in-flight flush to free a slot or finish
                        self._cond.wait(remaining)

                self._run_flush(batch)
                flushes += 1
        finally:
            with self._cond:
                self._drainers -= 1
                if self._drainers == 0 and self._queue and self._fatal is None:
                    self._timer.rearm()

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no flush is in flight.

        Returns:
            True if idle, False if timeout elapsed first
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._active_flushes == 0, timeout)

    def get_stats(self) -> BufferStats:
        """Snapshot of queue and flush state. Never blocks."""
        queue_length = len(self._queue)
        oldest_age_ms = None
        try:
            head = self._queue[0]
        except IndexError:
            head = None
        if head is not None:
            oldest_age_ms = max(
                0.0, (self._clock.now() - _as_utc(head.received_at)).total_seconds() * 1000
            )

        return BufferStats(
            queue_length=queue_length,
            active_flushes=self._active_flushes,
            max_batch_size=self.config.max_batch_size,
            flush_interval_ms=self.config.flush_interval_ms,
            backpressure_threshold=self.config.backpressure_threshold,
            max_concurrent_flushes=self.config.max_concurrent_flushes,
            buffer_utilization=queue_length / self.config.backpressure_threshold,
            total_flushes=self._total_flushes,
            failed_flushes=self._failed_flushes,
            events_persisted=self._events_persisted,
            duplicate_events=self._duplicate_events,
            oldest_event_age_ms=oldest_age_ms,
        )

    @property
    def pending_count(self) -> int:
        """Number of events waiting to be flushed."""
        return len(self._queue)

    @property
    def active_flushes(self) -> int:
        return self._active_flushes

    # ------------------------------------------------------------------
    # Flush machinery
    # ------------------------------------------------------------------

    def _take_batch_locked(self) -> Optional[List[NormalizedEvent]]:
        """Claim a flush slot and pop up to max_batch_size events. Lock held."""
        if not self._queue or self._active_flushes >= self.config.max_concurrent_flushes:
            return None
        self._active_flushes += 1
        size = min(self.config.max_batch_size, len(self._queue))
        return [self._queue.popleft() for _ in range(size)]

    def _start_background_flush(self, batch: List[NormalizedEvent]) -> None:
        thread = threading.Thread(
            target=self._flush_in_background,
            args=(batch,),
            daemon=True,
            name=f"ingest-flush-{next(self._thread_ids)}",
        )
        thread.start()

    def _flush_in_background(self, batch: List[NormalizedEvent]) -> None:
        try:
            self._run_flush(batch)
        except BaseException as e:
            logger.critical(f"Flush thread died, buffer is no longer usable: {e!r}")
            with self._cond:
                if self._fatal is None:
                    self._fatal = e
                self._cond.notify_all()
            raise

    def _run_flush(self, batch: List[NormalizedEvent]) -> None:
        """Write one claimed batch, then re-queue or discard it and free the slot."""
        result: Optional[FlushResult] = None
        try:
            result = self._executor.execute(batch)
        finally:
            with self._cond:
                try:
                    self._total_flushes += 1
                    if result is not None and result.succeeded:
                        self._events_persisted += result.inserted_count
                        self._duplicate_events += result.duplicate_count
                    else:
                        self._failed_flushes += 1
                        self._queue.extendleft(reversed(batch))
                        logger.warning(
                            f"Re-queued {len(batch)} events after failed flush, "
                            f"{len(self._queue)} now queued"
                        )
                finally:
                    self._release_slot_locked()
                    self._rearm_locked()
                    self._cond.notify_all()

    def _release_slot_locked(self) -> None:
        if self._active_flushes <= 0:
            error = BufferInvariantError(
                f"Flush completed with active_flushes={self._active_flushes}"
            )
            self._fatal = error
            raise error
        self._active_flushes -= 1

    def _on_timer(self) -> None:
        with self._cond:
            if self._fatal is not None or self._drainers:
                return
            batch = self._take_batch_locked()

        if batch is not None:
            logger.debug(f"Flush timer expired, flushing {len(batch)} events")
            self._start_background_flush(batch)

    def _rearm_locked(self) -> None:
        # drain() owns flushing while it runs
        if self._drainers == 0:
            self._timer.rearm()

    def _raise_if_broken(self) -> None:
        if self._fatal is not None:
            raise BufferInvariantError(
                f"Buffer is unusable after an earlier failure: {self._fatal!r}"
            ) from self._fatal
