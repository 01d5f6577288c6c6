"""
IngestionService - the entry point request handlers talk to.

Wraps a BufferManager with admission control and counters, and exposes the
read path for user journeys. Request handlers call ingest() with a decoded
JSON body, or submit() with events they normalized themselves.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ingest_sdk.buffer import BufferManager
from ingest_sdk.clock import IngestClock, ingest_clock
from ingest_sdk.config import IngestConfig, load_config
from ingest_sdk.errors import BufferFullError, EventValidationError, IngestionClosedError
from ingest_sdk.events import NormalizedEvent
from ingest_sdk.executor import FlushExecutor
from ingest_sdk.scheduler import Scheduler
from ingest_sdk.stats import BufferStats, IngestionMetrics
from ingest_sdk.storage import DEFAULT_QUERY_LIMIT, StorageClient, create_storage
from ingest_sdk.validation import normalize_events

logger = logging.getLogger(__name__)

_REJECTION_LOG_EVERY = 100


class IngestionService:
    """
    Admission control and submission in front of a BufferManager.

    Admission is checked once per submission: a single request may carry
    the queue slightly past backpressure_threshold, but the next request
    is refused until flushes bring it back down.

    stop_accepting() closes admission for good. Once it returns, no
    submission is in progress and every later one is refused, so a drain
    started afterwards sees every accepted event.
    """

    def __init__(
        self,
        buffer: BufferManager,
        storage: StorageClient,
        clock: Optional[IngestClock] = None,
        metrics: Optional[IngestionMetrics] = None,
        retry_after_seconds: int = 1,
    ):
        self.buffer = buffer
        self.storage = storage
        self.clock = clock or ingest_clock
        self.metrics = metrics or IngestionMetrics()
        self.retry_after_seconds = retry_after_seconds
        self._admission_lock = threading.Lock()
        self._accepting = True

    def can_accept(self) -> bool:
        return self._accepting and self.buffer.can_accept()

    @property
    def accepting(self) -> bool:
        """False once stop_accepting() has been called."""
        return self._accepting

    def stop_accepting(self) -> None:
        """Refuse every later submission. Waits for in-progress ones."""
        with self._admission_lock:
            if self._accepting:
                self._accepting = False
                logger.info("Ingestion closed to new events")

    def add(self, event: NormalizedEvent) -> None:
        self.buffer.add(event)

    def submit(self, events: Sequence[NormalizedEvent]) -> List[str]:
        """
        Hand already-normalized events to the buffer.

        Returns:
            event_ids of the accepted events

        Raises:
            BufferFullError: If the buffer is at capacity. Nothing is queued.
            IngestionClosedError: If stop_accepting() was called
        """
        with self._admission_lock:
            if not self._accepting:
                self.metrics.record_rejection()
                raise IngestionClosedError(
                    queue_length=self.buffer.pending_count,
                    threshold=self.buffer.config.backpressure_threshold,
                    retry_after=self.retry_after_seconds,
                )
            self._check_capacity(events)
            for event in events:
                self.buffer.add(event)
        self.metrics.record_accepted(len(events))
        return [event.event_id for event in events]

    def _check_capacity(self, events: Sequence[NormalizedEvent]) -> None:
        if not self.buffer.can_accept():
            rejections = self.metrics.record_rejection()
            if rejections % _REJECTION_LOG_EVERY == 1:
                logger.warning(
                    f"Buffer at capacity, refused {len(events)} events "
                    f"({rejections} submissions refused so far)"
                )
            raise BufferFullError(
                queue_length=self.buffer.pending_count,
                threshold=self.buffer.config.backpressure_threshold,
                retry_after=self.retry_after_seconds,
            )

    def ingest(self, body: Any) -> List[str]:
        """
        Validate, normalize and submit a request body.

        Args:
            body: One raw event object or a list of them

        Returns:
            Server-assigned event_ids, in request order

        Raises:
            EventValidationError: If any event is invalid. Nothing is queued.
            BufferFullError: If the buffer is at capacity
        """
        try:
            events = normalize_events(body, self.clock)
        except EventValidationError:
            self.metrics.record_validation_failure()
            raise
        return self.submit(events)

    def get_user_journey(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[NormalizedEvent]:
        """Stored events for a user, most recent first."""
        return self.storage.query_by_user(
            user_id, start=start, end=end, limit=limit or DEFAULT_QUERY_LIMIT
        )

    def get_buffer_stats(self) -> BufferStats:
        return self.buffer.get_stats()

    def get_stats(self) -> Dict[str, Any]:
        """Buffer snapshot plus ingestion counters, JSON-ready."""
        stats = self.buffer.get_stats().to_dict()
        stats.update(self.metrics.to_dict())
        stats["acceptingEvents"] = self._accepting
        return stats

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.buffer.drain(timeout=timeout)


def create_service(
    config: Optional[IngestConfig] = None,
    storage: Optional[StorageClient] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Optional[IngestClock] = None,
) -> IngestionService:
    """
    Wire storage, executor, buffer and service from an IngestConfig.

    Args:
        config: Configuration; loaded with load_config() if None
        storage: Use this store instead of building one from config
        scheduler: Timer source for the buffer (tests pass a ManualScheduler)
        clock: Clock for received_at

    Returns:
        Ready IngestionService
    """
    config = config or load_config()
    if storage is None:
        storage = create_storage(config.storage, config.buffer.max_concurrent_flushes)
        ensure_schema = getattr(storage, "ensure_schema", None)
        if ensure_schema is not None:
            ensure_schema()

    buffer = BufferManager(
        FlushExecutor(storage),
        config.buffer,
        scheduler=scheduler,
        clock=clock,
    )
    return IngestionService(
        buffer,
        storage,
        clock=clock,
        retry_after_seconds=config.retry_after_seconds,
    )
