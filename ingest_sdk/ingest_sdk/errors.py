"""
Exceptions raised by the ingestion pipeline.
"""

from typing import List, Optional


class IngestError(Exception):
    """Base class for all ingest_sdk errors."""


class ConfigError(IngestError, ValueError):
    """Raised when a configuration value is invalid."""


class EventValidationError(IngestError, ValueError):
    """Raised when a raw client event cannot be normalized.

    Attributes:
        field: Name of the offending field, if known.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class BufferFullError(IngestError):
    """Raised when the buffer refuses new events (backpressure).

    Retryable: callers should try again after ``retry_after`` seconds.
    """

    def __init__(
        self,
        queue_length: int,
        threshold: int,
        retry_after: int = 1,
        message: Optional[str] = None,
    ):
        self.queue_length = queue_length
        self.threshold = threshold
        self.retry_after = retry_after
        super().__init__(
            message
            or f"Buffer at capacity ({queue_length}/{threshold}), retry after {retry_after}s"
        )


class IngestionClosedError(BufferFullError):
    """Raised when the service has stopped admitting events for shutdown.

    Retryable against another instance; this one will not accept again.
    """

    def __init__(self, queue_length: int, threshold: int, retry_after: int = 1):
        super().__init__(
            queue_length,
            threshold,
            retry_after,
            message=f"Ingestion is shutting down, retry after {retry_after}s",
        )


class BufferInvariantError(IngestError):
    """Raised when buffer bookkeeping is inconsistent.

    Indicates the mutual-exclusion discipline was broken. Never caught by
    the pipeline itself.
    """


class StorageError(IngestError):
    """Raised by a StorageClient when a write or read fails."""


class BulkWriteError(StorageError):
    """Raised when some records of a bulk insert were rejected by the store.

    Acceptable records are committed before this is raised.

    Attributes:
        inserted_count: Records newly written.
        duplicate_count: Records that already existed under their event_id.
        rejected_ids: event_ids the store refused for other reasons.
    """

    def __init__(
        self,
        message: str,
        inserted_count: int = 0,
        duplicate_count: int = 0,
        rejected_ids: Optional[List[str]] = None,
    ):
        self.inserted_count = inserted_count
        self.duplicate_count = duplicate_count
        self.rejected_ids = list(rejected_ids or [])
        super().__init__(message)
