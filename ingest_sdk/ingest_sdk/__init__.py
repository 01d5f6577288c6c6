"""
ingest_sdk - Buffered batch ingestion for behavioral events

This package provides:
- Validation and normalization of client events
- An in-memory buffer with size and time flush triggers
- Backpressure and a concurrency ceiling on storage writes
- Re-queueing of failed batches so accepted events are never dropped
- Storage clients (in-memory, PostgreSQL) and Flask routes
"""

from ingest_sdk.events import EventType, NormalizedEvent
from ingest_sdk.errors import (
    IngestError,
    ConfigError,
    EventValidationError,
    BufferFullError,
    IngestionClosedError,
    BufferInvariantError,
    StorageError,
    BulkWriteError,
)
from ingest_sdk.clock import IngestClock, ingest_clock
from ingest_sdk.config import BufferConfig, StorageConfig, IngestConfig, load_config
from ingest_sdk.scheduler import Scheduler, ThreadScheduler, ManualScheduler, DebounceTimer
from ingest_sdk.validation import normalize_event, normalize_events, parse_timestamp, parse_limit
from ingest_sdk.storage import StorageClient, InsertResult, create_storage
from ingest_sdk.storage.memory import InMemoryStorage
from ingest_sdk.executor import FlushExecutor, FlushOutcome, FlushResult
from ingest_sdk.stats import BufferStats, IngestionMetrics
from ingest_sdk.buffer import BufferManager
from ingest_sdk.ingestion import IngestionService, create_service

__version__ = "0.1.0"

__all__ = [
    # Events
    "EventType",
    "NormalizedEvent",
    # Errors
    "IngestError",
    "ConfigError",
    "EventValidationError",
    "BufferFullError",
    "IngestionClosedError",
    "BufferInvariantError",
    "StorageError",
    "BulkWriteError",
    # Clock
    "IngestClock",
    "ingest_clock",
    # Config
    "BufferConfig",
    "StorageConfig",
    "IngestConfig",
    "load_config",
    # Scheduling
    "Scheduler",
    "ThreadScheduler",
    "ManualScheduler",
    "DebounceTimer",
    # Validation
    "normalize_event",
    "normalize_events",
    "parse_timestamp",
    "parse_limit",
    # Storage
    "StorageClient",
    "InsertResult",
    "InMemoryStorage",
    "create_storage",
    # Flushing
    "FlushExecutor",
    "FlushOutcome",
    "FlushResult",
    "BufferManager",
    # Stats
    "BufferStats",
    "IngestionMetrics",
    # Entry point
    "IngestionService",
    "create_service",
]
