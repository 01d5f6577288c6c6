"""
Storage client interface and implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from ingest_sdk.config import StorageConfig
from ingest_sdk.events import NormalizedEvent

DEFAULT_QUERY_LIMIT = 100


@dataclass(frozen=True)
class InsertResult:
    """Outcome of a bulk insert that did not raise."""
    inserted_count: int
    duplicate_count: int = 0


class StorageClient(ABC):
    """
    Abstract base class for event stores.

    event_id is the store's unique key. Inserts are unordered: one bad record
    must not block the rest, and duplicate keys are not an error.
    """

    @abstractmethod
    def bulk_insert(self, events: Sequence[NormalizedEvent]) -> InsertResult:
        """
        Insert a batch of events.

        Args:
            events: Events to persist

        Returns:
            Counts of new and already-present events

        Raises:
            StorageError: If the write failed. BulkWriteError when only
                some records were rejected.
        """
        pass

    @abstractmethod
    def query_by_user(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[NormalizedEvent]:
        """
        Fetch a user's events, most recent occurred_at first.

        Args:
            user_id: User to query
            start: Inclusive lower bound on occurred_at
            end: Inclusive upper bound on occurred_at
            limit: Max events to return
        """
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of stored events."""
        pass

    def close(self) -> None:
        """Release connections. Default is a no-op."""

    def __enter__(self) -> "StorageClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def create_storage(storage_config: StorageConfig, max_concurrent_flushes: int = 1) -> StorageClient:
    """
    Build the storage backend named by a StorageConfig.

    Args:
        storage_config: Backend selection
        max_concurrent_flushes: Sizes the write side of the connection pool
    """
    if storage_config.type == "postgres":
        from ingest_sdk.storage.postgres import PostgresStorage

        return PostgresStorage(
            storage_config.dsn,
            max_connections=max_concurrent_flushes + storage_config.read_pool_size,
        )

    from ingest_sdk.storage.memory import InMemoryStorage

    return InMemoryStorage()


__all__ = ["StorageClient", "InsertResult", "DEFAULT_QUERY_LIMIT", "create_storage"]
