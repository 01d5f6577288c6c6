"""
In-memory event store.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ingest_sdk.events import NormalizedEvent
from ingest_sdk.storage import DEFAULT_QUERY_LIMIT, InsertResult, StorageClient


class InMemoryStorage(StorageClient):
    """
    Thread-safe dict keyed by event_id.

    Used by the example server and tests. Data lives only as long as the
    process.
    """

    def __init__(self):
        self._events: Dict[str, NormalizedEvent] = {}
        self._lock = threading.Lock()
        self.insert_calls = 0

    def bulk_insert(self, events: Sequence[NormalizedEvent]) -> InsertResult:
        inserted = 0
        duplicates = 0
        with self._lock:
            self.insert_calls += 1
            for event in events:
                if event.event_id in self._events:
                    duplicates += 1
                    continue
                self._events[event.event_id] = event
                inserted += 1
        return InsertResult(inserted_count=inserted, duplicate_count=duplicates)

    def query_by_user(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[NormalizedEvent]:
        with self._lock:
            matches = [e for e in self._events.values() if e.user_id == user_id]

        if start is not None:
            matches = [e for e in matches if e.occurred_at >= start]
        if end is not None:
            matches = [e for e in matches if e.occurred_at <= end]

        matches.sort(key=lambda e: e.occurred_at, reverse=True)
        return matches[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def get(self, event_id: str) -> Optional[NormalizedEvent]:
        with self._lock:
            return self._events.get(event_id)

    @property
    def event_ids(self) -> List[str]:
        with self._lock:
            return list(self._events)
