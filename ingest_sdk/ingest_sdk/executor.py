"""
FlushExecutor - one storage write per batch.

Calls StorageClient.bulk_insert exactly once and classifies the outcome.
It never retries: when to try again is decided by the BufferManager.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from ingest_sdk.events import NormalizedEvent
from ingest_sdk.storage import StorageClient

logger = logging.getLogger(__name__)


class FlushOutcome(Enum):
    SUCCESS = "success"  # every event newly written
    DUPLICATE = "duplicate"  # some events were already stored; still a success
    FAILURE = "failure"  # anything else; the batch must be re-queued


@dataclass(frozen=True)
class FlushResult:
    """Classified result of one flush attempt."""
    outcome: FlushOutcome
    batch_size: int
    inserted_count: int = 0
    duplicate_count: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is not FlushOutcome.FAILURE


class FlushExecutor:
    """
    Performs a single batch write against a StorageClient.

    Any exception from the storage client is a failed flush. Duplicate-key
    conflicts reported by the client are a success, since the event is
    already stored under its event_id.
    """

    def __init__(self, storage: StorageClient):
        self.storage = storage

    def execute(self, batch: Sequence[NormalizedEvent]) -> FlushResult:
        """
        Write one batch.

        Args:
            batch: Events extracted from the buffer

        Returns:
            FlushResult; check .succeeded
        """
        start = time.monotonic()
        try:
            result = self.storage.bulk_insert(batch)
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                f"Flush of {len(batch)} events failed after {duration_ms:.1f}ms: "
                f"{e.__class__.__name__}: {e}"
            )
            return FlushResult(
                outcome=FlushOutcome.FAILURE,
                batch_size=len(batch),
                duration_ms=duration_ms,
                error=f"{e.__class__.__name__}: {e}",
            )

        duration_ms = (time.monotonic() - start) * 1000
        if result.duplicate_count > 0:
            outcome = FlushOutcome.DUPLICATE
            logger.info(
                f"Flushed {len(batch)} events in {duration_ms:.1f}ms "
                f"({result.inserted_count} inserted, {result.duplicate_count} duplicates ignored)"
            )
        else:
            outcome = FlushOutcome.SUCCESS
            logger.debug(f"Flushed {len(batch)} events in {duration_ms:.1f}ms")

        return FlushResult(
            outcome=outcome,
            batch_size=len(batch),
            inserted_count=result.inserted_count,
            duplicate_count=result.duplicate_count,
            duration_ms=duration_ms,
        )
