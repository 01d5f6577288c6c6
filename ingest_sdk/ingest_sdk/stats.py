"""
Read-only statistics for health checks and monitoring.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BufferStats:
    """Point-in-time snapshot of a BufferManager."""
    queue_length: int
    active_flushes: int
    max_batch_size: int
    flush_interval_ms: int
    backpressure_threshold: int
    max_concurrent_flushes: int
    buffer_utilization: float  # queue_length / backpressure_threshold
    total_flushes: int = 0
    failed_flushes: int = 0
    events_persisted: int = 0
    duplicate_events: int = 0
    oldest_event_age_ms: Optional[float] = None

    @property
    def at_capacity(self) -> bool:
        return self.buffer_utilization >= 1.0

    def to_dict(self) -> Dict[str, Any]:
        """camelCase keys for the JSON stats endpoint."""
        data = asdict(self)
        return {_camel(k): v for k, v in data.items()}


class IngestionMetrics:
    """
    Counters kept by the ingestion entry point.

    admission_rejections is incremented every time a submission is refused
    because the buffer is at capacity.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._events_accepted = 0
        self._admission_rejections = 0
        self._validation_failures = 0

    def record_accepted(self, count: int) -> None:
        with self._lock:
            self._events_accepted += count

    def record_rejection(self) -> int:
        """Count one refused submission; returns the new total."""
        with self._lock:
            self._admission_rejections += 1
            return self._admission_rejections

    def record_validation_failure(self) -> None:
        with self._lock:
            self._validation_failures += 1

    @property
    def events_accepted(self) -> int:
        return self._events_accepted

    @property
    def admission_rejections(self) -> int:
        return self._admission_rejections

    @property
    def validation_failures(self) -> int:
        return self._validation_failures

    def to_dict(self) -> Dict[str, int]:
        return {
            "eventsAccepted": self._events_accepted,
            "admissionRejections": self._admission_rejections,
            "validationFailures": self._validation_failures,
        }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
