"""
IngestClock - authoritative server clock.

Every NormalizedEvent gets its received_at from this clock. The clock can be
frozen so tests and replays produce stable timestamps.
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


class IngestClock:
    """
    A UTC clock that can be frozen and advanced manually.

    Usage:
        from ingest_sdk.clock import ingest_clock

        received_at = ingest_clock.now()

        # Freeze time for testing
        ingest_clock.freeze(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
        ingest_clock.advance(timedelta(milliseconds=200))

        ingest_clock.unfreeze()
    """

    def __init__(self, frozen_time: Optional[datetime] = None):
        """
        Initialize the clock.

        Args:
            frozen_time: If provided, the clock always returns this time
        """
        self._frozen_time: Optional[datetime] = _as_utc(frozen_time) if frozen_time else None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """
        Get the current time as a timezone-aware UTC datetime.
        """
        with self._lock:
            if self._frozen_time is not None:
                return self._frozen_time
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        """Seconds since epoch."""
        return self.now().timestamp()

    def freeze(self, dt: datetime) -> None:
        """
        Freeze the clock at a specific time.

        Naive datetimes are taken to be UTC.
        """
        with self._lock:
            self._frozen_time = _as_utc(dt)

    def advance(self, delta: timedelta) -> datetime:
        """
        Move a frozen clock forward.

        Raises:
            RuntimeError: If the clock is not frozen
        """
        with self._lock:
            if self._frozen_time is None:
                raise RuntimeError("Cannot advance a clock that is not frozen")
            self._frozen_time = self._frozen_time + delta
            return self._frozen_time

    def unfreeze(self) -> None:
        """Return to real time."""
        with self._lock:
            self._frozen_time = None

    @property
    def is_frozen(self) -> bool:
        with self._lock:
            return self._frozen_time is not None

    def __enter__(self) -> "IngestClock":
        return self

    def __exit__(self, *args) -> None:
        self.unfreeze()


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _create_clock_from_env() -> IngestClock:
    """Create a clock from INGEST_FROZEN_TIME (ISO-8601 or epoch seconds)."""
    frozen_time_str = os.environ.get("INGEST_FROZEN_TIME")
    if not frozen_time_str:
        return IngestClock()

    try:
        frozen_time = datetime.fromisoformat(frozen_time_str.replace("Z", "+00:00"))
    except ValueError:
        try:
            frozen_time = datetime.fromtimestamp(float(frozen_time_str), tz=timezone.utc)
        except ValueError:
            frozen_time = None

    return IngestClock(frozen_time=frozen_time)


# Global instance
ingest_clock = _create_clock_from_env()
