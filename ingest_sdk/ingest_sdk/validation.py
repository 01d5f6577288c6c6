"""
Validation and normalization of raw client events.

This runs before anything reaches the buffer. Events that fail here are
rejected synchronously and never buffered.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ingest_sdk.clock import IngestClock, ingest_clock
from ingest_sdk.errors import EventValidationError
from ingest_sdk.events import EventType, NormalizedEvent

MIN_LIMIT = 1
MAX_LIMIT = 1000

_REQUIRED_FIELDS = ("userId", "sessionId", "type")


def validate_raw_event(raw: Any) -> None:
    """
    Check the shape of a raw client event.

    Raises:
        EventValidationError: On the first problem found
    """
    if not isinstance(raw, dict):
        raise EventValidationError("Event must be a JSON object")

    for name in _REQUIRED_FIELDS:
        value = raw.get(name)
        if not value or not isinstance(value, str):
            raise EventValidationError(
                f"Missing or invalid required field: {name}", field=name
            )

    if raw["type"] not in EventType.values():
        raise EventValidationError(
            f"Invalid event type: {raw['type']}. Must be one of: {', '.join(EventType.values())}",
            field="type",
        )

    payload = raw.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise EventValidationError("payload must be a JSON object", field="payload")


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a client timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` suffix or offset, naive means UTC),
    datetime objects, and epoch milliseconds. Returns None when the value
    cannot be interpreted as an instant.
    """
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_limit(value: Union[str, int, None]) -> Optional[int]:
    """Parse a result limit; None unless it is an integer in 1..1000."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return None
    if limit < MIN_LIMIT or limit > MAX_LIMIT:
        return None
    return limit


def normalize_event(raw: Dict[str, Any], clock: Optional[IngestClock] = None) -> NormalizedEvent:
    """
    Validate a raw event and stamp it with server-side fields.

    A client-supplied eventId is ignored; ids are always server-assigned.

    Args:
        raw: Decoded JSON object from the client
        clock: Clock for received_at (defaults to the global ingest_clock)

    Returns:
        NormalizedEvent ready for the buffer

    Raises:
        EventValidationError: If the event is invalid
    """
    clock = clock or ingest_clock
    validate_raw_event(raw)

    received_at = clock.now()
    if raw.get("occurredAt") is None:
        occurred_at = received_at
    else:
        occurred_at = parse_timestamp(raw["occurredAt"])
        if occurred_at is None:
            raise EventValidationError("Invalid occurredAt timestamp format", field="occurredAt")

    return NormalizedEvent(
        event_id=str(uuid.uuid4()),
        user_id=raw["userId"],
        session_id=raw["sessionId"],
        type=EventType(raw["type"]),
        payload=dict(raw.get("payload") or {}),
        occurred_at=occurred_at,
        received_at=received_at,
    )


def normalize_events(body: Any, clock: Optional[IngestClock] = None) -> List[NormalizedEvent]:
    """
    Normalize a request body holding one event or a list of events.

    All or nothing: the first invalid event rejects the whole body. An
    empty list normalizes to no events.
    """
    raw_events = body if isinstance(body, list) else [body]
    return [normalize_event(raw, clock) for raw in raw_events]
