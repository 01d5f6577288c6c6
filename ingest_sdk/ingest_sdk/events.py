"""
Event data model.

NormalizedEvent is the unit the buffering pipeline moves around. It is
created once by the normalizer and never mutated afterwards: the buffer only
enqueues, dequeues and re-enqueues it verbatim.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class EventType(str, Enum):
    """Known event kinds. Add new members here to extend the set."""

    SESSION_START = "session_start"
    PAGE_VIEW = "page_view"
    SEARCH = "search"
    PURCHASE = "purchase"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    BUTTON_CLICK = "button_click"
    FORM_SUBMIT = "form_submit"
    VIDEO_PLAY = "video_play"
    VIDEO_PAUSE = "video_pause"

    @classmethod
    def values(cls) -> list:
        return [member.value for member in cls]


def _isoformat(dt: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class NormalizedEvent:
    """A validated, server-stamped behavioral event.

    Attributes:
        event_id: Server-assigned unique id; the idempotency key in storage.
        user_id: Client-supplied user identifier.
        session_id: Client-supplied session identifier.
        type: Event kind.
        payload: Opaque event data. The pipeline never inspects it.
        occurred_at: Client-reported event time (UTC, aware).
        received_at: Server ingestion time (UTC, aware). Authoritative.
    """

    event_id: str
    user_id: str
    session_id: str
    type: EventType
    occurred_at: datetime
    received_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON wire form."""
        return {
            "eventId": self.event_id,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "type": self.type.value,
            "payload": dict(self.payload),
            "occurredAt": _isoformat(self.occurred_at),
            "receivedAt": _isoformat(self.received_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedEvent":
        """Rebuild an event from its wire form."""
        return cls(
            event_id=data["eventId"],
            user_id=data["userId"],
            session_id=data["sessionId"],
            type=EventType(data["type"]),
            payload=dict(data.get("payload") or {}),
            occurred_at=_parse_iso(data["occurredAt"]),
            received_at=_parse_iso(data["receivedAt"]),
        )
