"""Event types and the JSON document codec."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from dateutil.parser import isoparse

from .errors import DecodeError, InvalidEventError

DOCUMENT_VERSION = 1
KNOWN_FIELDS = ("id", "title", "date", "description")


@dataclass
class CalendarEvent:
    """A single stored calendar event."""

    id: str
    title: str
    date: str  # ISO-8601 timestamp, stored as supplied
    description: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)  # keys written by other clients


@dataclass
class EventInput:
    """Fields accepted when creating an event."""

    title: str
    date: str
    description: str | None = None
    id: str | None = None  # client-supplied id makes a retried add idempotent


@dataclass
class DecodedDocument:
    events: list[CalendarEvent]
    envelope: bool = False


def validate_input(event: EventInput) -> None:
    """Raise InvalidEventError if the input cannot become a stored event."""
    if not isinstance(event.title, str) or not event.title.strip():
        raise InvalidEventError("Title is required")
    if not isinstance(event.date, str) or not event.date.strip():
        raise InvalidEventError("Date is required")
    try:
        isoparse(event.date)
    except (ValueError, OverflowError) as exc:
        raise InvalidEventError(f"Invalid date: {event.date!r}") from exc
    if event.description is not None and not isinstance(event.description, str):
        raise InvalidEventError("Description must be text")
    if event.id is not None and (not isinstance(event.id, str) or not event.id.strip()):
        raise InvalidEventError("Event id must be a non-empty string")


def event_to_record(event: CalendarEvent) -> dict[str, Any]:
    record: dict[str, Any] = {"id": event.id, "title": event.title, "date": event.date}
    if event.description is not None:
        record["description"] = event.description
    for key, value in event.extra.items():
        if key not in KNOWN_FIELDS:
            record[key] = value
    return record


def event_to_dict(event: CalendarEvent) -> dict[str, Any]:
    """Convert CalendarEvent to JSON-friendly dict for tool responses."""
    return {
        "id": event.id,
        "title": event.title,
        "date": event.date,
        "description": event.description if event.description is not None else "",
    }


def encode_events(events: list[CalendarEvent], envelope: bool = False) -> bytes:
    """Serialize events to the stored document format.

    The default is a bare JSON array, which is what the web client reads.
    """
    records = [event_to_record(e) for e in events]
    payload: Any = records
    if envelope:
        payload = {"version": DOCUMENT_VERSION, "events": records}
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _record_to_event(index: int, record: Any) -> CalendarEvent:
    if not isinstance(record, dict):
        raise DecodeError(f"Event #{index} is not an object")
    for key in ("id", "title", "date"):
        if not isinstance(record.get(key), str):
            raise DecodeError(f"Event #{index}: '{key}' missing or not a string")
    description = record.get("description")
    if description is not None and not isinstance(description, str):
        raise DecodeError(f"Event #{index}: 'description' is not a string")
    return CalendarEvent(
        id=record["id"],
        title=record["title"],
        date=record["date"],
        description=description,
        extra={k: v for k, v in record.items() if k not in KNOWN_FIELDS},
    )


def decode_events(data: bytes) -> DecodedDocument:
    """Parse a stored document.

    Accepts a bare array or a ``{"version": 1, "events": [...]}`` envelope.
    Anything else raises DecodeError; a broken document is never read as empty.
    """
    try:
        raw = json.loads(data.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise DecodeError("Calendar document is not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Calendar document is not valid JSON: {exc.msg}") from exc

    envelope = False
    if isinstance(raw, dict):
        version = raw.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version != DOCUMENT_VERSION:
            raise DecodeError(f"Unsupported calendar document version: {version!r}")
        raw = raw.get("events")
        envelope = True
    if not isinstance(raw, list):
        raise DecodeError("Calendar document is not a JSON array of events")

    events = [_record_to_event(i, r) for i, r in enumerate(raw)]

    seen: set[str] = set()
    for event in events:
        if event.id in seen:
            raise DecodeError(f"Duplicate event id: '{event.id}'")
        seen.add(event.id)

    return DecodedDocument(events=events, envelope=envelope)
