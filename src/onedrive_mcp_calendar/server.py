#!/usr/bin/env python3
"""
onedrive-mcp-calendar — Calendar MCP server backed by a JSON file in OneDrive.

All events live in one JSON document in the user's drive. Writes are
conditional on the document's eTag, so edits from several devices do not
overwrite each other.

Environment variables:
    CALENDAR_CONFIG — Path to calendar_store.yaml (default: /config/calendar_store.yaml)
    ONEDRIVE_ACCESS_TOKEN — Bearer token for Microsoft Graph (name configurable)
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import StoreSettings, build_store, load_config
from .errors import EventStoreError
from .models import CalendarEvent, EventInput, event_to_dict
from .store import RemoteEventStore

# MCP stdio servers must NEVER write to stdout — log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("onedrive-mcp-calendar")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_settings: StoreSettings | None = None
_store: RemoteEventStore | None = None

USER_MESSAGES = {
    "auth": "Please sign in again.",
    "transient": "The calendar service is not reachable right now. Please try again.",
    "storage": "The calendar file could not be accessed.",
    "decode": "The calendar file is damaged and could not be read.",
    "conflict": "Please retry, your change may conflict with another device.",
    "invalid": "Please check the event details.",
}


def _get_store() -> RemoteEventStore:
    """Get the store. Lazily built from config on first access."""
    global _settings, _store
    if _store is None:
        if _settings is None:
            _settings = load_config()
        _store = build_store(_settings)
    return _store


def _error_to_dict(action: str, error: EventStoreError) -> dict[str, Any]:
    return {
        "error": f"Failed to {action}: {error}",
        "kind": error.kind,
        "message": USER_MESSAGES.get(error.kind, USER_MESSAGES["storage"]),
    }


def _parse_datetime(value: str) -> datetime:
    """Parse ISO 8601 datetime string. Naive values are taken as UTC."""
    from dateutil.parser import parse as parse_dt
    dt = parse_dt(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _event_instant(event: CalendarEvent) -> datetime | None:
    try:
        return _parse_datetime(event.date)
    except (ValueError, OverflowError):
        return None


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

mcp = FastMCP("onedrive-calendar")


@mcp.tool()
async def list_events(start: str = "", end: str = "") -> dict:
    """List calendar events, sorted chronologically.

    Args:
        start: Only events at or after this date/time (ISO 8601, e.g. "2026-02-01"). Optional.
        end: Only events at or before this date/time (ISO 8601). A date-only value covers the whole day. Optional.
    """
    dt_start = dt_end = None
    if start:
        try:
            dt_start = _parse_datetime(start)
        except (ValueError, OverflowError):
            return {"error": f"Invalid start date: {start}", "kind": "invalid", "message": USER_MESSAGES["invalid"]}
    if end:
        try:
            dt_end = _parse_datetime(end)
        except (ValueError, OverflowError):
            return {"error": f"Invalid end date: {end}", "kind": "invalid", "message": USER_MESSAGES["invalid"]}
        if "T" not in end and ":" not in end:
            dt_end = dt_end.replace(hour=23, minute=59, second=59, microsecond=999999)

    try:
        events = await _get_store().list()
    except EventStoreError as e:
        logger.warning("Failed to list events: %s", e)
        return _error_to_dict("list events", e)

    dated = [(_event_instant(e), e) for e in events]
    if dt_start or dt_end:
        dated = [
            (instant, e) for instant, e in dated
            if instant is not None
            and (dt_start is None or instant >= dt_start)
            and (dt_end is None or instant <= dt_end)
        ]

    # Undated events sort last
    latest = datetime.max.replace(tzinfo=timezone.utc)
    dated.sort(key=lambda pair: pair[0] or latest)

    result: dict[str, Any] = {
        "count": len(dated),
        "events": [event_to_dict(e) for _, e in dated],
    }
    if dt_start:
        result["start"] = dt_start.isoformat()
    if dt_end:
        result["end"] = dt_end.isoformat()
    return result


@mcp.tool()
async def create_event(title: str, date: str, description: str = "", event_id: str = "") -> dict:
    """Create a new calendar event.

    Args:
        title: Event title
        date: Date/time of the event (ISO 8601, e.g. "2026-02-14T14:00:00.000Z")
        description: Event description (optional)
        event_id: Id to store the event under (optional). Re-sending the same id never creates a duplicate.
    """
    event_input = EventInput(
        title=title,
        date=date,
        description=description,
        id=event_id or None,
    )
    try:
        event = await _get_store().add(event_input)
    except EventStoreError as e:
        logger.warning("Failed to create event '%s': %s", title, e)
        return _error_to_dict("create event", e)
    return {"success": True, "event": event_to_dict(event)}


@mcp.tool()
async def delete_event(event_id: str) -> dict:
    """Delete a calendar event. Deleting an id that does not exist succeeds.

    Args:
        event_id: Event ID (from list_events)
    """
    if not event_id:
        return {"error": "event_id is required", "kind": "invalid", "message": USER_MESSAGES["invalid"]}
    try:
        await _get_store().remove(event_id)
    except EventStoreError as e:
        logger.warning("Failed to delete event %s: %s", event_id, e)
        return _error_to_dict("delete event", e)
    return {"success": True, "message": f"Event {event_id} deleted"}


# ---------------------------------------------------------------------------
# Storage check CLI helper
# ---------------------------------------------------------------------------

async def _check_storage() -> int:
    """Resolve (and if needed create) the calendar document once."""
    store = _get_store()
    try:
        document = await store.resolve_storage_location()
        events = await store.list()
    except EventStoreError as e:
        print(f"Storage check failed ({e.kind}): {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()
    print(f"Calendar document {store.path}: id={document.id}, {len(events)} event(s)", file=sys.stderr)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for console script and python -m."""
    global _settings

    _settings = load_config()
    logger.info("Calendar storage: %s (%s)", _settings.path, _settings.type)

    if "--check" in sys.argv:
        sys.exit(asyncio.run(_check_storage()))

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
