"""Event store over a single remote JSON document.

Every mutation is a full read-modify-write of the document. Writes are
conditional on the version captured at read time, so two devices editing at
once cannot silently overwrite each other: the loser gets a
WriteConflictError, re-reads and re-applies its change.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .backends.base import DocumentBackend, DocumentContent, RemoteDocument
from .errors import (
    DocumentNotFoundError,
    InvalidEventError,
    StorageError,
    TransientError,
    WriteConflictError,
)
from .models import (
    CalendarEvent,
    DecodedDocument,
    EventInput,
    decode_events,
    encode_events,
    validate_input,
)

logger = logging.getLogger("onedrive-mcp-calendar")

T = TypeVar("T")

DEFAULT_PATH = "Documents/calendar-events.json"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.2
DEFAULT_MAX_DELAY = 2.0


def _same_fields(a: CalendarEvent, b: CalendarEvent) -> bool:
    """True if both records carry the same user data (missing description == "")."""
    return (
        a.title == b.title
        and a.date == b.date
        and (a.description or "") == (b.description or "")
    )


@dataclass
class _Snapshot:
    """The document as read at the start of one attempt."""

    document_id: str
    version: str | None
    decoded: DecodedDocument


class RemoteEventStore:
    """List, add and remove events stored in one remote document."""

    def __init__(
        self,
        backend: DocumentBackend,
        path: str = DEFAULT_PATH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._backend = backend
        self._path = path.strip("/")
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._handle: RemoteDocument | None = None

    @property
    def path(self) -> str:
        return self._path

    async def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is not None:
            await close()

    # -----------------------------------------------------------------------
    # Location
    # -----------------------------------------------------------------------

    async def resolve_storage_location(self, create: bool = True) -> RemoteDocument:
        """Return the handle of the backing document.

        Looks the document up by path on first use and, when ``create`` is
        set, creates it holding an empty collection if it does not exist yet.
        """
        if self._handle is not None:
            return self._handle

        document = await self._backend.lookup(self._path)
        if document is None:
            if not create:
                raise DocumentNotFoundError(f"Calendar document not found: {self._path}")
            try:
                document = await self._backend.create(self._path, encode_events([]))
            except WriteConflictError:
                logger.info("Calendar document %s created concurrently, looking it up again", self._path)
                document = await self._backend.lookup(self._path)
                if document is None:
                    raise StorageError(f"Calendar document {self._path} missing after concurrent create")
        else:
            logger.info("Resolved calendar document %s (id=%s)", self._path, document.id)

        self._handle = document
        return document

    # -----------------------------------------------------------------------
    # Read / write helpers
    # -----------------------------------------------------------------------

    async def _read(self, create: bool = True) -> _Snapshot:
        document = await self.resolve_storage_location(create)
        try:
            content = await self._backend.read(document.id)
        except DocumentNotFoundError:
            # Cached handle points at a deleted file.
            logger.warning("Calendar document id=%s no longer exists, resolving again", document.id)
            self._handle = None
            document = await self.resolve_storage_location(create)
            content = await self._backend.read(document.id)
        return _Snapshot(
            document_id=document.id,
            version=content.version,
            decoded=decode_events(content.data),
        )

    def _changed_since(self, snapshot: _Snapshot, current: DocumentContent) -> bool:
        if snapshot.version is not None and current.version is not None:
            return snapshot.version != current.version
        before = {e.id for e in snapshot.decoded.events}
        after = {e.id for e in decode_events(current.data).events}
        return before != after

    async def _write(self, snapshot: _Snapshot, events: list[CalendarEvent]) -> None:
        data = encode_events(events, envelope=snapshot.decoded.envelope)

        if self._backend.supports_conditional_write and snapshot.version is not None:
            await self._backend.write(snapshot.document_id, data, if_match=snapshot.version)
            return

        # No conditional write available: re-read right before writing and
        # refuse if anyone else touched the document in between.
        current = await self._backend.read(snapshot.document_id)
        if self._changed_since(snapshot, current):
            raise WriteConflictError("Calendar document changed since it was read")
        await self._backend.write(snapshot.document_id, data)

    def _backoff(self, attempt: int) -> float:
        ceiling = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    async def _with_retries(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        retry_on: tuple[type[Exception], ...],
    ) -> T:
        attempt = 1
        while True:
            try:
                return await func()
            except retry_on as exc:
                if attempt >= self._max_attempts:
                    logger.warning("%s failed after %d attempt(s): %s", operation, attempt, exc)
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "%s: %s (attempt %d/%d), retrying in %.2fs",
                    operation,
                    exc,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def list(self) -> list[CalendarEvent]:
        """Return the stored events."""
        snapshot = await self._with_retries("list", self._read, (TransientError,))
        return snapshot.decoded.events

    async def add(self, event: EventInput) -> CalendarEvent:
        """Append a new event and return it with its id.

        The id is chosen once, so a retry after an ambiguous failure finds the
        record already stored instead of creating a second one.
        """
        validate_input(event)
        new_event = CalendarEvent(
            id=event.id or str(uuid.uuid4()),
            title=event.title,
            date=event.date,
            description=event.description if event.description is not None else "",
        )

        async def attempt() -> CalendarEvent:
            snapshot = await self._read()
            for existing in snapshot.decoded.events:
                if existing.id != new_event.id:
                    continue
                if _same_fields(existing, new_event):
                    logger.info("Event %s already stored, not adding it again", new_event.id)
                    return existing
                raise InvalidEventError(f"Event id '{new_event.id}' is already used by another event")
            await self._write(snapshot, snapshot.decoded.events + [new_event])
            logger.info("Event created: %s (id=%s)", new_event.title, new_event.id)
            return new_event

        return await self._with_retries("add", attempt, (TransientError, WriteConflictError))

    async def remove(self, event_id: str) -> None:
        """Delete the event with the given id. Absent ids are a no-op."""

        async def attempt() -> None:
            snapshot = await self._read(create=False)
            events = snapshot.decoded.events
            remaining = [e for e in events if e.id != event_id]
            if len(remaining) == len(events):
                logger.info("Event %s not found, nothing to delete", event_id)
                return
            await self._write(snapshot, remaining)
            logger.info("Event deleted: %s", event_id)

        await self._with_retries("remove", attempt, (TransientError, WriteConflictError))
