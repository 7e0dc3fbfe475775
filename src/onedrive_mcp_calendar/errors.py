"""Exception hierarchy for event store operations."""

from __future__ import annotations


class EventStoreError(Exception):
    """Base exception for event store operations."""

    kind = "storage"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(EventStoreError):
    """Bearer token missing, invalid or expired."""

    kind = "auth"


class TransientError(EventStoreError):
    """Network failure, timeout or server-side (5xx) error."""

    kind = "transient"


class StorageError(EventStoreError):
    """Unexpected response status or shape from the remote store."""

    kind = "storage"


class DocumentNotFoundError(StorageError):
    """The backing document does not exist."""

    pass


class DecodeError(EventStoreError):
    """Stored document is not a well-formed event collection."""

    kind = "decode"


class WriteConflictError(EventStoreError):
    """The document changed between read and write."""

    kind = "conflict"


class InvalidEventError(EventStoreError, ValueError):
    """Event input rejected by validation."""

    kind = "invalid"
