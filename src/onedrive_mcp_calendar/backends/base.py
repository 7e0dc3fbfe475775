"""Base types and protocol for remote document backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass
class RemoteDocument:
    """Handle to the remote file holding the event collection."""

    id: str
    version: str | None = None  # eTag or equivalent, if the backend reports one


@dataclass
class DocumentContent:
    data: bytes
    version: str | None = None


@runtime_checkable
class DocumentBackend(Protocol):
    """Protocol that all document backends must satisfy."""

    supports_conditional_write: bool

    async def lookup(self, path: str) -> RemoteDocument | None: ...

    async def create(self, path: str, data: bytes) -> RemoteDocument: ...

    async def read(self, document_id: str) -> DocumentContent: ...

    async def write(self, document_id: str, data: bytes, if_match: str | None = None) -> RemoteDocument: ...
