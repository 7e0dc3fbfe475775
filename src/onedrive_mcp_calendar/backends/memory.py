"""In-memory document backend for local development and tests."""

from __future__ import annotations

import asyncio
import uuid

from ..errors import DocumentNotFoundError, WriteConflictError
from .base import DocumentContent, RemoteDocument


class InMemoryBackend:
    """Keeps documents in process memory with integer versions.

    Every call yields to the event loop once, so concurrent store operations
    interleave the way they would against a remote service.
    """

    def __init__(self, conditional_writes: bool = True):
        self.supports_conditional_write = conditional_writes
        self._paths: dict[str, str] = {}
        self._documents: dict[str, DocumentContent] = {}
        self._version = 0
        self.writes = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, path: str, data: bytes) -> RemoteDocument:
        """Create or overwrite a document unconditionally, bypassing the store."""
        key = path.strip("/")
        doc_id = self._paths.setdefault(key, uuid.uuid4().hex)
        version = self._next_version()
        self._documents[doc_id] = DocumentContent(data=data, version=version)
        return RemoteDocument(id=doc_id, version=version)

    def get(self, path: str) -> bytes | None:
        doc_id = self._paths.get(path.strip("/"))
        if doc_id is None:
            return None
        return self._documents[doc_id].data

    def delete(self, path: str) -> None:
        doc_id = self._paths.pop(path.strip("/"), None)
        if doc_id is not None:
            self._documents.pop(doc_id, None)

    async def lookup(self, path: str) -> RemoteDocument | None:
        await asyncio.sleep(0)
        doc_id = self._paths.get(path.strip("/"))
        if doc_id is None:
            return None
        return RemoteDocument(id=doc_id, version=self._documents[doc_id].version)

    async def create(self, path: str, data: bytes) -> RemoteDocument:
        await asyncio.sleep(0)
        if path.strip("/") in self._paths:
            raise WriteConflictError("Calendar document was created concurrently", 412)
        return self.put(path, data)

    async def read(self, document_id: str) -> DocumentContent:
        await asyncio.sleep(0)
        document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}", 404)
        return DocumentContent(data=document.data, version=document.version)

    async def write(self, document_id: str, data: bytes, if_match: str | None = None) -> RemoteDocument:
        await asyncio.sleep(0)
        current = self._documents.get(document_id)
        if current is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}", 404)
        if if_match is not None and self.supports_conditional_write and if_match != current.version:
            raise WriteConflictError("Calendar document changed since it was read", 412)
        version = self._next_version()
        self._documents[document_id] = DocumentContent(data=data, version=version)
        self.writes += 1
        return RemoteDocument(id=document_id, version=version)
