"""Microsoft Graph (OneDrive) document backend."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import (
    AuthError,
    DocumentNotFoundError,
    StorageError,
    TransientError,
    WriteConflictError,
)
from ..tokens import TokenSource
from .base import DocumentContent, RemoteDocument

logger = logging.getLogger("onedrive-mcp-calendar")

GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"
DEFAULT_TIMEOUT = 10.0
TRANSIENT_STATUS_CODES = {408, 429}


def _error_message(response: httpx.Response) -> str:
    """Extract Graph's error message, falling back to the raw body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200].strip() or response.reason_phrase
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        return f"{error.get('code', '')}: {error.get('message', '')}".strip(": ")
    return response.reason_phrase


class GraphDriveBackend:
    """Stores the calendar document in the signed-in user's OneDrive."""

    def __init__(
        self,
        token_source: TokenSource,
        endpoint: str = GRAPH_API_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        conditional_writes: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._tokens = token_source
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self.supports_conditional_write = conditional_writes
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> GraphDriveBackend:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        content: bytes | None = None,
        params: dict[str, str] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request and classify auth/transient failures.

        Other statuses are returned to the caller, which knows what a 404 or
        412 means for its operation.
        """
        headers = {"Authorization": f"Bearer {self._tokens.current_token()}"}
        if extra_headers:
            headers.update(extra_headers)

        client = self._get_http_client()
        try:
            response = await client.request(
                method,
                f"{self._endpoint}{path}",
                content=content,
                params=params,
                headers=headers,
                timeout=self._timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"Graph request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Graph request failed: {exc}") from exc

        status = response.status_code
        if status == 401:
            raise AuthError(f"Access token rejected: {_error_message(response)}", status)
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientError(f"Graph returned {status}: {_error_message(response)}", status)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        status = response.status_code
        if status == 404:
            raise DocumentNotFoundError(f"Failed to {action}: document not found", status)
        if status < 200 or status >= 300:
            raise StorageError(f"Failed to {action} ({status}): {_error_message(response)}", status)

    @staticmethod
    def _item(response: httpx.Response, action: str) -> RemoteDocument:
        try:
            payload = response.json()
        except ValueError as exc:
            raise StorageError(f"Failed to {action}: response is not JSON") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            raise StorageError(f"Failed to {action}: response has no item id")
        return RemoteDocument(id=payload["id"], version=payload.get("eTag"))

    @staticmethod
    def _root_path(path: str) -> str:
        return "/me/drive/root:/" + quote(path.strip("/"), safe="/")

    @staticmethod
    def _item_path(document_id: str) -> str:
        return "/me/drive/items/" + quote(document_id, safe="")

    async def lookup(self, path: str) -> RemoteDocument | None:
        response = await self._request("GET", self._root_path(path))
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "look up calendar document")
        return self._item(response, "look up calendar document")

    async def create(self, path: str, data: bytes) -> RemoteDocument:
        response = await self._request(
            "PUT",
            self._root_path(path) + ":/content",
            content=data,
            extra_headers={"Content-Type": "application/json", "If-None-Match": "*"},
        )
        if response.status_code in (409, 412):
            raise WriteConflictError("Calendar document was created concurrently", response.status_code)
        self._raise_for_status(response, "create calendar document")
        document = self._item(response, "create calendar document")
        logger.info("Created calendar document %s (id=%s)", path, document.id)
        return document

    async def read(self, document_id: str) -> DocumentContent:
        # Metadata first: the captured eTag can then only be older than the
        # content, which makes a conditional write fail rather than clobber.
        meta = await self._request(
            "GET", self._item_path(document_id), params={"$select": "id,eTag"}
        )
        self._raise_for_status(meta, "read calendar document metadata")
        version = self._item(meta, "read calendar document metadata").version

        response = await self._request("GET", self._item_path(document_id) + "/content")
        self._raise_for_status(response, "fetch calendar events")
        return DocumentContent(data=response.content, version=version)

    async def write(self, document_id: str, data: bytes, if_match: str | None = None) -> RemoteDocument:
        headers = {"Content-Type": "application/json"}
        if if_match is not None:
            headers["If-Match"] = if_match

        response = await self._request(
            "PUT", self._item_path(document_id) + "/content", content=data, extra_headers=headers
        )
        if response.status_code == 412:
            raise WriteConflictError("Calendar document changed since it was read", 412)
        self._raise_for_status(response, "write calendar events")
        return self._item(response, "write calendar events")
