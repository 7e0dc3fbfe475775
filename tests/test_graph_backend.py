"""Tests for the Microsoft Graph backend against a fake drive."""

import json
import uuid

import httpx
import pytest

from onedrive_mcp_calendar.backends.graph import GraphDriveBackend
from onedrive_mcp_calendar.errors import (
    AuthError,
    DocumentNotFoundError,
    StorageError,
    TransientError,
    WriteConflictError,
)
from onedrive_mcp_calendar.models import EventInput
from onedrive_mcp_calendar.store import RemoteEventStore
from onedrive_mcp_calendar.tokens import StaticTokenSource

ENDPOINT = "https://graph.test/v1.0"
ROOT = "/v1.0/me/drive/root:/Documents/calendar-events.json"


# ---------------------------------------------------------------------------
# Fake Graph drive
# ---------------------------------------------------------------------------

class FakeDrive:
    """Minimal OneDrive: path lookup, create, metadata, content, If-Match."""

    def __init__(self):
        self.paths: dict[str, str] = {}
        self.items: dict[str, tuple[bytes, str]] = {}
        self.requests: list[httpx.Request] = []

    def _store(self, item_id: str, data: bytes) -> str:
        etag = f'"{{{uuid.uuid4()}}},1"'
        self.items[item_id] = (data, etag)
        return etag

    def _item_json(self, item_id: str, status: int = 200) -> httpx.Response:
        return httpx.Response(status, json={"id": item_id, "eTag": self.items[item_id][1]})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "download.test":
            item_id = request.url.path.strip("/")
            return httpx.Response(200, content=self.items[item_id][0])

        path = request.url.path
        if path.startswith("/v1.0/me/drive/root:/"):
            rel = path[len("/v1.0/me/drive/root:/"):]
            if request.method == "GET":
                if rel not in self.paths:
                    return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "not found"}})
                return self._item_json(self.paths[rel])
            rel = rel[: -len(":/content")]
            if rel in self.paths and request.headers.get("If-None-Match") == "*":
                return httpx.Response(412, json={"error": {"code": "preconditionFailed", "message": "exists"}})
            item_id = self.paths.setdefault(rel, uuid.uuid4().hex)
            self._store(item_id, request.content)
            return self._item_json(item_id, 201)

        item_id = path[len("/v1.0/me/drive/items/"):].split("/")[0]
        if item_id not in self.items:
            return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "not found"}})
        if path.endswith("/content"):
            if request.method == "GET":
                return httpx.Response(302, headers={"Location": f"https://download.test/{item_id}"})
            if_match = request.headers.get("If-Match")
            if if_match is not None and if_match != self.items[item_id][1]:
                return httpx.Response(412, json={"error": {"code": "resourceModified", "message": "etag"}})
            self._store(item_id, request.content)
            return self._item_json(item_id)
        return self._item_json(item_id)

    def put(self, rel: str, data: bytes) -> str:
        item_id = self.paths.setdefault(rel, uuid.uuid4().hex)
        self._store(item_id, data)
        return item_id


def _backend(handler, token: str = "tok", **kwargs) -> GraphDriveBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphDriveBackend(StaticTokenSource(token), endpoint=ENDPOINT, http_client=client, **kwargs)


def _status(status: int, body: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body or {})
    return handler


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


# ---------------------------------------------------------------------------
# Backend operations
# ---------------------------------------------------------------------------

class TestGraphBackend:
    async def test_lookup_found(self, drive):
        item_id = drive.put("Documents/calendar-events.json", b"[]")
        document = await _backend(drive).lookup("Documents/calendar-events.json")
        assert document.id == item_id
        assert document.version == drive.items[item_id][1]
        request = drive.requests[0]
        assert request.url.path == ROOT
        assert request.headers["Authorization"] == "Bearer tok"

    async def test_lookup_not_found(self, drive):
        assert await _backend(drive).lookup("Documents/calendar-events.json") is None

    async def test_create_is_exclusive(self, drive):
        backend = _backend(drive)
        document = await backend.create("Documents/calendar-events.json", b"[]")
        assert drive.items[document.id][0] == b"[]"
        assert drive.requests[0].headers["If-None-Match"] == "*"
        with pytest.raises(WriteConflictError):
            await backend.create("Documents/calendar-events.json", b"[]")

    async def test_read_follows_download_redirect(self, drive):
        item_id = drive.put("Documents/calendar-events.json", b'[{"id":"a"}]')
        content = await _backend(drive).read(item_id)
        assert content.data == b'[{"id":"a"}]'
        assert content.version == drive.items[item_id][1]
        assert drive.requests[0].url.params["$select"] == "id,eTag"
        download = drive.requests[-1]
        assert download.url.host == "download.test"
        assert "Authorization" not in download.headers

    async def test_read_missing(self, drive):
        with pytest.raises(DocumentNotFoundError):
            await _backend(drive).read("nope")

    async def test_conditional_write(self, drive):
        item_id = drive.put("Documents/calendar-events.json", b"[]")
        etag = drive.items[item_id][1]
        backend = _backend(drive)

        document = await backend.write(item_id, b'[{"id":"a"}]', if_match=etag)
        assert drive.requests[-1].headers["If-Match"] == etag
        assert drive.requests[-1].headers["Content-Type"] == "application/json"
        assert document.version != etag

        with pytest.raises(WriteConflictError):
            await backend.write(item_id, b"[]", if_match=etag)
        assert drive.items[item_id][0] == b'[{"id":"a"}]'

    async def test_unconditional_write(self, drive):
        item_id = drive.put("Documents/calendar-events.json", b"[]")
        await _backend(drive).write(item_id, b"[1]")
        assert "If-Match" not in drive.requests[-1].headers
        assert drive.items[item_id][0] == b"[1]"

    async def test_unauthorized(self):
        with pytest.raises(AuthError) as exc_info:
            await _backend(_status(401, {"error": {"code": "InvalidAuthenticationToken", "message": "expired"}})).lookup("x")
        assert exc_info.value.status_code == 401
        assert "expired" in str(exc_info.value)

    async def test_missing_token_sends_nothing(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "x"})

        with pytest.raises(AuthError):
            await _backend(handler, token="").lookup("x")
        assert requests == []

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    async def test_transient_status(self, status):
        with pytest.raises(TransientError) as exc_info:
            await _backend(_status(status)).lookup("x")
        assert exc_info.value.status_code == status

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientError):
            await _backend(handler).read("x")

    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError):
            await _backend(handler).lookup("x")

    async def test_unexpected_status(self):
        with pytest.raises(StorageError) as exc_info:
            await _backend(_status(400, {"error": {"code": "invalidRequest", "message": "bad path"}})).lookup("x")
        assert not isinstance(exc_info.value, DocumentNotFoundError)
        assert "bad path" in str(exc_info.value)

    async def test_response_without_id(self):
        with pytest.raises(StorageError):
            await _backend(_status(200, {"name": "calendar-events.json"})).lookup("x")

    async def test_close_owned_client(self):
        backend = GraphDriveBackend(StaticTokenSource("tok"), endpoint=ENDPOINT)
        client = backend._get_http_client()
        await backend.close()
        assert client.is_closed


# ---------------------------------------------------------------------------
# Store over the fake drive
# ---------------------------------------------------------------------------

class TestStoreOverGraph:
    async def test_first_use_creates_document(self, drive):
        store = RemoteEventStore(_backend(drive))
        assert await store.list() == []
        item_id = drive.paths["Documents/calendar-events.json"]
        assert drive.items[item_id][0] == b"[]"

    async def test_add_list_remove(self, drive):
        store = RemoteEventStore(_backend(drive))
        event = await store.add(EventInput(title="Standup", date="2024-01-10T09:00:00.000Z"))
        assert [e.id for e in await store.list()] == [event.id]

        write = [r for r in drive.requests if r.method == "PUT" and "/items/" in r.url.path][-1]
        assert "If-Match" in write.headers

        await store.remove(event.id)
        assert await store.list() == []

    async def test_reads_web_client_document(self, drive):
        drive.put(
            "Documents/calendar-events.json",
            json.dumps([{"title": "Lunch", "date": "2024-03-01T12:00:00.000Z", "description": "", "id": "w1"}]).encode(),
        )
        events = await RemoteEventStore(_backend(drive)).list()
        assert events[0].id == "w1"
        assert events[0].title == "Lunch"

    async def test_foreign_write_between_read_and_write_is_retried(self, drive):
        drive.put("Documents/calendar-events.json", b"[]")
        backend = _backend(drive)
        store = RemoteEventStore(backend, base_delay=0, max_delay=0)
        original_read = backend.read
        reads = 0

        async def read_then_other_device_writes(document_id):
            nonlocal reads
            content = await original_read(document_id)
            reads += 1
            if reads == 1:
                drive.put(
                    "Documents/calendar-events.json",
                    b'[{"id":"other","title":"Other","date":"2024-01-01T00:00:00.000Z"}]',
                )
            return content

        backend.read = read_then_other_device_writes
        event = await store.add(EventInput(title="Mine", date="2024-01-10T09:00:00.000Z"))

        item_id = drive.paths["Documents/calendar-events.json"]
        ids = {r["id"] for r in json.loads(drive.items[item_id][0])}
        assert ids == {"other", event.id}
