"""Tests for brainsync.remote: HTTP client for the document API."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from brainsync.remote import HttpRemoteStore, RemoteNotFoundError, RemoteStoreError
from brainsync.types import Kind, Priority, make_record

DUE = datetime(2025, 1, 10, tzinfo=timezone.utc)


def _store(handler, **kwargs):
    return HttpRemoteStore(
        "https://api.example.com", "test-key", "user-1",
        transport=httpx.MockTransport(handler), **kwargs,
    )


class Recorder:
    """MockTransport handler that records requests and replies from a table."""

    def __init__(self, responses=None):
        self.requests: list[httpx.Request] = []
        self.responses = responses or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, body = self.responses.get(key, (200, {}))
        return httpx.Response(status, json=body)


class TestHTTPSEnforcement:
    def test_allows_https(self):
        HttpRemoteStore("https://api.example.com", "key", "u")

    def test_allows_localhost(self):
        store = HttpRemoteStore("http://localhost:8000", "key", "u")
        assert store.user_id == "u"

    def test_rejects_plain_http(self):
        with pytest.raises(ValueError, match="must use HTTPS"):
            HttpRemoteStore("http://api.example.com", "key", "u")


@pytest.mark.asyncio
class TestRequests:
    async def test_list_parses_and_drops_malformed(self):
        newer = make_record(Kind.THOUGHT, "b", created_at=DUE)
        docs = [
            {"id": "a", "content": "a", "createdAt": "2025-01-01T00:00:00.000Z"},
            {"content": "no id"},
            {"id": newer.id, "content": "b", "createdAt": "2025-01-10T00:00:00.000Z"},
        ]
        handler = Recorder({("GET", "/v1/users/user-1/thoughts"): (200, {"documents": docs})})
        store = _store(handler)
        try:
            records = await store.list(Kind.THOUGHT)
        finally:
            await store.close()
        assert [r.id for r in records] == [newer.id, "a"]
        request = handler.requests[0]
        assert request.headers["Authorization"] == "Bearer test-key"
        assert request.url.params["orderBy"] == "createdAt"

    async def test_get_missing_returns_none(self):
        handler = Recorder({("GET", "/v1/users/user-1/tasks/x"): (404, {})})
        store = _store(handler)
        try:
            assert await store.get(Kind.TASK, "x") is None
        finally:
            await store.close()

    async def test_create_puts_wire_form(self):
        handler = Recorder()
        store = _store(handler)
        task = make_record(Kind.TASK, "milk", due_date=DUE, priority=Priority.HIGH)
        try:
            await store.create(Kind.TASK, task)
        finally:
            await store.close()
        request = handler.requests[0]
        assert request.method == "PUT"
        assert request.url.path == f"/v1/users/user-1/tasks/{task.id}"
        body = json.loads(request.content)
        assert body["dueDate"] == "2025-01-10T00:00:00.000Z"
        assert body["priority"] == "high"
        assert body["isCompleted"] is False
        assert "calendarEventRef" not in body

    async def test_update_patches_camel_case(self):
        handler = Recorder()
        store = _store(handler)
        try:
            await store.update(Kind.TASK, "t1", {"is_completed": True, "calendar_event_ref": None})
        finally:
            await store.close()
        request = handler.requests[0]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"isCompleted": True, "calendarEventRef": None}

    async def test_update_missing_raises_not_found(self):
        handler = Recorder({("PATCH", "/v1/users/user-1/tasks/t1"): (404, {})})
        store = _store(handler)
        try:
            with pytest.raises(RemoteNotFoundError):
                await store.update(Kind.TASK, "t1", {"is_completed": True})
        finally:
            await store.close()

    async def test_delete_ignores_missing(self):
        handler = Recorder({("DELETE", "/v1/users/user-1/investments/i1"): (404, {})})
        store = _store(handler)
        try:
            await store.delete(Kind.INVESTMENT, "i1")
        finally:
            await store.close()

    async def test_server_error(self):
        handler = Recorder({("PUT", "/v1/users/user-1/thoughts/a"): (503, {"error": "busy"})})
        store = _store(handler)
        try:
            with pytest.raises(RemoteStoreError, match="503"):
                await store.create(Kind.THOUGHT, make_record(Kind.THOUGHT, "x", id="a"))
        finally:
            await store.close()

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        store = _store(handler)
        try:
            with pytest.raises(RemoteStoreError):
                await store.list(Kind.THOUGHT)
        finally:
            await store.close()

    async def test_non_json_list_raises_store_error(self):
        store = _store(lambda request: httpx.Response(200, text="<html>sign in</html>"))
        try:
            with pytest.raises(RemoteStoreError, match="non-JSON"):
                await store.list(Kind.THOUGHT)
        finally:
            await store.close()

    async def test_non_json_get_raises_store_error(self):
        store = _store(lambda request: httpx.Response(200, text="<html>sign in</html>"))
        try:
            with pytest.raises(RemoteStoreError, match="non-JSON"):
                await store.get(Kind.THOUGHT, "a")
        finally:
            await store.close()


@pytest.mark.asyncio
class TestSubscribe:
    async def test_delivers_initial_snapshot_once(self):
        docs = [{"id": "a", "content": "a", "createdAt": "2025-01-01T00:00:00.000Z"}]
        handler = Recorder({("GET", "/v1/users/user-1/thoughts"): (200, docs)})
        store = _store(handler, poll_interval=0.01)
        snapshots = []
        try:
            unsubscribe = store.subscribe(Kind.THOUGHT, snapshots.append)
            for _ in range(20):
                await asyncio.sleep(0.01)
            unsubscribe()
        finally:
            await store.close()
        assert len(handler.requests) > 1
        assert len(snapshots) == 1
        assert snapshots[0][0].id == "a"

    async def test_keeps_polling_after_non_json_body(self):
        docs = [{"id": "a", "content": "a", "createdAt": "2025-01-01T00:00:00.000Z"}]
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, text="<html>proxy</html>")
            return httpx.Response(200, json=docs)

        store = _store(handler, poll_interval=0.01)
        snapshots = []
        try:
            unsubscribe = store.subscribe(Kind.THOUGHT, snapshots.append)
            for _ in range(20):
                await asyncio.sleep(0.01)
            unsubscribe()
        finally:
            await store.close()
        assert [[r.id for r in s] for s in snapshots] == [["a"]]
