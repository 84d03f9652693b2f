"""
Remote document store.

The remote store is the cloud system of record, namespaced per user.
Every operation is asynchronous and may fail (network, auth, quota).

HttpRemoteStore talks to a REST document API:

    GET    /v1/users/{user}/{collection}?orderBy=createdAt&direction=desc
    GET    /v1/users/{user}/{collection}/{id}
    PUT    /v1/users/{user}/{collection}/{id}     create (upsert by id)
    PATCH  /v1/users/{user}/{collection}/{id}     partial update
    DELETE /v1/users/{user}/{collection}/{id}

Live push is emulated by polling: subscribe() delivers the current
snapshot right away, then again whenever it changes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import httpx

from .types import (
    Kind,
    Record,
    fields_to_wire,
    record_from_dict,
    record_to_dict,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 15.0

SnapshotCallback = Callable[[list[Record]], None]
Unsubscribe = Callable[[], None]


class RemoteStoreError(Exception):
    """Error communicating with the remote store."""


class RemoteNotFoundError(RemoteStoreError):
    """The addressed remote record does not exist."""


@runtime_checkable
class RemoteStoreProtocol(Protocol):
    """
    Per-user cloud store for the four record collections.

    Implemented by:
    - HttpRemoteStore (REST document API)
    - in-memory fakes in tests
    """

    user_id: str

    async def list(self, kind: Kind) -> list[Record]: ...

    async def get(self, kind: Kind, id: str) -> Optional[Record]: ...

    async def create(self, kind: Kind, record: Record) -> None: ...

    async def update(self, kind: Kind, id: str, fields: dict[str, Any]) -> None: ...

    async def delete(self, kind: Kind, id: str) -> None: ...

    def subscribe(self, kind: Kind, callback: SnapshotCallback) -> Unsubscribe: ...

    async def close(self) -> None: ...


def _parse_snapshot(kind: Kind, docs: Any) -> list[Record]:
    """Parse a list of remote documents, dropping malformed ones."""
    if not isinstance(docs, list):
        raise RemoteStoreError(f"Expected a list of {kind.collection}, got {type(docs).__name__}")
    records = []
    for doc in docs:
        try:
            records.append(record_from_dict(kind, doc))
        except ValueError as e:
            logger.debug("Dropping malformed remote %s: %s", kind.value, e)
    records.sort(key=lambda r: r.created_at, reverse=True)
    return records


class HttpRemoteStore:
    """REST client for the per-user document API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        user_id: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")
        self.user_id = user_id
        self._poll_interval = poll_interval

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Remote store URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._polls: set[asyncio.Task] = set()

    def _path(self, kind: Kind, id: Optional[str] = None) -> str:
        path = f"/v1/users/{self.user_id}/{Kind.parse(kind).collection}"
        return f"{path}/{id}" if id else path

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {path} failed: {e}") from e
        if resp.status_code == 404:
            raise RemoteNotFoundError(f"{method} {path}: not found")
        if resp.status_code >= 400:
            raise RemoteStoreError(
                f"{method} {path} rejected: {resp.status_code} {resp.text}"
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteStoreError(
                f"{resp.request.method} {resp.request.url.path} returned non-JSON body: {resp.text[:200]}"
            ) from e

    async def list(self, kind: Kind) -> list[Record]:
        kind = Kind.parse(kind)
        resp = await self._request(
            "GET", self._path(kind),
            params={"orderBy": "createdAt", "direction": "desc"},
        )
        data = self._json(resp)
        docs = data.get("documents", []) if isinstance(data, dict) else data
        return _parse_snapshot(kind, docs)

    async def get(self, kind: Kind, id: str) -> Optional[Record]:
        kind = Kind.parse(kind)
        try:
            resp = await self._request("GET", self._path(kind, id))
        except RemoteNotFoundError:
            return None
        try:
            return record_from_dict(kind, self._json(resp))
        except ValueError as e:
            raise RemoteStoreError(f"Malformed remote {kind.value} {id}: {e}") from e

    async def create(self, kind: Kind, record: Record) -> None:
        await self._request("PUT", self._path(kind, record.id), json=record_to_dict(record))

    async def update(self, kind: Kind, id: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", self._path(kind, id), json=fields_to_wire(fields))

    async def delete(self, kind: Kind, id: str) -> None:
        try:
            await self._request("DELETE", self._path(kind, id))
        except RemoteNotFoundError:
            pass  # already gone

    def subscribe(self, kind: Kind, callback: SnapshotCallback) -> Unsubscribe:
        """Poll a collection, delivering each distinct snapshot to callback.

        Must be called with a running event loop.
        """
        kind = Kind.parse(kind)
        task = asyncio.get_running_loop().create_task(self._poll(kind, callback))
        self._polls.add(task)
        task.add_done_callback(self._polls.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _poll(self, kind: Kind, callback: SnapshotCallback) -> None:
        last: Optional[list[dict]] = None
        while True:
            try:
                snapshot = await self.list(kind)
            except RemoteStoreError as e:
                logger.warning("Polling %s failed: %s", kind.collection, e)
            else:
                wire = [record_to_dict(r) for r in snapshot]
                if wire != last:
                    last = wire
                    try:
                        callback(snapshot)
                    except Exception as e:
                        logger.warning("Subscriber for %s failed: %s", kind.collection, e)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        """Stop polling and close the HTTP client."""
        for task in list(self._polls):
            task.cancel()
        if self._polls:
            await asyncio.gather(*self._polls, return_exceptions=True)
        await self._client.aclose()
