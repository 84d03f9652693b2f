"""
Shared pytest fixtures for brainsync tests.

Provides in-memory fakes for the remote store and the calendar so tests
never touch the network.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio

from brainsync.api import Notebook
from brainsync.calendar_client import CalendarError
from brainsync.config import StoreConfig
from brainsync.remote import RemoteNotFoundError, RemoteStoreError
from brainsync.types import Kind, Record, apply_fields


class FakeRemoteStore:
    """
    In-memory remote store.

    Set ``offline = True`` to make every call raise RemoteStoreError, or
    ``fail_ops`` to a set of operation names to fail only those.
    subscribe() delivers the snapshot immediately and after every change.
    """

    def __init__(self, user_id: str = "user-1"):
        self.user_id = user_id
        self.collections: dict[Kind, dict[str, Record]] = {kind: {} for kind in Kind}
        self.subscribers: dict[Kind, list] = {kind: [] for kind in Kind}
        self.calls: list[tuple] = []
        self.offline = False
        self.fail_ops: set[str] = set()
        self.closed = False

    def _check(self, op: str) -> None:
        if self.offline or op in self.fail_ops:
            raise RemoteStoreError(f"{op} failed: offline")

    def snapshot(self, kind: Kind) -> list[Record]:
        records = self.collections[Kind.parse(kind)].values()
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def seed(self, kind: Kind, *records: Record) -> None:
        for record in records:
            self.collections[Kind.parse(kind)][record.id] = record

    def push(self, kind: Kind) -> None:
        """Deliver the current snapshot to subscribers of kind."""
        for callback in list(self.subscribers[kind]):
            callback(self.snapshot(kind))

    async def list(self, kind: Kind) -> list[Record]:
        self.calls.append(("list", Kind.parse(kind)))
        self._check("list")
        return self.snapshot(kind)

    async def get(self, kind: Kind, id: str) -> Optional[Record]:
        self.calls.append(("get", Kind.parse(kind), id))
        self._check("get")
        return self.collections[Kind.parse(kind)].get(id)

    async def create(self, kind: Kind, record: Record) -> None:
        kind = Kind.parse(kind)
        self.calls.append(("create", kind, record.id))
        self._check("create")
        self.collections[kind][record.id] = record
        self.push(kind)

    async def update(self, kind: Kind, id: str, fields: dict[str, Any]) -> None:
        kind = Kind.parse(kind)
        self.calls.append(("update", kind, id, dict(fields)))
        self._check("update")
        record = self.collections[kind].get(id)
        if record is None:
            raise RemoteNotFoundError(f"{kind.value} {id} not found")
        self.collections[kind][id] = apply_fields(record, fields)
        self.push(kind)

    async def delete(self, kind: Kind, id: str) -> None:
        kind = Kind.parse(kind)
        self.calls.append(("delete", kind, id))
        self._check("delete")
        self.collections[kind].pop(id, None)
        self.push(kind)

    def subscribe(self, kind: Kind, callback):
        kind = Kind.parse(kind)
        self.subscribers[kind].append(callback)
        callback(self.snapshot(kind))

        def unsubscribe() -> None:
            if callback in self.subscribers[kind]:
                self.subscribers[kind].remove(callback)

        return unsubscribe

    async def close(self) -> None:
        self.closed = True

    def ops(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeCalendar:
    """In-memory calendar keyed by generated event refs."""

    def __init__(self, authorized: bool = True):
        self._authorized = authorized
        self.events: dict[str, tuple] = {}
        self.deleted: list[str] = []
        self.failing = False
        self._next = 0

    @property
    def authorized(self) -> bool:
        return self._authorized

    def _check(self) -> None:
        if self.failing:
            raise CalendarError("calendar unavailable")

    async def create_event(self, title, when) -> str:
        self._check()
        self._next += 1
        ref = f"evt-{self._next}"
        self.events[ref] = (title, when.date())
        return ref

    async def update_event(self, ref, title, when) -> None:
        self._check()
        self.events[ref] = (title, when.date())

    async def delete_event(self, ref) -> None:
        self._check()
        self.events.pop(ref, None)
        self.deleted.append(ref)

    async def close(self) -> None:
        pass


class FakeClock:
    """Manually advanced clock for tombstone expiry."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store_config(tmp_path: Path) -> StoreConfig:
    """Default config rooted in a temp directory."""
    return StoreConfig(path=tmp_path)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def notebook(store_config, calendar, clock):
    """Local-only notebook with a fake calendar and clock."""
    nb = Notebook(config=store_config, calendar=calendar, clock=clock)
    yield nb
    await nb.close()


@pytest_asyncio.fixture
async def online(notebook, remote):
    """Notebook in a session with the fake remote."""
    await notebook.start_session("user-1", remote=remote)
    yield notebook
