"""
Notebook: the synchronization facade.

The Notebook owns the local record cache, the listener registry, the
tombstone registry and (during a session) the remote store and outbox
dispatcher. Every mutation follows the same order:

1. write the local store
2. notify listeners of the kind with the fresh local snapshot
3. queue the mirror write in the outbox (under LOCAL_OWNER when there
   is no session, claimed by the next session)
4. kick the dispatcher, which mirrors remotely and applies calendar
   side effects in the background

Steps 1 and 2 complete before the call returns, so callers never wait on
the network. Use wait_idle() to wait for the background work.

Example:
    async with Notebook() as nb:
        task = await nb.add("task", "buy milk", due_date="2025-01-10")
        undo = await nb.soft_delete("task", task.id)
        await undo()
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .backend import create_calendar, create_remote, create_stores
from .calendar_client import CalendarProtocol
from .classifier import classify
from .config import StoreConfig, get_store_path, load_or_create_config
from .dispatcher import Dispatcher, create_payload
from .listeners import Listener, ListenerRegistry, Unsubscribe
from .local_store import LocalStore
from .migration import MigrationCoordinator
from .outbox import LOCAL_OWNER, OP_CREATE, OP_DELETE, OP_MOVE, OP_UPDATE, Outbox
from .remote import RemoteStoreError, RemoteStoreProtocol
from .search import SearchResult, search
from .tombstones import InvalidTransitionError, TombstoneRegistry
from .types import (
    KIND_ORDER,
    Kind,
    Record,
    RecordState,
    Task,
    fields_to_wire,
    make_record,
    validate_fields,
)

logger = logging.getLogger(__name__)

KindLike = Union[Kind, str]


class RecordNotFoundError(KeyError):
    """No record with the given id in the given kind."""

    def __init__(self, kind: Kind, id: str):
        super().__init__(f"No {Kind.parse(kind).value} with id {id}")
        self.kind = kind
        self.id = id


class UndoHandle:
    """
    Restores a soft-deleted record when awaited: ``await handle()``.

    Returns True if the record was restored. Returns False if the capture
    has expired or the handle was already used.
    """

    def __init__(self, notebook: "Notebook", kind: Kind, id: str):
        self._notebook = notebook
        self.kind = kind
        self.id = id
        self._used = False

    @property
    def state(self) -> RecordState:
        return self._notebook._tombstones.state(self.id)

    async def __call__(self) -> bool:
        if self._used:
            return False
        self._used = True
        try:
            return await self._notebook.undo(self.id)
        except InvalidTransitionError:
            # Expired long enough ago that the registry forgot the id
            return False

    def __repr__(self) -> str:
        return f"UndoHandle({self.kind.value}, {self.id!r}, {self.state.value})"


class Notebook:
    """
    Offline-first notebook of thoughts, tasks, tagged notes and investments.

    Works on the local store alone until start_session() attaches a remote
    store for a user. Every write is queued in a durable outbox; writes
    made without a session wait there for the next one.
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        calendar: Optional[CalendarProtocol] = None,
        local: Optional[LocalStore] = None,
        outbox: Optional[Outbox] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Open (or create) a notebook store.

        Args:
            store_path: Store directory. Uses BRAINSYNC_STORE_PATH or
                ~/.brainsync if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            calendar: Injected calendar client (default: from config)
            local: Injected local store (default: SQLite in the store directory)
            outbox: Injected outbox (default: SQLite in the store directory)
            clock: Time source for tombstone expiry
        """
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(get_store_path(store_path))
        self._store_path = self._config.path

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        if local is None or outbox is None:
            bundle = create_stores(self._config)
            local = local or bundle.local
            outbox = outbox or bundle.outbox
        self._local = local
        self._outbox = outbox

        self._owns_calendar = calendar is None
        self._calendar = calendar if calendar is not None else create_calendar(self._config)

        self._listeners = ListenerRegistry()
        self._tombstones = TombstoneRegistry(self._config.sync.tombstone_retention, clock=clock)
        self._sweeper: Optional[asyncio.Task] = None

        # Session state
        self._user_id: Optional[str] = None
        self._remote: Optional[RemoteStoreProtocol] = None
        self._owns_remote = False
        self._dispatcher: Optional[Dispatcher] = None
        self._remote_subscriptions: dict[Kind, Unsubscribe] = {}

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def user_id(self) -> Optional[str]:
        """The session's user, or None in local-only mode."""
        return self._user_id

    @property
    def in_session(self) -> bool:
        return self._remote is not None

    @property
    def outbox(self) -> Outbox:
        return self._outbox

    @property
    def _note_tag(self) -> str:
        return self._config.classifier.note_tag

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list(self, kind: KindLike) -> list[Record]:
        """Records of a kind, newest first."""
        return self._local.list(Kind.parse(kind))

    def get(self, kind: KindLike, id: str) -> Optional[Record]:
        return self._local.get(Kind.parse(kind), id)

    def subtags(self) -> list[str]:
        """Distinct sub-tags of tagged notes."""
        return self._local.list_subtags(self._note_tag)

    def search(self, query: str, **filters: Any) -> list[SearchResult]:
        """Search all kinds. See search.search() for filters."""
        collections = {kind: self._local.list(kind) for kind in KIND_ORDER}
        return search(collections, query, **filters)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def add(self, kind: KindLike, content: str, **fields: Any) -> Record:
        """
        Create a record with a fresh id and creation time.

        A task with a due date gets a calendar event once it has been
        mirrored remotely (when the calendar is authorized).

        Raises:
            ValueError: a field is not valid for the kind
        """
        kind = Kind.parse(kind)
        record = make_record(kind, content, **fields)
        self._local.save(kind, record)
        self._changed(kind)
        self._mirror(OP_CREATE, kind, record.id, create_payload(record))
        return record

    async def update(self, kind: KindLike, id: str, **fields: Any) -> Optional[Record]:
        """
        Apply a partial update.

        Returns:
            The updated record, or None if no record has that id

        Raises:
            ValueError: a field is unknown, immutable, or has a bad value
        """
        kind = Kind.parse(kind)
        validated = validate_fields(kind, fields)
        updated = self._local.update(kind, id, validated)
        if updated is None:
            return None
        self._changed(kind)
        self._mirror(OP_UPDATE, kind, id, {"fields": fields_to_wire(validated)})
        return updated

    async def delete(self, kind: KindLike, id: str) -> bool:
        """
        Delete a record permanently.

        The task's calendar event is kept unless calendar.delete_on_remove
        is set.

        Returns:
            True if the record existed
        """
        return self._delete(Kind.parse(kind), id, keep_event=False)

    def _delete(self, kind: Kind, id: str, *, keep_event: bool) -> bool:
        record = self._local.get(kind, id)
        if record is None or not self._local.delete(kind, id):
            return False
        self._changed(kind)
        payload = {}
        if not keep_event and isinstance(record, Task) and record.calendar_event_ref:
            payload["calendar_event_ref"] = record.calendar_event_ref
        self._mirror(OP_DELETE, kind, id, payload)
        return True

    async def soft_delete(self, kind: KindLike, id: str) -> UndoHandle:
        """
        Delete a record but keep it restorable for the retention window.

        The calendar event of a task is never touched, so an undo brings
        the task back with a working event ref.

        Raises:
            RecordNotFoundError: no record with that id
        """
        kind = Kind.parse(kind)
        record = self._local.get(kind, id)
        if record is None:
            raise RecordNotFoundError(kind, id)
        self._tombstones.capture(kind, record)
        self._delete(kind, id, keep_event=True)
        self._ensure_sweeper()
        logger.info("Soft-deleted %s %s", kind.value, id)
        return UndoHandle(self, kind, id)

    async def undo(self, id: str) -> bool:
        """
        Restore a soft-deleted record verbatim (same id and created_at).

        Returns:
            True if restored, False if the capture already expired

        Raises:
            InvalidTransitionError: id is not soft-deleted
        """
        tombstone = self._tombstones.restore(id)
        if tombstone is None:
            logger.info("Undo of %s ignored: capture expired", id)
            return False
        record = tombstone.record
        self._local.save(tombstone.kind, record)
        self._changed(tombstone.kind)
        self._mirror(OP_CREATE, tombstone.kind, record.id, create_payload(record))
        logger.info("Restored %s %s", tombstone.kind.value, id)
        return True

    async def convert(
        self,
        target_kind: KindLike,
        id: str,
        source_kind: KindLike,
    ) -> Optional[Record]:
        """
        Move a record to another kind.

        The new record keeps only the content: it gets a new id and a new
        creation time. A tagged note target is tagged with the reserved tag.
        Locally the move is one transaction; remotely it is one outbox
        entry that creates the target before deleting the source.

        Returns:
            The new record, or None if the source does not exist

        Raises:
            ValueError: target and source kinds are the same
        """
        target_kind = Kind.parse(target_kind)
        source_kind = Kind.parse(source_kind)
        if target_kind == source_kind:
            raise ValueError(f"Record is already a {target_kind.value}")

        source = self._local.get(source_kind, id)
        if source is None:
            return None

        fields = {}
        if target_kind == Kind.TAGGED_NOTE:
            fields["tags"] = (self._note_tag,)
        record = make_record(target_kind, source.content, **fields)

        if not self._local.move(source_kind, id, target_kind, record):
            return None
        self._changed(source_kind)
        self._changed(target_kind)

        payload = create_payload(record)
        payload.update(source_kind=source_kind.value, source_id=id)
        if isinstance(source, Task) and source.calendar_event_ref:
            payload["calendar_event_ref"] = source.calendar_event_ref
        self._mirror(OP_MOVE, target_kind, record.id, payload)
        logger.info(
            "Converted %s %s to %s %s",
            source_kind.value, id, target_kind.value, record.id,
        )
        return record

    async def smart_edit(self, kind: KindLike, id: str, text: str) -> Optional[Record]:
        """
        Replace a record's text, reclassifying it.

        If the edited text classifies as the same kind, the content (and
        due date or tags) are updated in place. Otherwise the record is
        converted to the new kind and the classified fields applied.

        Returns:
            The edited record, or None if it does not exist
        """
        kind = Kind.parse(kind)
        result = classify(
            text,
            note_tag=self._note_tag,
            investment_tag=self._config.classifier.investment_tag,
        )
        fields = dict(result.fields(), content=result.content)
        if result.kind == kind:
            return await self.update(kind, id, **fields)

        converted = await self.convert(result.kind, id, kind)
        if converted is None:
            return None
        return await self.update(result.kind, converted.id, **fields)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def subscribe(self, kind: KindLike, callback: Listener) -> Unsubscribe:
        """
        Receive the snapshot of a kind now and after every change.

        During a session the remote store's pushes are reflected into the
        local cache and delivered to the same callback.

        Returns:
            A function that removes the callback
        """
        kind = Kind.parse(kind)
        remove = self._listeners.add(kind, callback)
        if self.in_session:
            self._attach_remote(kind)
        self._listeners.notify_one(callback, self._local.list(kind))

        def unsubscribe() -> None:
            remove()
            if self._listeners.count(kind) == 0:
                self._detach_remote(kind)

        return unsubscribe

    def _changed(self, kind: Kind) -> None:
        self._listeners.notify(kind, self._local.list(kind))

    def _attach_remote(self, kind: Kind) -> None:
        if kind in self._remote_subscriptions:
            return
        self._remote_subscriptions[kind] = self._remote.subscribe(
            kind, lambda snapshot: self._on_remote_snapshot(kind, snapshot),
        )

    def _detach_remote(self, kind: Kind) -> None:
        unsubscribe = self._remote_subscriptions.pop(kind, None)
        if unsubscribe is not None:
            unsubscribe()

    def _on_remote_snapshot(self, kind: Kind, snapshot: list[Record]) -> None:
        """Mirror a remote push into the local cache and listeners.

        A kind with unsent writes keeps its local state; the remote
        snapshot would roll those writes back.
        """
        if self._user_id is None:
            return
        if kind in self._outbox.pending_kinds(self._user_id):
            logger.debug("Remote push for %s deferred (unsent writes)", kind.collection)
            self._changed(kind)
            return
        self._local.replace(kind, snapshot)
        self._listeners.notify(kind, snapshot)

    # -------------------------------------------------------------------------
    # Mirroring
    # -------------------------------------------------------------------------

    def _mirror(self, op: str, kind: Kind, record_id: str, payload: dict) -> None:
        if self._user_id is None:
            self._outbox.enqueue(LOCAL_OWNER, op, kind, record_id, payload)
            return
        self._outbox.enqueue(self._user_id, op, kind, record_id, payload)
        self._dispatcher.kick()

    async def wait_idle(self) -> None:
        """Wait for in-flight mirror writes and calendar effects."""
        if self._dispatcher is not None:
            await self._dispatcher.wait_idle()

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        user_id: Optional[str] = None,
        remote: Optional[RemoteStoreProtocol] = None,
    ) -> dict:
        """
        Attach a remote store for a user.

        Runs the one-time migration if needed, claims writes made with no
        session, replays unsent writes, then pulls the remote collections
        over the local cache and notifies every listener.

        Args:
            user_id: Session user (default: remote.user_id or config)
            remote: Injected remote store (default: from config)

        Returns:
            Dict with: user_id, migration (state), migrated (counts or None),
            pulled (counts, or None if the pull failed)

        Raises:
            MigrationError: migration was needed and failed
        """
        if self.in_session:
            await self.end_session()

        owns_remote = remote is None
        if remote is None:
            remote = create_remote(self._config, user_id)
        user_id = user_id or remote.user_id

        coordinator = MigrationCoordinator(self._local, remote, user_id)
        try:
            migrated = await coordinator.run()
        except Exception:
            if owns_remote:
                await remote.close()
            raise

        if migrated is not None:
            # The migration pushed the whole local state
            self._outbox.clear(LOCAL_OWNER)
        else:
            self._outbox.reassign(LOCAL_OWNER, user_id)

        self._user_id = user_id
        self._remote = remote
        self._owns_remote = owns_remote
        self._dispatcher = Dispatcher(
            self._local,
            self._outbox,
            remote,
            self._calendar,
            notify=self._changed,
            max_attempts=self._config.sync.max_attempts,
            delete_on_remove=self._config.calendar.delete_on_remove,
        )
        drained = await self._dispatcher.drain(ignore_backoff=True)

        pulled = None
        try:
            pulled = await coordinator.pull(skip=self._outbox.pending_kinds(user_id))
        except RemoteStoreError as e:
            logger.warning("Initial pull for %s failed: %s", user_id, e)

        for kind in KIND_ORDER:
            self._changed(kind)
            if self._listeners.count(kind):
                self._attach_remote(kind)
        self._ensure_sweeper()

        logger.info("Session started for %s", user_id)
        return {
            "user_id": user_id,
            "migration": coordinator.state.value,
            "migrated": migrated,
            "drained": drained,
            "pulled": pulled,
        }

    async def end_session(self) -> None:
        """Detach the remote store. Local data and queued writes are kept."""
        if not self.in_session:
            return
        for kind in list(self._remote_subscriptions):
            self._detach_remote(kind)
        await self._dispatcher.stop()
        if self._owns_remote:
            await self._remote.close()
        logger.info("Session ended for %s", self._user_id)
        self._dispatcher = None
        self._remote = None
        self._user_id = None
        self._owns_remote = False

    async def sync(self) -> dict:
        """Drain the outbox now. Requires a session."""
        if self._dispatcher is None:
            raise RuntimeError("No session: call start_session() first")
        await self._dispatcher.wait_idle()
        return await self._dispatcher.drain(ignore_backoff=True)

    # -------------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------------

    def purge_tombstones(self, max_age: Optional[float] = None) -> int:
        """Expire soft-delete captures older than max_age (default: retention)."""
        return self._tombstones.sweep(max_age=max_age)

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = self._config.sync.sweep_interval
        while True:
            await asyncio.sleep(interval)
            self._tombstones.sweep()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """End any session and release stores and background tasks."""
        await self.end_session()
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self._owns_calendar:
            await self._calendar.close()
        self._listeners.clear()
        self._local.close()
        self._outbox.close()
        if self._ops_log_handler is not None:
            logging.getLogger("brainsync").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    async def __aenter__(self) -> "Notebook":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
