"""
Outbox dispatcher.

Replays queued mirror writes against the remote store, oldest first, for
the session's user. Processing stops at the first failure so that writes
to the same record never overtake each other; the failed entry backs off
and the dispatcher re-arms itself on the event loop.

Calendar side effects for tasks run here, after the remote write they
depend on. They are best-effort: CalendarError is logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .calendar_client import CalendarError, CalendarProtocol, NullCalendar
from .local_store import LocalStore
from .outbox import OP_CREATE, OP_DELETE, OP_MOVE, OP_UPDATE, Outbox, OutboxEntry
from .remote import RemoteNotFoundError, RemoteStoreProtocol
from .types import (
    Kind,
    Record,
    Task,
    fields_from_wire,
    fields_to_wire,
    record_from_dict,
    record_to_dict,
    validate_fields,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10


class Dispatcher:
    """Drains one user's outbox into the remote store."""

    def __init__(
        self,
        local: LocalStore,
        outbox: Outbox,
        remote: RemoteStoreProtocol,
        calendar: Optional[CalendarProtocol] = None,
        *,
        notify: Optional[Callable[[Kind], None]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delete_on_remove: bool = False,
    ):
        """
        Args:
            notify: Called with a kind after the dispatcher changed a local
                record (calendar refs), so listeners see the new snapshot
            max_attempts: Failed attempts before an entry is dead-lettered
            delete_on_remove: Delete a task's calendar event when the task
                is deleted remotely
        """
        self._local = local
        self._outbox = outbox
        self._remote = remote
        self._calendar = calendar or NullCalendar()
        self._notify = notify or (lambda kind: None)
        self._max_attempts = max_attempts
        self._delete_on_remove = delete_on_remove

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._stopped = False

    @property
    def user_id(self) -> str:
        return self._remote.user_id

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def kick(self) -> None:
        """Start a drain in the background. Requires a running event loop."""
        if self._stopped:
            return
        task = asyncio.get_running_loop().create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_retry(self, delay: float) -> None:
        if self._stopped:
            return
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self.kick)
        logger.debug("Outbox retry for %s in %.1fs", self.user_id, delay)

    async def wait_idle(self) -> None:
        """Wait until no drain is in flight. Scheduled retries are not awaited."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Let in-flight work finish, then stop scheduling retries."""
        await self.wait_idle()
        self._stopped = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def drain(self, *, ignore_backoff: bool = False) -> dict:
        """
        Process due entries in FIFO order until the queue is empty, the
        head entry is backing off, or an entry fails.

        Args:
            ignore_backoff: Retry the head entry now even if it is backing
                off (session start, explicit sync)

        Returns:
            Dict with: processed (int), failed (int), abandoned (int), errors (list)
        """
        result = {"processed": 0, "failed": 0, "abandoned": 0, "errors": []}
        async with self._lock:
            while not self._stopped:
                if ignore_backoff:
                    entry = self._outbox.peek(self.user_id)
                else:
                    entry = self._outbox.next(self.user_id)
                if entry is None:
                    delay = self._outbox.retry_delay(self.user_id)
                    if delay:
                        self._schedule_retry(delay)
                    break

                try:
                    logger.info(
                        "Mirroring %s %s %s (attempt %d)",
                        entry.op, entry.kind.value, entry.record_id, entry.attempts + 1,
                    )
                    await self._apply(entry)
                except RemoteNotFoundError as e:
                    if entry.op not in (OP_UPDATE, OP_DELETE):
                        error_msg = f"{type(e).__name__}: {e}"
                        if self._record_failure(entry, error_msg, result):
                            break
                        continue
                    logger.warning(
                        "Remote %s %s is gone, dropping %s",
                        entry.kind.value, entry.record_id, entry.op,
                    )
                    self._outbox.complete(entry.seq)
                    result["processed"] += 1
                except Exception as e:
                    error_msg = f"{type(e).__name__}: {e}"
                    if self._record_failure(entry, error_msg, result):
                        break
                else:
                    self._outbox.complete(entry.seq)
                    result["processed"] += 1
        return result

    def _record_failure(self, entry: OutboxEntry, error_msg: str, result: dict) -> bool:
        """Back off or dead-letter a failed entry.

        Returns:
            True if draining must stop (the entry will be retried)
        """
        result["errors"].append(f"{entry.record_id}: {error_msg}")
        if entry.attempts + 1 >= self._max_attempts:
            self._outbox.abandon(entry.seq, error=error_msg)
            result["abandoned"] += 1
            return False
        delay = self._outbox.fail(entry.seq, error=error_msg)
        logger.warning(
            "Mirror %s %s %s failed: %s",
            entry.op, entry.kind.value, entry.record_id, error_msg,
        )
        result["failed"] += 1
        self._schedule_retry(delay)
        return True

    async def _apply(self, entry: OutboxEntry) -> None:
        if entry.op == OP_CREATE:
            await self._apply_create(entry)
        elif entry.op == OP_UPDATE:
            await self._apply_update(entry)
        elif entry.op == OP_DELETE:
            await self._apply_delete(entry)
        elif entry.op == OP_MOVE:
            await self._apply_move(entry)
        else:
            raise ValueError(f"Unknown outbox op: {entry.op!r}")

    async def _apply_create(self, entry: OutboxEntry) -> None:
        record = record_from_dict(entry.kind, entry.payload["record"])
        await self._remote.create(entry.kind, record)
        await self._after_create(entry, record)

    async def _apply_update(self, entry: OutboxEntry) -> None:
        fields = validate_fields(entry.kind, fields_from_wire(entry.payload.get("fields", {})))
        if (
            entry.kind == Kind.TASK
            and "due_date" in fields
            and self._calendar.authorized
            and not entry.payload.get("calendar_applied")
        ):
            fields = await self._sync_due_date(entry.record_id, fields)
            payload = dict(entry.payload, fields=fields_to_wire(fields), calendar_applied=True)
            self._outbox.amend(entry.seq, payload)
        await self._remote.update(entry.kind, entry.record_id, fields)

    async def _apply_delete(self, entry: OutboxEntry) -> None:
        await self._remote.delete(entry.kind, entry.record_id)
        await self._remove_event(entry.payload.get("calendar_event_ref"))

    async def _apply_move(self, entry: OutboxEntry) -> None:
        """Create the converted record, then delete its source."""
        record = record_from_dict(entry.kind, entry.payload["record"])
        source_kind = Kind.parse(entry.payload["source_kind"])
        source_id = entry.payload["source_id"]

        if not entry.payload.get("created"):
            await self._remote.create(entry.kind, record)
            entry.payload = dict(entry.payload, created=True)
            self._outbox.amend(entry.seq, entry.payload)
            await self._after_create(entry, record)

        await self._remote.delete(source_kind, source_id)
        await self._remove_event(entry.payload.get("calendar_event_ref"))

    # -------------------------------------------------------------------------
    # Calendar side effects
    # -------------------------------------------------------------------------

    async def _after_create(self, entry: OutboxEntry, record: Record) -> None:
        """Give a freshly mirrored task with a due date its calendar event."""
        if not isinstance(record, Task) or record.due_date is None:
            return
        if record.calendar_event_ref or not self._calendar.authorized:
            return
        if entry.payload.get("calendar_applied"):
            return

        try:
            ref = await self._calendar.create_event(record.content, record.due_date)
        except CalendarError as e:
            logger.warning("Calendar event for task %s not created: %s", record.id, e)
            return

        entry.payload = dict(entry.payload, calendar_applied=True)
        self._outbox.amend(entry.seq, entry.payload)

        updated = self._local.update(Kind.TASK, record.id, {"calendar_event_ref": ref})
        if updated is None:
            # Task was deleted locally while the event was being created
            logger.info("Task %s vanished before its event was attached", record.id)
            await self._remove_event(ref, force=True)
            return
        self._notify(Kind.TASK)
        self._outbox.enqueue(
            self.user_id, OP_UPDATE, Kind.TASK, record.id,
            {"fields": fields_to_wire({"calendar_event_ref": ref}), "calendar_applied": True},
        )

    async def _sync_due_date(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Reconcile the calendar with a due date change.

        The current event ref is read from the remote task, never the local
        cache. Returns the fields to send, with calendar_event_ref set when
        an event was created or removed.
        """
        remote_task = await self._remote.get(Kind.TASK, task_id)
        if remote_task is None:
            raise RemoteNotFoundError(f"Remote task {task_id} not found")

        ref = remote_task.calendar_event_ref
        due = fields["due_date"]
        title = fields.get("content") or remote_task.content
        fields = dict(fields)
        try:
            if due is not None and not ref:
                fields["calendar_event_ref"] = await self._calendar.create_event(title, due)
            elif due is not None:
                await self._calendar.update_event(ref, title, due)
            elif ref:
                await self._calendar.delete_event(ref)
                fields["calendar_event_ref"] = None
        except CalendarError as e:
            logger.warning("Calendar sync for task %s failed: %s", task_id, e)
            return fields

        if "calendar_event_ref" in fields:
            new_ref = fields["calendar_event_ref"]
            local = self._local.get(Kind.TASK, task_id)
            if local is not None and local.calendar_event_ref != new_ref:
                self._local.update(Kind.TASK, task_id, {"calendar_event_ref": new_ref})
                self._notify(Kind.TASK)
        return fields

    async def _remove_event(self, ref: Optional[str], *, force: bool = False) -> None:
        if not ref or not self._calendar.authorized:
            return
        if not (force or self._delete_on_remove):
            return
        try:
            await self._calendar.delete_event(ref)
        except CalendarError as e:
            logger.warning("Calendar event %s not deleted: %s", ref, e)


def create_payload(record: Record) -> dict:
    """Outbox payload for a full-record create."""
    return {"record": record_to_dict(record)}
