"""
One-time migration of local records into a user's remote store.

The first session for a user whose remote store is empty pushes every
local record up, then a per-user flag (kept in the local store's flags
table) marks the migration done so it never runs twice. Every session
then pulls the remote collections down over the local cache.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Optional

from .local_store import LocalStore, migration_flag_key
from .remote import RemoteStoreError, RemoteStoreProtocol
from .types import KIND_ORDER, Kind, Priority, Task, make_record

logger = logging.getLogger(__name__)


class MigrationError(Exception):
    """Migration could not run to completion."""


class MigrationState(str, Enum):
    UNCHECKED = "unchecked"
    NOT_NEEDED = "not_needed"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class MigrationCoordinator:
    """Migration state machine for one authenticated session."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStoreProtocol,
        user_id: Optional[str] = None,
    ):
        self._local = local
        self._remote = remote
        self._user_id = user_id or remote.user_id
        self._state = MigrationState.UNCHECKED

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def flag_key(self) -> str:
        return migration_flag_key(self._user_id)

    def _settle(self, state: MigrationState) -> None:
        self._state = state
        self._local.set_flag(self.flag_key)

    async def check(self) -> bool:
        """
        Decide whether local records must be pushed.

        Returns:
            True if migrate() should run

        Raises:
            MigrationError: the remote store could not be read
        """
        if self._local.get_flag(self.flag_key):
            self._state = MigrationState.DONE
            return False

        if self._local.is_empty():
            logger.debug("No local records for %s, migration not needed", self._user_id)
            self._settle(MigrationState.NOT_NEEDED)
            return False

        try:
            for kind in KIND_ORDER:
                if await self._remote.list(kind):
                    logger.info(
                        "Remote store for %s already has %s, migration not needed",
                        self._user_id, kind.collection,
                    )
                    self._settle(MigrationState.NOT_NEEDED)
                    return False
        except RemoteStoreError as e:
            raise MigrationError(f"Could not inspect remote store: {e}") from e

        return True

    async def migrate(self) -> dict[str, int]:
        """
        Push every local record to the remote store.

        Kinds go in order: thoughts, tasks, tagged notes, investments.
        Records keep their ids, so a run retried after a partial failure
        overwrites what the first run created.

        Returns:
            Count of records pushed per collection

        Raises:
            MigrationError: any remote write failed; the flag is not set
        """
        self._state = MigrationState.IN_PROGRESS
        counts = {kind.collection: 0 for kind in KIND_ORDER}
        logger.info("Migrating local records for %s", self._user_id)
        try:
            for kind in KIND_ORDER:
                for record in self._local.list(kind):
                    if isinstance(record, Task):
                        await self._push_task(record)
                    else:
                        await self._remote.create(kind, record)
                    counts[kind.collection] += 1
        except RemoteStoreError as e:
            self._state = MigrationState.UNCHECKED
            logger.error("Migration for %s failed after %s: %s", self._user_id, counts, e)
            raise MigrationError(f"Migration failed: {e}") from e

        self._settle(MigrationState.DONE)
        logger.info("Migration for %s complete: %s", self._user_id, counts)
        return counts

    async def _push_task(self, task: Task) -> None:
        """Create with base fields, then patch the rest if non-default."""
        base = make_record(Kind.TASK, task.content, id=task.id, created_at=task.created_at)
        await self._remote.create(Kind.TASK, base)

        extra = {}
        if task.is_completed:
            extra["is_completed"] = True
        if task.priority != Priority.MEDIUM:
            extra["priority"] = task.priority
        if task.due_date is not None:
            extra["due_date"] = task.due_date
        if task.calendar_event_ref:
            extra["calendar_event_ref"] = task.calendar_event_ref
        if extra:
            await self._remote.update(Kind.TASK, task.id, extra)

    async def run(self) -> Optional[dict[str, int]]:
        """check() then migrate() if needed. Returns counts, or None if skipped."""
        if await self.check():
            return await self.migrate()
        return None

    async def pull(self, skip: Iterable[Kind] = ()) -> dict[str, int]:
        """
        Overwrite local collections with the remote ones.

        Kinds in skip (those with unsent outbox entries) are left alone so
        the pull cannot erase writes the remote has not seen yet.

        Returns:
            Count of records pulled per collection

        Raises:
            RemoteStoreError: a remote collection could not be read
        """
        skip = {Kind.parse(k) for k in skip}
        pulled: dict[str, int] = {}
        for kind in KIND_ORDER:
            if kind in skip:
                logger.debug("Skipping pull of %s (unsent writes)", kind.collection)
                continue
            records = await self._remote.list(kind)
            self._local.replace(kind, records)
            pulled[kind.collection] = len(records)
        logger.info("Pulled remote records for %s: %s", self._user_id, pulled)
        return pulled
