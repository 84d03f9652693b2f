"""
Soft-delete tombstones.

A tombstone is an in-memory capture of a deleted record, kept for a
short retention window so the deletion can be undone. The registry
tracks each soft-deleted id through an explicit state:

    TOMBSTONED --restore--> (removed; record ACTIVE again)
    TOMBSTONED --sweep----> EXPIRED --sweep (after another window)--> (forgotten)

A capture older than the window counts as EXPIRED whether or not a
sweep has run. restore() on an EXPIRED id is a no-op returning None.
restore() on an id that was never tombstoned (or already restored)
raises InvalidTransitionError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .types import Kind, Record, RecordState

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 5 * 60.0  # seconds


class InvalidTransitionError(Exception):
    """A record state transition that the lifecycle does not allow."""


@dataclass
class Tombstone:
    """Captured record awaiting undo or expiry."""
    kind: Kind
    record: Optional[Record]
    captured_at: float
    state: RecordState = RecordState.TOMBSTONED


class TombstoneRegistry:
    """Process-wide map of soft-deleted ids, owned by one Notebook."""

    def __init__(
        self,
        retention: float = DEFAULT_RETENTION,
        clock: Callable[[], float] = time.time,
    ):
        self._retention = retention
        self._clock = clock
        self._entries: dict[str, Tombstone] = {}

    @property
    def retention(self) -> float:
        return self._retention

    def capture(self, kind: Kind, record: Record) -> Tombstone:
        """ACTIVE -> TOMBSTONED. Replaces any stale entry for the same id."""
        entry = Tombstone(kind=Kind.parse(kind), record=record, captured_at=self._clock())
        self._entries[record.id] = entry
        return entry

    def _lookup(self, id: str) -> Optional[Tombstone]:
        """Entry for id, expired on the spot once its window has passed."""
        entry = self._entries.get(id)
        if entry is not None and entry.state == RecordState.TOMBSTONED:
            now = self._clock()
            if now - entry.captured_at >= self._retention:
                self._expire(entry, now)
        return entry

    @staticmethod
    def _expire(entry: Tombstone, now: float) -> None:
        entry.state = RecordState.EXPIRED
        entry.record = None
        entry.captured_at = now

    def state(self, id: str) -> RecordState:
        """State of an id as far as the registry knows (ACTIVE if untracked)."""
        entry = self._lookup(id)
        return entry.state if entry else RecordState.ACTIVE

    def get(self, id: str) -> Optional[Tombstone]:
        entry = self._lookup(id)
        if entry is None or entry.state != RecordState.TOMBSTONED:
            return None
        return entry

    def restore(self, id: str) -> Optional[Tombstone]:
        """
        TOMBSTONED -> ACTIVE. Removes and returns the capture.

        Returns:
            The tombstone, or None if the capture already expired

        Raises:
            InvalidTransitionError: id is not tombstoned
        """
        entry = self._lookup(id)
        if entry is None:
            raise InvalidTransitionError(f"Record {id} is not tombstoned")
        if entry.state == RecordState.EXPIRED:
            return None
        del self._entries[id]
        return entry

    def sweep(self, now: Optional[float] = None, max_age: Optional[float] = None) -> int:
        """
        Expire captures older than the retention window.

        Expired entries keep only their id and state for one more window
        so a stale undo can be told apart from an invalid one.

        Returns:
            Number of captures expired by this sweep
        """
        now = self._clock() if now is None else now
        max_age = self._retention if max_age is None else max_age
        expired = 0
        for id, entry in list(self._entries.items()):
            age = now - entry.captured_at
            if entry.state == RecordState.TOMBSTONED and age >= max_age:
                self._expire(entry, now)
                expired += 1
            elif entry.state == RecordState.EXPIRED and age >= max_age:
                del self._entries[id]
        if expired:
            logger.debug("Expired %d tombstones", expired)
        return expired

    def __len__(self) -> int:
        return sum(1 for id in list(self._entries) if self.get(id) is not None)
