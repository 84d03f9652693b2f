"""
Local record store using SQLite.

Each kind's collection is kept as a single JSON list (newest first),
rewritten in full on every mutation. This is the offline-first cache and
the source of truth while no remote session is active.

Reads never raise for bad data: malformed entries are dropped and an
unparseable collection reads as empty.

A separate flags table holds per-user markers (the migration flag) so
that clearing the data collections never forgets them.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from .types import (
    KIND_ORDER,
    Kind,
    Record,
    apply_fields,
    record_from_dict,
    record_to_dict,
)

logger = logging.getLogger(__name__)

MIGRATION_FLAG_PREFIX = "migration-completed-"


def migration_flag_key(user_id: str) -> str:
    return f"{MIGRATION_FLAG_PREFIX}{user_id}"


def _sort_newest_first(records: Iterable[Record]) -> list[Record]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)


class LocalStore:
    """
    SQLite-backed key-value store for the four record collections.

    All operations are synchronous. Mutations persist the full updated
    collection for the kind they touch.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                name TEXT PRIMARY KEY,
                records_json TEXT NOT NULL DEFAULT '[]'
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS flags (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Raw collection access
    # -------------------------------------------------------------------------

    def _read(self, kind: Kind) -> list[Record]:
        cursor = self._conn.execute(
            "SELECT records_json FROM collections WHERE name = ?",
            (kind.collection,),
        )
        row = cursor.fetchone()
        if row is None:
            return []
        try:
            raw = json.loads(row[0])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Failed to parse %s collection: %s", kind.collection, e)
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring %s collection: not a list", kind.collection)
            return []

        records = []
        for entry in raw:
            try:
                records.append(record_from_dict(kind, entry))
            except ValueError as e:
                logger.debug("Dropping malformed %s entry: %s", kind.value, e)
        return _sort_newest_first(records)

    def _write(self, kind: Kind, records: Iterable[Record], *, commit: bool = True) -> None:
        records_json = json.dumps(
            [record_to_dict(r) for r in _sort_newest_first(records)],
            ensure_ascii=False,
        )
        self._conn.execute("""
            INSERT OR REPLACE INTO collections (name, records_json)
            VALUES (?, ?)
        """, (kind.collection, records_json))
        if commit:
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def list(self, kind: Kind) -> list[Record]:
        """All valid records of a kind, newest first by created_at."""
        with self._lock:
            return self._read(Kind.parse(kind))

    def get(self, kind: Kind, id: str) -> Optional[Record]:
        """Get a record by id, or None."""
        for record in self.list(kind):
            if record.id == id:
                return record
        return None

    def find(self, id: str) -> Optional[Record]:
        """Locate a record by id across all kinds."""
        for kind in KIND_ORDER:
            record = self.get(kind, id)
            if record is not None:
                return record
        return None

    def count(self, kind: Kind) -> int:
        return len(self.list(kind))

    def is_empty(self) -> bool:
        """True if no kind holds any record."""
        return all(self.count(kind) == 0 for kind in KIND_ORDER)

    def list_subtags(self, reserved_tag: str) -> list[str]:
        """
        Distinct sub-tags used by tagged notes.

        Sub-tags are the tags following the reserved category tag.

        Returns:
            Sorted list of distinct sub-tags
        """
        subtags: set[str] = set()
        for note in self.list(Kind.TAGGED_NOTE):
            if reserved_tag in note.tags:
                subtags.update(note.tags[note.tags.index(reserved_tag) + 1:])
        return sorted(subtags)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def save(self, kind: Kind, record: Record) -> None:
        """Insert a record, replacing any existing record with the same id."""
        kind = Kind.parse(kind)
        with self._lock:
            records = [r for r in self._read(kind) if r.id != record.id]
            records.append(record)
            self._write(kind, records)

    def update(self, kind: Kind, id: str, fields: dict[str, Any]) -> Optional[Record]:
        """
        Apply a partial update to an existing record.

        Returns:
            The updated record, or None if no record has that id
        """
        kind = Kind.parse(kind)
        with self._lock:
            records = self._read(kind)
            for i, record in enumerate(records):
                if record.id == id:
                    records[i] = apply_fields(record, fields)
                    self._write(kind, records)
                    return records[i]
        return None

    def delete(self, kind: Kind, id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if the record existed and was deleted
        """
        kind = Kind.parse(kind)
        with self._lock:
            records = self._read(kind)
            remaining = [r for r in records if r.id != id]
            if len(remaining) == len(records):
                return False
            self._write(kind, remaining)
            return True

    def replace(self, kind: Kind, records: Iterable[Record]) -> None:
        """Overwrite a whole collection (used by the remote pull)."""
        kind = Kind.parse(kind)
        with self._lock:
            self._write(kind, records)

    def move(self, source_kind: Kind, id: str, target_kind: Kind, record: Record) -> bool:
        """
        Delete a record from one collection and insert another record into
        a second collection, in one transaction.

        Returns:
            True if the source record existed (nothing is written otherwise)
        """
        source_kind = Kind.parse(source_kind)
        target_kind = Kind.parse(target_kind)
        with self._lock:
            source = self._read(source_kind)
            remaining = [r for r in source if r.id != id]
            if len(remaining) == len(source):
                return False
            target = [r for r in self._read(target_kind) if r.id != record.id]
            target.append(record)
            try:
                self._write(source_kind, remaining, commit=False)
                self._write(target_kind, target, commit=False)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return True

    def clear(self, kind: Optional[Kind] = None) -> None:
        """Clear one collection, or all four. Flags are kept."""
        kinds = KIND_ORDER if kind is None else (Kind.parse(kind),)
        with self._lock:
            for k in kinds:
                self._conn.execute("DELETE FROM collections WHERE name = ?", (k.collection,))
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Flags
    # -------------------------------------------------------------------------

    def get_flag(self, key: str) -> bool:
        cursor = self._conn.execute("SELECT value FROM flags WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row is not None and row[0] == "true"

    def set_flag(self, key: str, value: bool = True) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO flags (key, value) VALUES (?, ?)",
                (key, "true" if value else "false"),
            )
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
