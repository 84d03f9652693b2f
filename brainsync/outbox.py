"""
Durable outbox of remote mirror writes, using SQLite.

Every local mutation is recorded here and later replayed against the
remote store by the Dispatcher. Writes made with no session are kept
under LOCAL_OWNER until the next session claims them. Entries are
strictly FIFO per user: the dispatcher only ever looks at the oldest
entry, so two writes to the same record always reach the remote in the
order they were made locally.

Failed entries use exponential backoff before retry (2s, 4s, 8s, ...
up to 5 minutes). Entries that exhaust their attempts are moved to
'failed' status (dead letter) rather than deleted, preserving the error
for diagnosis.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .types import Kind

logger = logging.getLogger(__name__)

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_BASE = 2.0
RETRY_BACKOFF_MAX = 300.0

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_MOVE = "move"
OPS = frozenset({OP_CREATE, OP_UPDATE, OP_DELETE, OP_MOVE})

# Owner of writes made with no session; handed to the next session's user
LOCAL_OWNER = ":local:"


@dataclass
class OutboxEntry:
    """A queued mirror write."""
    seq: int
    user_id: str
    op: str
    kind: Kind
    record_id: str
    payload: dict = field(default_factory=dict)
    attempts: int = 0
    queued_at: str = ""
    retry_after: Optional[str] = None


class Outbox:
    """
    SQLite-backed FIFO of pending remote writes.

    The store survives restarts, so writes made offline are delivered on
    the next session for the same user.
    """

    def __init__(
        self,
        queue_path: Path,
        *,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
    ):
        """
        Args:
            queue_path: Path to SQLite database file
        """
        self._queue_path = queue_path
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._queue_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS outbox (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                op TEXT NOT NULL,
                kind TEXT NOT NULL,
                record_id TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                queued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                last_error TEXT,
                retry_after TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outbox_user_status
            ON outbox(user_id, status, seq)
        """)
        self._conn.commit()

    @staticmethod
    def _row_to_entry(row) -> OutboxEntry:
        try:
            payload = json.loads(row[5]) if row[5] else {}
        except (json.JSONDecodeError, TypeError):
            payload = {}
        return OutboxEntry(
            seq=row[0],
            user_id=row[1],
            op=row[2],
            kind=Kind.parse(row[3]),
            record_id=row[4],
            payload=payload,
            attempts=row[6],
            queued_at=row[7],
            retry_after=row[8],
        )

    def enqueue(
        self,
        user_id: str,
        op: str,
        kind: Kind,
        record_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> int:
        """
        Append a mirror write.

        Returns:
            The entry's sequence number
        """
        if op not in OPS:
            raise ValueError(f"Unknown outbox op: {op!r}")
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            cursor = self._conn.execute("""
                INSERT INTO outbox (user_id, op, kind, record_id, payload, queued_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, op, Kind.parse(kind).value, record_id,
                  json.dumps(payload or {}, ensure_ascii=False), now))
            self._conn.commit()
            return cursor.lastrowid

    def peek(self, user_id: str) -> Optional[OutboxEntry]:
        """Oldest pending entry for a user, regardless of backoff."""
        cursor = self._conn.execute("""
            SELECT seq, user_id, op, kind, record_id, payload, attempts,
                   queued_at, retry_after
            FROM outbox
            WHERE user_id = ? AND status = 'pending'
            ORDER BY seq ASC
            LIMIT 1
        """, (user_id,))
        row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def next(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[OutboxEntry]:
        """
        Oldest pending entry for a user, if it is due.

        Returns None both when the queue is empty and when the head entry
        is still backing off; use peek() or retry_delay() to tell them apart.
        """
        entry = self.peek(user_id)
        if entry is None:
            return None
        if entry.retry_after:
            now = now or datetime.now(timezone.utc)
            if datetime.fromisoformat(entry.retry_after) > now:
                return None
        return entry

    def retry_delay(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until the head entry is due (0 if due now, None if empty)."""
        entry = self.peek(user_id)
        if entry is None:
            return None
        if not entry.retry_after:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return max(0.0, (datetime.fromisoformat(entry.retry_after) - now).total_seconds())

    def amend(self, seq: int, payload: dict[str, Any]) -> None:
        """Replace an entry's payload (records side effects already applied)."""
        with self._lock:
            self._conn.execute(
                "UPDATE outbox SET payload = ? WHERE seq = ?",
                (json.dumps(payload, ensure_ascii=False), seq),
            )
            self._conn.commit()

    def complete(self, seq: int) -> None:
        """Remove an entry after the remote acknowledged it."""
        with self._lock:
            self._conn.execute("DELETE FROM outbox WHERE seq = ?", (seq,))
            self._conn.commit()

    def fail(self, seq: int, error: Optional[str] = None) -> float:
        """Record a failed attempt and back off.

        Retry delay: min(BASE * 2^(attempts-1), MAX) seconds.

        Returns:
            The backoff delay in seconds
        """
        with self._lock:
            cursor = self._conn.execute(
                "SELECT attempts FROM outbox WHERE seq = ?", (seq,),
            )
            row = cursor.fetchone()
            attempts = (row[0] if row else 0) + 1

            delay = min(self._backoff_base * (2 ** (attempts - 1)), self._backoff_max)
            retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()

            self._conn.execute("""
                UPDATE outbox
                SET attempts = ?, last_error = ?, retry_after = ?
                WHERE seq = ?
            """, (attempts, error, retry_at, seq))
            self._conn.commit()

        logger.info(
            "Outbox entry %d failed (attempt %d), retry after %.0fs: %s",
            seq, attempts, delay, error or "unknown",
        )
        return delay

    def abandon(self, seq: int, error: Optional[str] = None) -> None:
        """Move an entry to 'failed' status (dead letter)."""
        with self._lock:
            self._conn.execute("""
                UPDATE outbox
                SET status = 'failed', last_error = ?
                WHERE seq = ?
            """, (error, seq))
            self._conn.commit()
        logger.warning("Abandoned outbox entry %d: %s", seq, error or "max attempts")

    def pending_kinds(self, user_id: str) -> set[Kind]:
        """Kinds with unsent writes for a user (a move counts for both kinds)."""
        cursor = self._conn.execute("""
            SELECT kind, op, payload FROM outbox
            WHERE user_id = ? AND status = 'pending'
        """, (user_id,))
        kinds: set[Kind] = set()
        for kind, op, payload in cursor.fetchall():
            kinds.add(Kind.parse(kind))
            if op == OP_MOVE:
                try:
                    kinds.add(Kind.parse(json.loads(payload)["source_kind"]))
                except (KeyError, ValueError, TypeError):
                    pass
        return kinds

    def count(self, user_id: Optional[str] = None) -> int:
        """Count of pending entries (excludes failed)."""
        if user_id is None:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE status = 'pending'"
            )
        else:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE status = 'pending' AND user_id = ?",
                (user_id,),
            )
        return cursor.fetchone()[0]

    def list_failed(self) -> list[dict]:
        """List entries in failed (dead letter) status."""
        cursor = self._conn.execute("""
            SELECT seq, user_id, op, kind, record_id, attempts, last_error, queued_at
            FROM outbox
            WHERE status = 'failed'
            ORDER BY seq ASC
        """)
        return [
            {
                "seq": row[0], "user_id": row[1], "op": row[2], "kind": row[3],
                "record_id": row[4], "attempts": row[5], "last_error": row[6],
                "queued_at": row[7],
            }
            for row in cursor.fetchall()
        ]

    def retry_failed(self) -> int:
        """Reset all failed entries back to pending. Returns count."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE outbox
                SET status = 'pending', attempts = 0, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
            self._conn.commit()
            count = cursor.rowcount
        if count:
            logger.info("Reset %d failed outbox entries back to pending", count)
        return count

    def reassign(self, from_user: str, to_user: str) -> int:
        """
        Move one owner's entries to another, keeping their order.

        Entries keep their sequence numbers, so claimed entries stay
        ahead of anything to_user queues afterwards.

        Returns:
            Count of entries moved
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE outbox SET user_id = ? WHERE user_id = ?",
                (to_user, from_user),
            )
            self._conn.commit()
            count = cursor.rowcount
        if count:
            logger.info("Handed %d local outbox entries to %s", count, to_user)
        return count

    def clear(self, user_id: Optional[str] = None) -> int:
        """Drop entries (all, or one user's). Returns count cleared."""
        with self._lock:
            if user_id is None:
                cursor = self._conn.execute("DELETE FROM outbox")
            else:
                cursor = self._conn.execute("DELETE FROM outbox WHERE user_id = ?", (user_id,))
            self._conn.commit()
            return cursor.rowcount

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
