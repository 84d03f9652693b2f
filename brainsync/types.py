"""
Data types for the notebook.

Four record kinds share a common shape (id, content, created_at) plus
kind-specific fields. Records are immutable snapshots; updates produce
new copies via apply_fields().

The wire format (local JSON blobs and remote documents) uses camelCase
keys and ISO-8601 timestamps. Partial updates use snake_case field names.
"""

import uuid
from dataclasses import dataclass, fields as dc_fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


class Kind(str, Enum):
    """The four record categories."""
    THOUGHT = "thought"
    TASK = "task"
    TAGGED_NOTE = "tagged_note"
    INVESTMENT = "investment"

    @property
    def collection(self) -> str:
        """Collection name used for local keys and remote paths."""
        return _COLLECTIONS[self]

    @classmethod
    def parse(cls, value: Union[str, "Kind"]) -> "Kind":
        """Accept a kind, its value, or its collection name."""
        if isinstance(value, Kind):
            return value
        value = value.strip().lower().replace("-", "_")
        for kind in cls:
            if value in (kind.value, kind.collection):
                return kind
        raise ValueError(f"Unknown kind: {value!r}")


_COLLECTIONS = {
    Kind.THOUGHT: "thoughts",
    Kind.TASK: "tasks",
    Kind.TAGGED_NOTE: "tagged_notes",
    Kind.INVESTMENT: "investments",
}

# Migration push order
KIND_ORDER = (Kind.THOUGHT, Kind.TASK, Kind.TAGGED_NOTE, Kind.INVESTMENT)


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecordState(str, Enum):
    """Visible lifecycle of a record that has been soft-deleted.

    ACTIVE records live in a collection. TOMBSTONED records are gone from
    their collection but restorable. EXPIRED records lost their capture
    to the retention sweep; undo is a no-op for them.
    """
    ACTIVE = "active"
    TOMBSTONED = "tombstoned"
    EXPIRED = "expired"


def new_id() -> str:
    """Fresh client-side record id. Never reused."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime (millisecond precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Accepts 'Z' suffixes and naive values (treated as UTC).
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Canonical wire form: YYYY-MM-DDTHH:MM:SS.mmmZ"""
    dt = parse_timestamp(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def normalize_tags(tags) -> tuple[str, ...]:
    """Ordered, de-duplicated tag tuple."""
    if tags is None:
        return ()
    if isinstance(tags, str):
        raise ValueError("tags must be a sequence of strings, not a string")
    seen: dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            raise ValueError(f"Tag must be a string: {tag!r}")
        seen.setdefault(tag, None)
    return tuple(seen)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Record:
    """Common shape of every record. created_at never changes once set."""
    id: str
    content: str
    created_at: datetime

    kind = None  # type: Optional[Kind]


@dataclass(frozen=True)
class Thought(Record):
    tags: tuple[str, ...] = ()

    kind = Kind.THOUGHT


@dataclass(frozen=True)
class Task(Record):
    is_completed: bool = False
    priority: Priority = Priority.MEDIUM
    due_date: Optional[datetime] = None
    calendar_event_ref: Optional[str] = None  # absent until a due date creates one

    kind = Kind.TASK


@dataclass(frozen=True)
class TaggedNote(Record):
    """Note whose tags start with the reserved category tag, then sub-tags."""
    tags: tuple[str, ...] = ()

    kind = Kind.TAGGED_NOTE


@dataclass(frozen=True)
class InvestmentNote(Record):
    tags: tuple[str, ...] = ()

    kind = Kind.INVESTMENT


RECORD_TYPES: dict[Kind, type] = {
    Kind.THOUGHT: Thought,
    Kind.TASK: Task,
    Kind.TAGGED_NOTE: TaggedNote,
    Kind.INVESTMENT: InvestmentNote,
}

# snake_case field name -> camelCase wire key
_WIRE_KEYS = {
    "id": "id",
    "content": "content",
    "created_at": "createdAt",
    "tags": "tags",
    "is_completed": "isCompleted",
    "priority": "priority",
    "due_date": "dueDate",
    "calendar_event_ref": "calendarEventRef",
}
_FIELD_NAMES = {v: k for k, v in _WIRE_KEYS.items()}

IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def mutable_fields(kind: Kind) -> frozenset[str]:
    """Field names a partial update may touch for this kind."""
    names = {f.name for f in dc_fields(RECORD_TYPES[kind])}
    return frozenset(names - IMMUTABLE_FIELDS)


def _coerce_field(name: str, value: Any) -> Any:
    """Coerce a single snake_case field value to its in-memory type."""
    if name == "content":
        if not isinstance(value, str):
            raise ValueError(f"content must be a string: {value!r}")
        return value
    if name == "tags":
        return normalize_tags(value)
    if name == "is_completed":
        if not isinstance(value, bool):
            raise ValueError(f"is_completed must be a bool: {value!r}")
        return value
    if name == "priority":
        return Priority(value)
    if name in ("due_date", "created_at"):
        if value is None or value == "":
            if name == "created_at":
                raise ValueError("created_at is required")
            return None
        return parse_timestamp(value)
    if name == "calendar_event_ref":
        # An empty string on the wire means "cleared"
        return value or None
    return value


def validate_fields(kind: Kind, fields: dict[str, Any]) -> dict[str, Any]:
    """
    Validate and coerce a partial update for a kind.

    Raises:
        ValueError: unknown field, immutable field, or bad value
    """
    kind = Kind.parse(kind)
    allowed = mutable_fields(kind)
    coerced = {}
    for name, value in fields.items():
        if name in IMMUTABLE_FIELDS:
            raise ValueError(f"Field {name!r} cannot be updated")
        if name not in allowed:
            raise ValueError(f"Field {name!r} is not valid for {kind.value}")
        coerced[name] = _coerce_field(name, value)
    return coerced


def make_record(
    kind: Kind,
    content: str,
    *,
    id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    **fields: Any,
) -> Record:
    """Build a new record of the given kind with a fresh id and timestamp."""
    kind = Kind.parse(kind)
    extra = validate_fields(kind, fields)
    extra.pop("content", None)
    return RECORD_TYPES[kind](
        id=id or new_id(),
        content=content.strip(),
        created_at=created_at or utc_now(),
        **extra,
    )


def apply_fields(record: Record, fields: dict[str, Any]) -> Record:
    """Return a copy of record with validated fields applied."""
    return replace(record, **validate_fields(record.kind, fields))


def field_names(record: Record) -> list[str]:
    return [f.name for f in dc_fields(record)]


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _wire_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in ("created_at", "due_date"):
        return format_timestamp(value)
    if name == "tags":
        return list(value)
    if isinstance(value, Enum):
        return value.value
    return value


def record_to_dict(record: Record) -> dict[str, Any]:
    """Serialize a record to its JSON-ready wire form. None fields are omitted."""
    out = {}
    for name in field_names(record):
        value = _wire_value(name, getattr(record, name))
        if value is not None:
            out[_WIRE_KEYS[name]] = value
    return out


def record_from_dict(kind: Kind, data: Any) -> Record:
    """
    Parse a wire dict into a record of the given kind.

    Unknown keys are ignored. Raises ValueError for malformed input.
    """
    kind = Kind.parse(kind)
    if not isinstance(data, dict):
        raise ValueError(f"Record must be an object: {data!r}")
    record_id = data.get("id")
    if not isinstance(record_id, str) or not record_id:
        raise ValueError(f"Record id missing or invalid: {record_id!r}")
    if "content" not in data:
        raise ValueError(f"Record {record_id} has no content")

    cls = RECORD_TYPES[kind]
    kwargs: dict[str, Any] = {}
    try:
        for f in dc_fields(cls):
            key = _WIRE_KEYS[f.name]
            if key in data:
                kwargs[f.name] = _coerce_field(f.name, data[key])
        return cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"Record {record_id} is malformed: {e}") from e


def fields_to_wire(fields: dict[str, Any]) -> dict[str, Any]:
    """Serialize a partial update. Cleared values become None."""
    return {_WIRE_KEYS[name]: _wire_value(name, value) for name, value in fields.items()}


def fields_from_wire(data: dict[str, Any]) -> dict[str, Any]:
    """Inverse of fields_to_wire (no validation)."""
    return {_FIELD_NAMES.get(key, key): value for key, value in data.items()}
