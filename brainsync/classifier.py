"""
Input classification.

Maps a raw line of text to a record kind plus normalized content and any
kind-specific fields. Pure functions, no state.

Grammar:
    "#rad chest #ct findings"     tagged note (reserved tag, then sub-tags)
    "#invest buy index fund"      investment note
    "buy milk @2025-01-10;"       task (trailing ';'), optional due date marker
    anything else                 thought
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .types import Kind

DEFAULT_NOTE_TAG = "#rad"
DEFAULT_INVESTMENT_TAG = "#invest"

TASK_SUFFIX = ";"

_TAG_RE = re.compile(r"#\w+")
_DUE_MARKER_RE = re.compile(r"\s*@(\d{4}-\d{2}-\d{2}|today|tomorrow)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class Classification:
    """Result of classify()."""
    kind: Kind
    content: str
    tags: tuple[str, ...] = ()
    due_date: Optional[datetime] = None

    def fields(self) -> dict:
        """Kind-specific fields suitable for Notebook.add()/update()."""
        if self.kind == Kind.TASK:
            return {"due_date": self.due_date} if self.due_date else {}
        if self.kind == Kind.TAGGED_NOTE:
            return {"tags": self.tags}
        return {}


def extract_tags(text: str) -> list[str]:
    """Hash tags in order of appearance, lowercased."""
    return [tag.lower() for tag in _TAG_RE.findall(text)]


def strip_tags(text: str) -> str:
    """Remove hash tags and collapse whitespace."""
    return re.sub(r"\s+", " ", _TAG_RE.sub("", text)).strip()


def subtags(tags, reserved_tag: str = DEFAULT_NOTE_TAG) -> list[str]:
    """Tags following the reserved tag (empty if it is absent)."""
    tags = list(tags)
    if reserved_tag not in tags:
        return []
    return tags[tags.index(reserved_tag) + 1:]


def parse_due_marker(text: str, *, today: Optional[datetime] = None) -> tuple[str, Optional[datetime]]:
    """
    Split a trailing due date marker off task text.

    Returns:
        (text without the marker, due date at UTC midnight or None)
    """
    match = _DUE_MARKER_RE.search(text)
    if not match:
        return text, None
    value = match.group(1).lower()
    base = (today or datetime.now(timezone.utc)).astimezone(timezone.utc)
    midnight = base.replace(hour=0, minute=0, second=0, microsecond=0)
    if value == "today":
        due = midnight
    elif value == "tomorrow":
        due = midnight + timedelta(days=1)
    else:
        try:
            due = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            return text, None
    return text[:match.start()], due


def classify(
    text: str,
    *,
    note_tag: str = DEFAULT_NOTE_TAG,
    investment_tag: str = DEFAULT_INVESTMENT_TAG,
    today: Optional[datetime] = None,
) -> Classification:
    """Classify raw input text into a kind with normalized content."""
    trimmed = text.strip()
    tags = extract_tags(trimmed)

    if note_tag.lower() in tags:
        return Classification(
            kind=Kind.TAGGED_NOTE,
            content=strip_tags(trimmed),
            tags=tuple(dict.fromkeys(tags)),
        )

    if investment_tag.lower() in tags:
        return Classification(kind=Kind.INVESTMENT, content=strip_tags(trimmed))

    if trimmed.endswith(TASK_SUFFIX):
        body, due = parse_due_marker(trimmed[:-len(TASK_SUFFIX)], today=today)
        return Classification(kind=Kind.TASK, content=body.strip(), due_date=due)

    return Classification(kind=Kind.THOUGHT, content=trimmed)
