"""
Cross-kind text search over record collections.

Scoring is a simple content match, case-insensitive:

    100  content starts with the query
     90  the query starts a word
     80  the query appears anywhere
     70 * (matched query words / query words) otherwise

Records scoring zero are dropped. An empty query with a filter returns
every record passing the filters.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional

from .types import KIND_ORDER, Kind, Priority, Record, Task


@dataclass(frozen=True)
class SearchResult:
    kind: Kind
    record: Record
    score: float

    @property
    def id(self) -> str:
        return self.record.id


def match_score(content: str, query: str) -> float:
    """Score how well content matches query (0 = no match)."""
    query = query.strip().lower()
    if not query:
        return 0.0
    text = content.lower()

    if query in text:
        if text.startswith(query):
            return 100.0
        if (" " + query) in text:
            return 90.0
        return 80.0

    words = query.split()
    matched = sum(1 for word in words if word in text)
    return 70.0 * matched / len(words)


def _matches_filters(
    record: Record,
    *,
    since: Optional[datetime],
    until: Optional[datetime],
    tags: Optional[Iterable[str]],
    completed: Optional[bool],
    priority: Optional[Priority],
) -> bool:
    if since is not None and record.created_at < since:
        return False
    if until is not None and record.created_at > until:
        return False

    if tags:
        record_tags = [t.lower() for t in getattr(record, "tags", ())]
        wanted = [t.lower() for t in tags]
        if not any(w in t for w in wanted for t in record_tags):
            return False

    # Completion and priority only constrain tasks
    if isinstance(record, Task):
        if completed is not None and record.is_completed != completed:
            return False
        if priority is not None and record.priority != priority:
            return False
    return True


def search(
    collections: Mapping[Kind, list[Record]],
    query: str,
    *,
    kinds: Optional[Iterable[Kind]] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    tags: Optional[Iterable[str]] = None,
    completed: Optional[bool] = None,
    priority: Optional[Priority] = None,
) -> list[SearchResult]:
    """
    Search records across kinds.

    Args:
        collections: Records per kind (as from LocalStore.list)
        query: Free text; may be empty when a filter is given
        kinds: Restrict to these kinds (default: all)
        since, until: Inclusive created_at bounds
        tags: Keep records with a tag containing any of these
        completed: Keep tasks with this completion state
        priority: Keep tasks with this priority

    Returns:
        Results sorted by score, then newest first
    """
    tags = list(tags) if tags else None
    priority = Priority(priority) if priority is not None else None
    filtered = any(v is not None for v in (since, until, tags, completed, priority))
    if not query.strip() and not filtered:
        return []

    wanted = [Kind.parse(k) for k in kinds] if kinds else list(KIND_ORDER)
    results = []
    for kind in wanted:
        for record in collections.get(kind, []):
            score = match_score(record.content, query)
            if score <= 0 and query.strip():
                continue
            if not _matches_filters(
                record, since=since, until=until, tags=tags,
                completed=completed, priority=priority,
            ):
                continue
            results.append(SearchResult(kind=kind, record=record, score=score))

    results.sort(key=lambda r: (-r.score, -r.record.created_at.timestamp()))
    return results
