"""
brainsync: offline-first notebook with remote sync.

Example:
    from brainsync import Notebook, classify

    async with Notebook() as nb:
        result = classify("buy milk @tomorrow;")
        await nb.add(result.kind, result.content, **result.fields())
"""

from .api import Notebook, RecordNotFoundError, UndoHandle
from .classifier import Classification, classify
from .types import (
    InvestmentNote,
    Kind,
    Priority,
    Record,
    RecordState,
    TaggedNote,
    Task,
    Thought,
)

__all__ = [
    "Notebook",
    "RecordNotFoundError",
    "UndoHandle",
    "Classification",
    "classify",
    "InvestmentNote",
    "Kind",
    "Priority",
    "Record",
    "RecordState",
    "TaggedNote",
    "Task",
    "Thought",
]
