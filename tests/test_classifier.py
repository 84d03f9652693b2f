"""Tests for brainsync.classifier: input classification."""

from datetime import datetime, timezone

import pytest

from brainsync.classifier import (
    classify,
    extract_tags,
    parse_due_marker,
    strip_tags,
    subtags,
)
from brainsync.types import Kind

TODAY = datetime(2025, 1, 9, 15, 30, tzinfo=timezone.utc)


class TestClassify:
    def test_thought(self):
        result = classify("  what if we tried X  ")
        assert result.kind == Kind.THOUGHT
        assert result.content == "what if we tried X"
        assert result.fields() == {}

    def test_task(self):
        result = classify("buy milk;")
        assert result.kind == Kind.TASK
        assert result.content == "buy milk"
        assert result.due_date is None
        assert result.fields() == {}

    def test_task_with_date(self):
        result = classify("buy milk @2025-01-10;")
        assert result.kind == Kind.TASK
        assert result.content == "buy milk"
        assert result.due_date == datetime(2025, 1, 10, tzinfo=timezone.utc)
        assert result.fields() == {"due_date": result.due_date}

    def test_task_tomorrow(self):
        result = classify("call mom @tomorrow;", today=TODAY)
        assert result.due_date == datetime(2025, 1, 10, tzinfo=timezone.utc)

    def test_tagged_note(self):
        result = classify("#rad chest #CT nodule")
        assert result.kind == Kind.TAGGED_NOTE
        assert result.content == "chest nodule"
        assert result.tags == ("#rad", "#ct")
        assert result.fields() == {"tags": ("#rad", "#ct")}

    def test_tagged_note_wins_over_task(self):
        assert classify("#rad follow up;").kind == Kind.TAGGED_NOTE

    def test_investment(self):
        result = classify("#invest buy index fund")
        assert result.kind == Kind.INVESTMENT
        assert result.content == "buy index fund"

    def test_custom_tags(self):
        result = classify("#med note", note_tag="#med")
        assert result.kind == Kind.TAGGED_NOTE
        assert classify("#rad note", note_tag="#med").kind == Kind.THOUGHT

    def test_semicolon_in_middle_is_thought(self):
        assert classify("a; b").kind == Kind.THOUGHT


class TestHelpers:
    def test_extract_tags(self):
        assert extract_tags("#Rad a #ct b") == ["#rad", "#ct"]

    def test_strip_tags(self):
        assert strip_tags("#rad  chest   #ct nodule") == "chest nodule"

    def test_subtags(self):
        assert subtags(("#x", "#rad", "#ct", "#mri"), "#rad") == ["#ct", "#mri"]
        assert subtags(("#ct",), "#rad") == []

    def test_due_marker_today(self):
        text, due = parse_due_marker("x @today", today=TODAY)
        assert text == "x"
        assert due == datetime(2025, 1, 9, tzinfo=timezone.utc)

    @pytest.mark.parametrize("text", ["x", "x @someday", "x @2025-13-45"])
    def test_no_or_invalid_marker(self, text):
        rest, due = parse_due_marker(text)
        assert due is None
        assert rest == text
