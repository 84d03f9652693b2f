"""Tests for brainsync.outbox: durable FIFO of mirror writes."""

from datetime import datetime, timedelta, timezone

import pytest

from brainsync.outbox import LOCAL_OWNER, OP_CREATE, OP_DELETE, OP_MOVE, OP_UPDATE, Outbox
from brainsync.types import Kind


@pytest.fixture
def outbox(tmp_path):
    box = Outbox(tmp_path / "outbox.db", backoff_base=2.0, backoff_max=30.0)
    yield box
    box.close()


class TestQueue:
    def test_fifo_per_user(self, outbox):
        outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a", {"record": {"id": "a"}})
        outbox.enqueue("u2", OP_CREATE, Kind.TASK, "b")
        outbox.enqueue("u1", OP_UPDATE, Kind.TASK, "a", {"fields": {"isCompleted": True}})

        first = outbox.next("u1")
        assert (first.op, first.record_id) == (OP_CREATE, "a")
        assert first.payload == {"record": {"id": "a"}}
        outbox.complete(first.seq)

        second = outbox.next("u1")
        assert second.op == OP_UPDATE
        outbox.complete(second.seq)
        assert outbox.next("u1") is None
        assert outbox.count("u2") == 1

    def test_unknown_op(self, outbox):
        with pytest.raises(ValueError):
            outbox.enqueue("u1", "upsert", Kind.TASK, "a")

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "outbox.db"
        with Outbox(path) as box:
            box.enqueue("u1", OP_DELETE, Kind.THOUGHT, "a")
        with Outbox(path) as box:
            entry = box.next("u1")
            assert entry.kind == Kind.THOUGHT
            assert entry.op == OP_DELETE

    def test_amend(self, outbox):
        seq = outbox.enqueue("u1", OP_UPDATE, Kind.TASK, "a", {"fields": {}})
        outbox.amend(seq, {"fields": {}, "calendar_applied": True})
        assert outbox.peek("u1").payload["calendar_applied"] is True

    def test_clear_by_user(self, outbox):
        outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a")
        outbox.enqueue("u2", OP_CREATE, Kind.TASK, "b")
        assert outbox.clear("u1") == 1
        assert outbox.count() == 1


class TestBackoff:
    def test_fail_backs_off_exponentially(self, outbox):
        seq = outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a")
        assert outbox.fail(seq, "boom") == 2.0
        assert outbox.fail(seq, "boom") == 4.0
        assert outbox.fail(seq, "boom") == 8.0
        assert outbox.peek("u1").attempts == 3

    def test_backoff_capped(self, outbox):
        seq = outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a")
        for _ in range(10):
            delay = outbox.fail(seq)
        assert delay == 30.0

    def test_next_respects_retry_after(self, outbox):
        seq = outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a")
        outbox.fail(seq, "boom")
        assert outbox.next("u1") is None
        assert outbox.peek("u1").seq == seq
        later = datetime.now(timezone.utc) + timedelta(seconds=5)
        assert outbox.next("u1", now=later).seq == seq
        assert 0 < outbox.retry_delay("u1") <= 2.0

    def test_retry_delay_empty(self, outbox):
        assert outbox.retry_delay("u1") is None


class TestDeadLetter:
    def test_abandon_and_retry(self, outbox):
        seq = outbox.enqueue("u1", OP_CREATE, Kind.TASK, "a")
        outbox.fail(seq, "boom")
        outbox.abandon(seq, "gave up")
        assert outbox.count("u1") == 0
        failed = outbox.list_failed()
        assert failed[0]["seq"] == seq
        assert failed[0]["last_error"] == "gave up"

        assert outbox.retry_failed() == 1
        entry = outbox.next("u1")
        assert entry.seq == seq
        assert entry.attempts == 0


class TestPendingKinds:
    def test_move_counts_source(self, outbox):
        outbox.enqueue("u1", OP_MOVE, Kind.THOUGHT, "new", {"source_kind": "task", "source_id": "old"})
        outbox.enqueue("u1", OP_CREATE, Kind.INVESTMENT, "x")
        outbox.enqueue("u2", OP_CREATE, Kind.TAGGED_NOTE, "y")
        assert outbox.pending_kinds("u1") == {Kind.THOUGHT, Kind.TASK, Kind.INVESTMENT}


class TestReassign:
    def test_local_entries_keep_their_place(self, outbox):
        outbox.enqueue("u1", OP_CREATE, Kind.THOUGHT, "queued-in-session")
        outbox.enqueue(LOCAL_OWNER, OP_CREATE, Kind.TASK, "queued-offline")
        outbox.enqueue(LOCAL_OWNER, OP_DELETE, Kind.TASK, "queued-offline")

        assert outbox.reassign(LOCAL_OWNER, "u1") == 2
        assert outbox.count(LOCAL_OWNER) == 0
        ids = []
        entry = outbox.next("u1")
        while entry is not None:
            ids.append((entry.op, entry.record_id))
            outbox.complete(entry.seq)
            entry = outbox.next("u1")
        assert ids == [
            (OP_CREATE, "queued-in-session"),
            (OP_CREATE, "queued-offline"),
            (OP_DELETE, "queued-offline"),
        ]

    def test_nothing_to_move(self, outbox):
        assert outbox.reassign(LOCAL_OWNER, "u1") == 0
