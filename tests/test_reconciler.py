"""Tests for MessageReconciler and PendingSend.

Covers seeding, optimistic sends in both resolution orders (REST response
first, real-time echo first), rollback, events that arrive before the
history page, and behaviour after close.
"""

from __future__ import annotations

import pytest

from chatsync.core.errors import EngineStateError, SendError
from chatsync.models.models import MessageOrigin, is_temp_id
from chatsync.services.reconciler import MessageReconciler, PendingSend, SendState

from conftest import make_message, message_event


@pytest.fixture
def engine():
    return MessageReconciler(room_id="3", user_id="1", username="alice")


@pytest.fixture
def seeded(engine):
    engine.seed([make_message(1, "m1"), make_message(2, "m2"), make_message(3, "m3")])
    return engine


def ids(engine):
    return [m.id for m in engine.messages]


# ---------------------------------------------------------------------------
# PendingSend
# ---------------------------------------------------------------------------

class TestPendingSend:
    def test_confirm_then_confirm_again_raises(self):
        pending = PendingSend("c1", "local-1", "hi")
        pending.confirm("10")
        assert pending.state == SendState.CONFIRMED
        assert pending.message_id == "10"
        assert pending.settled
        with pytest.raises(EngineStateError):
            pending.confirm("11")

    def test_discard_after_confirm_raises(self):
        pending = PendingSend("c1", "local-1", "hi")
        pending.confirm("10")
        with pytest.raises(EngineStateError):
            pending.discard()

    def test_confirm_after_discard_raises(self):
        pending = PendingSend("c1", "local-1", "hi")
        pending.discard()
        assert pending.state == SendState.DISCARDED
        with pytest.raises(EngineStateError):
            pending.confirm("10")


# ---------------------------------------------------------------------------
# Seed
# ---------------------------------------------------------------------------

class TestSeed:
    def test_seed_installs_history_in_order(self, seeded):
        assert ids(seeded) == ["1", "2", "3"]
        assert all(m.room_id == "3" for m in seeded.messages)
        assert seeded.seeded

    def test_seed_twice_raises(self, seeded):
        with pytest.raises(EngineStateError):
            seeded.seed([make_message(9)])

    def test_seed_skips_duplicate_ids(self, engine):
        engine.seed([make_message(1), make_message(1), make_message(2)])
        assert ids(engine) == ["1", "2"]

    def test_seed_notifies_listener(self):
        seen = []
        engine = MessageReconciler("3", "1", on_change=seen.append)
        engine.seed([make_message(1)])
        assert len(seen) == 1
        assert [m.id for m in seen[0]] == ["1"]


# ---------------------------------------------------------------------------
# Real-time events
# ---------------------------------------------------------------------------

class TestApplyEvent:
    def test_new_message_appended(self, seeded):
        message = seeded.apply_event(message_event(4, "m4"))
        assert message.id == "4"
        assert ids(seeded) == ["1", "2", "3", "4"]

    def test_duplicate_delivery_ignored(self, seeded):
        seeded.apply_event(message_event(4))
        assert seeded.apply_event(message_event(4)) is None
        assert ids(seeded) == ["1", "2", "3", "4"]

    def test_event_for_message_in_history_ignored(self, seeded):
        assert seeded.apply_event(message_event(2)) is None
        assert len(seeded) == 3

    def test_nested_message_shape(self, seeded):
        seeded.apply_event({"groupId": 3, "message": {"id": 7, "user_id": 2, "content": "x"}})
        assert "7" in seeded

    def test_malformed_event_dropped(self, seeded):
        assert seeded.apply_event({"groupId": 3, "content": "no id"}) is None
        assert seeded.apply_event("garbage") is None
        assert len(seeded) == 3

    def test_out_of_order_timestamps_keep_arrival_order(self, seeded):
        seeded.apply_event(message_event(5, created_at="2026-01-01T12:00:00Z"))
        seeded.apply_event(message_event(4, created_at="2026-01-01T11:00:00Z"))
        assert ids(seeded) == ["1", "2", "3", "5", "4"]

    def test_events_before_seed_are_replayed_after(self, engine):
        assert engine.apply_event(message_event(3)) is None
        assert engine.apply_event(message_event(4)) is None
        assert len(engine) == 0

        engine.seed([make_message(1), make_message(2), make_message(3)])
        assert ids(engine) == ["1", "2", "3", "4"]

    def test_buffer_is_bounded(self):
        engine = MessageReconciler("3", "1", max_buffered=2)
        for i in range(10, 15):
            engine.apply_event(message_event(i))
        engine.seed([])
        assert ids(engine) == ["13", "14"]


# ---------------------------------------------------------------------------
# Optimistic sends
# ---------------------------------------------------------------------------

class TestOptimisticSend:
    def test_add_optimistic_appends_local_entry(self, seeded):
        pending = seeded.add_optimistic("hello")
        last = seeded.messages[-1]
        assert is_temp_id(last.id)
        assert last.is_optimistic
        assert last.author_id == "1"
        assert last.author_name == "alice"
        assert last.client_id == pending.client_id
        assert seeded.pending_sends == (pending,)

    def test_add_optimistic_before_seed_raises(self, engine):
        with pytest.raises(EngineStateError):
            engine.add_optimistic("too early")

    def test_confirm_then_echo_yields_one_entry(self, seeded):
        pending = seeded.add_optimistic("hello")
        confirmed = seeded.confirm(pending, {"id": 10, "content": "hello"})
        assert confirmed.id == "10"
        assert confirmed.origin == MessageOrigin.CONFIRMED

        assert seeded.apply_event(message_event(10, "hello", user_id="1", clientId=pending.client_id)) is None
        assert ids(seeded) == ["1", "2", "3", "10"]
        assert seeded.pending_sends == ()

    def test_echo_with_client_id_then_confirm_yields_one_entry(self, seeded):
        pending = seeded.add_optimistic("hello")
        echoed = seeded.apply_event(message_event(10, "hello", user_id="1", clientId=pending.client_id))
        assert echoed.id == "10"
        assert pending.state == SendState.CONFIRMED

        confirmed = seeded.confirm(pending, {"id": 10})
        assert confirmed.id == "10"
        assert ids(seeded) == ["1", "2", "3", "10"]
        assert not any(m.is_optimistic for m in seeded.messages)

    def test_echo_without_client_id_then_confirm_merges(self, seeded):
        pending = seeded.add_optimistic("hello")
        seeded.apply_event(message_event(10, "hello", user_id="1"))
        # optimistic copy and echo are both listed until the confirmation
        assert len(seeded) == 5

        confirmed = seeded.confirm(pending, {"id": 10})
        assert confirmed.id == "10"
        assert ids(seeded) == ["1", "2", "3", "10"]

    def test_confirm_keeps_position(self, seeded):
        pending = seeded.add_optimistic("mine")
        seeded.apply_event(message_event(11, "theirs"))
        seeded.confirm(pending, {"id": 12})
        assert ids(seeded) == ["1", "2", "3", "12", "11"]

    def test_confirm_takes_server_timestamp(self, seeded):
        pending = seeded.add_optimistic("hello")
        confirmed = seeded.confirm(pending, {"id": 10, "created_at": "2026-01-01T10:05:00Z"})
        assert confirmed.created_at.isoformat().startswith("2026-01-01T10:05:00")

    def test_confirm_accepts_nested_response(self, seeded):
        pending = seeded.add_optimistic("hello")
        confirmed = seeded.confirm(pending, {"message": {"id": 10}})
        assert confirmed.id == "10"

    def test_confirm_without_id_rolls_back(self, seeded):
        pending = seeded.add_optimistic("hello")
        with pytest.raises(SendError):
            seeded.confirm(pending, {"ok": True})
        assert pending.state == SendState.DISCARDED
        assert ids(seeded) == ["1", "2", "3"]

    def test_fail_removes_optimistic_entry(self, seeded):
        pending = seeded.add_optimistic("hello")
        seeded.fail(pending)
        assert ids(seeded) == ["1", "2", "3"]
        assert pending.state == SendState.DISCARDED

    def test_fail_after_confirm_raises(self, seeded):
        pending = seeded.add_optimistic("hello")
        seeded.confirm(pending, {"id": 10})
        with pytest.raises(EngineStateError):
            seeded.fail(pending)
        assert "10" in seeded

    def test_confirm_after_fail_raises(self, seeded):
        pending = seeded.add_optimistic("hello")
        seeded.fail(pending)
        with pytest.raises(EngineStateError):
            seeded.confirm(pending, {"id": 10})

    def test_concurrent_sends_resolve_independently(self, seeded):
        first = seeded.add_optimistic("same")
        second = seeded.add_optimistic("same")
        seeded.apply_event(message_event(21, "same", user_id="1", clientId=second.client_id))
        seeded.confirm(first, {"id": 20})
        seeded.confirm(second, {"id": 21})
        assert ids(seeded) == ["1", "2", "3", "20", "21"]


# ---------------------------------------------------------------------------
# Older history
# ---------------------------------------------------------------------------

class TestPrependHistory:
    def test_older_page_inserted_before(self, seeded):
        inserted = seeded.prepend_history([make_message(99, "old"), make_message(1)])
        assert [m.id for m in inserted] == ["99"]
        assert ids(seeded) == ["99", "1", "2", "3"]

    def test_ignored_before_seed(self, engine):
        assert engine.prepend_history([make_message(1)]) == []


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

class TestClose:
    def test_inputs_after_close_ignored(self, seeded):
        seeded.close()
        assert seeded.apply_event(message_event(4)) is None
        assert ids(seeded) == ["1", "2", "3"]
        with pytest.raises(EngineStateError):
            seeded.add_optimistic("late")

    def test_confirm_after_close_settles_without_touching_list(self, seeded):
        pending = seeded.add_optimistic("hello")
        before = ids(seeded)
        seeded.close()
        assert seeded.confirm(pending, {"id": 10}) is None
        assert pending.state == SendState.CONFIRMED
        assert ids(seeded) == before

    def test_seed_after_close_ignored(self, engine):
        engine.close()
        engine.seed([make_message(1)])
        assert len(engine) == 0
        assert not engine.seeded

    def test_listener_dropped_on_close(self):
        seen = []
        engine = MessageReconciler("3", "1", on_change=seen.append)
        engine.seed([])
        engine.close()
        engine.apply_event(message_event(1))
        assert len(seen) == 1
