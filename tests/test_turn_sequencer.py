import pytest

from src.capsule_compiler.core.turn_sequencer import TURN_EVENTS, TurnRegistry, TurnSequencer, is_valid_transition
from src.capsule_compiler.domain.errors import InvalidRequest, TurnConflict, UnknownEvent


def test_second_begin_conflicts_until_failed():
    seq = TurnSequencer("s1")
    first = seq.begin_turn("hello", ["extension-a"])
    assert first.status == "active"
    assert first.extension_chain == ["extension-a"]

    with pytest.raises(TurnConflict) as exc:
        seq.begin_turn("again")
    assert exc.value.status_code == 409

    failed = seq.fail_turn("llm down")
    assert failed.status == "failed"
    assert failed.error == "llm down"

    third = seq.begin_turn("third")
    assert third.status == "active"
    assert third.turn_id != first.turn_id
    assert seq.get_context().user_input == "third"


def test_completion_event_allows_next_turn():
    seq = TurnSequencer("s1")
    seq.begin_turn("hello")
    done = seq.emit("extension-a.complete")
    assert done.status == "completed"
    assert done.events == ["extension-a.complete"]
    assert done.finished_at
    assert seq.begin_turn("next").status == "active"


def test_unknown_event_is_rejected_and_state_unchanged():
    seq = TurnSequencer("s1")
    seq.begin_turn("hello")
    with pytest.raises(UnknownEvent) as exc:
        seq.emit("extension-z.complete")
    assert exc.value.code == "INVALID_EVENT"
    assert seq.state == "active"


def test_emit_before_any_turn():
    seq = TurnSequencer("s1")
    with pytest.raises(InvalidRequest) as exc:
        seq.emit("extension-b.complete")
    assert exc.value.code == "NO_ACTIVE_TURN"


def test_emit_after_terminal_records_without_transition():
    seq = TurnSequencer("s1")
    seq.begin_turn("hello")
    seq.fail_turn("boom")
    turn = seq.emit("extension-c.complete")
    assert turn.status == "failed"
    assert turn.events == ["extension-c.complete"]


def test_fail_turn_without_turn_or_after_terminal():
    seq = TurnSequencer("s1")
    assert seq.fail_turn("nothing running") is None
    assert seq.get_context() is None

    seq.begin_turn("hello")
    seq.emit("extension-a.complete")
    turn = seq.fail_turn("late")
    assert turn.status == "completed"
    assert turn.error is None


def test_context_is_a_copy():
    seq = TurnSequencer("s1")
    seq.begin_turn("hello")
    seq.get_context().events.append("tampered")
    assert seq.get_context().events == []


def test_registry_isolates_sessions():
    registry = TurnRegistry()
    registry.begin_turn("a", "one")
    # a different session is not blocked by session a's active turn
    assert registry.begin_turn("b", "two").session_id == "b"
    with pytest.raises(TurnConflict):
        registry.begin_turn("a", "again")
    assert registry.for_session("a") is registry.for_session("a")


def test_transition_table():
    assert is_valid_transition("idle", "active")
    assert not is_valid_transition("active", "active")
    assert is_valid_transition("failed", "active")
    assert all(TURN_EVENTS.values())


def test_registry_lookup_does_not_register():
    registry = TurnRegistry()
    assert registry.get("nobody") is None
    registry.begin_turn("a", "one")
    assert registry.get("a") is registry.for_session("a")
    assert registry.get("b") is None
