import asyncio

import pytest

from src.capsule_compiler.core.turn_sequencer import get_turn_registry
from src.capsule_compiler.domain.errors import InferenceUnavailable, NoActiveSession, StreamIdleTimeout, TurnConflict
from src.capsule_compiler.services.inference_client import InferenceResult
from src.capsule_compiler.services.turn_pipeline import run_turn

CURATOR_OUT = "FRAMING: analytical\nTOPICS: pricing, launch,\nCONTEXT: user is planning a release"
ENCODER_OUT = "TURN_SUMMARY:\nDiscussed release pricing.\n\nCONVERSATIONAL_NEXT_STEP:\nAsk about the launch date."


class FakeClient:
    def __init__(self, tokens=("Sure", ", ", "let's go."), call_error=None, stream_error=None):
        self.tokens = tokens
        self.call_error = call_error
        self.stream_error = stream_error
        self.calls = []
        self.streams = []
        self._replies = [CURATOR_OUT, ENCODER_OUT]

    def call(self, system_prompt, user_message):
        self.calls.append(user_message)
        if self.call_error:
            raise self.call_error
        return InferenceResult(text=self._replies.pop(0), tokens_generated=5)

    async def stream(self, system_prompt, user_message):
        self.streams.append(user_message)
        for token in self.tokens:
            yield {"token": token, "done": False}
        if self.stream_error:
            raise self.stream_error
        yield {"token": "", "done": True}


def _run(session_id, user_input, store, client):
    async def go():
        return [event async for event in run_turn(session_id, user_input, store=store, client=client)]

    return asyncio.run(go())


def test_full_turn_updates_surfaces_and_completes(store, session_id):
    client = FakeClient()
    events = _run(session_id, "How should we price it?", store, client)

    assert events[0]["type"] == "turn.begun"
    tokens = [e["token"] for e in events if e["type"] == "token"]
    assert tokens == ["Sure", ", ", "let's go."]
    final = events[-1]
    assert final["done"] is True
    assert final["response"] == "Sure, let's go."
    assert final["summary"] == "Discussed release pricing."
    assert final["nextStep"] == "Ask about the launch date."
    assert all(not e["done"] for e in events[:-1])

    # curator saw the user's message, the responder did not
    assert client.calls[0].endswith("[USER]\nHow should we price it?")
    assert "[INTUITION: intuition-outline]" in client.calls[0]
    assert "[USER]" not in client.streams[0]
    assert "Framing: analytical" in client.streams[0]
    # encoder saw the accumulated trace
    assert "Llm2 Output: Sure, let's go." in client.calls[1]

    capsule = store.read(session_id, "capsule")
    assert capsule["head"] == {
        "framing": "analytical",
        "selectedTopics": ["pricing", "launch"],
        "turnContext": "user is planning a release",
        "userInput": "How should we price it?",
    }
    recent = capsule["body"]["recentTurns"]
    assert len(recent) == 1
    assert recent[0]["responsePreview"] == "Sure, let's go."
    assert capsule["tail"]["trajectory"] == f"Turn {final['turnId']}: Discussed release pricing."
    assert capsule["tail"]["pulse"] == "Active"

    trace = store.read(session_id, "trace")
    assert trace["turnId"] == final["turnId"]
    assert trace["llm1Output"] == CURATOR_OUT
    assert trace["llm2Output"] == "Sure, let's go."

    state = store.read(session_id, "session-state")
    assert state["turnCount"] == 1
    assert state["lastTurnId"] == final["turnId"]

    turn = get_turn_registry().for_session(session_id).get_context()
    assert turn.status == "completed"
    assert turn.events == ["extension-a.complete"]
    assert turn.extension_chain == ["extension-a"]


def test_recent_turns_keep_last_five(store, session_id):
    for i in range(7):
        _run(session_id, f"question {i}", store, FakeClient())
    recent = store.read(session_id, "capsule")["body"]["recentTurns"]
    assert [t["userInput"] for t in recent] == [f"question {i}" for i in range(2, 7)]
    assert store.read(session_id, "session-state")["turnCount"] == 7


def test_response_preview_is_truncated(store, session_id):
    _run(session_id, "long", store, FakeClient(tokens=("x" * 450,)))
    recent = store.read(session_id, "capsule")["body"]["recentTurns"]
    assert recent[0]["responsePreview"] == "x" * 200


def test_inference_failure_fails_turn_once(store, session_id, monkeypatch):
    sequencer = get_turn_registry().for_session(session_id)
    failures = []
    real_fail = sequencer.fail_turn

    def spy(message):
        failures.append(message)
        return real_fail(message)

    monkeypatch.setattr(sequencer, "fail_turn", spy)
    client = FakeClient(call_error=InferenceUnavailable("llm-service unreachable"))
    with pytest.raises(InferenceUnavailable):
        _run(session_id, "hello", store, client)

    assert failures == ["llm-service unreachable"]
    turn = sequencer.get_context()
    assert turn.status == "failed"
    assert turn.error == "llm-service unreachable"
    # nothing was written past the failed stage
    assert store.read(session_id, "trace")["turnId"] is None


def test_stream_failure_mid_turn_fails_turn(store, session_id):
    client = FakeClient(stream_error=StreamIdleTimeout("stalled"))
    with pytest.raises(StreamIdleTimeout):
        _run(session_id, "hello", store, client)
    turn = get_turn_registry().for_session(session_id).get_context()
    assert turn.status == "failed"
    assert turn.error == "stalled"
    # trace is only written after the full response arrived
    assert store.read(session_id, "trace")["llm2Output"] is None


def test_abandoned_turn_is_failed(store, session_id):
    async def go():
        stream = run_turn(session_id, "hello", store=store, client=FakeClient())
        first = await anext(stream)
        await stream.aclose()
        return first

    first = asyncio.run(go())
    assert first["type"] == "turn.begun"
    assert get_turn_registry().for_session(session_id).get_context().status == "failed"


def test_conflicting_turn_raises_before_any_event(store, session_id):
    get_turn_registry().begin_turn(session_id, "already running")

    async def go():
        stream = run_turn(session_id, "hello", store=store, client=FakeClient())
        await anext(stream)

    with pytest.raises(TurnConflict):
        asyncio.run(go())
    # the running turn is untouched
    assert get_turn_registry().for_session(session_id).get_context().status == "active"


def test_unknown_session_is_rejected_before_any_turn(store):
    client = FakeClient()
    with pytest.raises(NoActiveSession):
        _run("never-created", "hello", store, client)
    assert client.calls == []
    assert get_turn_registry().get("never-created") is None
    assert not store.session_exists("never-created")
