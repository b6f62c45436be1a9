import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
import requests

from src.capsule_compiler.domain.errors import (
    InferenceTimeout,
    InferenceUnavailable,
    StreamConnectTimeout,
    StreamFailed,
    StreamIdleTimeout,
)
from src.capsule_compiler.services.inference_client import InferenceClient, parse_stream_record


def _resp(status=200, data=None, text=""):
    return SimpleNamespace(
        ok=200 <= status < 300,
        status_code=status,
        text=text or json.dumps(data or {}),
        json=lambda: data,
    )


class StubSession:
    """Plays back one outcome per request; an exception instance is raised."""

    def __init__(self, outcomes=None, health=None):
        self.outcomes = list(outcomes or [])
        self.health = health
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, timeout=None):
        if isinstance(self.health, Exception):
            raise self.health
        return self.health


def _client(session=None, **kwargs):
    sleeps = []
    client = InferenceClient(
        "http://llm.test",
        session=session or StubSession(),
        sleep=sleeps.append,
        **kwargs,
    )
    return client, sleeps


def test_call_posts_payload_and_parses_result():
    session = StubSession([_resp(data={"text": "FRAMING: analytical", "tokensGenerated": 12, "model": "m"})])
    client, sleeps = _client(session, timeout=7)
    result = client.call("role", "capsule text")

    assert result.text == "FRAMING: analytical"
    assert result.tokens_generated == 12
    assert session.posts == [
        {"url": "http://llm.test/infer", "json": {"systemPrompt": "role", "userMessage": "capsule text"}, "timeout": 7}
    ]
    assert sleeps == []


def test_call_retries_transport_errors_then_succeeds():
    session = StubSession(
        [
            requests.ConnectionError("refused"),
            _resp(503, text="busy"),
            _resp(data={"text": "ok"}),
        ]
    )
    client, sleeps = _client(session)
    assert client.call("s", "u").text == "ok"
    assert len(session.posts) == 3
    assert sleeps == [1.0]


def test_call_raises_timeout_after_three_timeouts():
    session = StubSession([requests.Timeout("read timed out")] * 3)
    client, _ = _client(session)
    with pytest.raises(InferenceTimeout) as exc:
        client.call("s", "u")
    assert exc.value.code == "LLM_TIMEOUT"
    assert exc.value.status_code == 504
    assert len(session.posts) == 3


def test_call_raises_unavailable_with_last_error():
    session = StubSession([_resp(500, text="first"), _resp(500, text="second"), _resp(502, text="last")])
    client, _ = _client(session)
    with pytest.raises(InferenceUnavailable) as exc:
        client.call("s", "u")
    assert "502" in exc.value.message
    assert "last" in exc.value.message
    assert exc.value.status_code == 502


@pytest.mark.parametrize(
    "health, expected",
    [
        (_resp(data={"status": "ok"}), True),
        (_resp(data={"status": "degraded"}), False),
        (_resp(500, data={"status": "ok"}), False),
        (requests.ConnectionError("down"), False),
    ],
)
def test_health_probe_never_raises(health, expected):
    client, _ = _client(StubSession(health=health))
    assert client.health() is expected


def test_parse_stream_record_skips_garbage():
    assert parse_stream_record(b'data: {"token": "a", "done": false}') == {"token": "a", "done": False}
    assert parse_stream_record("data: {broken") is None
    assert parse_stream_record(": keep-alive") is None
    assert parse_stream_record("") is None
    assert parse_stream_record("data: [1, 2]") is None


# ----------------------------------------------------------------------
# Streaming
# ----------------------------------------------------------------------
def _frame(payload):
    return f"data: {json.dumps(payload)}\n\n".encode()


def _stream_client(handler, **kwargs):
    return InferenceClient("http://llm.test", transport=httpx.MockTransport(handler), **kwargs)


async def _async_collect(client):
    return [event async for event in client.stream("role", "capsule")]


def _collect(client):
    return asyncio.run(_async_collect(client))


def test_stream_yields_events_in_order_and_skips_malformed():
    body = (
        b": comment\n\n"
        + b"data: {not json\n\n"
        + _frame({"token": "Hel", "done": False})
        + _frame({"token": "lo", "done": False})
        + _frame({"token": "", "done": True, "tokensGenerated": 2})
    )
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    events = _collect(_stream_client(handler))
    assert [e["token"] for e in events] == ["Hel", "lo", ""]
    assert events[-1]["done"] is True
    assert seen["path"] == "/infer/stream"
    assert seen["body"] == {"systemPrompt": "role", "userMessage": "capsule"}


def test_stream_records_split_across_chunks():
    frame = _frame({"token": "split", "done": False}) + _frame({"token": "", "done": True})

    async def chunks():
        yield frame[:10]
        yield frame[10:25]
        yield frame[25:]

    def handler(request):
        return httpx.Response(200, content=chunks())

    events = _collect(_stream_client(handler))
    assert [e["token"] for e in events] == ["split", ""]


def test_stream_connect_timeout_when_no_headers_arrive():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"")

    client = _stream_client(handler, connect_timeout=0.05, idle_timeout=1)
    with pytest.raises(StreamConnectTimeout) as exc:
        _collect(client)
    assert not isinstance(exc.value, StreamIdleTimeout)
    assert exc.value.code == "STREAM_CONNECT_TIMEOUT"


def test_stream_idle_timeout_after_first_chunk():
    async def stalls():
        yield _frame({"token": "first", "done": False})
        await asyncio.sleep(5)
        yield _frame({"token": "", "done": True})

    def handler(request):
        return httpx.Response(200, content=stalls())

    client = _stream_client(handler, connect_timeout=5, idle_timeout=0.05)
    received = []

    async def run():
        async for event in client.stream("role", "capsule"):
            received.append(event)

    with pytest.raises(StreamIdleTimeout) as exc:
        asyncio.run(run())
    assert received == [{"token": "first", "done": False}]
    assert exc.value.code == "STREAM_IDLE_TIMEOUT"


def test_stream_error_status_fails_without_retry():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503, content=b"model loading")

    with pytest.raises(StreamFailed, match="503"):
        _collect(_stream_client(handler))
    assert len(calls) == 1


def test_stream_error_record_is_terminal_failure():
    body = _frame({"token": "a", "done": False}) + _frame({"done": True, "error": "ollama crashed"})

    def handler(request):
        return httpx.Response(200, content=body)

    with pytest.raises(StreamFailed, match="ollama crashed"):
        _collect(_stream_client(handler))


def test_stream_transport_error_is_stream_failed():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(StreamFailed, match="connection refused"):
        _collect(_stream_client(handler))


def test_stream_unexpected_reader_error_is_stream_failed():
    def handler(request):
        raise RuntimeError("unexpected transport bug")

    async def run():
        return await asyncio.wait_for(_async_collect(_stream_client(handler)), timeout=2)

    with pytest.raises(StreamFailed, match="RuntimeError: unexpected transport bug") as exc:
        asyncio.run(run())
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_stream_headers_then_silence_reports_idle_window():
    async def silent():
        await asyncio.sleep(5)
        yield _frame({"token": "late", "done": False})

    def handler(request):
        return httpx.Response(200, content=silent())

    client = _stream_client(handler, connect_timeout=5, idle_timeout=0.05)
    with pytest.raises(StreamConnectTimeout) as exc:
        _collect(client)
    assert "within 0.05s (idle window)" in exc.value.message
    assert "within 5s" not in exc.value.message
