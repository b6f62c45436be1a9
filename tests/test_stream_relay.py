import asyncio
import json

import pytest

from src.capsule_compiler.services.stream_relay import StreamRelay, sse_frame


async def _events(items, fail_after=None):
    for i, item in enumerate(items):
        if fail_after is not None and i == fail_after:
            raise RuntimeError("stream stalled")
        yield item


def _drain(relay):
    async def run():
        await relay.open()
        return [frame async for frame in relay.frames()]

    return asyncio.run(run())


def _payloads(frames):
    assert all(f.startswith("data: ") and f.endswith("\n\n") for f in frames)
    return [json.loads(f[len("data: "):]) for f in frames]


def test_sse_frame_format():
    assert sse_frame({"token": "a", "done": False}) == 'data: {"token": "a", "done": false}\n\n'


def test_relays_in_order_and_stops_at_terminal_event():
    items = [
        {"token": "a", "done": False},
        {"token": "b", "done": False},
        {"token": "", "done": True},
        {"token": "never", "done": False},
    ]
    frames = _drain(StreamRelay(_events(items)))
    assert _payloads(frames) == items[:3]


def test_failure_after_transmission_becomes_error_frame():
    items = [{"token": "a", "done": False}, {"token": "b", "done": False}]
    frames = _drain(StreamRelay(_events(items, fail_after=1)))
    assert _payloads(frames) == [{"token": "a", "done": False}, {"error": "stream stalled", "done": True}]


def test_failure_before_transmission_raises_from_open():
    relay = StreamRelay(_events([{"token": "a"}], fail_after=0))
    with pytest.raises(RuntimeError, match="stream stalled"):
        asyncio.run(relay.open())


def test_empty_stream_sends_single_terminal_frame():
    frames = _drain(StreamRelay(_events([])))
    assert _payloads(frames) == [{"token": "", "done": True}]


def test_response_is_event_stream():
    async def run():
        relay = await StreamRelay(_events([{"token": "", "done": True}])).open()
        return relay.response()

    response = asyncio.run(run())
    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
