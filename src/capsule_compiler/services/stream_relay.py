from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi.responses import StreamingResponse

LOG = logging.getLogger("capsule.relay")

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class StreamRelay:
    """Forward stream events to an SSE channel one frame per event.

    The first event is pulled in :meth:`open`, before any byte is sent, so a
    failure there still reaches the caller as an ordinary exception (and
    becomes a normal error response). Once frames are flowing, a failure is
    sent as a final ``{"error", "done": true}`` frame instead.
    """

    def __init__(self, events: AsyncIterator[Dict[str, Any]], *, label: str = "stream") -> None:
        self._events = events
        self._label = label
        self._first: Optional[Dict[str, Any]] = None
        self._opened = False

    async def open(self) -> "StreamRelay":
        try:
            self._first = await anext(self._events)
        except StopAsyncIteration:
            self._first = None
        except BaseException:
            await self._events.aclose()
            raise
        self._opened = True
        return self

    async def frames(self) -> AsyncIterator[str]:
        if not self._opened:
            await self.open()
        try:
            if self._first is None:
                yield sse_frame({"token": "", "done": True})
                return
            yield sse_frame(self._first)
            if self._first.get("done"):
                return
            async for event in self._events:
                yield sse_frame(event)
                if event.get("done"):
                    LOG.info("%s complete", self._label, extra={"tokens": event.get("tokensGenerated")})
                    return
        except Exception as exc:
            LOG.error("%s failed after transmission began: %s", self._label, exc)
            yield sse_frame({"error": str(exc), "done": True})
        finally:
            await self._events.aclose()

    def response(self) -> StreamingResponse:
        return StreamingResponse(self.frames(), media_type="text/event-stream", headers=SSE_HEADERS)
