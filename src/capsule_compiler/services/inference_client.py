"""Client for the inference service (``/infer``, ``/infer/stream``, ``/health``).

Two call paths with different failure policies:

* ``call`` is non-streaming. Each attempt is bounded by a request timeout and
  the whole call is retried up to three times (see :mod:`.retry`).
* ``stream`` is never retried. One deadline guards the request: it starts as
  the generous connect window (cold model loads), is moved to the strict idle
  window once response headers arrive, and is pushed forward on every chunk.
  When the deadline fires the error says which window expired.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx
import requests
from requests.adapters import HTTPAdapter

from ..domain.errors import (
    InferenceTimeout,
    InferenceUnavailable,
    StreamConnectTimeout,
    StreamFailed,
    StreamIdleTimeout,
)
from ..observability.metrics import INFERENCE_ATTEMPTS, STREAM_OUTCOMES
from .retry import MAX_ATTEMPTS, with_retry

LOG = logging.getLogger("capsule.llm")

# 127.0.0.1 rather than localhost avoids IPv6 resolution surprises
DEFAULT_BASE_URL = os.getenv("CAPSULE_LLM_SERVICE_URL", "http://127.0.0.1:3456")
_LLM_TIMEOUT = float(os.getenv("CAPSULE_LLM_TIMEOUT", "150"))
_CONNECT_TIMEOUT = float(os.getenv("CAPSULE_LLM_CONNECT_TIMEOUT", "240"))
_IDLE_TIMEOUT = float(os.getenv("CAPSULE_LLM_IDLE_TIMEOUT", "45"))
_HEALTH_TIMEOUT = float(os.getenv("CAPSULE_LLM_HEALTH_TIMEOUT", "5"))

_END = object()


@dataclass
class InferenceResult:
    text: str
    tokens_generated: int = 0
    model: Optional[str] = None
    duration_ms: Optional[int] = None


class _ServiceError(Exception):
    """Non-success HTTP status from the inference service."""


@dataclass
class _StreamProgress:
    chunks: int = 0
    # deadline currently armed on the request: "connect" until headers, then "idle"
    window: str = "connect"


def _build_session() -> requests.Session:
    session = requests.Session()
    # Retries are owned by with_retry; the adapter must not add its own.
    adapter = HTTPAdapter(max_retries=0, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def parse_stream_record(raw: bytes | str) -> Optional[Dict[str, Any]]:
    """Decode one ``data: {...}`` line; None for blanks, comments and garbage."""
    line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class InferenceClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        health_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = _LLM_TIMEOUT if timeout is None else timeout
        self.connect_timeout = _CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        self.idle_timeout = _IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        self.health_timeout = _HEALTH_TIMEOUT if health_timeout is None else health_timeout
        self._session = session or _build_session()
        self._transport = transport
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------
    def _attempt(self, payload: Dict[str, Any]) -> InferenceResult:
        resp = self._session.post(f"{self.base_url}/infer", json=payload, timeout=self.timeout)
        if not resp.ok:
            raise _ServiceError(f"llm-service error: {resp.status_code} - {resp.text}")
        data = resp.json()
        INFERENCE_ATTEMPTS.labels(outcome="success").inc()
        return InferenceResult(
            text=str(data.get("text") or ""),
            tokens_generated=int(data.get("tokensGenerated") or 0),
            model=data.get("model"),
            duration_ms=data.get("duration"),
        )

    def call(self, system_prompt: str, user_message: str) -> InferenceResult:
        payload = {"systemPrompt": system_prompt, "userMessage": user_message}

        def _on_failure(attempt: int, exc: BaseException) -> None:
            outcome = "timeout" if isinstance(exc, requests.Timeout) else "error"
            INFERENCE_ATTEMPTS.labels(outcome=outcome).inc()

        try:
            return with_retry(lambda: self._attempt(payload), sleep=self._sleep, on_failure=_on_failure)
        except requests.Timeout as exc:
            raise InferenceTimeout(
                f"llm-service timed out after {MAX_ATTEMPTS} attempts ({self.timeout}s each): {exc}"
            ) from exc
        except Exception as exc:
            raise InferenceUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def stream(self, system_prompt: str, user_message: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield stream events in arrival order until a ``done`` record.

        A network reader task feeds a channel; this generator drains it.
        Closing the generator cancels the reader, which aborts the request.
        """
        payload = {"systemPrompt": system_prompt, "userMessage": user_message}
        channel: asyncio.Queue = asyncio.Queue()
        reader = asyncio.create_task(self._produce(payload, channel))
        try:
            while True:
                item = await channel.get()
                if item is _END:
                    STREAM_OUTCOMES.labels(outcome="completed").inc()
                    return
                if isinstance(item, BaseException):
                    STREAM_OUTCOMES.labels(outcome=getattr(item, "code", "error").lower()).inc()
                    raise item
                yield item
                if item.get("done"):
                    STREAM_OUTCOMES.labels(outcome="completed").inc()
                    return
        finally:
            if not reader.done():
                reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    async def _produce(self, payload: Dict[str, Any], channel: asyncio.Queue) -> None:
        progress = _StreamProgress()
        try:
            await self._pump(payload, channel, progress)
        except TimeoutError as exc:
            expired = self.connect_timeout if progress.window == "connect" else self.idle_timeout
            if progress.chunks == 0:
                err: StreamFailed = StreamConnectTimeout(
                    f"LLM stream timed out - no data received within {expired}s ({progress.window} window)"
                )
            else:
                err = StreamIdleTimeout(
                    f"LLM stream stalled - no data for {self.idle_timeout}s after {progress.chunks} chunks"
                )
            err.__cause__ = exc
            await channel.put(err)
        except StreamFailed as exc:
            await channel.put(exc)
        except httpx.HTTPError as exc:
            err = StreamFailed(f"llm-service stream failed: {exc}")
            err.__cause__ = exc
            await channel.put(err)
        except Exception as exc:
            LOG.error("stream_reader_crashed", extra={"err": repr(exc)})
            err = StreamFailed(f"llm-service stream failed: {exc.__class__.__name__}: {exc}")
            err.__cause__ = exc
            await channel.put(err)
        else:
            await channel.put(_END)

    async def _pump(self, payload: Dict[str, Any], channel: asyncio.Queue, progress: _StreamProgress) -> None:
        loop = asyncio.get_running_loop()
        LOG.info("Initiating streaming request", extra={"base_url": self.base_url})
        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=None) as client:
            async with asyncio.timeout(self.connect_timeout) as window:
                request = client.build_request(
                    "POST", "/infer/stream", json=payload, headers={"Accept": "text/event-stream"}
                )
                response = await client.send(request, stream=True)
                try:
                    progress.window = "idle"
                    window.reschedule(loop.time() + self.idle_timeout)
                    LOG.debug("stream_headers", extra={"status": response.status_code})
                    if response.is_error:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise StreamFailed(f"llm-service error: {response.status_code} - {body}")

                    buffer = b""
                    async for chunk in response.aiter_bytes():
                        progress.chunks += 1
                        window.reschedule(loop.time() + self.idle_timeout)
                        buffer += chunk
                        *lines, buffer = buffer.split(b"\n")
                        for line in lines:
                            if await self._forward(line, channel):
                                return
                    if buffer:
                        await self._forward(buffer, channel)
                    LOG.info("Stream complete after %d chunks", progress.chunks)
                finally:
                    await response.aclose()

    @staticmethod
    async def _forward(line: bytes, channel: asyncio.Queue) -> bool:
        """Queue one record; True once the terminal record has been seen."""
        event = parse_stream_record(line)
        if event is None:
            return False
        if event.get("error"):
            raise StreamFailed(str(event["error"]))
        await channel.put(event)
        return bool(event.get("done"))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def health(self) -> bool:
        try:
            resp = self._session.get(f"{self.base_url}/health", timeout=self.health_timeout)
            if not resp.ok:
                return False
            data = resp.json()
        except Exception as exc:  # the probe answers False, never raises
            LOG.debug("llm_health_probe_failed", extra={"err": str(exc)})
            return False
        return isinstance(data, dict) and data.get("status") == "ok"


_client_singleton: InferenceClient | None = None


def get_inference_client() -> InferenceClient:
    global _client_singleton
    if _client_singleton is None:
        _client_singleton = InferenceClient()
    return _client_singleton


def set_inference_client(client: Optional[InferenceClient]) -> None:
    global _client_singleton
    _client_singleton = client
