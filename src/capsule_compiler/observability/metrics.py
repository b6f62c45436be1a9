"""Prometheus metrics for the capsule compiler.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for inference attempts, stream outcomes and turn outcomes.
"""

from __future__ import annotations

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Model calls are slow; buckets stretch well past typical web latencies
REQUEST_LATENCY = Histogram(
    "capsule_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 15.0, 60.0, 240.0),
)

INFERENCE_ATTEMPTS = Counter(
    "capsule_inference_attempts_total",
    "Non-streaming inference attempts by outcome",
    labelnames=("outcome",),
)

STREAM_OUTCOMES = Counter(
    "capsule_stream_outcomes_total",
    "Streaming inference calls by terminal outcome",
    labelnames=("outcome",),
)

TURN_OUTCOMES = Counter(
    "capsule_turns_total",
    "Turns by terminal status",
    labelnames=("status",),
)


def sanitize_path(path: str) -> str:
    """Reduce paths to their first segment (``/turn/begin`` -> ``/turn``)."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError:
            pass
        return response

    return middleware
