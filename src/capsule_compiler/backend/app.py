"""Inference service the capsule compiler calls (``/infer``, ``/infer/stream``).

Run with ``uvicorn src.capsule_compiler.backend.app:app --port 3456``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

load_dotenv()

from ..domain.models import CamelModel  # noqa: E402
from ..services.stream_relay import StreamRelay  # noqa: E402
from .ollama import DEFAULT_MODEL, DEFAULT_TIMEOUT, OllamaClient, OllamaError  # noqa: E402

LOG = logging.getLogger("capsule.backend")

app = FastAPI(title="Capsule Inference Service", version="0.1.0")

_ollama: Optional[OllamaClient] = None


def get_ollama() -> OllamaClient:
    global _ollama
    if _ollama is None:
        _ollama = OllamaClient()
    return _ollama


def set_ollama(client: Optional[OllamaClient]) -> None:
    global _ollama
    _ollama = client


class InferRequest(CamelModel):
    system_prompt: Optional[str] = None
    user_message: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    timeout: Optional[int] = None  # milliseconds


class InferResponse(CamelModel):
    text: str
    model: str
    tokens_generated: int
    duration: int


def _options(req: InferRequest) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "model": req.model or DEFAULT_MODEL,
        "timeout": req.timeout / 1000 if req.timeout else DEFAULT_TIMEOUT,
    }
    if req.temperature is not None:
        opts["temperature"] = req.temperature
    return opts


def _missing_prompt() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Missing required field: systemPrompt or userMessage"})


@app.post("/infer")
def infer(req: InferRequest):
    if not req.system_prompt and not req.user_message:
        return _missing_prompt()
    started = time.monotonic()
    opts = _options(req)
    try:
        text, metrics = get_ollama().chat(req.system_prompt or "", req.user_message or "", **opts)
    except OllamaError as exc:
        LOG.error("inference_failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    result = InferResponse(
        text=text,
        model=opts["model"],
        tokens_generated=metrics.tokens_estimate,
        duration=int((time.monotonic() - started) * 1000),
    )
    LOG.info("Inference complete: %d tokens in %dms", result.tokens_generated, result.duration)
    return result.model_dump(by_alias=True)


async def _stream_events(req: InferRequest, opts: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
    started = time.monotonic()
    async for chunk in get_ollama().chat_stream(req.system_prompt or "", req.user_message or "", **opts):
        event: Dict[str, Any] = {"token": chunk["token"], "done": chunk["done"], "model": opts["model"]}
        if chunk.get("metrics") is not None:
            event["tokensGenerated"] = chunk["metrics"].tokens_estimate
        if event["done"]:
            LOG.info("Streaming inference complete in %dms", int((time.monotonic() - started) * 1000))
        yield event


@app.post("/infer/stream")
async def infer_stream(req: InferRequest):
    if not req.system_prompt and not req.user_message:
        return _missing_prompt()
    try:
        relay = await StreamRelay(_stream_events(req, _options(req)), label="inference stream").open()
    except OllamaError as exc:
        LOG.error("stream_failed_before_headers: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return relay.response()


@app.get("/health")
def health():
    available = get_ollama().health()
    return {"status": "ok" if available else "degraded", "ollama": available}
