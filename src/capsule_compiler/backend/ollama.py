"""Ollama chat calls behind the inference service.

The system message is a constant anchor so the model's KV cache stays warm
across roles; the role prompt and the turn data are fused into the user
message instead.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import requests

LOG = logging.getLogger("capsule.backend")

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
DEFAULT_MODEL = os.getenv("OLLAMA_MODEL") or "llama3.1"
DEFAULT_TEMPERATURE = 0.1
DEFAULT_TIMEOUT = 120.0
NUM_CTX = 8192
NUM_PREDICT = 1024
# Generated-token estimate from generation time, tokens per second
TOKENS_PER_SECOND = 30

SKELETAL_ANCHOR = (
    "# AIOS_PRO_SUBSTRATE_v1\n"
    "[MODE: SEMANTIC_OS | PROVIDER: LOCAL]\n"
    "[SUBSTRATE: QUAD/GRID | LOGIC: SYMBOLIC]\n"
    "\n"
    "## CORE_DIRECTIVE\n"
    "Follow the [ROLE_STANCE] and [TURN_LOGIC] provided in the User Capsule.\n"
    "Maintain TOON formatting and QUAD/GRID integrity. Execute precisely."
)


class OllamaError(Exception):
    pass


@dataclass
class OllamaMetrics:
    total: float = 0.0
    load: float = 0.0
    prefill: float = 0.0
    gen: float = 0.0

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "OllamaMetrics":
        return cls(
            total=(data.get("total_duration") or 0) / 1e9,
            load=(data.get("load_duration") or 0) / 1e9,
            prefill=(data.get("prompt_eval_duration") or 0) / 1e9,
            gen=(data.get("eval_duration") or 0) / 1e9,
        )

    @property
    def tokens_estimate(self) -> int:
        return round(self.gen * TOKENS_PER_SECOND)


def fuse_user_message(role_prompt: str, user_message: str) -> str:
    return f"# ROLE_STANCE\n{role_prompt.strip()}\n\n---\n\n# TURN_DATA\n{user_message.strip()}".strip()


def build_chat_request(
    role_prompt: str,
    user_message: str,
    *,
    model: str,
    temperature: float = DEFAULT_TEMPERATURE,
    stream: bool = False,
) -> Dict[str, Any]:
    messages: List[Dict[str, str]] = [
        {"role": "system", "content": SKELETAL_ANCHOR},
        {"role": "user", "content": fuse_user_message(role_prompt, user_message)},
    ]
    return {
        "model": model,
        "messages": messages,
        "stream": stream,
        "keep_alive": -1,  # never unload the model
        "options": {"num_ctx": NUM_CTX, "temperature": temperature, "num_predict": NUM_PREDICT},
    }


def _log_cache(label: str, metrics: OllamaMetrics) -> None:
    # Prefill under half a second means the anchored prefix was reused
    LOG.info(
        "%s %s - total %.2fs, prefill %.2fs",
        label,
        "cache_hit" if metrics.prefill < 0.5 else "cache_miss",
        metrics.total,
        metrics.prefill,
    )


class OllamaClient:
    def __init__(
        self,
        host: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = (host or OLLAMA_HOST).rstrip("/")
        self._session = session or requests.Session()
        self._transport = transport

    def chat(
        self,
        role_prompt: str,
        user_message: str,
        *,
        model: str,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> tuple[str, OllamaMetrics]:
        body = build_chat_request(role_prompt, user_message, model=model, temperature=temperature)
        LOG.info("ollama_chat", extra={"model": model})
        try:
            resp = self._session.post(f"{self.host}/api/chat", json=body, timeout=timeout)
        except requests.Timeout as exc:
            raise OllamaError(f"Ollama timeout after {timeout}s") from exc
        except requests.RequestException as exc:
            raise OllamaError(f"Ollama unreachable: {exc}") from exc
        if not resp.ok:
            raise OllamaError(f"Ollama error: {resp.status_code} - {resp.text}")
        data = resp.json()
        metrics = OllamaMetrics.from_response(data)
        _log_cache("ollama_chat", metrics)
        return str((data.get("message") or {}).get("content") or ""), metrics

    async def chat_stream(
        self,
        role_prompt: str,
        user_message: str,
        *,
        model: str,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield ``{token, done, metrics?}`` from Ollama's NDJSON stream."""
        body = build_chat_request(role_prompt, user_message, model=model, temperature=temperature, stream=True)
        LOG.info("ollama_stream", extra={"model": model})
        try:
            async with httpx.AsyncClient(base_url=self.host, transport=self._transport, timeout=timeout) as client:
                async with client.stream("POST", "/api/chat", json=body) as response:
                    if response.is_error:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        raise OllamaError(f"Ollama stream error: {response.status_code} - {detail}")
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            chunk = json.loads(line)
                        except json.JSONDecodeError:
                            LOG.debug("ollama_stream_bad_chunk", extra={"line": line[:200]})
                            continue
                        if not isinstance(chunk, dict):
                            continue
                        if chunk.get("error"):
                            raise OllamaError(f"Ollama stream error: {chunk['error']}")
                        token = str((chunk.get("message") or {}).get("content") or "")
                        if chunk.get("done"):
                            metrics = OllamaMetrics.from_response(chunk)
                            _log_cache("ollama_stream", metrics)
                            yield {"token": token, "done": True, "metrics": metrics}
                            return
                        yield {"token": token, "done": False}
        except httpx.TimeoutException as exc:
            raise OllamaError(f"Ollama stream timeout after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise OllamaError(f"Ollama stream failed: {exc}") from exc

    def health(self) -> bool:
        try:
            return self._session.get(f"{self.host}/api/tags", timeout=5).ok
        except requests.RequestException:
            return False
