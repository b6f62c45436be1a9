"""Extension A: the one-turn pipeline that drives the capsule compiler.

Curator (llm1) frames the turn, Responder (llm2) streams the answer, Turn
Encoder (llm3) compresses it, and the capsule/trace/session-state surfaces are
updated for the next turn. The pipeline is an async generator of events; the
first event is only produced after the turn has begun, so a conflicting turn
is reported before anything is streamed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from ..core.turn_sequencer import TurnRegistry, get_turn_registry
from ..domain.errors import NoActiveSession
from ..infrastructure.surface_store import SurfaceStore, get_surface_store
from .capsule_service import compile_capsule
from .inference_client import InferenceClient, get_inference_client
from .prompt_service import load_role_prompt
from .toon_parser import parse_curator_output, parse_encoder_output

LOG = logging.getLogger("capsule.pipeline")

EXTENSION_CHAIN: List[str] = ["extension-a"]
CURATOR_PATHS: List[str] = ["capsule.head", "capsule.body", "capsule.tail", "intuition-outline"]
RESPONDER_PATHS: List[str] = ["capsule.head", "capsule.body", "capsule.tail"]
ENCODER_PATHS: List[str] = ["capsule.head", "trace"]

RECENT_TURNS_KEPT = 5
PREVIEW_CHARS = 200
TRAJECTORY_CHARS = 100


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


async def run_turn(
    session_id: str,
    user_input: str,
    *,
    store: Optional[SurfaceStore] = None,
    client: Optional[InferenceClient] = None,
    turns: Optional[TurnRegistry] = None,
) -> AsyncIterator[Dict[str, Any]]:
    store = store or get_surface_store()
    client = client or get_inference_client()
    if not store.session_exists(session_id):
        raise NoActiveSession(f"Unknown session: {session_id}")
    sequencer = (turns or get_turn_registry()).for_session(session_id)

    turn = sequencer.begin_turn(user_input, EXTENSION_CHAIN)
    turn_id = turn.turn_id
    try:
        yield {"type": "turn.begun", "turnId": turn_id, "done": False}

        # 1. Curator
        yield {"type": "status", "stage": "curator", "done": False}
        capsule = compile_capsule(session_id, CURATOR_PATHS, user_input, store=store)
        curated = await asyncio.to_thread(client.call, load_role_prompt("llm1"), capsule.text)
        curator = parse_curator_output(curated.text)
        store.write(
            session_id,
            "capsule",
            {
                "head": {
                    "framing": curator.framing,
                    "selectedTopics": curator.topics,
                    "turnContext": curator.context,
                    "userInput": user_input,
                }
            },
        )

        # 2. Responder, relayed token by token
        yield {"type": "status", "stage": "responder", "done": False}
        capsule = compile_capsule(session_id, RESPONDER_PATHS, store=store)
        parts: List[str] = []
        async with contextlib.aclosing(client.stream(load_role_prompt("llm2"), capsule.text)) as events:
            async for event in events:
                token = event.get("token") or ""
                if token:
                    parts.append(token)
                    yield {"type": "token", "token": token, "done": False}
        response = "".join(parts)
        store.write(
            session_id,
            "trace",
            {
                "turnId": turn_id,
                "userInput": user_input,
                "llm1Output": curated.text,
                "llm2Output": response,
                "timestamp": _timestamp(),
            },
        )

        # 3. Turn encoder
        yield {"type": "status", "stage": "encoder", "done": False}
        capsule = compile_capsule(session_id, ENCODER_PATHS, store=store)
        encoded = await asyncio.to_thread(client.call, load_role_prompt("llm3"), capsule.text)
        encoder = parse_encoder_output(encoded.text)

        current = store.read(session_id, "capsule")
        body = dict(current.get("body") or {})
        recent = list(body.get("recentTurns") or [])
        recent.append(
            {
                "turnId": turn_id,
                "userInput": user_input,
                "responsePreview": response[:PREVIEW_CHARS],
                "summary": encoder.turn_summary,
                "timestamp": _timestamp(),
            }
        )
        body["recentTurns"] = recent[-RECENT_TURNS_KEPT:]
        store.write(
            session_id,
            "capsule",
            {
                "body": body,
                "tail": {
                    "goals": [],
                    "trajectory": f"Turn {turn_id}: {encoder.turn_summary[:TRAJECTORY_CHARS]}",
                    "pulse": "Active",
                },
            },
        )
        state = store.read(session_id, "session-state")
        store.write(
            session_id,
            "session-state",
            {"lastTurnId": turn_id, "turnCount": int(state.get("turnCount") or 0) + 1},
        )

        sequencer.emit("extension-a.complete")
    except BaseException as exc:
        sequencer.fail_turn(str(exc) or exc.__class__.__name__)
        raise

    LOG.info("Turn %s finished", turn_id, extra={"session_id": session_id, "chars": len(response)})
    yield {
        "type": "turn.complete",
        "turnId": turn_id,
        "response": response,
        "summary": encoder.turn_summary,
        "nextStep": encoder.conversational_next_step,
        "done": True,
    }
