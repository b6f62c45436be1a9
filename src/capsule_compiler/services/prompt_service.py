"""Role instructions for each model stage.

Files live in the bundled ``prompts/`` directory (or ``CAPSULE_PROMPTS_DIR``)
and are cached after the first read. A missing file falls back to a short
built-in instruction so a fresh checkout still runs end to end.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Tuple

from ..domain.errors import InvalidRequest

LOG = logging.getLogger("capsule.prompts")

PROMPT_FILES: Dict[str, str] = {
    "llm1": "llm1-curator.md",
    "llm2": "llm2-responder.md",
    "llm3": "llm3-encoder.md",
    "llm3a": "llm3a-quad.md",
    "llm3b": "llm3b-digr.md",
    "llm4a": "llm4a-tasks.md",
    "llm4b": "llm4b-integrator.md",
}

STREAMING_LLM_ID = "llm2"
PROCESS_LLM_IDS: Tuple[str, ...] = ("llm1", "llm3", "llm3a", "llm3b", "llm4a", "llm4b")

_PLACEHOLDERS: Dict[str, str] = {
    "llm1": (
        "You are the Curator. Select the framing for this turn.\n"
        "Output:\nFRAMING: [framing type]\nTOPICS: [comma-separated topics]\nCONTEXT: [brief context summary]"
    ),
    "llm2": "You are the Responder. Answer the user using the HEAD, BODY and TAIL context provided.",
    "llm3": (
        "You are the Turn Encoder. Summarize the completed turn.\n"
        "Output:\nTURN_SUMMARY:\n[semantic compression of the turn]\n\n"
        "CONVERSATIONAL_NEXT_STEP:\n[natural continuation]"
    ),
    "llm3a": "You are the QUAD Extractor. Output lines Q:, U:, A:, D: for questions, uncertainties, aims, directives.",
    "llm3b": "You are the DIGR Extractor. Output lines D:, I:, G:, R: for decisions, insights, goals, relationships.",
    "llm4a": "You are the Task Identifier. Output one TASK: line per action item.",
    "llm4b": "You are the Integrator. Output GOALS:, TRAJECTORY:, PULSE:, TOPICS:, FRAMING: lines for the next turn.",
}

_cache: Dict[str, str] = {}
_lock = RLock()


def prompts_dir() -> Path:
    configured = os.getenv("CAPSULE_PROMPTS_DIR")
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parents[1] / "prompts"


def load_role_prompt(llm_id: str, directory: Optional[Path] = None) -> str:
    filename = PROMPT_FILES.get(llm_id)
    if not filename:
        raise InvalidRequest(f"Unknown LLM ID: {llm_id}", code="INVALID_LLM_ID")
    with _lock:
        cached = _cache.get(llm_id)
        if cached is not None:
            return cached
        path = (directory or prompts_dir()) / filename
        try:
            prompt = path.read_text(encoding="utf-8")
        except OSError:
            LOG.warning("Prompt %s not found, using placeholder", filename)
            prompt = _PLACEHOLDERS[llm_id]
        _cache[llm_id] = prompt
        return prompt


def clear_prompt_cache() -> None:
    with _lock:
        _cache.clear()
