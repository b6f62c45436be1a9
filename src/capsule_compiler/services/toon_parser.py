from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List


@dataclass
class CuratorOutput:
    framing: str = "exploratory"
    topics: List[str] = field(default_factory=list)
    context: str = ""


@dataclass
class EncoderOutput:
    turn_summary: str = ""
    conversational_next_step: str = ""


def parse_curator_output(raw: str) -> CuratorOutput:
    """Read ``FRAMING:``/``TOPICS:``/``CONTEXT:`` lines; later lines win."""
    result = CuratorOutput()
    for line in (raw or "").split("\n"):
        if line.startswith("FRAMING:"):
            result.framing = line[len("FRAMING:"):].strip()
        elif line.startswith("TOPICS:"):
            result.topics = [t.strip() for t in line[len("TOPICS:"):].split(",") if t.strip()]
        elif line.startswith("CONTEXT:"):
            result.context = line[len("CONTEXT:"):].strip()
    return result


_SUMMARY = re.compile(r"TURN_SUMMARY:\s*(.*?)(?=CONVERSATIONAL_NEXT_STEP:|$)", re.IGNORECASE | re.DOTALL)
_NEXT_STEP = re.compile(r"CONVERSATIONAL_NEXT_STEP:\s*(.*)$", re.IGNORECASE | re.DOTALL)


def parse_encoder_output(raw: str) -> EncoderOutput:
    result = EncoderOutput()
    text = raw or ""
    summary = _SUMMARY.search(text)
    if summary:
        result.turn_summary = summary.group(1).strip()
    next_step = _NEXT_STEP.search(text)
    if next_step:
        result.conversational_next_step = next_step.group(1).strip()
    return result
