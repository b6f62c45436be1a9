"""Surface kinds, their empty shapes and their write strategies.

A surface is one persisted slice of conversational state. Each kind has a
fixed default shape returned whenever the stored document is missing, and
exactly one merge strategy applied on write.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Literal, Tuple

SurfaceKind = Literal["capsule", "trace", "digr", "session-state", "intuition-outline"]
WriteStrategy = Literal["overwrite", "shallow-merge", "array-append"]

SURFACE_KINDS: Tuple[str, ...] = ("capsule", "trace", "digr", "session-state", "intuition-outline")

_EMPTY_SURFACES: Dict[str, Dict[str, Any]] = {
    "capsule": {
        "head": {"framing": None, "selectedTopics": [], "turnContext": None, "userInput": None},
        "body": {"recentTurns": []},
        "tail": {"goals": [], "trajectory": None, "pulse": None, "planning": None},
    },
    "trace": {
        "turnId": None,
        "userInput": None,
        "llm1Output": None,
        "llm2Output": None,
        "quad": None,
        "optimized": None,
        "intent": None,
        "timestamp": None,
    },
    "digr": {
        "decisions": [],
        "insights": [],
        "goals": [],
        "relationships": [],
        "milestone": None,
        "contribution": None,
        "patterns": [],
        "refinements": [],
    },
    "session-state": {"lastTurnId": None, "turnCount": 0, "activeGoals": [], "trajectory": None},
    "intuition-outline": {"intuitions": [], "planning": None, "pulse": None, "suggestedFocus": None},
}

SURFACE_STRATEGIES: Dict[str, WriteStrategy] = {
    "trace": "overwrite",
    "digr": "array-append",
    "intuition-outline": "overwrite",
    "capsule": "shallow-merge",
    "session-state": "shallow-merge",
}

# digr fields concatenated across writes, in document order
DIGR_ARRAY_FIELDS: Tuple[str, ...] = ("decisions", "insights", "goals", "relationships", "patterns", "refinements")
DIGR_SCALAR_FIELDS: Tuple[str, ...] = ("milestone", "contribution")


def is_surface_kind(value: Any) -> bool:
    return isinstance(value, str) and value in SURFACE_KINDS


def empty_surface(kind: str) -> Dict[str, Any]:
    """Return a fresh copy of the default shape for ``kind``."""
    return copy.deepcopy(_EMPTY_SURFACES[kind])


def _overwrite(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    return dict(incoming)


def _shallow_merge(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(existing)
    merged.update(incoming)
    return merged


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _array_append(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for field in DIGR_ARRAY_FIELDS[:4]:
        merged[field] = _as_list(existing.get(field)) + _as_list(incoming.get(field))
    for field in DIGR_SCALAR_FIELDS:
        value = incoming.get(field)
        merged[field] = value if value is not None else existing.get(field)
    for field in DIGR_ARRAY_FIELDS[4:]:
        merged[field] = _as_list(existing.get(field)) + _as_list(incoming.get(field))
    return merged


_MERGERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]] = {
    "overwrite": _overwrite,
    "shallow-merge": _shallow_merge,
    "array-append": _array_append,
}


def merge_surface(kind: str, existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Combine stored content with an incoming write using the kind's strategy."""
    strategy = SURFACE_STRATEGIES[kind]
    return _MERGERS[strategy](existing or {}, incoming)
