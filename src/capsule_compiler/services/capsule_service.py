"""Capsule compilation: resolve surface variables and render them for a model.

A variable path is dotted: the first segment names a surface, the rest walk
into the stored document (``capsule.head``, ``trace.llm2Output``). Resolution
never raises; anything it cannot reach resolves to ``None`` content.

The rendered capsule is a sequence of marked sections::

    [HEAD: capsule.head]
    Framing: strategic
    Selected Topics:
    - pricing

    [USER]
    what next?
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..domain.errors import CapsuleAssemblyError
from ..domain.surfaces import is_surface_kind
from ..infrastructure.surface_store import SurfaceStore, get_surface_store

LOG = logging.getLogger("capsule.compiler")

MARKER_MAP: Dict[str, str] = {
    "capsule": "CAPSULE",
    "capsule.head": "HEAD",
    "capsule.body": "BODY",
    "capsule.tail": "TAIL",
    "trace": "TRACE",
    "digr": "DIGR",
    "session-state": "SESSION",
    "intuition-outline": "INTUITION",
}

EMPTY = "(empty)"
NONE = "(none)"


@dataclass
class ResolvedVariable:
    path: str
    marker: str
    content: Any = None

    @property
    def has_content(self) -> bool:
        return self.content is not None


@dataclass
class AssembledCapsule:
    text: str
    variables: List[ResolvedVariable] = field(default_factory=list)


class ValueKind(enum.Enum):
    NULL = "null"
    SCALAR = "scalar"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


def kind_of(value: Any) -> ValueKind:
    if value is None:
        return ValueKind.NULL
    if isinstance(value, dict):
        return ValueKind.MAPPING
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE
    return ValueKind.SCALAR


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------
def derive_marker(path: str) -> str:
    if path in MARKER_MAP:
        return MARKER_MAP[path]
    parts = path.split(".")
    if len(parts) > 1:
        return parts[-1].upper()
    return path.upper().replace("-", "_")


_MISSING = object()


def _descend(value: Any, segment: str) -> Any:
    kind = kind_of(value)
    if kind is ValueKind.MAPPING:
        return value.get(segment) if segment in value else _MISSING
    if kind is ValueKind.SEQUENCE and segment.isdigit():
        index = int(segment)
        return value[index] if index < len(value) else _MISSING
    return _MISSING


def resolve_variable(session_id: str, path: str, store: Optional[SurfaceStore] = None) -> ResolvedVariable:
    path = str(path)
    marker = derive_marker(path)
    surface_id, *fields = path.split(".")
    if not is_surface_kind(surface_id):
        return ResolvedVariable(path=path, marker=marker, content=None)

    store = store or get_surface_store()
    try:
        content: Any = store.load(session_id, surface_id)
    except Exception as exc:  # resolution reports failure as empty content only
        LOG.warning("variable_unreadable", extra={"path": path, "err": str(exc)})
        content = None

    for segment in fields:
        if content is None:
            break
        content = _descend(content, segment)
        if content is _MISSING:
            content = None
            break
    return ResolvedVariable(path=path, marker=marker, content=content)


def resolve_variables(
    session_id: str, paths: Sequence[str], store: Optional[SurfaceStore] = None
) -> List[ResolvedVariable]:
    return [resolve_variable(session_id, path, store=store) for path in paths]


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------
_CAMEL_BOUNDARY = re.compile(r"([A-Z])")


def format_label(key: str) -> str:
    """``selectedTopics`` -> ``Selected Topics``."""
    spaced = _CAMEL_BOUNDARY.sub(r" \1", str(key))
    return (spaced[:1].upper() + spaced[1:]).strip()


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _inline(value: Any) -> str:
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return "null"
    if kind is ValueKind.SEQUENCE:
        return "[" + ", ".join(_inline(item) for item in value) + "]"
    if kind is ValueKind.MAPPING:
        return "{" + ", ".join(f"{k}: {_inline(v)}" for k, v in value.items()) + "}"
    return _scalar_text(value)


def _indent(text: str, spaces: int = 2) -> str:
    prefix = " " * spaces
    return "\n".join(prefix + line for line in text.split("\n"))


def _format_item(item: Any) -> str:
    if kind_of(item) is ValueKind.MAPPING:
        if "turnId" in item and "userInput" in item:
            return f"- Turn {_scalar_text(item['turnId'])}: {_scalar_text(item['userInput'])}"
        if "content" in item:
            return f"- {_scalar_text(item['content'])}"
        return "- " + ", ".join(f"{k}: {_inline(v)}" for k, v in item.items())
    return f"- {_inline(item)}"


def _format_items(items: Sequence[Any]) -> str:
    return "\n".join(_format_item(item) for item in items)


def _format_field(key: str, value: Any) -> str:
    label = format_label(key)
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return f"{label}: {NONE}"
    if kind is ValueKind.SEQUENCE:
        if not value:
            return f"{label}: {NONE}"
        return f"{label}:\n{_format_items(value)}"
    if kind is ValueKind.MAPPING:
        return f"{label}:\n{_indent(format_content(value))}"
    return f"{label}: {_scalar_text(value)}"


def format_content(value: Any) -> str:
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return EMPTY
    if kind is ValueKind.SCALAR:
        return _scalar_text(value)
    if not value:
        return NONE
    if kind is ValueKind.SEQUENCE:
        return _format_items(value)
    return "\n".join(_format_field(key, item) for key, item in value.items())


# ------------------------------------------------------------------
# Assembly
# ------------------------------------------------------------------
def format_section(variable: ResolvedVariable) -> str:
    return f"[{variable.marker}: {variable.path}]\n{format_content(variable.content)}"


def assemble_capsule(variables: Sequence[ResolvedVariable], user_input: Optional[str] = None) -> AssembledCapsule:
    sections = [format_section(variable) for variable in variables]
    if user_input:
        sections.append(f"[USER]\n{user_input}")
    return AssembledCapsule(text="\n\n".join(sections), variables=list(variables))


def compile_capsule(
    session_id: str,
    paths: Sequence[str],
    user_input: Optional[str] = None,
    store: Optional[SurfaceStore] = None,
) -> AssembledCapsule:
    """Resolve ``paths`` against the current surfaces and assemble them.

    Each path is read independently; there is no snapshot across the list.
    """
    variables = resolve_variables(session_id, paths, store=store)
    try:
        capsule = assemble_capsule(variables, user_input)
    except (TypeError, ValueError, RecursionError) as exc:
        raise CapsuleAssemblyError(f"Capsule assembly failed: {exc}") from exc
    LOG.debug(
        "capsule_compiled",
        extra={"paths": list(paths), "chars": len(capsule.text), "resolved": sum(v.has_content for v in variables)},
    )
    return capsule
