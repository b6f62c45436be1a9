from __future__ import annotations

import contextlib
import copy
import logging
import os
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple

import yaml

from ..domain.errors import InvalidRequest, StorageError
from ..domain.surfaces import SURFACE_KINDS, SURFACE_STRATEGIES, empty_surface, is_surface_kind, merge_surface

LOG = logging.getLogger("capsule.store")

# Kept apart from any host application's own config folder.
DEFAULT_HOME = Path.home() / ".aios-sessions"

if os.name == "nt":
    @contextlib.contextmanager
    def _flocked(path: Path) -> Iterator[None]:
        # No advisory file locks on Windows; the in-process lock still applies.
        yield
else:
    import fcntl

    @contextlib.contextmanager
    def _flocked(path: Path) -> Iterator[None]:
        with open(path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class SurfaceStore(Protocol):
    def create_session(self, session_id: str) -> None: ...
    def session_exists(self, session_id: str) -> bool: ...
    def load(self, session_id: str, kind: str) -> Optional[Dict[str, Any]]: ...
    def read(self, session_id: str, kind: str) -> Dict[str, Any]: ...
    def write(self, session_id: str, kind: str, content: Dict[str, Any]) -> Dict[str, Any]: ...


def _require_kind(kind: Any) -> str:
    if not is_surface_kind(kind):
        raise InvalidRequest(
            f"Invalid surfaceId. Valid: {', '.join(SURFACE_KINDS)}",
            code="INVALID_SURFACE",
        )
    return kind


def _require_session_id(session_id: Any) -> str:
    if (
        not isinstance(session_id, str)
        or not session_id
        or session_id in (".", "..")
        or any(sep in session_id for sep in ("/", "\\", os.sep, "\0"))
    ):
        raise InvalidRequest(f"Invalid sessionId: {session_id!r}", code="INVALID_SESSION_ID")
    return session_id


def _require_content(content: Any) -> Dict[str, Any]:
    if not isinstance(content, dict):
        raise InvalidRequest("content must be an object", code="INVALID_CONTENT")
    return content


class InMemorySurfaceStore:
    """Process-local surface store with the same merge rules as the file store."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = RLock()

    def create_session(self, session_id: str) -> None:
        with self._lock:
            self._data[session_id] = {kind: empty_surface(kind) for kind in SURFACE_KINDS}

    def session_exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._data

    def load(self, session_id: str, kind: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._data.get(session_id, {}).get(kind)
            return copy.deepcopy(doc) if doc is not None else None

    def read(self, session_id: str, kind: str) -> Dict[str, Any]:
        kind = _require_kind(kind)
        doc = self.load(session_id, kind)
        return doc if doc is not None else empty_surface(kind)

    def write(self, session_id: str, kind: str, content: Dict[str, Any]) -> Dict[str, Any]:
        kind = _require_kind(kind)
        content = _require_content(content)
        with self._lock:
            docs = self._data.setdefault(session_id, {})
            merged = merge_surface(kind, docs.get(kind) or {}, content)
            docs[kind] = copy.deepcopy(merged)
            LOG.debug("surface_updated", extra={"surface": kind, "strategy": SURFACE_STRATEGIES[kind]})
            return copy.deepcopy(merged)


class FileSurfaceStore:
    """YAML file per (session, surface kind) under ``<home>/sessions/<session_id>/``.

    Read-modify-write cycles are serialized by a per-document in-process lock
    and an advisory ``flock`` on a sidecar ``.lock`` file, so several
    processes sharing one home directory do not interleave merges.
    """

    def __init__(self, home: Optional[str] = None) -> None:
        self._home = Path(home or os.getenv("CAPSULE_SESSIONS_HOME") or DEFAULT_HOME).expanduser()
        self._locks: Dict[Tuple[str, str], Lock] = {}
        self._locks_guard = Lock()

    @property
    def home(self) -> Path:
        return self._home

    def session_dir(self, session_id: str) -> Path:
        return self._home / "sessions" / _require_session_id(session_id)

    def surface_path(self, session_id: str, kind: str) -> Path:
        return self.session_dir(session_id) / f"{kind}.yaml"

    def _doc_lock(self, session_id: str, kind: str) -> Lock:
        with self._locks_guard:
            return self._locks.setdefault((session_id, kind), Lock())

    @contextlib.contextmanager
    def _exclusive(self, session_id: str, kind: str) -> Iterator[None]:
        lock_path = self.session_dir(session_id) / f".{kind}.lock"
        with self._doc_lock(session_id, kind):
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with _flocked(lock_path):
                yield

    def _dump(self, path: Path, content: Dict[str, Any]) -> None:
        text = yaml.safe_dump(content, sort_keys=False, allow_unicode=True)
        tmp = path.with_suffix(".yaml.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def create_session(self, session_id: str) -> None:
        try:
            self.session_dir(session_id).mkdir(parents=True, exist_ok=True)
            for kind in SURFACE_KINDS:
                with self._exclusive(session_id, kind):
                    self._dump(self.surface_path(session_id, kind), empty_surface(kind))
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Failed to create session {session_id}: {exc}") from exc
        LOG.info("Session %s created at %s", session_id, self.session_dir(session_id))

    def session_exists(self, session_id: str) -> bool:
        return self.session_dir(session_id).is_dir()

    def load(self, session_id: str, kind: str) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None when it is missing or unparseable."""
        path = self.surface_path(session_id, kind)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            LOG.warning("surface_unreadable", extra={"surface": kind, "err": str(exc)})
            return None
        return data if isinstance(data, dict) else None

    def read(self, session_id: str, kind: str) -> Dict[str, Any]:
        kind = _require_kind(kind)
        doc = self.load(session_id, kind)
        if doc is None:
            LOG.debug("Surface %s not found for session %s, returning empty", kind, session_id)
            return empty_surface(kind)
        return doc

    def write(self, session_id: str, kind: str, content: Dict[str, Any]) -> Dict[str, Any]:
        kind = _require_kind(kind)
        content = _require_content(content)
        strategy = SURFACE_STRATEGIES[kind]
        try:
            with self._exclusive(session_id, kind):
                existing: Dict[str, Any] = {}
                if strategy != "overwrite":
                    existing = self.load(session_id, kind) or {}
                merged = merge_surface(kind, existing, content)
                self._dump(self.surface_path(session_id, kind), merged)
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Failed to write surface {kind}: {exc}") from exc
        LOG.info("Surface %s updated (%s)", kind, strategy)
        return merged


_store_singleton: SurfaceStore | None = None


def get_surface_store() -> SurfaceStore:
    global _store_singleton
    if _store_singleton is not None:
        return _store_singleton
    impl = os.getenv("CAPSULE_SURFACE_STORE_IMPL", "file").lower()
    if impl == "memory":
        _store_singleton = InMemorySurfaceStore()
        return _store_singleton
    _store_singleton = FileSurfaceStore()
    return _store_singleton


def set_surface_store(store: Optional[SurfaceStore]) -> None:
    """Swap the process-wide store (tests, embedding hosts)."""
    global _store_singleton
    _store_singleton = store
