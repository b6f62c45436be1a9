from __future__ import annotations

import logging
import secrets
import string
import time
from threading import RLock
from typing import Optional

from ..domain.errors import NoActiveSession
from ..infrastructure.surface_store import SurfaceStore, get_surface_store

LOG = logging.getLogger("capsule.session")

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """``{epoch-ms}-{6 base36 chars}``, e.g. ``1767225600000-k3x9qa``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}"


class SessionRegistry:
    """Tracks the session the host is currently working in."""

    def __init__(self) -> None:
        self._current: Optional[str] = None
        self._lock = RLock()

    def create_session(self, store: Optional[SurfaceStore] = None) -> str:
        store = store or get_surface_store()
        session_id = generate_session_id()
        store.create_session(session_id)
        with self._lock:
            self._current = session_id
        LOG.info("Session %s is now current", session_id)
        return session_id

    def current_session_id(self) -> Optional[str]:
        with self._lock:
            return self._current

    def require_current(self) -> str:
        session_id = self.current_session_id()
        if not session_id:
            raise NoActiveSession()
        return session_id

    def reset(self) -> None:
        with self._lock:
            self._current = None


_registry = SessionRegistry()


def get_session_registry() -> SessionRegistry:
    return _registry
