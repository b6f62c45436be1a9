from __future__ import annotations

from typing import Any, List, Optional

from fastapi import HTTPException

from ..domain.errors import CapsuleCompilerError, InvalidRequest, NoActiveSession
from ..infrastructure.surface_store import get_surface_store
from ..services.session_service import get_session_registry


def http_error(exc: CapsuleCompilerError, status_code: Optional[int] = None) -> HTTPException:
    return HTTPException(status_code=status_code or exc.status_code, detail=exc.to_detail())


def missing(code: str, message: str) -> HTTPException:
    return http_error(InvalidRequest(message, code=code))


def session_for(session_id: Optional[str] = None) -> str:
    """Explicit session id from the request body, else the current session.

    An explicit id must name a session that was created in the surface store.
    """
    if session_id:
        if not get_surface_store().session_exists(session_id):
            raise NoActiveSession(f"Unknown session: {session_id}")
        return session_id
    return get_session_registry().require_current()


def require_paths(surfaces: Any) -> List[str]:
    """Variable paths from a request body; a non-empty list of strings."""
    if not isinstance(surfaces, list) or not surfaces or not all(isinstance(p, str) and p for p in surfaces):
        raise missing("INVALID_SURFACES", "surfaces must be a non-empty array of variable paths")
    return surfaces
