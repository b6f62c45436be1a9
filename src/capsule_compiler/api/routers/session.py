from __future__ import annotations

from fastapi import APIRouter, status

from ...domain.errors import CapsuleCompilerError, NoActiveSession
from ...domain.models import SessionResponse
from ...services.session_service import get_session_registry
from ..deps import http_error

router = APIRouter(prefix="/session", tags=["session"])


@router.post("/create", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def create_session():
    try:
        session_id = get_session_registry().create_session()
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return SessionResponse(session_id=session_id)


@router.get("/current", response_model=SessionResponse)
def current_session():
    try:
        session_id = get_session_registry().require_current()
    except NoActiveSession as exc:
        raise http_error(exc, status.HTTP_404_NOT_FOUND) from exc
    return SessionResponse(session_id=session_id)
