from __future__ import annotations

from fastapi import APIRouter

from ...domain.errors import CapsuleCompilerError
from ...domain.models import SurfaceGetRequest, SurfaceResponse, SurfaceUpdateRequest, SurfaceUpdateResponse
from ...infrastructure.surface_store import get_surface_store
from ..deps import http_error, session_for

router = APIRouter(prefix="/surface", tags=["surface"])


@router.post("/get", response_model=SurfaceResponse)
def get_surface(req: SurfaceGetRequest):
    try:
        session_id = session_for()
        content = get_surface_store().read(session_id, req.surface_id)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return SurfaceResponse(surface_id=req.surface_id, content=content)


@router.post("/update", response_model=SurfaceUpdateResponse)
def update_surface(req: SurfaceUpdateRequest):
    try:
        session_id = session_for()
        get_surface_store().write(session_id, req.surface_id, req.content)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return SurfaceUpdateResponse(surface_id=req.surface_id)
