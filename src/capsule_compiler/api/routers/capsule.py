from __future__ import annotations

from fastapi import APIRouter

from ...domain.errors import CapsuleCompilerError
from ...domain.models import CapsuleTestRequest, CapsuleTestResponse, ResolvedVariableSummary
from ...services.capsule_service import compile_capsule
from ..deps import http_error, require_paths, session_for

router = APIRouter(prefix="/capsule", tags=["capsule"])


@router.post("/test", response_model=CapsuleTestResponse)
def preview(req: CapsuleTestRequest):
    """Assemble a capsule for the current session without calling a model."""
    paths = require_paths(req.surfaces)
    try:
        capsule = compile_capsule(session_for(), paths, req.user_input)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return CapsuleTestResponse(
        assembled_text=capsule.text,
        resolved_variables=[
            ResolvedVariableSummary(path=v.path, marker=v.marker, has_content=v.has_content)
            for v in capsule.variables
        ],
    )
