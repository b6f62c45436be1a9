from __future__ import annotations

from fastapi import APIRouter

from ...domain.errors import CapsuleCompilerError
from ...domain.models import LLMProcessRequest, LLMProcessResponse
from ...services.capsule_service import compile_capsule
from ...services.inference_client import get_inference_client
from ...services.prompt_service import PROCESS_LLM_IDS, STREAMING_LLM_ID, load_role_prompt
from ...services.stream_relay import StreamRelay
from ..deps import http_error, missing, require_paths, session_for

router = APIRouter(prefix="/llm", tags=["llm"])


@router.post("/process", response_model=LLMProcessResponse)
def process(req: LLMProcessRequest):
    """Non-streaming call: compile the capsule, then call with retries."""
    if req.llm_id not in PROCESS_LLM_IDS:
        raise missing("INVALID_LLM_ID", f"Invalid llmId. Valid: {', '.join(PROCESS_LLM_IDS)}")
    paths = require_paths(req.surfaces)
    try:
        session_id = session_for()
        capsule = compile_capsule(session_id, paths, req.user_input)
        result = get_inference_client().call(load_role_prompt(req.llm_id), capsule.text)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return LLMProcessResponse(response=result.text, tokens_used=result.tokens_generated)


@router.post("/stream")
async def stream(req: LLMProcessRequest):
    """Streaming call for the responder role, relayed as SSE."""
    if req.llm_id != STREAMING_LLM_ID:
        raise missing("INVALID_LLM_ID", f"Streaming is only supported for {STREAMING_LLM_ID}")
    paths = require_paths(req.surfaces)
    try:
        session_id = session_for()
        capsule = compile_capsule(session_id, paths)
        events = get_inference_client().stream(load_role_prompt(req.llm_id), capsule.text)
        relay = await StreamRelay(events, label="llm stream").open()
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return relay.response()
