from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, status

from ...core.turn_sequencer import get_turn_registry
from ...domain.errors import CapsuleCompilerError, InvalidRequest, NoActiveSession
from ...domain.models import (
    Turn,
    TurnBeginRequest,
    TurnBeginResponse,
    TurnEmitRequest,
    TurnFailRequest,
    TurnRunRequest,
    TurnStatusResponse,
)
from ...services.session_service import get_session_registry
from ...services.stream_relay import StreamRelay
from ...services.turn_pipeline import run_turn
from ..deps import http_error, missing, session_for

router = APIRouter(prefix="/turn", tags=["turn"])


@router.post("/begin", response_model=TurnBeginResponse, status_code=status.HTTP_201_CREATED)
def begin_turn(req: TurnBeginRequest):
    session_id = req.session_id or get_session_registry().current_session_id()
    if not session_id:
        raise missing("MISSING_SESSION_ID", "sessionId is required")
    if not req.user_input:
        raise missing("MISSING_USER_INPUT", "userInput is required")
    try:
        turn = get_turn_registry().begin_turn(session_for(session_id), req.user_input, req.extension_chain)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return TurnBeginResponse(turn_id=turn.turn_id, session_id=turn.session_id, status=turn.status)


@router.post("/emit", response_model=TurnStatusResponse)
def emit_event(req: TurnEmitRequest):
    if not req.event:
        raise missing("MISSING_EVENT", "event is required")
    try:
        sequencer = get_turn_registry().get(session_for(req.session_id))
        if sequencer is None:
            raise InvalidRequest("No turn has begun", code="NO_ACTIVE_TURN")
        turn = sequencer.emit(req.event)
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return TurnStatusResponse(status=turn.status)


@router.post("/fail", response_model=TurnStatusResponse)
def fail_turn(req: TurnFailRequest):
    if not req.error:
        raise missing("MISSING_ERROR", "error is required")
    try:
        sequencer = get_turn_registry().get(session_for(req.session_id))
        turn = sequencer.fail_turn(req.error) if sequencer else None
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    if turn is None:
        return TurnStatusResponse(success=False, error=req.error)
    return TurnStatusResponse(status=turn.status, error=turn.error)


@router.get("/context", response_model=Turn)
def turn_context(session_id: Optional[str] = Query(default=None, alias="sessionId")):
    try:
        sequencer = get_turn_registry().get(session_for(session_id))
    except NoActiveSession as exc:
        raise http_error(exc, status.HTTP_404_NOT_FOUND) from exc
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    turn = sequencer.get_context() if sequencer else None
    if turn is None:
        raise http_error(InvalidRequest("No turn has begun", code="NO_ACTIVE_TURN"), status.HTTP_404_NOT_FOUND)
    return turn


@router.post("/run")
async def run(req: TurnRunRequest):
    """Run one full turn and relay its events as SSE."""
    if not req.user_input:
        raise missing("MISSING_USER_INPUT", "userInput is required")
    try:
        session_id = session_for(req.session_id)
        relay = await StreamRelay(run_turn(session_id, req.user_input), label="turn").open()
    except CapsuleCompilerError as exc:
        raise http_error(exc) from exc
    return relay.response()
