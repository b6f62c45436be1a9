from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase names; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


TurnStatus = Literal["active", "completed", "failed"]


class Turn(CamelModel):
    turn_id: str
    session_id: str
    user_input: str
    extension_chain: List[str] = Field(default_factory=list)
    status: TurnStatus = "active"
    error: Optional[str] = None
    events: List[str] = Field(default_factory=list)
    started_at: str
    finished_at: Optional[str] = None


class SessionResponse(CamelModel):
    session_id: str


class TurnBeginRequest(CamelModel):
    session_id: Optional[str] = None
    user_input: Optional[str] = None
    extension_chain: Optional[List[str]] = None


class TurnBeginResponse(CamelModel):
    turn_id: str
    session_id: str
    status: TurnStatus = "active"


class TurnEmitRequest(CamelModel):
    event: Optional[str] = None
    session_id: Optional[str] = None


class TurnFailRequest(CamelModel):
    error: Optional[str] = None
    session_id: Optional[str] = None


class TurnStatusResponse(CamelModel):
    success: bool = True
    status: Optional[TurnStatus] = None
    error: Optional[str] = None


class TurnRunRequest(CamelModel):
    user_input: Optional[str] = None
    session_id: Optional[str] = None


class SurfaceGetRequest(CamelModel):
    surface_id: Optional[str] = None


class SurfaceUpdateRequest(CamelModel):
    surface_id: Optional[str] = None
    content: Any = None


class SurfaceResponse(CamelModel):
    surface_id: str
    content: Dict[str, Any]


class SurfaceUpdateResponse(CamelModel):
    success: bool = True
    surface_id: str


class LLMProcessRequest(CamelModel):
    llm_id: Optional[str] = None
    surfaces: Any = None
    user_input: Optional[str] = None


class LLMProcessResponse(CamelModel):
    response: str
    tokens_used: int = 0


class CapsuleTestRequest(CamelModel):
    surfaces: Any = None
    user_input: Optional[str] = None


class ResolvedVariableSummary(CamelModel):
    path: str
    marker: str
    has_content: bool


class CapsuleTestResponse(CamelModel):
    assembled_text: str
    resolved_variables: List[ResolvedVariableSummary]


class HealthResponse(CamelModel):
    status: Literal["ok", "degraded"]
    session_id: Optional[str] = None
    llm_service_available: bool
