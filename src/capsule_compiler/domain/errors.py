"""Error taxonomy shared by the stores, services and API routers.

Every error carries a stable ``code`` for clients and the HTTP status the
routers answer with. Services raise these; only routers turn them into
HTTP responses.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CapsuleCompilerError(Exception):
    code = "CAPSULE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class NoActiveSession(CapsuleCompilerError):
    code = "NO_SESSION"
    status_code = 400

    def __init__(self, message: str = "No active session", *, code: Optional[str] = None) -> None:
        super().__init__(message, code=code)


class TurnConflict(CapsuleCompilerError):
    code = "TURN_IN_PROGRESS"
    status_code = 409


class UnknownEvent(CapsuleCompilerError):
    code = "INVALID_EVENT"
    status_code = 400


class InvalidRequest(CapsuleCompilerError):
    code = "INVALID_REQUEST"
    status_code = 400


class InferenceFailed(CapsuleCompilerError):
    """Raised once every non-streaming attempt has failed."""

    code = "LLM_FAILED"
    status_code = 500


class InferenceUnavailable(InferenceFailed):
    code = "LLM_SERVICE_UNAVAILABLE"
    status_code = 502


class InferenceTimeout(InferenceFailed):
    code = "LLM_TIMEOUT"
    status_code = 504


class StreamFailed(CapsuleCompilerError):
    code = "LLM_STREAM_FAILED"
    status_code = 500


class StreamConnectTimeout(StreamFailed):
    code = "STREAM_CONNECT_TIMEOUT"
    status_code = 504


class StreamIdleTimeout(StreamFailed):
    code = "STREAM_IDLE_TIMEOUT"
    status_code = 504


class StorageError(CapsuleCompilerError):
    code = "STORAGE_ERROR"
    status_code = 500


class CapsuleAssemblyError(CapsuleCompilerError):
    code = "CAPSULE_ASSEMBLY_FAILED"
    status_code = 500
