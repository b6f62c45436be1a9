from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional

from ..domain.errors import InvalidRequest, TurnConflict, UnknownEvent
from ..domain.models import Turn
from ..infrastructure.events import publish_event
from ..observability.metrics import TURN_OUTCOMES

LOG = logging.getLogger("capsule.turn")

# State machine transitions; "idle" means no turn has begun for the session
TURN_TRANSITIONS: Dict[str, List[str]] = {
    "idle": ["active"],
    "active": ["completed", "failed"],
    "completed": ["active"],
    "failed": ["active"],
}

# Recognized events -> whether the event completes the turn
TURN_EVENTS: Dict[str, bool] = {
    "extension-a.complete": True,
    "extension-b.complete": True,
    "extension-c.complete": True,
}


def is_valid_transition(current: str, target: str) -> bool:
    return target in TURN_TRANSITIONS.get(current, [])


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class TurnSequencer:
    """Single-flight turn state for one session.

    At most one turn is active; a new turn may only begin once the previous
    one has completed or failed. Turn state never touches surface content.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._turn: Optional[Turn] = None
        self._lock = RLock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._turn.status if self._turn else "idle"

    def begin_turn(self, user_input: str, extension_chain: Optional[List[str]] = None) -> Turn:
        with self._lock:
            if not is_valid_transition(self.state, "active"):
                raise TurnConflict(
                    f"Turn already in progress: {self._turn.turn_id if self._turn else '?'}"
                )
            self._turn = Turn(
                turn_id=uuid.uuid4().hex[:12],
                session_id=self.session_id,
                user_input=user_input,
                extension_chain=list(extension_chain or []),
                started_at=_now_iso(),
            )
            turn = self._turn.model_copy(deep=True)
        LOG.info("Turn %s began", turn.turn_id, extra={"session_id": self.session_id, "chain": turn.extension_chain})
        publish_event("turn.begun", turn.model_dump(by_alias=True))
        return turn

    def emit(self, event: str) -> Turn:
        if event not in TURN_EVENTS:
            raise UnknownEvent(f"Invalid event. Valid events: {', '.join(TURN_EVENTS)}")
        with self._lock:
            if self._turn is None:
                raise InvalidRequest("No turn has begun", code="NO_ACTIVE_TURN")
            self._turn.events.append(event)
            completes = TURN_EVENTS[event] and is_valid_transition(self._turn.status, "completed")
            if completes:
                self._turn.status = "completed"
                self._turn.finished_at = _now_iso()
            turn = self._turn.model_copy(deep=True)
        if completes:
            TURN_OUTCOMES.labels(status="completed").inc()
            LOG.info("Turn %s completed via %s", turn.turn_id, event)
        publish_event("turn.event", {"turnId": turn.turn_id, "event": event, "status": turn.status})
        return turn

    def fail_turn(self, message: str) -> Optional[Turn]:
        with self._lock:
            if self._turn is None:
                LOG.warning("fail_turn called with no turn", extra={"session_id": self.session_id})
                return None
            if not is_valid_transition(self._turn.status, "failed"):
                LOG.warning("fail_turn ignored for %s turn %s", self._turn.status, self._turn.turn_id)
                return self._turn.model_copy(deep=True)
            self._turn.status = "failed"
            self._turn.error = message
            self._turn.finished_at = _now_iso()
            turn = self._turn.model_copy(deep=True)
        TURN_OUTCOMES.labels(status="failed").inc()
        LOG.warning("Turn %s failed: %s", turn.turn_id, message)
        publish_event("turn.failed", {"turnId": turn.turn_id, "error": message})
        return turn

    def get_context(self) -> Optional[Turn]:
        with self._lock:
            return self._turn.model_copy(deep=True) if self._turn else None


class TurnRegistry:
    """Session id -> TurnSequencer; each session gets its own single-flight latch."""

    def __init__(self) -> None:
        self._sequencers: Dict[str, TurnSequencer] = {}
        self._lock = RLock()

    def for_session(self, session_id: str) -> TurnSequencer:
        with self._lock:
            sequencer = self._sequencers.get(session_id)
            if sequencer is None:
                sequencer = TurnSequencer(session_id)
                self._sequencers[session_id] = sequencer
            return sequencer

    def get(self, session_id: str) -> Optional[TurnSequencer]:
        """Existing sequencer for the session, or None; never registers a new one."""
        with self._lock:
            return self._sequencers.get(session_id)

    def begin_turn(self, session_id: str, user_input: str, extension_chain: Optional[List[str]] = None) -> Turn:
        return self.for_session(session_id).begin_turn(user_input, extension_chain)

    def reset(self) -> None:
        with self._lock:
            self._sequencers.clear()


_registry = TurnRegistry()


def get_turn_registry() -> TurnRegistry:
    return _registry
