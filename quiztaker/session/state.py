from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from quiztaker.models import AccessInfo, Question
from quiztaker.timer import CountdownState


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAGE_LOADING = "page_loading"
    AUTOSAVING = "autosaving"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class InFlight(str, Enum):
    NONE = "none"
    LOADING_PAGE = "loading_page"
    AUTOSAVING = "autosaving"
    SUBMITTING = "submitting"


TERMINAL_STATES = {SessionState.SUBMITTED, SessionState.CANCELLED, SessionState.FAILED}

# State entered while each kind of operation is in flight
BUSY_STATES = {
    InFlight.LOADING_PAGE: SessionState.PAGE_LOADING,
    InFlight.AUTOSAVING: SessionState.AUTOSAVING,
    InFlight.SUBMITTING: SessionState.SUBMITTING,
}


class SessionStateMachine:
    """Allowed lifecycle transitions of an attempt session"""

    _transitions: Dict[SessionState, Set[SessionState]] = {
        SessionState.INITIALIZING: {
            SessionState.ACTIVE,
            SessionState.FAILED,
            SessionState.CANCELLED,
        },
        SessionState.ACTIVE: {
            SessionState.PAGE_LOADING,
            SessionState.AUTOSAVING,
            SessionState.SUBMITTING,
            SessionState.CANCELLED,
        },
        SessionState.PAGE_LOADING: {SessionState.ACTIVE, SessionState.CANCELLED},
        SessionState.AUTOSAVING: {SessionState.ACTIVE, SessionState.CANCELLED},
        SessionState.SUBMITTING: {SessionState.SUBMITTED, SessionState.ACTIVE},
    }

    @classmethod
    def can_transition(cls, current: SessionState, target: SessionState) -> bool:
        return target in cls._transitions.get(current, set())


@dataclass
class AttemptSession:
    """The attempt being taken. Only the controller mutates it."""

    session_id: str
    quiz_id: int
    attempt_id: Optional[int] = None
    state: SessionState = SessionState.INITIALIZING
    current_page_index: int = 0
    total_pages: int = 1
    start_timestamp: Optional[float] = None
    time_limit_seconds: Optional[int] = None
    is_dirty: bool = False
    last_autosave_timestamp: Optional[float] = None
    in_flight: InFlight = InFlight.NONE
    quiz_name: str = ""
    resumed: bool = False
    access_info: Optional[AccessInfo] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def timed(self) -> bool:
        return bool(self.time_limit_seconds)

    def transition(self, target: SessionState) -> None:
        if not SessionStateMachine.can_transition(self.state, target):
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {target.value}")
        self.state = target


class SessionView(BaseModel):
    """Read-only snapshot of a session, republished after every change."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    quiz_id: int
    quiz_name: str = ""
    attempt_id: Optional[int] = None
    state: SessionState
    current_page_index: int
    total_pages: int
    start_timestamp: Optional[float] = None
    time_limit_seconds: Optional[int] = None
    is_dirty: bool
    last_autosave_timestamp: Optional[float] = None
    in_flight: InFlight
    resumed: bool = False
    countdown: Optional[CountdownState] = None
    access_info: Optional[AccessInfo] = None
    questions: List[Question] = []
