from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# ----------------------------------------------------------------------
# Assessment service payloads
# ----------------------------------------------------------------------


class Attempt(BaseModel):
    """One attempt of the user at a quiz, as tracked by the service."""

    id: int
    quiz: int = 0
    userid: int = 0
    attempt: int = 0
    layout: str = ""
    currentpage: int = 0
    state: str = "inprogress"
    timestart: datetime
    timefinish: Optional[datetime] = None
    timemodified: Optional[datetime] = None
    timecheckstate: Optional[datetime] = None
    sumgrades: Optional[float] = None

    @property
    def in_progress(self) -> bool:
        return self.state == "inprogress"


class RawQuestion(BaseModel):
    """Question record exactly as returned by the service."""

    slot: int
    type: str = ""
    page: int = 0
    html: str = ""
    status: Optional[str] = None
    stateclass: Optional[str] = None
    flagged: bool = False
    sequencecheck: Optional[int] = None
    maxmark: Optional[float] = None


class AttemptData(BaseModel):
    """Response of the attempt-data call: the attempt plus one page of questions."""

    attempt: Attempt
    questions: List[RawQuestion] = Field(default_factory=list)
    nextpage: int = -1
    messages: List[str] = Field(default_factory=list)


class AccessInfo(BaseModel):
    """Informational access rules for a quiz."""

    canattempt: bool = True
    canreviewmyattempts: bool = True
    isfinished: bool = False
    preventaccessreasons: List[str] = Field(default_factory=list)
    preventnewattemptreasons: List[str] = Field(default_factory=list)
    accessrules: List[str] = Field(default_factory=list)
    activerulenames: List[str] = Field(default_factory=list)


class QuizInfo(BaseModel):
    """Quiz settings relevant to taking an attempt."""

    id: int
    name: str = ""
    timelimit: int = 0
    questionsperpage: int = 0
    numpages: Optional[int] = None


class SaveAck(BaseModel):
    """Acknowledgement of an autosave."""

    status: bool = True
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


class SubmissionResult(BaseModel):
    """Outcome of finalizing an attempt."""

    state: str = "finished"
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Parsed questions and answer fields
# ----------------------------------------------------------------------


class AnswerKind(str, Enum):
    SCALAR = "scalar"
    MULTI = "multi"


class AnswerOption(BaseModel):
    value: str
    label: str = ""
    selected: bool = False


class Answer(BaseModel):
    """One editable answer field produced by the answer codec."""

    name: str
    kind: AnswerKind = AnswerKind.SCALAR
    input_type: str = "text"
    label: str = ""
    required: bool = False
    value: Any = None
    options: List[AnswerOption] = Field(default_factory=list)

    def option_key(self, option_value: str) -> str:
        """Field key of one option of a checkbox group."""
        return f"{self.name}_{option_value}"

    def checked(self) -> List[str]:
        """Checked option values in declared order (multi-valued fields only)."""
        return [o.value for o in self.options if o.selected]


class Question(BaseModel):
    """One assessable unit on a page."""

    id: int
    page_index: int
    type: str = ""
    question_text: str = ""
    raw_payload: str = Field(default="", repr=False)
    answers: List[Answer] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Host service request/response bodies
# ----------------------------------------------------------------------


class NavigateRequest(BaseModel):
    """Request body for POST /sessions/{sid}/page."""

    index: int


class AnswerChangeRequest(BaseModel):
    """Request body for POST /sessions/{sid}/answers."""

    field: str
    value: Any = None


class ConfirmRequest(BaseModel):
    """Request body for submit/cancel. The host UI asks the user first."""

    confirm: bool = False


class SubmitResponse(BaseModel):
    """Response body for POST /sessions/{sid}/submit."""

    submitted: bool
    result: Optional[SubmissionResult] = None


class CancelResponse(BaseModel):
    """Response body for POST /sessions/{sid}/cancel."""

    cancelled: bool


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    active_sessions: int
    service_configured: bool
