from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from quiztaker.models import (
    AccessInfo,
    Attempt,
    AttemptData,
    QuizInfo,
    SaveAck,
    SubmissionResult,
)


class AssessmentService(Protocol):
    """
    Remote-call boundary to the assessment service.

    Implementations own their timeouts, retries and authentication, and raise
    ServiceError (or AttemptStartError) instead of transport errors.
    """

    async def get_quiz(self, quiz_id: int) -> QuizInfo: ...

    async def get_in_progress_attempt(self, quiz_id: int) -> Optional[Attempt]: ...

    async def start_attempt(self, quiz_id: int, forcenew: bool = False) -> Attempt: ...

    async def get_attempt_data(self, attempt_id: int, page_index: int) -> AttemptData: ...

    async def save_attempt(self, attempt_id: int, answers: Dict[str, Any]) -> SaveAck: ...

    async def submit_attempt(
        self, attempt_id: int, answers: Dict[str, Any]
    ) -> SubmissionResult: ...

    async def get_access_info(self, quiz_id: int) -> AccessInfo: ...
