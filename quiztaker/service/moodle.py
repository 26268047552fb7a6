"""
Moodle web-service client for quiz attempts, with retry logic and error translation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from quiztaker.config import settings
from quiztaker.logger import setup_logger
from quiztaker.models import (
    AccessInfo,
    Attempt,
    AttemptData,
    QuizInfo,
    SaveAck,
    SubmissionResult,
)
from quiztaker.utils.exceptions import AttemptStartError, ServiceError
from quiztaker.utils.helpers import encode_answer_data

logger = setup_logger(__name__)

REST_PATH = "/webservice/rest/server.php"


class MoodleClient:
    """
    Talks to the Moodle REST endpoint on behalf of one user.

    Reads and autosaves are retried with exponential backoff on timeouts and
    server errors. Starting and finishing an attempt are sent once only.
    """

    def __init__(
        self,
        domain: str,
        token: str,
        user_id: int = 0,
        timeout: int = 30,
        max_retries: int = 3,
        backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            domain: Site base URL (scheme optional, https assumed)
            token: Web-service token
            user_id: User whose attempts are listed (0 = token owner)
            timeout: Request timeout in seconds
            max_retries: Maximum attempts for retryable calls
            backoff: Base delay in seconds; the n-th retry waits backoff * 2**n
            transport: Optional httpx transport (tests)
        """
        self.domain = self._format_domain(domain)
        self.token = token
        self.user_id = user_id
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=self.domain,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": "quiztaker/1.0"},
        )

    @classmethod
    def from_settings(cls) -> "MoodleClient":
        return cls(
            domain=settings.moodle_domain,
            token=settings.moodle_token,
            user_id=settings.moodle_user_id,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MoodleClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Assessment service operations
    # ------------------------------------------------------------------
    async def get_quiz(self, quiz_id: int) -> QuizInfo:
        data = await self._call("mod_quiz_get_quizzes_by_courses")
        for quiz in data.get("quizzes", []):
            if quiz.get("id") == quiz_id:
                return QuizInfo.model_validate(quiz)
        raise ServiceError(f"Quiz {quiz_id} not found", errorcode="invalidrecord")

    async def get_in_progress_attempt(self, quiz_id: int) -> Optional[Attempt]:
        params: Dict[str, Any] = {
            "quizid": quiz_id,
            "status": "all",
            "includepreviews": 0,
        }
        if self.user_id:
            params["userid"] = self.user_id

        data = await self._call("mod_quiz_get_user_attempts", params)
        attempts = [Attempt.model_validate(a) for a in data.get("attempts", [])]
        logger.info(f"📋 Quiz {quiz_id}: {len(attempts)} attempt(s) on record")

        for attempt in attempts:
            if attempt.in_progress:
                logger.info(f"   In progress: attempt {attempt.id} (page {attempt.currentpage})")
                return attempt
        return None

    async def start_attempt(self, quiz_id: int, forcenew: bool = False) -> Attempt:
        params: Dict[str, Any] = {"quizid": quiz_id}
        if forcenew:
            params["forcenew"] = 1

        try:
            data = await self._call("mod_quiz_start_attempt", params, method="POST", retry=False)
        except ServiceError as e:
            raise AttemptStartError(f"Could not start attempt: {e}", errorcode=e.errorcode)

        if not data.get("attempt"):
            reasons = "; ".join(w.get("message", "") for w in data.get("warnings", []))
            raise AttemptStartError(f"Could not start attempt: {reasons or 'no attempt returned'}")

        attempt = Attempt.model_validate(data["attempt"])
        logger.info(f"🆕 Started attempt {attempt.id} on quiz {quiz_id}")
        return attempt

    async def get_attempt_data(self, attempt_id: int, page_index: int) -> AttemptData:
        data = await self._call(
            "mod_quiz_get_attempt_data",
            {"attemptid": attempt_id, "page": page_index},
        )
        return AttemptData.model_validate(data)

    async def save_attempt(self, attempt_id: int, answers: Dict[str, Any]) -> SaveAck:
        params: Dict[str, Any] = {"attemptid": attempt_id, **encode_answer_data(answers)}
        data = await self._call("mod_quiz_save_attempt", params, method="POST")
        ack = SaveAck.model_validate(data)
        if not ack.status:
            raise ServiceError(f"Save of attempt {attempt_id} not acknowledged")
        return ack

    async def submit_attempt(
        self, attempt_id: int, answers: Dict[str, Any]
    ) -> SubmissionResult:
        params: Dict[str, Any] = {
            "attemptid": attempt_id,
            "finishattempt": 1,
            **encode_answer_data(answers),
        }
        data = await self._call("mod_quiz_process_attempt", params, method="POST", retry=False)
        return SubmissionResult.model_validate(data)

    async def get_access_info(self, quiz_id: int) -> AccessInfo:
        data = await self._call("mod_quiz_get_quiz_access_information", {"quizid": quiz_id})
        return AccessInfo.model_validate(data)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _call(
        self,
        wsfunction: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        retry: bool = True,
    ) -> Dict[str, Any]:
        """
        Call one web-service function.

        Raises:
            ServiceError: On transport failure, HTTP error status or a
                service-level exception payload.
        """
        query = {
            "wstoken": self.token,
            "wsfunction": wsfunction,
            "moodlewsrestformat": "json",
        }
        body = {k: str(v) for k, v in (params or {}).items()}
        attempts = self.max_retries if retry else 1

        for attempt in range(1, attempts + 1):
            try:
                if method == "GET":
                    response = await self._client.get(REST_PATH, params={**query, **body})
                else:
                    response = await self._client.post(REST_PATH, params=query, data=body)
                response.raise_for_status()
                data = response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.warning(f"⚠️ {wsfunction}: HTTP {status} on attempt {attempt}/{attempts}")

                if status < 500:
                    # Client error - don't retry
                    raise ServiceError(f"{wsfunction} failed: HTTP {status}")
                if attempt == attempts:
                    raise ServiceError(f"{wsfunction} failed: HTTP {status}")

            except httpx.TimeoutException:
                logger.warning(f"⏱️ {wsfunction}: timeout on attempt {attempt}/{attempts}")
                if attempt == attempts:
                    raise ServiceError(f"{wsfunction} timed out")

            except httpx.HTTPError as e:
                logger.warning(f"⚠️ {wsfunction}: {e!r} on attempt {attempt}/{attempts}")
                if attempt == attempts:
                    raise ServiceError(f"{wsfunction} failed: {e}")

            except ValueError:
                raise ServiceError(f"{wsfunction} returned a non-JSON response")

            else:
                if isinstance(data, dict) and "exception" in data:
                    raise ServiceError(
                        data.get("message") or data["exception"],
                        errorcode=data.get("errorcode"),
                    )
                if not isinstance(data, dict):
                    raise ServiceError(f"{wsfunction} returned an unexpected payload")
                return data

            await asyncio.sleep(self.backoff * 2**attempt)

        raise ServiceError(f"{wsfunction} failed after all retries")

    @staticmethod
    def _format_domain(domain: str) -> str:
        domain = domain.strip().rstrip("/")
        if domain and not domain.startswith(("http://", "https://")):
            domain = f"https://{domain}"
        return domain
