"""
Attempt session lifecycle: resume or start, page navigation, answer edits,
autosave, countdown and exactly-once finalization.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, List, NamedTuple, Optional, Protocol

from quiztaker.autosave import AutosaveScheduler
from quiztaker.cache import PageAnswerCache
from quiztaker.codec import AnswerCodec, HtmlAnswerCodec
from quiztaker.config import settings
from quiztaker.logger import setup_logger
from quiztaker.models import (
    AccessInfo,
    Attempt,
    AttemptData,
    Question,
    QuizInfo,
    RawQuestion,
    SubmissionResult,
)
from quiztaker.service.base import AssessmentService
from quiztaker.session.events import NotificationBus, NotificationKind
from quiztaker.session.state import (
    BUSY_STATES,
    AttemptSession,
    InFlight,
    SessionState,
    SessionView,
)
from quiztaker.timer import Clock, CountdownTimer
from quiztaker.utils.exceptions import (
    AutosaveFailure,
    InitializationError,
    NavigationFailure,
    OperationRejected,
    QuizTakerError,
    ResumeFailure,
    ServiceError,
    SubmitFailure,
)
from quiztaker.utils.helpers import count_layout_pages

logger = setup_logger(__name__)


class LoadedPage(NamedTuple):
    index: int
    data: AttemptData
    questions: List[Question]


class ConfirmationPort(Protocol):
    async def confirm(self, action: str) -> bool: ...


class AlwaysConfirm:
    """Confirms every action (scripts, expiry-driven flows)."""

    async def confirm(self, action: str) -> bool:
        return True


class StaticConfirmation:
    """Answer decided up front, e.g. by a UI dialog before the request was sent."""

    def __init__(self, answer: bool) -> None:
        self.answer = answer

    async def confirm(self, action: str) -> bool:
        return self.answer


class AttemptSessionController:
    """
    Sole owner of one AttemptSession.

    Timer ticks, autosave periods and user calls all run on one event loop.
    `in_flight` is checked and set with no await in between, so at most one
    remote operation runs at a time; conflicting calls are rejected with
    OperationRejected, and autosave periods are skipped.
    """

    def __init__(
        self,
        service: AssessmentService,
        codec: Optional[AnswerCodec] = None,
        confirmation: Optional[ConfirmationPort] = None,
        clock: Optional[Clock] = None,
        bus: Optional[NotificationBus] = None,
        *,
        tick_seconds: Optional[float] = None,
        autosave_seconds: Optional[float] = None,
        warning_seconds: Optional[int] = None,
        grace_seconds: Optional[float] = None,
    ) -> None:
        self.session_id = uuid.uuid4().hex
        self.service = service
        self.codec = codec or HtmlAnswerCodec()
        self.confirmation = confirmation or AlwaysConfirm()
        self.clock = clock or Clock()
        self.bus = bus or NotificationBus()

        self.tick_seconds = tick_seconds or settings.timer_tick_seconds
        self.warning_seconds = (
            settings.time_warning_seconds if warning_seconds is None else warning_seconds
        )
        self.grace_seconds = (
            settings.expiry_grace_seconds if grace_seconds is None else grace_seconds
        )

        self.session: Optional[AttemptSession] = None
        self.cache = PageAnswerCache()
        self.timer: Optional[CountdownTimer] = None
        self.autosave = AutosaveScheduler(
            self.autosave_once, autosave_seconds or settings.autosave_interval_seconds
        )

        self._closed = False
        self._generation = 0  # bumped on every answer edit
        self._idle = asyncio.Event()
        self._idle.set()
        self._auto_submit_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def initialize(self, quiz_id: int) -> SessionView:
        """
        Resume the in-progress attempt on `quiz_id`, or start a new one.

        Raises:
            InitializationError: Neither resuming nor starting succeeded.
        """
        if self.session is not None:
            raise OperationRejected("Session already initialized")

        session = AttemptSession(session_id=self.session_id, quiz_id=quiz_id)
        self.session = session
        logger.info(f"🚀 Initializing session {self.session_id} for quiz {quiz_id}")

        try:
            quiz = await self.service.get_quiz(quiz_id)
        except ServiceError as e:
            self._fail_initialization(f"Could not load quiz {quiz_id}: {e}")
            raise InitializationError(f"Could not load quiz {quiz_id}: {e}") from e

        session.quiz_name = quiz.name
        session.access_info = await self._load_access_info(quiz_id)

        existing = await self._find_in_progress(quiz_id)
        page = await self._resume(existing) if existing is not None else None
        if page is None:
            self._check_still_initializing()
            # A stale in-progress attempt blocks a normal start
            page = await self._start_fresh(quiz_id, forcenew=existing is not None)

        self._check_still_initializing()
        self._activate(quiz, page)
        return self.view()

    async def navigate_to_page(self, index: int) -> SessionView:
        """
        Load page `index`, replacing the cached page.

        Unsaved answers of the current page are saved first so leaving a page
        never drops them.

        Raises:
            OperationRejected: Out of range, or another operation in flight.
            NavigationFailure: Save or load failed; still on the previous page.
        """
        session = self._require_open()
        if not 0 <= index < session.total_pages:
            raise OperationRejected(f"Page {index} out of range 0..{session.total_pages - 1}")
        if session.in_flight is not InFlight.NONE:
            raise OperationRejected(f"Cannot navigate while {session.in_flight.value}")

        self._begin(InFlight.LOADING_PAGE)
        error: Optional[ServiceError] = None
        try:
            page = await self._fetch_page(session.attempt_id, index)
            # Loop until no edit lands during the save
            while session.is_dirty and not session.terminal:
                generation = self._generation
                await self.service.save_attempt(session.attempt_id, self.cache.collect())
                self._mark_saved(generation)
        except ServiceError as e:
            error = e
        finally:
            self._end()

        if session.terminal:
            raise OperationRejected(f"Session {session.state.value} during page load")
        if error is not None:
            failure = NavigationFailure(f"Could not open page {index + 1}: {error}")
            self._report(NotificationKind.NAVIGATION_FAILED, failure, page=index)
            raise failure from error

        questions = page.questions
        self.cache.load(index, questions)
        session.current_page_index = index
        session.total_pages = self._count_pages(page.data, index, session.total_pages)
        session.is_dirty = False
        logger.info(f"📄 Page {index + 1}/{session.total_pages} ({len(questions)} question(s))")
        self._publish(NotificationKind.PAGE_CHANGED, page=index)
        return self.view()

    def record_answer_change(self, field_key: str, value: Any) -> SessionView:
        """
        Apply one answer edit locally and mark the session dirty.

        Never waits and never saves; saving is left to autosave and submit.
        """
        session = self._require_open()
        try:
            self.cache.set_value(field_key, value)
        except KeyError:
            raise OperationRejected(f"No answer field '{field_key}' on this page")
        except ValueError as e:
            raise OperationRejected(str(e))

        self._generation += 1
        session.is_dirty = True
        return self.view()

    async def submit(
        self, confirmation: Optional[ConfirmationPort] = None
    ) -> Optional[SubmissionResult]:
        """
        Ask for confirmation, then finalize the attempt.

        Returns:
            The submission result, or None when the user declined.

        Raises:
            OperationRejected: Already submitting, loading a page, or closed.
            SubmitFailure: The service rejected the submission; retry is possible.
        """
        session = self._require_open()
        self._check_can_submit(session)

        port = confirmation or self.confirmation
        if not await port.confirm("submit"):
            logger.info("↩️  Submission not confirmed")
            return None

        return await self._finalize()

    async def cancel(self, confirmation: Optional[ConfirmationPort] = None) -> bool:
        """
        Ask for confirmation, then abandon the session locally.

        The server-side attempt is left as is.
        """
        session = self._require_open(allow_initializing=True)
        if session.in_flight is InFlight.SUBMITTING:
            raise OperationRejected("Cannot cancel while submitting")

        port = confirmation or self.confirmation
        if not await port.confirm("cancel"):
            return False

        session = self._require_open(allow_initializing=True)
        if session.in_flight is InFlight.SUBMITTING:
            raise OperationRejected("Cannot cancel while submitting")

        self._stop_background()
        session.transition(SessionState.CANCELLED)
        session.in_flight = InFlight.NONE
        self._idle.set()
        self.cache.clear()
        logger.info(f"🛑 Session {self.session_id} cancelled")
        self._publish(NotificationKind.CANCELLED)
        return True

    async def autosave_once(self) -> Optional[bool]:
        """
        One autosave period.

        Returns:
            True if saved, False if the save failed, None if skipped.
        """
        session = self.session
        if (
            session is None
            or self._closed
            or session.terminal
            or session.state is SessionState.INITIALIZING
            or not session.is_dirty
            or session.in_flight is not InFlight.NONE
        ):
            return None

        self._begin(InFlight.AUTOSAVING)
        generation = self._generation
        error: Optional[ServiceError] = None
        try:
            await self.service.save_attempt(session.attempt_id, self.cache.collect())
        except ServiceError as e:
            error = e
        finally:
            self._end()

        if session.terminal:
            return None
        if error is not None:
            self._report(NotificationKind.SAVE_FAILED, AutosaveFailure(f"Autosave failed: {error}"))
            return False

        self._mark_saved(generation)
        session.last_autosave_timestamp = self.clock.now()
        logger.info(f"💾 Answers saved for attempt {session.attempt_id}")
        self._publish(NotificationKind.SAVED)
        return True

    async def close(self) -> None:
        """Tear down timers without touching the attempt on the server."""
        if self._closed:
            return
        self._closed = True
        self._stop_background()
        task = self._auto_submit_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self.session is not None:
            self._publish(NotificationKind.CLOSED)
        logger.info(f"👋 Session {self.session_id} closed")

    def view(self) -> SessionView:
        session = self.session
        if session is None:
            raise OperationRejected("Session not initialized")
        return SessionView(
            session_id=session.session_id,
            quiz_id=session.quiz_id,
            quiz_name=session.quiz_name,
            attempt_id=session.attempt_id,
            state=session.state,
            current_page_index=session.current_page_index,
            total_pages=session.total_pages,
            start_timestamp=session.start_timestamp,
            time_limit_seconds=session.time_limit_seconds,
            is_dirty=session.is_dirty,
            last_autosave_timestamp=session.last_autosave_timestamp,
            in_flight=session.in_flight,
            resumed=session.resumed,
            countdown=self.timer.snapshot() if self.timer else None,
            access_info=session.access_info,
            questions=[q.model_copy(deep=True) for q in self.cache.questions],
        )

    @property
    def closed(self) -> bool:
        return self._closed or (self.session is not None and self.session.terminal)

    @property
    def auto_submit_task(self) -> Optional[asyncio.Task]:
        return self._auto_submit_task

    @property
    def awaiting_expiry(self) -> bool:
        """A timed attempt that is still counting down or being auto-submitted."""
        if self.closed or self.timer is None:
            return False
        task = self._auto_submit_task
        return self.timer.running or (task is not None and not task.done())

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    async def _load_access_info(self, quiz_id: int) -> Optional[AccessInfo]:
        try:
            return await self.service.get_access_info(quiz_id)
        except ServiceError as e:
            logger.warning(f"⚠️ Access info unavailable for quiz {quiz_id}: {e}")
            return None

    async def _find_in_progress(self, quiz_id: int) -> Optional[Attempt]:
        try:
            return await self.service.get_in_progress_attempt(quiz_id)
        except ServiceError as e:
            logger.warning(f"⚠️ Could not list attempts, starting fresh: {e}")
            return None

    async def _resume(self, existing: Attempt) -> Optional[LoadedPage]:
        logger.info(f"🔄 Resuming attempt {existing.id} at page {existing.currentpage + 1}")
        self._publish(
            NotificationKind.RESUMING, attempt_id=existing.id, page=existing.currentpage
        )
        try:
            page = await self._fetch_page(existing.id, existing.currentpage)
        except ServiceError as e:
            failure = ResumeFailure(f"Could not resume attempt {existing.id}: {e}")
            self._report(NotificationKind.RESUME_FAILED, failure, attempt_id=existing.id)
            return None

        self.session.resumed = True
        return page

    async def _start_fresh(self, quiz_id: int, forcenew: bool) -> LoadedPage:
        try:
            attempt = await self.service.start_attempt(quiz_id, forcenew=forcenew)
            return await self._fetch_page(attempt.id, 0)
        except ServiceError as e:
            self._fail_initialization(f"Could not start quiz {quiz_id}: {e}")
            raise InitializationError(f"Could not start quiz {quiz_id}: {e}") from e

    def _check_still_initializing(self) -> None:
        if self._closed:
            raise OperationRejected("Session closed during initialization")
        if self.session.terminal:
            raise OperationRejected(f"Session {self.session.state.value} during initialization")

    def _fail_initialization(self, reason: str) -> None:
        logger.error(f"🔥 Initialization failed: {reason}")
        if self.session.terminal:
            return
        self.session.transition(SessionState.FAILED)
        self._publish(
            NotificationKind.INITIALIZATION_FAILED,
            error=InitializationError.__name__,
            message=reason,
        )

    def _activate(self, quiz: QuizInfo, page: LoadedPage) -> None:
        session = self.session
        attempt = page.data.attempt

        session.attempt_id = attempt.id
        session.start_timestamp = attempt.timestart.timestamp()
        session.time_limit_seconds = quiz.timelimit or None
        session.current_page_index = page.index
        session.total_pages = self._count_pages(page.data, page.index, quiz.numpages or 1)
        session.is_dirty = False
        self.cache.load(page.index, page.questions)
        session.transition(SessionState.ACTIVE)

        if session.timed:
            self.timer = CountdownTimer(
                start_timestamp=session.start_timestamp,
                time_limit_seconds=session.time_limit_seconds,
                warning_threshold_seconds=self.warning_seconds,
                clock=self.clock,
                on_warning=self._on_time_warning,
                on_expired=self._on_time_expired,
                tick_seconds=self.tick_seconds,
            )
        self.autosave.start()

        logger.info(
            f"✅ Attempt {attempt.id} active: page {page.index + 1}/{session.total_pages}, "
            f"{'limit ' + str(session.time_limit_seconds) + 's' if session.timed else 'untimed'}"
        )
        self._publish(
            NotificationKind.STARTED, attempt_id=attempt.id, resumed=session.resumed
        )
        if self.timer is not None:
            self.timer.start()

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    async def _fetch_page(self, attempt_id: int, page_index: int) -> LoadedPage:
        data = await self.service.get_attempt_data(attempt_id, page_index)
        questions = [self._to_question(raw, page_index) for raw in data.questions]
        return LoadedPage(page_index, data, questions)

    def _to_question(self, raw: RawQuestion, page_index: int) -> Question:
        parsed = self.codec.parse(raw)
        return Question(
            id=raw.slot,
            page_index=page_index,
            type=raw.type,
            question_text=parsed.question_text,
            raw_payload=raw.html,
            answers=parsed.answers,
        )

    @staticmethod
    def _count_pages(data: AttemptData, page_index: int, fallback: int) -> int:
        if data.attempt.layout:
            total = count_layout_pages(data.attempt.layout)
        else:
            total = max(fallback, data.nextpage + 1)
        return max(total, page_index + 1, 1)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------
    def _check_can_submit(self, session: AttemptSession) -> None:
        if session.in_flight in (InFlight.SUBMITTING, InFlight.LOADING_PAGE):
            raise OperationRejected(f"Cannot submit while {session.in_flight.value}")

    async def _finalize(self) -> SubmissionResult:
        session = self._require_open()
        self._check_can_submit(session)
        # An autosave in flight is allowed to finish first
        await self._wait_idle()
        session = self._require_open()
        if session.in_flight is not InFlight.NONE:
            raise OperationRejected(f"Cannot submit while {session.in_flight.value}")

        self._begin(InFlight.SUBMITTING)
        answers = self.cache.collect()
        logger.info(f"📤 Submitting attempt {session.attempt_id} ({len(answers)} answer(s))")
        try:
            result = await self.service.submit_attempt(session.attempt_id, answers)
        except ServiceError as e:
            # in_flight is cleared only once the failed call has fully returned
            self._end()
            failure = SubmitFailure(f"Submission failed: {e}")
            self._report(NotificationKind.SUBMIT_FAILED, failure)
            raise failure from e
        except BaseException:
            self._end()
            raise

        session.in_flight = InFlight.NONE
        session.is_dirty = False
        session.transition(SessionState.SUBMITTED)
        self._idle.set()
        self._stop_background()
        logger.info(f"🏁 Attempt {session.attempt_id} submitted ({result.state})")
        self._publish(NotificationKind.SUBMITTED, state=result.state)
        return result

    def _on_time_warning(self, remaining: int) -> None:
        self._publish(NotificationKind.TIME_WARNING, remaining=remaining)

    def _on_time_expired(self) -> None:
        self._publish(NotificationKind.TIME_EXPIRED)
        if self._auto_submit_task is None:
            self._auto_submit_task = asyncio.create_task(
                self._submit_on_expiry(), name=f"auto-submit-{self.session_id}"
            )

    async def _submit_on_expiry(self) -> None:
        if self.grace_seconds > 0:
            await asyncio.sleep(self.grace_seconds)
        await self._wait_idle()

        session = self.session
        if self._closed or session.terminal:
            return
        logger.warning(f"⌛ Time is up, submitting attempt {session.attempt_id}")
        try:
            await self._finalize()
        except QuizTakerError as e:
            logger.error(f"❌ Automatic submission failed: {e}")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _require_open(self, allow_initializing: bool = False) -> AttemptSession:
        session = self.session
        if session is None or (
            session.state is SessionState.INITIALIZING and not allow_initializing
        ):
            raise OperationRejected("Session not initialized")
        if self._closed:
            raise OperationRejected("Session closed")
        if session.terminal:
            raise OperationRejected(f"Session is {session.state.value}")
        return session

    def _begin(self, operation: InFlight) -> None:
        session = self.session
        session.in_flight = operation
        session.transition(BUSY_STATES[operation])
        self._idle.clear()

    def _end(self) -> None:
        session = self.session
        session.in_flight = InFlight.NONE
        if session.state in BUSY_STATES.values():
            session.transition(SessionState.ACTIVE)
        self._idle.set()

    async def _wait_idle(self) -> None:
        while self.session.in_flight is not InFlight.NONE:
            await self._idle.wait()

    def _mark_saved(self, generation: int) -> None:
        # Edits made while the save was in flight keep the session dirty
        if generation == self._generation:
            self.session.is_dirty = False

    def _stop_background(self) -> None:
        if self.timer is not None:
            self.timer.stop()
        self.autosave.stop()

    def _report(self, kind: NotificationKind, failure: QuizTakerError, **payload: Any) -> None:
        logger.warning(f"⚠️ {failure}")
        self._publish(kind, error=type(failure).__name__, message=str(failure), **payload)

    def _publish(self, kind: NotificationKind, **payload: Any) -> None:
        view = self.view() if self.session is not None else None
        self.bus.publish(kind, self.session_id, payload, view=view)
