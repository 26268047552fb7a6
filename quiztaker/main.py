from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quiztaker.codec import HtmlAnswerCodec
from quiztaker.config import settings
from quiztaker.logger import setup_logger
from quiztaker.models import (
    AnswerChangeRequest,
    CancelResponse,
    ConfirmRequest,
    HealthResponse,
    NavigateRequest,
    SubmitResponse,
)
from quiztaker.registry import SessionRegistry
from quiztaker.service.base import AssessmentService
from quiztaker.service.moodle import MoodleClient
from quiztaker.session.controller import AttemptSessionController, StaticConfirmation
from quiztaker.session.events import Notification
from quiztaker.session.state import SessionView
from quiztaker.utils.exceptions import (
    InitializationError,
    NavigationFailure,
    OperationRejected,
    QuizTakerError,
    SessionNotFound,
    SubmitFailure,
)

load_dotenv()

logger = setup_logger(__name__)

_ERROR_STATUS = {
    SessionNotFound: 404,
    OperationRejected: 409,
    NavigationFailure: 502,
    SubmitFailure: 502,
    InitializationError: 503,
}


def create_app(service: Optional[AssessmentService] = None) -> FastAPI:
    """
    Build the host service.

    Args:
        service: Assessment service shared by all sessions. Defaults to a
            Moodle client configured from settings.
    """
    registry = SessionRegistry(ttl_seconds=settings.session_ttl_seconds)
    owns_service = service is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager: startup and shutdown."""
        logger.info("🚀 Starting quiz attempt service")
        logger.info(f"   Config: domain={settings.moodle_domain or '(unset)'}")
        app.state.service = service or MoodleClient.from_settings()
        yield
        logger.info("🛑 Shutting down service")
        await registry.close_all()
        if owns_service:
            await app.state.service.aclose()

    app = FastAPI(title="Quiz Attempt Client", version="0.3.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.registry = registry

    @app.post("/quizzes/{quiz_id}/attempt", response_model=SessionView)
    async def start_attempt(quiz_id: int, request: Request):
        """Resume the in-progress attempt on a quiz, or start a new one."""
        controller = AttemptSessionController(
            request.app.state.service, codec=HtmlAnswerCodec()
        )
        try:
            view = await controller.initialize(quiz_id)
        except QuizTakerError:
            await controller.close()
            raise
        registry.add(controller)
        logger.info(f"📥 Session {controller.session_id} opened for quiz {quiz_id}")
        return view

    @app.get("/sessions/{sid}", response_model=SessionView)
    async def get_session(sid: str):
        controller = await registry.get(sid)
        return controller.view()

    @app.post("/sessions/{sid}/page", response_model=SessionView)
    async def navigate(sid: str, body: NavigateRequest):
        controller = await registry.get(sid)
        return await controller.navigate_to_page(body.index)

    @app.post("/sessions/{sid}/answers", response_model=SessionView)
    async def change_answer(sid: str, body: AnswerChangeRequest):
        controller = await registry.get(sid)
        return controller.record_answer_change(body.field, body.value)

    @app.post("/sessions/{sid}/submit", response_model=SubmitResponse)
    async def submit(sid: str, body: ConfirmRequest):
        controller = await registry.get(sid)
        result = await controller.submit(StaticConfirmation(body.confirm))
        return SubmitResponse(submitted=result is not None, result=result)

    @app.post("/sessions/{sid}/cancel", response_model=CancelResponse)
    async def cancel(sid: str, body: ConfirmRequest):
        controller = await registry.get(sid)
        cancelled = await controller.cancel(StaticConfirmation(body.confirm))
        return CancelResponse(cancelled=cancelled)

    @app.get("/sessions/{sid}/events", response_model=List[Notification])
    async def events(sid: str, since: int = 0):
        """Notifications newer than `since`, for UIs that poll."""
        controller = await registry.get(sid)
        return controller.bus.since(since)

    @app.delete("/sessions/{sid}")
    async def close_session(sid: str):
        """Tear down a session locally; the server-side attempt is untouched."""
        await registry.get(sid)
        await registry.remove(sid)
        return {"closed": True}

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            active_sessions=len(registry),
            service_configured=bool(service) or bool(settings.moodle_domain and settings.moodle_token),
        )

    @app.exception_handler(QuizTakerError)
    async def quiz_exception_handler(request: Request, exc: QuizTakerError):
        """Handle application exceptions."""
        status = next(
            (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400
        )
        if status >= 500:
            logger.error(f"🔥 {type(exc).__name__}: {exc}")
        else:
            logger.warning(f"⚠️ {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"🔥 Unexpected Error: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "quiztaker.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
