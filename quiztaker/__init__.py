"""Attempt-session client for timed, paginated quizzes on a remote assessment service."""

from quiztaker.session.controller import (
    AlwaysConfirm,
    AttemptSessionController,
    StaticConfirmation,
)
from quiztaker.session.state import SessionState, SessionView

__version__ = "0.3.0"

__all__ = [
    "AlwaysConfirm",
    "AttemptSessionController",
    "SessionState",
    "SessionView",
    "StaticConfirmation",
]
