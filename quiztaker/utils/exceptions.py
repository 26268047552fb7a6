"""Exceptions raised by the quiz attempt client."""


class QuizTakerError(Exception):
    """Base exception for quiz attempt errors."""

    pass


class ServiceError(QuizTakerError):
    """Assessment service call failed (transport, HTTP status or service exception)."""

    def __init__(self, message: str, errorcode: str | None = None) -> None:
        super().__init__(message)
        self.errorcode = errorcode


class AttemptStartError(ServiceError):
    """The service refused to start an attempt (e.g. access restrictions)."""

    pass


class InitializationError(QuizTakerError):
    """Neither resuming nor starting an attempt succeeded."""

    pass


class ResumeFailure(QuizTakerError):
    """Loading an in-progress attempt failed; a fresh attempt is started instead."""

    pass


class AutosaveFailure(QuizTakerError):
    """Periodic save failed. Answers stay dirty and are retried next period."""

    pass


class SubmitFailure(QuizTakerError):
    """Final submission failed. The session stays active so the user can retry."""

    pass


class NavigationFailure(QuizTakerError):
    """Page load failed. The session stays on the previous page."""

    pass


class OperationRejected(QuizTakerError):
    """Operation not allowed in the current session state."""

    pass


class SessionNotFound(QuizTakerError):
    """No live session with the given id."""

    pass
