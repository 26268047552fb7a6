from quiztaker.service.base import AssessmentService
from quiztaker.service.moodle import MoodleClient

__all__ = ["AssessmentService", "MoodleClient"]
