"""
Typed failures raised by the engine services.

Every failure carries a ``kind`` (the taxonomy bucket), a machine readable
``reason`` and a human readable message. The API layer maps ``kind`` to an
HTTP status in one place.
"""
from typing import Any, Dict, Optional


class AssessmentError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, reason: str, message: Optional[str] = None, **extra: Any):
        self.reason = reason
        self.message = message or reason.replace("_", " ").capitalize()
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"type": self.kind, "reason": self.reason, "message": self.message}
        body.update(self.extra)
        return body


class ValidationFailed(AssessmentError):
    kind = "validation"
    status_code = 422


class NotFound(AssessmentError):
    kind = "not_found"
    status_code = 404


class NotEligible(AssessmentError):
    """Attempt Governor rejection (schedule, code, attempts, cooldown)."""
    kind = "not_eligible"
    status_code = 403


class InvalidTransition(AssessmentError):
    kind = "invalid_transition"
    status_code = 409


class InsufficientData(AssessmentError):
    kind = "insufficient_data"
    status_code = 422


SESSION_NOT_ACTIVE = "session_not_active"
QUESTION_NOT_IN_SESSION = "question_not_in_session"


def session_not_active(message: str = "Session not found or already completed") -> InvalidTransition:
    return InvalidTransition(SESSION_NOT_ACTIVE, message)
