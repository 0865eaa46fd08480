"""
Attempt governance: may this candidate start (or resume) an attempt now?

Checks run in a fixed order and stop at the first failure:
status, schedule window, access code, attempt cap, cooldown, then resume of
an existing in-progress attempt.
"""
import hmac
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from assessment_engine.core.clock import ensure_utc
from assessment_engine.core.errors import NotEligible
from assessment_engine.models.orm import Assessment, AssessmentSession, IN_PROGRESS, TERMINAL_STATUSES

NOT_PUBLISHED = "not_published"
NOT_YET_OPEN = "not_yet_open"
CLOSED = "closed"
INVALID_CODE = "invalid_code"
MAX_ATTEMPTS_REACHED = "max_attempts_reached"
COOLDOWN_ACTIVE = "cooldown_active"


@dataclass
class Eligibility:
    allowed: bool
    reason: Optional[str] = None
    minutes_remaining: Optional[int] = None
    existing_session: Optional[AssessmentSession] = None

    def raise_for_reason(self) -> None:
        if self.allowed:
            return
        raise NotEligible(self.reason, describe(self.reason, self.minutes_remaining),
                          **({"minutes_remaining": self.minutes_remaining} if self.minutes_remaining is not None else {}))


def describe(reason: str, minutes_remaining: Optional[int] = None) -> str:
    if reason == COOLDOWN_ACTIVE:
        unit = "minute" if minutes_remaining == 1 else "minutes"
        return f"Please wait {minutes_remaining} {unit} before retaking"
    return {
        NOT_PUBLISHED: "Assessment not found or not published",
        NOT_YET_OPEN: "This assessment has not started yet",
        CLOSED: "This assessment has closed",
        INVALID_CODE: "Invalid access code",
        MAX_ATTEMPTS_REACHED: "Maximum attempts reached",
    }.get(reason, reason)


def access_code_matches(expected: str, provided: Optional[str]) -> bool:
    if provided is None:
        return False
    a, b = expected.encode("utf-8"), provided.encode("utf-8")
    # compare_digest is constant-time for equal lengths; unequal lengths fail without comparing bytes
    return len(a) == len(b) and hmac.compare_digest(a, b)


def can_start(assessment: Assessment, history: Sequence[AssessmentSession], now: datetime,
              access_code: Optional[str] = None) -> Eligibility:
    if assessment.status != "published":
        return Eligibility(False, NOT_PUBLISHED)
    start_date, end_date = ensure_utc(assessment.start_date), ensure_utc(assessment.end_date)
    if start_date is not None and now < start_date:
        return Eligibility(False, NOT_YET_OPEN)
    if end_date is not None and now > end_date:
        return Eligibility(False, CLOSED)
    if assessment.access_code and not access_code_matches(assessment.access_code, access_code):
        return Eligibility(False, INVALID_CODE)

    terminal = [s for s in history if s.status in TERMINAL_STATUSES]
    if assessment.max_attempts is not None and len(terminal) >= assessment.max_attempts:
        return Eligibility(False, MAX_ATTEMPTS_REACHED)

    if assessment.cooldown_minutes:
        finished = [ensure_utc(s.completed_at) for s in terminal if s.completed_at is not None]
        if finished:
            cooldown_end = max(finished) + timedelta(minutes=assessment.cooldown_minutes)
            if now < cooldown_end:
                minutes_left = math.ceil((cooldown_end - now).total_seconds() / 60)
                return Eligibility(False, COOLDOWN_ACTIVE, minutes_remaining=minutes_left)

    existing = next((s for s in history if s.status == IN_PROGRESS), None)
    return Eligibility(True, existing_session=existing)


def load_history(db: Session, assessment_id: str, candidate_id: str) -> List[AssessmentSession]:
    return list(db.scalars(
        select(AssessmentSession)
        .where(AssessmentSession.assessment_id == assessment_id, AssessmentSession.candidate_id == candidate_id)
        .order_by(AssessmentSession.started_at)
    ).all())
