"""
Proctoring log: an append-only sequence of integrity events per session.

The counter on the session row is bumped in SQL and the new value becomes
the position of the appended event, so concurrent reports never collide and
earlier entries are never rewritten.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from assessment_engine.core.errors import NotFound, session_not_active
from assessment_engine.models.orm import Assessment, AssessmentSession, ProctoringEvent, IN_PROGRESS, TAB_HIDDEN, TIMED_OUT
from assessment_engine.services.lifecycle import load_active_session, finalize_session, is_session_expired

logger = logging.getLogger(__name__)

EVENT_TYPES = (TAB_HIDDEN,)


@dataclass(frozen=True)
class TabSwitchEntry:
    timestamp: datetime
    type: str

    @classmethod
    def from_event(cls, event: ProctoringEvent) -> "TabSwitchEntry":
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"unknown proctoring event type {event.event_type!r}")
        return cls(timestamp=event.occurred_at, type=event.event_type)


def record_tab_switch(db: Session, session_id: str, candidate_id: str, now: datetime) -> int:
    """Append a ``tab_hidden`` event; returns the new tab-switch count."""
    session, assessment = load_active_session(db, session_id, candidate_id)
    if is_session_expired(session.started_at, assessment.time_limit_minutes, now):
        finalize_session(db, session_id, assessment, TIMED_OUT, now)
        raise session_not_active("Session time limit has elapsed")
    bumped = db.execute(
        update(AssessmentSession)
        .where(AssessmentSession.id == session_id, AssessmentSession.status == IN_PROGRESS)
        .values(tab_switch_count=AssessmentSession.tab_switch_count + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount != 1:
        db.rollback()
        raise session_not_active()
    count = db.scalar(select(AssessmentSession.tab_switch_count).where(AssessmentSession.id == session_id))
    db.add(ProctoringEvent(session_id=session_id, position=count, event_type=TAB_HIDDEN, occurred_at=now))
    db.commit()
    logger.debug("session %s tab switch #%s", session_id, count)
    return count


def load_log(db: Session, session_id: str) -> List[TabSwitchEntry]:
    events = db.scalars(select(ProctoringEvent).where(ProctoringEvent.session_id == session_id)
                        .order_by(ProctoringEvent.position)).all()
    return [TabSwitchEntry.from_event(e) for e in events]


def get_violations(db: Session, session_id: str, tenant_id: str) -> Dict:
    """Full tab-switch detail for creator-or-above reviewers."""
    row = db.execute(
        select(AssessmentSession, Assessment.title)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, Assessment.tenant_id == tenant_id)
    ).first()
    if not row:
        raise NotFound("session_not_found", "Session not found")
    session, title = row
    return {
        "session_id": session.id,
        "candidate_id": session.candidate_id,
        "assessment_title": title,
        "tab_switch_count": session.tab_switch_count or 0,
        "tab_switch_log": load_log(db, session_id),
    }
