"""
Session lifecycle: start, answer, complete, expire.

in_progress -> completed | timed_out. Both targets are terminal. Every
transition out of in_progress is a single conditional UPDATE on the session
row (``WHERE status = 'in_progress'``); the caller whose UPDATE matched the
row owns the transition, every other caller sees ``session_not_active``.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from assessment_engine.core.clock import ensure_utc
from assessment_engine.core.config import settings
from assessment_engine.core.errors import (InvalidTransition, NotFound, ValidationFailed, QUESTION_NOT_IN_SESSION,
                                           session_not_active)
from assessment_engine.models.orm import (Assessment, AssessmentAnswer, AssessmentSession, Question, COMPLETED,
                                          IN_PROGRESS, TIMED_OUT)
from assessment_engine.services.governor import can_start, load_history
from assessment_engine.services.scoring import ScoreResult, is_passed, round_half_up, score_answers
from assessment_engine.services.selector import select_questions

logger = logging.getLogger(__name__)


@dataclass
class Finalization:
    session_id: str
    status: str
    score: int
    passed: bool
    correct_count: int
    total_count: int


def is_session_expired(started_at: datetime, time_limit_minutes: int, now: datetime) -> bool:
    """True once ``now`` is strictly past ``started_at + limit``; the limit instant itself is still in time."""
    return now > ensure_utc(started_at) + timedelta(minutes=time_limit_minutes)


def time_remaining_seconds(session: AssessmentSession, assessment: Assessment, now: datetime) -> int:
    if session.is_terminal:
        return session.time_remaining_seconds or 0
    elapsed = int((now - ensure_utc(session.started_at)).total_seconds())
    remaining = max(0, assessment.time_limit_seconds - elapsed)
    if session.time_remaining_seconds is not None:
        remaining = min(remaining, session.time_remaining_seconds)
    return remaining


def lock_in_progress(session_id: str):
    """Row lock on a still in-progress session; answer writes and finalize claims serialize on it."""
    return (select(AssessmentSession.id)
            .where(AssessmentSession.id == session_id, AssessmentSession.status == IN_PROGRESS)
            .with_for_update())


def load_active_session(db: Session, session_id: str, candidate_id: str) -> Tuple[AssessmentSession, Assessment]:
    pair = db.execute(
        select(AssessmentSession, Assessment)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, AssessmentSession.candidate_id == candidate_id,
               AssessmentSession.status == IN_PROGRESS)
    ).first()
    if not pair:
        raise session_not_active()
    return pair[0], pair[1]


def finalize_session(db: Session, session_id: str, assessment: Assessment, to_status: str,
                     now: datetime) -> Optional[Finalization]:
    """Claim the in_progress -> terminal transition, then score. None when another caller won."""
    values = {"status": to_status, "completed_at": now}
    if to_status == TIMED_OUT:
        values["time_remaining_seconds"] = 0
    claimed = db.execute(
        update(AssessmentSession)
        .where(AssessmentSession.id == session_id, AssessmentSession.status == IN_PROGRESS)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        logger.debug("session %s already finalized; skipping %s", session_id, to_status)
        return None
    flags = db.scalars(select(AssessmentAnswer.is_correct).where(AssessmentAnswer.session_id == session_id)).all()
    result: ScoreResult = score_answers(flags)
    passed = is_passed(result.score, assessment.pass_score)
    db.execute(
        update(AssessmentSession)
        .where(AssessmentSession.id == session_id)
        .values(score=result.score, passed=passed)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("session %s %s: score=%s passed=%s (%s/%s)", session_id, to_status, result.score, passed,
                result.correct_count, result.total_count)
    return Finalization(session_id=session_id, status=to_status, score=result.score, passed=passed,
                        correct_count=result.correct_count, total_count=result.total_count)


def start_session(db: Session, assessment_id: str, candidate_id: str, tenant_id: str, now: datetime,
                  access_code: Optional[str] = None, ip_address: Optional[str] = None,
                  rng: Optional[random.Random] = None) -> Tuple[AssessmentSession, bool]:
    """Start or resume an attempt. Returns ``(session, created)``."""
    assessment = db.scalar(select(Assessment).where(Assessment.id == assessment_id, Assessment.tenant_id == tenant_id))
    if not assessment:
        raise NotFound("assessment_not_found", "Assessment not found")
    expire_sweep(db, now, assessment_id=assessment_id)

    verdict = can_start(assessment, load_history(db, assessment_id, candidate_id), now, access_code)
    verdict.raise_for_reason()
    if verdict.existing_session is not None:
        return verdict.existing_session, False

    pool_ids = db.scalars(select(Question.id).where(Question.pool_id == assessment.pool_id).order_by(Question.id)).all()
    order = select_questions(pool_ids, assessment.question_count, assessment.shuffle_questions, rng)

    session = AssessmentSession(
        id=str(uuid4()), assessment_id=assessment_id, candidate_id=candidate_id, started_at=now,
        time_remaining_seconds=assessment.time_limit_seconds, question_order=order, status=IN_PROGRESS,
        tab_switch_count=0, ip_address=ip_address,
    )
    db.add(session)
    db.add_all([AssessmentAnswer(session_id=session.id, question_id=qid, position=i) for i, qid in enumerate(order)])
    try:
        db.commit()
    except IntegrityError:
        # a concurrent start won the one-in-progress index; resume its session
        db.rollback()
        existing = db.scalar(select(AssessmentSession).where(
            AssessmentSession.assessment_id == assessment_id, AssessmentSession.candidate_id == candidate_id,
            AssessmentSession.status == IN_PROGRESS))
        if existing is None:
            raise
        return existing, False
    logger.info("session %s started for candidate %s on assessment %s (%s questions)", session.id, candidate_id,
                assessment_id, len(order))
    return session, True


@dataclass
class AnswerOutcome:
    question_id: int
    selected_index: int
    is_correct: bool


def submit_answer(db: Session, session_id: str, candidate_id: str, question_id: int, selected_index: int,
                  now: datetime, time_remaining: Optional[int] = None,
                  time_spent: Optional[float] = None) -> AnswerOutcome:
    if selected_index < 0:
        raise ValidationFailed("invalid_selected_index", "Selected index must be non-negative")
    if time_spent is not None and time_spent < 0:
        raise ValidationFailed("invalid_time_spent", "Time spent must be non-negative")

    session, assessment = load_active_session(db, session_id, candidate_id)
    if is_session_expired(session.started_at, assessment.time_limit_minutes, now):
        finalize_session(db, session_id, assessment, TIMED_OUT, now)
        raise session_not_active("Session time limit has elapsed")
    if question_id not in session.question_ids:
        raise InvalidTransition(QUESTION_NOT_IN_SESSION, "Question not part of this session")

    question = db.get(Question, question_id)
    if question is None:
        raise NotFound("question_not_found", "Question not found")
    if selected_index >= len(question.options):
        raise ValidationFailed("invalid_selected_index",
                               f"Selected index must be below {len(question.options)}")

    is_correct = selected_index == question.correct_index
    values = {"selected_index": selected_index, "is_correct": is_correct, "answered_at": now}
    if time_spent is not None:
        values["time_spent_seconds"] = int(round_half_up(Fraction(str(time_spent))))
    if db.scalar(lock_in_progress(session_id)) is None:
        db.rollback()
        raise session_not_active()
    written = db.execute(
        update(AssessmentAnswer)
        .where(AssessmentAnswer.session_id == session_id, AssessmentAnswer.question_id == question_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if written.rowcount != 1:
        db.rollback()
        raise session_not_active()

    if time_remaining is not None and time_remaining >= 0:
        snapshot = min(int(time_remaining), assessment.time_limit_seconds)
        db.execute(
            update(AssessmentSession)
            .where(AssessmentSession.id == session_id, AssessmentSession.status == IN_PROGRESS,
                   or_(AssessmentSession.time_remaining_seconds.is_(None),
                       AssessmentSession.time_remaining_seconds >= snapshot))
            .values(time_remaining_seconds=snapshot)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    return AnswerOutcome(question_id=question_id, selected_index=selected_index, is_correct=is_correct)


def complete_session(db: Session, session_id: str, candidate_id: str, now: datetime) -> Finalization:
    """Finish an attempt. A session already past its deadline finishes as timed_out."""
    session, assessment = load_active_session(db, session_id, candidate_id)
    expired = is_session_expired(session.started_at, assessment.time_limit_minutes, now)
    outcome = finalize_session(db, session_id, assessment, TIMED_OUT if expired else COMPLETED, now)
    if outcome is None:
        raise session_not_active()
    return outcome


def expire_sweep(db: Session, now: datetime, assessment_id: Optional[str] = None,
                 tenant_id: Optional[str] = None, limit: Optional[int] = None) -> int:
    """Time out every overdue in-progress session. Safe to run concurrently and repeatedly."""
    stmt = (
        select(AssessmentSession.id, AssessmentSession.started_at, Assessment)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.status == IN_PROGRESS)
    )
    if assessment_id is not None:
        stmt = stmt.where(AssessmentSession.assessment_id == assessment_id)
    if tenant_id is not None:
        stmt = stmt.where(Assessment.tenant_id == tenant_id)
    rows = db.execute(stmt.order_by(AssessmentSession.started_at).limit(limit or settings.EXPIRE_SWEEP_LIMIT)).all()

    overdue = [(sid, a) for sid, started_at, a in rows if is_session_expired(started_at, a.time_limit_minutes, now)]
    expired = 0
    for session_id, assessment in overdue:
        if finalize_session(db, session_id, assessment, TIMED_OUT, now) is not None:
            expired += 1
    if expired:
        logger.info("expiry sweep timed out %s of %s overdue sessions", expired, len(overdue))
    return expired


def get_session_state(db: Session, session_id: str, candidate_id: str, now: datetime) -> Dict:
    pair = db.execute(
        select(AssessmentSession, Assessment)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, AssessmentSession.candidate_id == candidate_id)
    ).first()
    if not pair:
        raise NotFound("session_not_found", "Session not found")
    session, assessment = pair
    return {"session": session, "time_remaining_seconds": time_remaining_seconds(session, assessment, now)}


def get_session_questions(db: Session, session_id: str, candidate_id: str) -> Dict:
    """Stems and options in the session's frozen order. Correct answers never leave here."""
    pair = db.execute(
        select(AssessmentSession, Assessment.shuffle_options)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, AssessmentSession.candidate_id == candidate_id)
    ).first()
    if not pair:
        raise NotFound("session_not_found", "Session not found")
    session, shuffle_options = pair
    order = session.question_ids
    by_id = {q.id: q for q in db.scalars(select(Question).where(Question.id.in_(order))).all()}
    questions = [{"question_id": qid, "stem": by_id[qid].stem, "options": list(by_id[qid].options)}
                 for qid in order if qid in by_id]
    return {"shuffle_options": shuffle_options, "questions": questions}


def get_existing_answers(db: Session, session_id: str, candidate_id: str) -> List[Dict]:
    owned = db.scalar(select(AssessmentSession.id).where(AssessmentSession.id == session_id,
                                                         AssessmentSession.candidate_id == candidate_id))
    if not owned:
        raise NotFound("session_not_found", "Session not found")
    rows = db.execute(
        select(AssessmentAnswer.question_id, AssessmentAnswer.selected_index)
        .where(AssessmentAnswer.session_id == session_id, AssessmentAnswer.selected_index.is_not(None))
        .order_by(AssessmentAnswer.position)
    ).all()
    return [{"question_id": qid, "selected_index": idx} for qid, idx in rows]


def get_active_sessions(db: Session, assessment_id: str, tenant_id: str, now: datetime) -> List[Dict]:
    """Live monitoring of in-progress attempts for one assessment."""
    assessment = db.scalar(select(Assessment).where(Assessment.id == assessment_id, Assessment.tenant_id == tenant_id))
    if not assessment:
        raise NotFound("assessment_not_found", "Assessment not found")
    sessions = db.scalars(select(AssessmentSession).where(AssessmentSession.assessment_id == assessment_id,
                                                          AssessmentSession.status == IN_PROGRESS)).all()
    if not sessions:
        return []
    answered = dict(db.execute(
        select(AssessmentAnswer.session_id, func.count())
        .where(AssessmentAnswer.session_id.in_([s.id for s in sessions]), AssessmentAnswer.selected_index.is_not(None))
        .group_by(AssessmentAnswer.session_id)
    ).all())
    return [{
        "session_id": s.id,
        "candidate_id": s.candidate_id,
        "started_at": s.started_at,
        "time_remaining_seconds": time_remaining_seconds(s, assessment, now),
        "questions_answered": answered.get(s.id, 0),
        "total_questions": assessment.question_count,
        "tab_switch_count": s.tab_switch_count or 0,
    } for s in sessions]
