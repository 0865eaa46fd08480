"""
Assessment catalog: authoring lifecycle and the administrative attempt reset.

draft -> published -> archived, with published -> draft allowed while no
attempt is in progress. Configuration is editable only in draft.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from assessment_engine.core.clock import utcnow
from assessment_engine.core.errors import InvalidTransition, NotFound, ValidationFailed
from assessment_engine.models.orm import (Assessment, AssessmentAnswer, AssessmentSession, ProctoringEvent, Question,
                                          QuestionPool, IN_PROGRESS)
from assessment_engine.services.selector import ensure_pool_size

logger = logging.getLogger(__name__)

DRAFT, PUBLISHED, ARCHIVED = "draft", "published", "archived"

EDITABLE_FIELDS = (
    "title", "description", "time_limit_minutes", "pass_score", "question_count", "shuffle_questions",
    "shuffle_options", "allow_review", "max_attempts", "cooldown_minutes", "start_date", "end_date", "access_code",
)


def _pool_size(db: Session, pool_id: int, tenant_id: str) -> int:
    pool = db.scalar(select(QuestionPool).where(QuestionPool.id == pool_id, QuestionPool.tenant_id == tenant_id))
    if not pool:
        raise NotFound("pool_not_found", "Question pool not found")
    return db.scalar(select(func.count()).select_from(Question).where(Question.pool_id == pool_id)) or 0


def _check_window(start_date: Optional[datetime], end_date: Optional[datetime]) -> None:
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValidationFailed("invalid_schedule", "End date must be after start date")


def get_assessment(db: Session, assessment_id: str, tenant_id: str, published_only: bool = False) -> Assessment:
    stmt = select(Assessment).where(Assessment.id == assessment_id, Assessment.tenant_id == tenant_id)
    if published_only:
        stmt = stmt.where(Assessment.status == PUBLISHED)
    assessment = db.scalar(stmt)
    if not assessment:
        raise NotFound("assessment_not_found", "Assessment not found")
    return assessment


def list_assessments(db: Session, tenant_id: str, published_only: bool = False,
                     status: Optional[str] = None) -> List[Assessment]:
    stmt = select(Assessment).where(Assessment.tenant_id == tenant_id)
    if published_only:
        stmt = stmt.where(Assessment.status == PUBLISHED)
    elif status:
        stmt = stmt.where(Assessment.status == status)
    return list(db.scalars(stmt.order_by(Assessment.created_at.desc())).all())


def create_assessment(db: Session, tenant_id: str, created_by: str, pool_id: int, **fields: Any) -> Assessment:
    ensure_pool_size(_pool_size(db, pool_id, tenant_id), fields["question_count"])
    _check_window(fields.get("start_date"), fields.get("end_date"))
    if not fields.get("access_code"):
        fields["access_code"] = None
    assessment = Assessment(id=str(uuid4()), tenant_id=tenant_id, pool_id=pool_id, created_by=created_by,
                            status=DRAFT, **{k: v for k, v in fields.items() if k in EDITABLE_FIELDS})
    db.add(assessment)
    db.commit()
    db.refresh(assessment)
    logger.info("assessment %s created in tenant %s by %s", assessment.id, tenant_id, created_by)
    return assessment


def update_assessment(db: Session, assessment_id: str, tenant_id: str, changes: Dict[str, Any]) -> Assessment:
    assessment = get_assessment(db, assessment_id, tenant_id)
    if assessment.status != DRAFT:
        raise InvalidTransition("not_draft", "Only draft assessments can be edited")
    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    if "access_code" in changes and not changes["access_code"]:
        changes["access_code"] = None
    if "question_count" in changes:
        ensure_pool_size(_pool_size(db, assessment.pool_id, tenant_id), changes["question_count"])
    _check_window(changes.get("start_date", assessment.start_date), changes.get("end_date", assessment.end_date))
    for key, value in changes.items():
        setattr(assessment, key, value)
    db.commit()
    db.refresh(assessment)
    return assessment


def _transition(db: Session, assessment_id: str, tenant_id: str, from_status: str, to_status: str) -> Assessment:
    moved = db.execute(
        update(Assessment)
        .where(Assessment.id == assessment_id, Assessment.tenant_id == tenant_id, Assessment.status == from_status)
        .values(status=to_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        db.rollback()
        get_assessment(db, assessment_id, tenant_id)
        raise InvalidTransition(f"not_{from_status}", f"Assessment not found or not {from_status}")
    db.commit()
    logger.info("assessment %s %s -> %s", assessment_id, from_status, to_status)
    return get_assessment(db, assessment_id, tenant_id)


def publish_assessment(db: Session, assessment_id: str, tenant_id: str) -> Assessment:
    assessment = get_assessment(db, assessment_id, tenant_id)
    # the pool may have shrunk since the draft was saved
    ensure_pool_size(_pool_size(db, assessment.pool_id, tenant_id), assessment.question_count)
    return _transition(db, assessment_id, tenant_id, DRAFT, PUBLISHED)


def archive_assessment(db: Session, assessment_id: str, tenant_id: str) -> Assessment:
    return _transition(db, assessment_id, tenant_id, PUBLISHED, ARCHIVED)


def unpublish_assessment(db: Session, assessment_id: str, tenant_id: str) -> Assessment:
    get_assessment(db, assessment_id, tenant_id)
    active = db.scalar(select(AssessmentSession.id).where(AssessmentSession.assessment_id == assessment_id,
                                                          AssessmentSession.status == IN_PROGRESS).limit(1))
    if active:
        raise InvalidTransition("sessions_in_progress", "Cannot revert while sessions are in progress")
    return _transition(db, assessment_id, tenant_id, PUBLISHED, DRAFT)


def reset_candidate_attempts(db: Session, candidate_id: str, tenant_id: str) -> int:
    """Delete every attempt of one candidate across the tenant's assessments. Returns sessions deleted."""
    session_ids = list(db.scalars(
        select(AssessmentSession.id)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.candidate_id == candidate_id, Assessment.tenant_id == tenant_id)
    ).all())
    if not session_ids:
        return 0
    db.execute(delete(ProctoringEvent).where(ProctoringEvent.session_id.in_(session_ids)))
    db.execute(delete(AssessmentAnswer).where(AssessmentAnswer.session_id.in_(session_ids)))
    db.execute(delete(AssessmentSession).where(AssessmentSession.id.in_(session_ids)))
    db.commit()
    logger.info("reset %s attempts of candidate %s in tenant %s", len(session_ids), candidate_id, tenant_id)
    return len(session_ids)
