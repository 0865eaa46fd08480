from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from assessment_engine.core.database import get_db
from assessment_engine.core.auth import require_min_role, TokenData
from assessment_engine.core.clock import Clock, get_clock
from assessment_engine.services import analytics, assessments, lifecycle, proctoring

router = APIRouter()

@router.get("/assessments/{assessment_id}/summary")
def summary(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db),
            clock: Clock = Depends(get_clock)):
    assessments.get_assessment(db, assessment_id, user.tenant)
    lifecycle.expire_sweep(db, clock(), assessment_id=assessment_id)
    return analytics.summary_for_assessment(db, assessment_id, user.tenant)

@router.get("/assessments/{assessment_id}/questions")
def question_analytics(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return analytics.question_analytics_for_assessment(db, assessment_id, user.tenant)

@router.get("/assessments/{assessment_id}/heatmap")
def violation_heatmap(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return analytics.violation_heatmap(db, assessment_id, user.tenant)

@router.get("/assessments/{assessment_id}/active-sessions")
def active_sessions(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db),
                    clock: Clock = Depends(get_clock)):
    now = clock()
    assessments.get_assessment(db, assessment_id, user.tenant)
    lifecycle.expire_sweep(db, now, assessment_id=assessment_id)
    return lifecycle.get_active_sessions(db, assessment_id, user.tenant, now)

@router.get("/sessions/{session_id}/violations")
def session_violations(session_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return proctoring.get_violations(db, session_id, user.tenant)

@router.get("/candidates/{candidate_id}/progression")
def candidate_progression(candidate_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return analytics.candidate_progression(db, candidate_id, user.tenant)

@router.delete("/candidates/{candidate_id}/attempts")
def reset_attempts(candidate_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return {"deleted": assessments.reset_candidate_attempts(db, candidate_id, user.tenant)}
