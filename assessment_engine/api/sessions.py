from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal
from datetime import datetime
from sqlalchemy.orm import Session
from assessment_engine.core.database import get_db
from assessment_engine.core.auth import get_current_user, has_minimum_role, TokenData
from assessment_engine.core.clock import Clock, get_clock
from assessment_engine.services import lifecycle, proctoring, scoring

router = APIRouter()

class SessionStart(BaseModel):
    assessment_id: str
    access_code: Optional[str] = Field(default=None, max_length=50)

class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    assessment_id: str
    candidate_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: Literal["in_progress","completed","timed_out"]
    score: Optional[int] = None
    passed: Optional[bool] = None
    question_order: List[int]
    tab_switch_count: int = 0

class SessionState(BaseModel):
    session: SessionOut
    time_remaining_seconds: int
    resumed: bool = False

class AnswerSubmit(BaseModel):
    question_id: int
    selected_index: int = Field(ge=0)
    time_remaining_seconds: Optional[int] = None
    time_spent_seconds: Optional[float] = Field(default=None, ge=0)

class AnswerResult(BaseModel):
    question_id: int
    selected_index: int
    recorded: bool = True

class CompletionOut(BaseModel):
    session_id: str
    status: Literal["completed","timed_out"]
    score: int
    passed: bool
    correct_count: int
    total_count: int

class TabSwitchOut(BaseModel):
    session_id: str
    tab_switch_count: int

@router.post("", response_model=SessionState)
def start_session(payload: SessionStart, request: Request, user: TokenData = Depends(get_current_user),
                  db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    now = clock()
    ip = request.client.host if request.client else None
    session, created = lifecycle.start_session(db, payload.assessment_id, user.sub, user.tenant, now,
                                               access_code=payload.access_code, ip_address=ip)
    state = lifecycle.get_session_state(db, session.id, user.sub, now)
    return SessionState(session=SessionOut.model_validate(state["session"]),
                        time_remaining_seconds=state["time_remaining_seconds"], resumed=not created)

@router.get("/{session_id}", response_model=SessionState)
def session_state(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                  clock: Clock = Depends(get_clock)):
    state = lifecycle.get_session_state(db, session_id, user.sub, clock())
    return SessionState(session=SessionOut.model_validate(state["session"]),
                        time_remaining_seconds=state["time_remaining_seconds"])

@router.get("/{session_id}/questions")
def session_questions(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    return lifecycle.get_session_questions(db, session_id, user.sub)

@router.get("/{session_id}/answers")
def existing_answers(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    return lifecycle.get_existing_answers(db, session_id, user.sub)

@router.post("/{session_id}/answers", response_model=AnswerResult)
def submit_answer(session_id: str, payload: AnswerSubmit, user: TokenData = Depends(get_current_user),
                  db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    outcome = lifecycle.submit_answer(db, session_id, user.sub, payload.question_id, payload.selected_index, clock(),
                                      time_remaining=payload.time_remaining_seconds, time_spent=payload.time_spent_seconds)
    # correctness stays server-side until results are released
    return AnswerResult(question_id=outcome.question_id, selected_index=outcome.selected_index)

@router.post("/{session_id}/complete", response_model=CompletionOut)
def complete_session(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                     clock: Clock = Depends(get_clock)):
    f = lifecycle.complete_session(db, session_id, user.sub, clock())
    return CompletionOut(session_id=f.session_id, status=f.status, score=f.score, passed=f.passed,
                         correct_count=f.correct_count, total_count=f.total_count)

@router.post("/{session_id}/tab-switch", response_model=TabSwitchOut)
def report_tab_switch(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                      clock: Clock = Depends(get_clock)):
    count = proctoring.record_tab_switch(db, session_id, user.sub, clock())
    return TabSwitchOut(session_id=session_id, tab_switch_count=count)

@router.get("/{session_id}/results")
def session_results(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    res = scoring.session_results(db, session_id, user.sub)
    return {"session": SessionOut.model_validate(res["session"]), "answers": res["answers"],
            "review_available": res["review_available"]}

@router.get("/{session_id}/percentile")
def session_percentile(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                       clock: Clock = Depends(get_clock)):
    if not has_minimum_role(user.roles, "creator"):
        lifecycle.get_session_state(db, session_id, user.sub, clock())
    p = scoring.session_percentile(db, session_id, user.tenant)
    return {"percentile": p.percentile, "rank": p.rank, "total_sessions": p.total_sessions}

@router.get("/{session_id}/weak-areas")
def weak_areas(session_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    return scoring.weak_areas(db, session_id, user.sub)
