from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal
from datetime import datetime
from sqlalchemy.orm import Session
from assessment_engine.core.database import get_db
from assessment_engine.core.auth import get_current_user, has_minimum_role, require_min_role, TokenData
from assessment_engine.services import assessments as catalog

router = APIRouter()

class AssessmentFields(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    time_limit_minutes: int = Field(ge=1, le=480)
    pass_score: int = Field(ge=0, le=100)
    question_count: int = Field(ge=1, le=500)
    shuffle_questions: bool = True
    shuffle_options: bool = False
    allow_review: bool = True
    max_attempts: Optional[int] = Field(default=None, ge=1)
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    access_code: Optional[str] = Field(default=None, max_length=50)

class AssessmentCreate(AssessmentFields):
    pool_id: int

class AssessmentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    time_limit_minutes: Optional[int] = Field(default=None, ge=1, le=480)
    pass_score: Optional[int] = Field(default=None, ge=0, le=100)
    question_count: Optional[int] = Field(default=None, ge=1, le=500)
    shuffle_questions: Optional[bool] = None
    shuffle_options: Optional[bool] = None
    allow_review: Optional[bool] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    access_code: Optional[str] = Field(default=None, max_length=50)

class AssessmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    pool_id: int
    title: str
    description: Optional[str] = None
    time_limit_minutes: int
    pass_score: int
    question_count: int
    shuffle_questions: bool
    shuffle_options: bool
    allow_review: bool
    max_attempts: Optional[int] = None
    cooldown_minutes: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    requires_access_code: bool = False
    status: Literal["draft","published","archived"]
    created_by: str
    created_at: datetime
    updated_at: datetime

def _out(a) -> AssessmentOut:
    out = AssessmentOut.model_validate(a)
    out.requires_access_code = bool(a.access_code)
    return out

@router.post("", response_model=AssessmentOut, status_code=201)
def create_assessment(payload: AssessmentCreate, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude={"pool_id"})
    return _out(catalog.create_assessment(db, user.tenant, user.sub, payload.pool_id, **fields))

@router.get("", response_model=List[AssessmentOut])
def list_assessments(status: Optional[Literal["draft","published","archived"]] = None,
                     user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    # candidates only ever see what they can take
    published_only = not has_minimum_role(user.roles, "creator")
    return [_out(a) for a in catalog.list_assessments(db, user.tenant, published_only, status)]

@router.get("/{assessment_id}", response_model=AssessmentOut)
def get_assessment(assessment_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    published_only = not has_minimum_role(user.roles, "creator")
    return _out(catalog.get_assessment(db, assessment_id, user.tenant, published_only))

@router.patch("/{assessment_id}", response_model=AssessmentOut)
def update_assessment(assessment_id: str, payload: AssessmentUpdate, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    return _out(catalog.update_assessment(db, assessment_id, user.tenant, changes))

@router.post("/{assessment_id}/publish", response_model=AssessmentOut)
def publish(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return _out(catalog.publish_assessment(db, assessment_id, user.tenant))

@router.post("/{assessment_id}/archive", response_model=AssessmentOut)
def archive(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return _out(catalog.archive_assessment(db, assessment_id, user.tenant))

@router.post("/{assessment_id}/unpublish", response_model=AssessmentOut)
def unpublish(assessment_id: str, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    return _out(catalog.unpublish_assessment(db, assessment_id, user.tenant))
