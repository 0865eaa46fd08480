from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select, func
from assessment_engine.core.database import get_db
from assessment_engine.core.auth import require_min_role, TokenData
from assessment_engine.models.orm import Topic, Question, QuestionPool

router = APIRouter()

class PoolCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)

class TopicCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: Optional[str] = None

class QuestionCreate(BaseModel):
    topic_name: Optional[str] = None
    stem: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    correct_index: int = Field(ge=0)
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def correct_within_options(self):
        if self.correct_index >= len(self.options):
            raise ValueError("correct_index must point at one of the options")
        return self

@router.post("/pools", status_code=201)
def create_pool(payload: PoolCreate, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    pool = QuestionPool(tenant_id=user.tenant, title=payload.title, created_by=user.sub)
    db.add(pool); db.commit()
    return {"pool_id": pool.id, "title": pool.title}

@router.get("/pools")
def list_pools(user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    rows = db.execute(
        select(QuestionPool.id, QuestionPool.title, func.count(Question.id))
        .outerjoin(Question, Question.pool_id == QuestionPool.id)
        .where(QuestionPool.tenant_id == user.tenant)
        .group_by(QuestionPool.id, QuestionPool.title).order_by(QuestionPool.id)
    ).all()
    return [{"pool_id": r[0], "title": r[1], "question_count": r[2]} for r in rows]

@router.post("/topics", status_code=201)
def create_topic(payload: TopicCreate, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    t = Topic(tenant_id=user.tenant, name=payload.name, color=payload.color)
    db.add(t); db.commit()
    return {"topic_id": t.id, "name": t.name, "color": t.color}

@router.post("/pools/{pool_id}/questions", status_code=201)
def create_question(pool_id: int, payload: QuestionCreate, user: TokenData = Depends(require_min_role("creator")), db: Session = Depends(get_db)):
    pool = db.scalar(select(QuestionPool).where(QuestionPool.id == pool_id, QuestionPool.tenant_id == user.tenant))
    if not pool: raise HTTPException(404, "Question pool not found")
    topic_id = None
    if payload.topic_name:
        t = db.scalar(select(Topic).where(Topic.tenant_id == user.tenant, Topic.name == payload.topic_name))
        if not t:
            t = Topic(tenant_id=user.tenant, name=payload.topic_name)
            db.add(t); db.flush()
        topic_id = t.id
    q = Question(pool_id=pool_id, topic_id=topic_id, stem=payload.stem, options=payload.options,
                 correct_index=payload.correct_index, explanation=payload.explanation)
    db.add(q); db.commit()
    return {"question_id": q.id, "pool_id": pool_id, "topic_id": topic_id}
