import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENVIRONMENT"] = "testing"

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assessment_engine.core.auth import create_token
from assessment_engine.core.clock import get_clock
from assessment_engine.core.database import get_db
from assessment_engine.main import app
from assessment_engine.services.scoring import percent
from assessment_engine.models.orm import (Base, Assessment, AssessmentAnswer, AssessmentSession, Question,
                                          QuestionPool, Topic, COMPLETED)

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Seeder:
    """Direct inserts for arranging state without going through the services."""

    def __init__(self, db):
        self.db = db

    def pool(self, n: int = 5, tenant: str = TENANT, topics: Optional[List[str]] = None) -> QuestionPool:
        pool = QuestionPool(tenant_id=tenant, title=f"Pool {uuid4().hex[:6]}", created_by="author")
        self.db.add(pool)
        self.db.flush()
        topic_rows = []
        for name in topics or []:
            t = Topic(tenant_id=tenant, name=name, color="#336699")
            self.db.add(t)
            topic_rows.append(t)
        self.db.flush()
        for i in range(n):
            topic_id = topic_rows[i % len(topic_rows)].id if topic_rows else None
            self.db.add(Question(pool_id=pool.id, topic_id=topic_id, stem=f"Question {i + 1}?",
                                 options=["A", "B", "C", "D"], correct_index=0, explanation=f"Because {i + 1}"))
        self.db.commit()
        return pool

    def question_ids(self, pool: QuestionPool) -> List[int]:
        return [q.id for q in sorted(pool_questions(self.db, pool.id), key=lambda q: q.id)]

    def assessment(self, pool: QuestionPool, **overrides) -> Assessment:
        fields = dict(
            id=str(uuid4()), tenant_id=pool.tenant_id, pool_id=pool.id, title="Cardiology Final",
            time_limit_minutes=60, pass_score=70, question_count=5, shuffle_questions=False,
            shuffle_options=False, allow_review=True, status="published", created_by="author",
        )
        fields.update(overrides)
        assessment = Assessment(**fields)
        self.db.add(assessment)
        self.db.commit()
        return assessment

    def finished_session(self, assessment: Assessment, candidate_id: str, flags: List[Optional[bool]],
                         question_ids: List[int], started_at: datetime = T0, minutes: int = 30,
                         status: str = COMPLETED, tab_switches: int = 0) -> AssessmentSession:
        correct = sum(1 for f in flags if f)
        score = percent(correct, len(flags))
        session = AssessmentSession(
            id=str(uuid4()), assessment_id=assessment.id, candidate_id=candidate_id, started_at=started_at,
            completed_at=started_at + timedelta(minutes=minutes), time_remaining_seconds=0, score=score,
            passed=score >= assessment.pass_score, question_order=list(question_ids), status=status,
            tab_switch_count=tab_switches,
        )
        self.db.add(session)
        for i, (qid, flag) in enumerate(zip(question_ids, flags)):
            self.db.add(AssessmentAnswer(session_id=session.id, question_id=qid, position=i,
                                         selected_index=None if flag is None else (0 if flag else 1),
                                         is_correct=flag, time_spent_seconds=20 if flag is not None else None,
                                         answered_at=None if flag is None else started_at + timedelta(minutes=i + 1)))
        self.db.commit()
        return session


def pool_questions(db, pool_id: int) -> List[Question]:
    return list(db.query(Question).filter(Question.pool_id == pool_id).all())


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def client(session_factory, clock):
    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user_id: str, *roles: str, tenant: str = TENANT):
        token = create_token(user_id, list(roles) or ["candidate"], tenant)
        return {"Authorization": f"Bearer {token}"}
    return headers
