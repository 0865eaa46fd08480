from datetime import datetime
from typing import List
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (BigInteger, Integer, String, Text, Boolean, ForeignKey, JSON, DateTime,
                        Index, UniqueConstraint, text)
from sqlalchemy.types import TypeDecorator
from assessment_engine.core.clock import ensure_utc, utcnow

BigId = BigInteger().with_variant(Integer, "sqlite")

ASSESSMENT_STATUSES = ("draft", "published", "archived")
IN_PROGRESS, COMPLETED, TIMED_OUT = "in_progress", "completed", "timed_out"
TERMINAL_STATUSES = (COMPLETED, TIMED_OUT)
TAB_HIDDEN = "tab_hidden"


class UTCDateTime(TypeDecorator):
    """Timestamps always leave the database as timezone-aware UTC."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase): pass

class Topic(Base):
    __tablename__ = "topics"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    color: Mapped[str | None] = mapped_column(String, nullable=True)

class QuestionPool(Base):
    __tablename__ = "question_pools"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    created_by: Mapped[str] = mapped_column(String)

class Question(Base):
    __tablename__ = "questions"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    pool_id: Mapped[int] = mapped_column(BigId, ForeignKey("question_pools.id"), index=True)
    topic_id: Mapped[int | None] = mapped_column(BigId, ForeignKey("topics.id"), nullable=True)
    stem: Mapped[str] = mapped_column(Text)
    options: Mapped[list] = mapped_column(JSON)
    correct_index: Mapped[int] = mapped_column(Integer)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

class Assessment(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    pool_id: Mapped[int] = mapped_column(BigId, ForeignKey("question_pools.id"))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_limit_minutes: Mapped[int] = mapped_column(Integer)
    pass_score: Mapped[int] = mapped_column(Integer)
    question_count: Mapped[int] = mapped_column(Integer)
    shuffle_questions: Mapped[bool] = mapped_column(Boolean, default=True)
    shuffle_options: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_review: Mapped[bool] = mapped_column(Boolean, default=True)
    max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cooldown_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    access_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String, default="draft", index=True)
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def time_limit_seconds(self) -> int:
        return self.time_limit_minutes * 60

class AssessmentSession(Base):
    __tablename__ = "assessment_sessions"
    __table_args__ = (
        # at most one in-progress attempt per (assessment, candidate)
        Index("uq_sessions_one_in_progress", "assessment_id", "candidate_id", unique=True,
              sqlite_where=text("status = 'in_progress'"), postgresql_where=text("status = 'in_progress'")),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    assessment_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessments.id"), index=True)
    candidate_id: Mapped[str] = mapped_column(String, index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    time_remaining_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    question_order: Mapped[list] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String, default=IN_PROGRESS, index=True)
    tab_switch_count: Mapped[int] = mapped_column(Integer, default=0)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)

    @property
    def question_ids(self) -> List[int]:
        order = self.question_order
        if not isinstance(order, list) or not all(isinstance(q, int) and not isinstance(q, bool) for q in order):
            raise ValueError(f"session {self.id} has a malformed question_order")
        return list(order)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class AssessmentAnswer(Base):
    __tablename__ = "assessment_answers"
    __table_args__ = (UniqueConstraint("session_id", "question_id", name="uq_answers_session_question"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessment_sessions.id"), index=True)
    question_id: Mapped[int] = mapped_column(BigId, ForeignKey("questions.id"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    selected_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    time_spent_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

class ProctoringEvent(Base):
    __tablename__ = "proctoring_events"
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessment_sessions.id"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, default=TAB_HIDDEN)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)
