"""
Scoring: raw score, pass/fail, percentile rank, per-session results and
topic weak areas.

Rounding is round-half-up evaluated on exact rationals, so 62.5 -> 63 and
-0.125 -> -0.13 (half away from zero). Floating point never decides a tie.
"""
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from assessment_engine.core.errors import NotFound
from assessment_engine.models.orm import (Assessment, AssessmentAnswer, AssessmentSession, Question, Topic,
                                          TERMINAL_STATUSES)


def round_half_up(value: Fraction | int | float, ndigits: int = 0) -> Fraction:
    """Round half away from zero, returned as an exact Fraction."""
    scaled = Fraction(value) * (10 ** ndigits)
    magnitude = (2 * abs(scaled.numerator) + scaled.denominator) // (2 * scaled.denominator)
    signed = magnitude if scaled >= 0 else -magnitude
    return Fraction(signed, 10 ** ndigits)


def percent(part: int, whole: int) -> int:
    """round(100 * part / whole) as an integer; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return int(round_half_up(Fraction(100 * part, whole)))


@dataclass(frozen=True)
class ScoreResult:
    score: int
    correct_count: int
    total_count: int


def compute_score(correct_count: int, total_count: int) -> int:
    return percent(correct_count, total_count)


def score_answers(answers: Iterable[Optional[bool]]) -> ScoreResult:
    """Score a session from the ``is_correct`` flags of all of its answer rows.

    Unanswered rows (``None``) count toward the total but never as correct.
    """
    flags = list(answers)
    correct = sum(1 for a in flags if a is True)
    return ScoreResult(score=compute_score(correct, len(flags)), correct_count=correct, total_count=len(flags))


def is_passed(score: int, pass_score: int) -> bool:
    return score >= pass_score


@dataclass(frozen=True)
class PercentileRank:
    percentile: int
    rank: int
    total_sessions: int


def percentile(score: int, cohort_scores: List[int]) -> PercentileRank:
    """Rank of ``score`` within the cohort; a cohort of one (or none) is the top of itself."""
    if len(cohort_scores) <= 1:
        return PercentileRank(percentile=100, rank=1, total_sessions=1)
    below = sum(1 for s in cohort_scores if s < score)
    above = sum(1 for s in cohort_scores if s > score)
    return PercentileRank(percentile=percent(below, len(cohort_scores)), rank=above + 1,
                          total_sessions=len(cohort_scores))


def session_percentile(db: Session, session_id: str, tenant_id: str) -> PercentileRank:
    row = db.execute(
        select(AssessmentSession.assessment_id, AssessmentSession.score)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, Assessment.tenant_id == tenant_id)
    ).first()
    if not row or row.score is None:
        raise NotFound("session_not_found", "Session not found or not scored")
    cohort = db.scalars(
        select(AssessmentSession.score).where(
            AssessmentSession.assessment_id == row.assessment_id,
            AssessmentSession.status.in_(TERMINAL_STATUSES),
            AssessmentSession.score.is_not(None),
        )
    ).all()
    return percentile(row.score, list(cohort))


def session_results(db: Session, session_id: str, candidate_id: str, reveal: bool | None = None) -> Dict:
    """Session plus its answers in question order.

    Correct answers and explanations are included when the assessment allows
    review and the session is finished; ``reveal`` overrides that for
    creator views.
    """
    pair = db.execute(
        select(AssessmentSession, Assessment)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.id == session_id, AssessmentSession.candidate_id == candidate_id)
    ).first()
    if not pair:
        raise NotFound("session_not_found", "Session not found")
    session, assessment = pair
    if reveal is None:
        reveal = assessment.allow_review and session.is_terminal
    rows = db.execute(
        select(AssessmentAnswer, Question)
        .join(Question, Question.id == AssessmentAnswer.question_id)
        .where(AssessmentAnswer.session_id == session_id)
        .order_by(AssessmentAnswer.position)
    ).all()
    answers = []
    for answer, question in rows:
        item = {
            "question_id": question.id,
            "stem": question.stem,
            "options": list(question.options),
            "selected_index": answer.selected_index,
            "is_correct": answer.is_correct,
            "answered_at": answer.answered_at,
            "time_spent_seconds": answer.time_spent_seconds,
        }
        if reveal:
            item["correct_index"] = question.correct_index
            item["explanation"] = question.explanation
        answers.append(item)
    return {"session": session, "answers": answers, "review_available": reveal}


def weak_areas(db: Session, session_id: str, candidate_id: str) -> List[Dict]:
    """Per-topic correct/total breakdown for one session, weakest topic first."""
    owned = db.scalar(select(AssessmentSession.id).where(AssessmentSession.id == session_id,
                                                         AssessmentSession.candidate_id == candidate_id))
    if not owned:
        raise NotFound("session_not_found", "Session not found")
    rows = db.execute(
        select(Topic.id, Topic.name, Topic.color, AssessmentAnswer.is_correct)
        .join(Question, Question.id == AssessmentAnswer.question_id)
        .join(Topic, Topic.id == Question.topic_id)
        .where(AssessmentAnswer.session_id == session_id)
    ).all()
    stats: Dict[int, Dict] = {}
    for topic_id, name, color, is_correct in rows:
        entry = stats.setdefault(topic_id, {"topic_id": topic_id, "name": name, "color": color, "correct": 0, "total": 0})
        entry["total"] += 1
        if is_correct:
            entry["correct"] += 1
    topics = []
    for entry in stats.values():
        entry["percent"] = percent(entry["correct"], entry["total"])
        topics.append(entry)
    return sorted(topics, key=lambda t: (t["percent"], t["name"]))
