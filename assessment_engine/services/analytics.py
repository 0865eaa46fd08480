"""
Cohort analytics over finalized sessions of one assessment.

The pure functions at the top take plain values so they can be reused by
jobs and tested without a database; the ``*_for_assessment`` loaders below
gather rows for one tenant-scoped assessment and feed them through.
"""
import statistics
from collections import defaultdict
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from assessment_engine.core.clock import ensure_utc
from assessment_engine.core.config import settings
from assessment_engine.core.errors import NotFound
from assessment_engine.models.orm import (Assessment, AssessmentAnswer, AssessmentSession, ProctoringEvent, Question,
                                          COMPLETED, TAB_HIDDEN, TERMINAL_STATUSES)
from assessment_engine.services.scoring import percent, round_half_up

BUCKETS = 10
DISCRIMINATION_MIN_COHORT = 4
DISCRIMINATION_GROUP_SHARE = Fraction(27, 100)


def score_distribution(scores: Iterable[int]) -> List[int]:
    """Ten fixed-width buckets [0-9] ... [90-100]; a perfect score lands in the last one."""
    buckets = [0] * BUCKETS
    for score in scores:
        buckets[min(score // 10, BUCKETS - 1)] += 1
    return buckets


def completion_rate(completed: int, started: int) -> int:
    return percent(completed, started)


def median_score(scores: Sequence[int]) -> Optional[float]:
    if not scores:
        return None
    return statistics.median(scores)


def group_size(cohort_size: int) -> int:
    return max(1, int(round_half_up(cohort_size * DISCRIMINATION_GROUP_SHARE)))


def discrimination_indices(sessions: Sequence[Tuple[str, int]],
                           answers: Iterable[Tuple[str, int, Optional[bool]]]) -> Dict[int, Optional[float]]:
    """Upper-lower discrimination index per question.

    ``sessions`` are ``(session_id, score)`` pairs and ``answers`` are
    ``(session_id, question_id, is_correct)`` rows. Unanswered rows count as
    incorrect. Questions with no rows in either group map to ``None``; with
    fewer than four sessions every question does.
    """
    answers = list(answers)
    indices: Dict[int, Optional[float]] = {qid: None for _, qid, _ in answers}
    if len(sessions) < DISCRIMINATION_MIN_COHORT:
        return indices
    ranked = sorted(sessions, key=lambda s: s[1], reverse=True)
    k = group_size(len(ranked))
    top = {sid for sid, _ in ranked[:k]}
    bottom = {sid for sid, _ in ranked[-k:]}

    tally: Dict[int, List[int]] = defaultdict(lambda: [0, 0, 0, 0])
    for session_id, question_id, is_correct in answers:
        t = tally[question_id]
        if session_id in top:
            t[1] += 1
            t[0] += 1 if is_correct else 0
        if session_id in bottom:
            t[3] += 1
            t[2] += 1 if is_correct else 0
    for question_id, (top_correct, top_total, bottom_correct, bottom_total) in tally.items():
        if top_total and bottom_total:
            gap = Fraction(top_correct, top_total) - Fraction(bottom_correct, bottom_total)
            indices[question_id] = float(round_half_up(gap, 2))
    return indices


def score_trend(attempts: Iterable[Tuple[str, datetime, int]], max_attempts: Optional[int] = None) -> List[Dict]:
    """Average score of each candidate's Nth finalized attempt, N = 1..cap."""
    cap = max_attempts or settings.SCORE_TREND_MAX_ATTEMPTS
    per_candidate: Dict[str, List[int]] = defaultdict(list)
    for candidate_id, _, score in sorted(attempts, key=lambda a: ensure_utc(a[1])):
        per_candidate[candidate_id].append(score)
    longest = min(cap, max((len(v) for v in per_candidate.values()), default=0))
    trend = []
    for n in range(longest):
        at_n = [scores[n] for scores in per_candidate.values() if n < len(scores)]
        if at_n:
            trend.append({"attempt": n + 1, "avg_score": int(round_half_up(Fraction(sum(at_n), len(at_n))))})
    return trend


def attempts_by_hour(started: Iterable[datetime]) -> List[int]:
    hours = [0] * 24
    for ts in started:
        hours[ensure_utc(ts).hour] += 1
    return hours


def average_minutes(durations: Sequence[timedelta]) -> Optional[float]:
    if not durations:
        return None
    total = sum(Fraction(int(d.total_seconds() * 1_000_000), 1_000_000) for d in durations)
    return float(round_half_up(total / len(durations) / 60, 1))


def _assessment(db: Session, assessment_id: str, tenant_id: str) -> Assessment:
    assessment = db.scalar(select(Assessment).where(Assessment.id == assessment_id, Assessment.tenant_id == tenant_id))
    if not assessment:
        raise NotFound("assessment_not_found", "Assessment not found")
    return assessment


def _finalized(sessions: Iterable[AssessmentSession]) -> List[AssessmentSession]:
    return [s for s in sessions if s.status in TERMINAL_STATUSES and s.score is not None]


def summary_for_assessment(db: Session, assessment_id: str, tenant_id: str) -> Dict:
    assessment = _assessment(db, assessment_id, tenant_id)
    sessions = db.scalars(select(AssessmentSession).where(AssessmentSession.assessment_id == assessment_id)
                          .order_by(AssessmentSession.started_at)).all()
    finalized = _finalized(sessions)
    scores = [s.score for s in finalized]
    total_completed = sum(1 for s in sessions if s.status == COMPLETED)
    limit = timedelta(minutes=assessment.time_limit_minutes)
    durations = [min(ensure_utc(s.completed_at) - ensure_utc(s.started_at), limit)
                 for s in finalized if s.completed_at is not None]
    top = sorted(finalized, key=lambda s: s.score, reverse=True)[:settings.TOP_PERFORMERS_LIMIT]
    return {
        "score_distribution": score_distribution(scores),
        "completion_rate": completion_rate(total_completed, len(sessions)),
        "median_score": median_score(scores),
        "avg_time_minutes": average_minutes(durations),
        "total_started": len(sessions),
        "total_completed": total_completed,
        "total_finalized": len(finalized),
        "top_performers": [{"candidate_id": s.candidate_id, "score": s.score, "completed_at": s.completed_at}
                           for s in top],
        "tab_switch_correlation": [{"tab_switches": s.tab_switch_count or 0, "score": s.score} for s in finalized],
        "attempts_by_hour": attempts_by_hour(s.started_at for s in sessions),
        "score_trend": score_trend((s.candidate_id, s.started_at, s.score) for s in finalized),
    }


def question_analytics_for_assessment(db: Session, assessment_id: str, tenant_id: str) -> List[Dict]:
    """Per-question difficulty, timing and discrimination, hardest first."""
    _assessment(db, assessment_id, tenant_id)
    finalized = db.execute(
        select(AssessmentSession.id, AssessmentSession.score)
        .where(AssessmentSession.assessment_id == assessment_id, AssessmentSession.status.in_(TERMINAL_STATUSES),
               AssessmentSession.score.is_not(None))
    ).all()
    if not finalized:
        return []
    rows = db.execute(
        select(AssessmentAnswer.session_id, AssessmentAnswer.question_id, AssessmentAnswer.is_correct,
               AssessmentAnswer.time_spent_seconds)
        .where(AssessmentAnswer.session_id.in_([sid for sid, _ in finalized]))
    ).all()
    stats: Dict[int, Dict] = {}
    for _, question_id, is_correct, spent in rows:
        entry = stats.setdefault(question_id, {"total": 0, "correct": 0, "time_sum": 0, "time_count": 0})
        entry["total"] += 1
        if is_correct:
            entry["correct"] += 1
        if spent:
            entry["time_sum"] += spent
            entry["time_count"] += 1
    discrimination = discrimination_indices([(sid, score) for sid, score in finalized],
                                            [(sid, qid, ok) for sid, qid, ok, _ in rows])
    stems = dict(db.execute(select(Question.id, Question.stem).where(Question.id.in_(list(stats)))).all())
    questions = [{
        "question_id": qid,
        "stem": stems.get(qid, "Unknown question"),
        "total_attempts": s["total"],
        "correct_count": s["correct"],
        "percent_correct": percent(s["correct"], s["total"]),
        "avg_time_seconds": int(round_half_up(Fraction(s["time_sum"], s["time_count"]))) if s["time_count"] else None,
        "discrimination_index": discrimination.get(qid),
    } for qid, s in stats.items()]
    return sorted(questions, key=lambda q: (q["percent_correct"], q["question_id"]))


def candidate_progression(db: Session, candidate_id: str, tenant_id: str) -> List[Dict]:
    rows = db.execute(
        select(AssessmentSession, Assessment.title)
        .join(Assessment, Assessment.id == AssessmentSession.assessment_id)
        .where(AssessmentSession.candidate_id == candidate_id, Assessment.tenant_id == tenant_id,
               AssessmentSession.status.in_(TERMINAL_STATUSES))
        .order_by(AssessmentSession.completed_at)
    ).all()
    return [{"date": s.completed_at, "score": s.score or 0, "assessment_title": title, "passed": bool(s.passed)}
            for s, title in rows]


def _stem_preview(stem: str, width: int = 60) -> str:
    return stem if len(stem) <= width else stem[:width - 3] + "..."


def attribute_violation(ts: datetime, order: Sequence[int],
                        answered: Sequence[Tuple[int, datetime, int]]) -> Optional[int]:
    """Question that was on screen at ``ts``.

    ``answered`` holds ``(question_id, answered_at, time_spent_seconds)``
    sorted by ``answered_at``. An event inside an answer window
    ``[answered_at - time_spent, answered_at]`` belongs to that question;
    otherwise to the question after the last answered one.
    """
    for question_id, answered_at, spent in answered:
        if answered_at - timedelta(seconds=spent or 0) <= ts <= answered_at:
            return question_id
    if not order:
        return None
    if not answered:
        return order[0]
    last = answered[-1][0]
    nxt = order.index(last) + 1 if last in order else len(order)
    return order[nxt] if nxt < len(order) else None


def violation_heatmap(db: Session, assessment_id: str, tenant_id: str) -> Dict:
    _assessment(db, assessment_id, tenant_id)
    flagged = db.scalars(select(AssessmentSession).where(AssessmentSession.assessment_id == assessment_id,
                                                         AssessmentSession.tab_switch_count > 0)).all()
    if not flagged:
        return {"questions": [], "total_violations": 0, "flagged_session_count": 0}
    ids = [s.id for s in flagged]
    events: Dict[str, List[datetime]] = defaultdict(list)
    for sid, ts in db.execute(select(ProctoringEvent.session_id, ProctoringEvent.occurred_at)
                              .where(ProctoringEvent.session_id.in_(ids), ProctoringEvent.event_type == TAB_HIDDEN)
                              .order_by(ProctoringEvent.session_id, ProctoringEvent.position)).all():
        events[sid].append(ensure_utc(ts))
    answered: Dict[str, List[Tuple[int, datetime, int]]] = defaultdict(list)
    for sid, qid, at, spent in db.execute(
            select(AssessmentAnswer.session_id, AssessmentAnswer.question_id, AssessmentAnswer.answered_at,
                   AssessmentAnswer.time_spent_seconds)
            .where(AssessmentAnswer.session_id.in_(ids), AssessmentAnswer.answered_at.is_not(None))).all():
        answered[sid].append((qid, ensure_utc(at), spent or 0))

    counts: Dict[int, int] = defaultdict(int)
    total = 0
    for session in flagged:
        order = session.question_ids
        timeline = sorted(answered[session.id], key=lambda a: a[1])
        for ts in events[session.id]:
            total += 1
            question_id = attribute_violation(ts, order, timeline)
            if question_id is not None:
                counts[question_id] += 1
    all_ids = sorted({qid for s in flagged for qid in s.question_ids})
    stems = dict(db.execute(select(Question.id, Question.stem).where(Question.id.in_(all_ids))).all())
    return {
        "questions": [{"question_id": qid, "stem": _stem_preview(stems.get(qid, "")), "violation_count": counts[qid]}
                      for qid in all_ids],
        "total_violations": total,
        "flagged_session_count": len(flagged),
    }
