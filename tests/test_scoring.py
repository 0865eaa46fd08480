from fractions import Fraction

import pytest

from assessment_engine.core.errors import NotFound
from assessment_engine.models.orm import TIMED_OUT
from assessment_engine.services.scoring import (compute_score, is_passed, percent, percentile, round_half_up,
                                                score_answers, session_percentile, session_results, weak_areas)
from conftest import TENANT, OTHER_TENANT


@pytest.mark.parametrize("value,ndigits,expected", [
    (Fraction(5, 2), 0, 3),
    (Fraction(125, 2), 0, 63),
    (Fraction(-5, 2), 0, -3),
    (Fraction(-1, 8), 2, Fraction(-13, 100)),
    (Fraction(2, 3), 2, Fraction(67, 100)),
    (0.5, 0, 1),
])
def test_round_half_up(value, ndigits, expected):
    assert round_half_up(value, ndigits) == expected


def test_percent_and_score_edges():
    assert percent(1, 0) == 0
    assert compute_score(0, 0) == 0
    assert compute_score(5, 8) == 63
    assert compute_score(1, 3) == 33
    assert compute_score(2, 3) == 67
    assert compute_score(7, 7) == 100


def test_score_bounds_and_monotonicity():
    for total in range(1, 25):
        scores = [compute_score(c, total) for c in range(total + 1)]
        assert scores[0] == 0 and scores[-1] == 100
        assert scores == sorted(scores)


def test_unanswered_count_against_total():
    result = score_answers([True, True, True, True, None])
    assert (result.score, result.correct_count, result.total_count) == (80, 4, 5)
    assert score_answers([True, False, None, True, True]).score == 60


def test_pass_threshold_inclusive():
    assert is_passed(70, 70)
    assert not is_passed(69, 70)
    assert is_passed(80, 70) and not is_passed(60, 70)
    assert all(is_passed(s, 0) for s in range(101))
    assert [s for s in range(101) if is_passed(s, 100)] == [100]


def test_percentile_ranks_and_ties():
    assert percentile(80, [50, 60, 80, 90]) == percentile(80, [90, 80, 60, 50])
    p = percentile(80, [50, 60, 80, 90])
    assert (p.percentile, p.rank, p.total_sessions) == (50, 2, 4)
    tied = percentile(70, [70, 70, 70])
    assert (tied.percentile, tied.rank) == (0, 1)
    top = percentile(100, [100, 40])
    assert (top.percentile, top.rank) == (50, 1)


def test_percentile_empty_cohort():
    p = percentile(42, [])
    assert (p.percentile, p.rank, p.total_sessions) == (100, 1, 1)


def test_percentile_single_session_cohort():
    p = percentile(80, [80])
    assert (p.percentile, p.rank, p.total_sessions) == (100, 1, 1)


def test_session_percentile_lone_finisher_is_top(db, seed):
    pool = seed.pool(5)
    qids = seed.question_ids(pool)
    a = seed.assessment(pool)
    only = seed.finished_session(a, "c1", [True, True, True, True, False], qids)

    p = session_percentile(db, only.id, TENANT)
    assert (p.percentile, p.rank, p.total_sessions) == (100, 1, 1)


def test_session_percentile_uses_finalized_cohort(db, seed):
    pool = seed.pool(5)
    qids = seed.question_ids(pool)
    a = seed.assessment(pool)
    low = seed.finished_session(a, "c1", [True, False, False, False, False], qids)
    seed.finished_session(a, "c2", [True, True, True, False, False], qids, status=TIMED_OUT)
    best = seed.finished_session(a, "c3", [True] * 5, qids)

    p = session_percentile(db, best.id, TENANT)
    assert (p.percentile, p.rank, p.total_sessions) == (67, 1, 3)
    p = session_percentile(db, low.id, TENANT)
    assert (p.percentile, p.rank) == (0, 3)
    with pytest.raises(NotFound):
        session_percentile(db, best.id, OTHER_TENANT)


def test_results_reveal_only_when_review_allowed(db, seed):
    pool = seed.pool(5)
    qids = seed.question_ids(pool)
    open_review = seed.assessment(pool)
    closed_review = seed.assessment(pool, allow_review=False)
    s1 = seed.finished_session(open_review, "c1", [True, False, None, True, True], qids)
    s2 = seed.finished_session(closed_review, "c1", [True, False, None, True, True], qids)

    res = session_results(db, s1.id, "c1")
    assert res["review_available"] is True
    assert [a["question_id"] for a in res["answers"]] == qids
    assert res["answers"][0]["correct_index"] == 0
    assert res["answers"][0]["explanation"] == "Because 1"

    res = session_results(db, s2.id, "c1")
    assert res["review_available"] is False
    assert "correct_index" not in res["answers"][0]
    assert res["answers"][1]["is_correct"] is False

    with pytest.raises(NotFound):
        session_results(db, s1.id, "someone-else")


def test_weak_areas_weakest_first(db, seed):
    pool = seed.pool(6, topics=["Cardiology", "Neurology"])
    qids = seed.question_ids(pool)
    a = seed.assessment(pool, question_count=6)
    # even positions are Cardiology, odd are Neurology
    s = seed.finished_session(a, "c1", [True, False, True, False, True, True], qids)

    topics = weak_areas(db, s.id, "c1")
    assert [t["name"] for t in topics] == ["Neurology", "Cardiology"]
    assert (topics[0]["correct"], topics[0]["total"], topics[0]["percent"]) == (1, 3, 33)
    assert (topics[1]["correct"], topics[1]["total"], topics[1]["percent"]) == (3, 3, 100)
