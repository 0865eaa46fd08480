from datetime import timedelta

import pytest
from sqlalchemy import func, select

from assessment_engine.core.errors import InsufficientData, InvalidTransition, NotFound, ValidationFailed
from assessment_engine.models.orm import AssessmentAnswer, AssessmentSession, ProctoringEvent
from assessment_engine.services import assessments as catalog
from assessment_engine.services import lifecycle, proctoring
from conftest import T0, TENANT, OTHER_TENANT


def new_draft(db, pool, **overrides):
    fields = dict(title="Renal Block", time_limit_minutes=45, pass_score=60, question_count=4)
    fields.update(overrides)
    return catalog.create_assessment(db, TENANT, "creator-1", pool.id, **fields)


def test_create_starts_as_draft(db, seed):
    draft = new_draft(db, seed.pool(5), access_code="")
    assert draft.status == "draft"
    assert draft.created_by == "creator-1"
    assert draft.access_code is None


def test_create_checks_pool_size_and_ownership(db, seed):
    with pytest.raises(InsufficientData):
        new_draft(db, seed.pool(3))
    with pytest.raises(NotFound):
        new_draft(db, seed.pool(5, tenant=OTHER_TENANT))


def test_create_rejects_inverted_window(db, seed):
    with pytest.raises(ValidationFailed):
        new_draft(db, seed.pool(5), start_date=T0, end_date=T0 - timedelta(days=1))


def test_update_only_while_draft(db, seed):
    draft = new_draft(db, seed.pool(5))
    updated = catalog.update_assessment(db, draft.id, TENANT, {"title": "Renal Block II", "pass_score": 75})
    assert (updated.title, updated.pass_score) == ("Renal Block II", 75)
    with pytest.raises(InsufficientData):
        catalog.update_assessment(db, draft.id, TENANT, {"question_count": 6})

    catalog.publish_assessment(db, draft.id, TENANT)
    with pytest.raises(InvalidTransition):
        catalog.update_assessment(db, draft.id, TENANT, {"title": "Too late"})


def test_status_transitions(db, seed):
    draft = new_draft(db, seed.pool(5))
    assert catalog.publish_assessment(db, draft.id, TENANT).status == "published"
    with pytest.raises(InvalidTransition):
        catalog.publish_assessment(db, draft.id, TENANT)
    assert catalog.unpublish_assessment(db, draft.id, TENANT).status == "draft"
    catalog.publish_assessment(db, draft.id, TENANT)
    assert catalog.archive_assessment(db, draft.id, TENANT).status == "archived"
    with pytest.raises(InvalidTransition):
        catalog.archive_assessment(db, draft.id, TENANT)
    with pytest.raises(NotFound):
        catalog.archive_assessment(db, "missing", TENANT)


def test_unpublish_blocked_by_live_attempt(db, seed):
    exam = seed.assessment(seed.pool(5))
    lifecycle.start_session(db, exam.id, "cand-1", TENANT, T0)
    with pytest.raises(InvalidTransition) as exc:
        catalog.unpublish_assessment(db, exam.id, TENANT)
    assert exc.value.reason == "sessions_in_progress"


def test_listing_filters(db, seed):
    pool = seed.pool(5)
    new_draft(db, pool)
    seed.assessment(pool, title="Live one")
    seed.assessment(seed.pool(5, tenant=OTHER_TENANT), title="Elsewhere")
    assert [a.title for a in catalog.list_assessments(db, TENANT, published_only=True)] == ["Live one"]
    assert len(catalog.list_assessments(db, TENANT)) == 2
    assert [a.status for a in catalog.list_assessments(db, TENANT, status="draft")] == ["draft"]


def test_reset_removes_candidate_attempts_in_tenant(db, seed):
    exam = seed.assessment(seed.pool(5))
    other = seed.assessment(seed.pool(5, tenant=OTHER_TENANT))
    session, _ = lifecycle.start_session(db, exam.id, "cand-1", TENANT, T0)
    proctoring.record_tab_switch(db, session.id, "cand-1", T0 + timedelta(minutes=1))
    lifecycle.complete_session(db, session.id, "cand-1", T0 + timedelta(minutes=2))
    lifecycle.start_session(db, exam.id, "cand-1", TENANT, T0 + timedelta(minutes=3))
    lifecycle.start_session(db, exam.id, "cand-2", TENANT, T0)
    lifecycle.start_session(db, other.id, "cand-1", OTHER_TENANT, T0)

    assert catalog.reset_candidate_attempts(db, "cand-1", TENANT) == 2
    remaining = db.scalars(select(AssessmentSession.candidate_id).order_by(AssessmentSession.candidate_id)).all()
    assert remaining == ["cand-1", "cand-2"]
    assert db.scalar(select(func.count()).select_from(ProctoringEvent)) == 0
    assert db.scalar(select(func.count()).select_from(AssessmentAnswer)) == 10
    assert catalog.reset_candidate_attempts(db, "cand-1", TENANT) == 0
