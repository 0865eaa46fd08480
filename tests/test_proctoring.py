from datetime import timedelta

import pytest

from assessment_engine.core.errors import InvalidTransition, NotFound
from assessment_engine.models.orm import AssessmentSession, TIMED_OUT
from assessment_engine.services import lifecycle, proctoring
from conftest import T0, TENANT, OTHER_TENANT


@pytest.fixture
def live_session(db, seed):
    exam = seed.assessment(seed.pool(5))
    session, _ = lifecycle.start_session(db, exam.id, "cand-1", TENANT, T0)
    return session


def test_counter_and_log_grow_together(db, live_session):
    for i in range(1, 6):
        assert proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(minutes=i)) == i
    log = proctoring.load_log(db, live_session.id)
    assert len(log) == 5
    assert [e.type for e in log] == ["tab_hidden"] * 5
    assert [e.timestamp for e in log] == [T0 + timedelta(minutes=i) for i in range(1, 6)]
    db.expire_all()
    assert db.get(AssessmentSession, live_session.id).tab_switch_count == 5


def test_earlier_entries_never_rewritten(db, live_session):
    for i in range(2):
        proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(seconds=i))
    before = proctoring.load_log(db, live_session.id)
    for i in range(2, 5):
        proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(seconds=i))
    after = proctoring.load_log(db, live_session.id)
    assert after[:2] == before


def test_report_on_finished_session_is_rejected(db, live_session):
    lifecycle.complete_session(db, live_session.id, "cand-1", T0 + timedelta(minutes=1))
    with pytest.raises(InvalidTransition) as exc:
        proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(minutes=2))
    assert exc.value.reason == "session_not_active"
    assert proctoring.load_log(db, live_session.id) == []


def test_report_after_deadline_times_out(db, live_session):
    with pytest.raises(InvalidTransition):
        proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(hours=1, seconds=1))
    db.expire_all()
    stored = db.get(AssessmentSession, live_session.id)
    assert (stored.status, stored.tab_switch_count) == (TIMED_OUT, 0)


def test_violations_detail_is_tenant_scoped(db, live_session):
    proctoring.record_tab_switch(db, live_session.id, "cand-1", T0 + timedelta(minutes=3))
    detail = proctoring.get_violations(db, live_session.id, TENANT)
    assert detail["candidate_id"] == "cand-1"
    assert detail["assessment_title"] == "Cardiology Final"
    assert detail["tab_switch_count"] == 1
    assert detail["tab_switch_log"][0].timestamp == T0 + timedelta(minutes=3)
    with pytest.raises(NotFound):
        proctoring.get_violations(db, live_session.id, OTHER_TENANT)
