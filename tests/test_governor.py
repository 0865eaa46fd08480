from datetime import timedelta

import pytest

from assessment_engine.core.errors import NotEligible
from assessment_engine.models.orm import Assessment, AssessmentSession, COMPLETED, IN_PROGRESS, TIMED_OUT
from assessment_engine.services import governor
from conftest import T0


def make_assessment(**overrides):
    fields = dict(id="a1", status="published", access_code=None, start_date=None, end_date=None,
                  max_attempts=None, cooldown_minutes=None, time_limit_minutes=60)
    fields.update(overrides)
    return Assessment(**fields)


def attempt(status=COMPLETED, completed_minutes_ago=None, now=T0):
    completed_at = now - timedelta(minutes=completed_minutes_ago) if completed_minutes_ago is not None else None
    return AssessmentSession(id=f"s-{status}-{completed_minutes_ago}", status=status, completed_at=completed_at,
                             started_at=now - timedelta(hours=2))


@pytest.mark.parametrize("status", ["draft", "archived"])
def test_only_published_can_start(status):
    verdict = governor.can_start(make_assessment(status=status), [], T0)
    assert not verdict.allowed and verdict.reason == governor.NOT_PUBLISHED


def test_schedule_window_is_inclusive():
    a = make_assessment(start_date=T0, end_date=T0 + timedelta(days=1))
    assert governor.can_start(a, [], T0).allowed
    assert governor.can_start(a, [], T0 + timedelta(days=1)).allowed
    assert governor.can_start(a, [], T0 - timedelta(seconds=1)).reason == governor.NOT_YET_OPEN
    assert governor.can_start(a, [], T0 + timedelta(days=1, seconds=1)).reason == governor.CLOSED


def test_access_code_required_and_exact():
    a = make_assessment(access_code="EXAM-2025")
    assert governor.can_start(a, [], T0, "EXAM-2025").allowed
    assert governor.can_start(a, [], T0).reason == governor.INVALID_CODE
    assert governor.can_start(a, [], T0, "exam-2025").reason == governor.INVALID_CODE
    assert governor.can_start(a, [], T0, "EXAM-20250").reason == governor.INVALID_CODE


def test_max_attempts_counts_terminal_sessions():
    a = make_assessment(max_attempts=3)
    two = [attempt(COMPLETED, 300), attempt(TIMED_OUT, 200)]
    assert governor.can_start(a, two, T0).allowed
    three = two + [attempt(COMPLETED, 100)]
    assert governor.can_start(a, three, T0).reason == governor.MAX_ATTEMPTS_REACHED


def test_cooldown_from_latest_completion():
    a = make_assessment(cooldown_minutes=30)
    blocked = governor.can_start(a, [attempt(COMPLETED, 90), attempt(COMPLETED, 10)], T0)
    assert blocked.reason == governor.COOLDOWN_ACTIVE
    assert blocked.minutes_remaining == 20
    assert governor.can_start(a, [attempt(COMPLETED, 31)], T0).allowed


def test_cooldown_rounds_remaining_minutes_up():
    a = make_assessment(cooldown_minutes=30)
    history = [attempt(COMPLETED, 10, now=T0 + timedelta(seconds=30))]
    assert governor.can_start(a, history, T0).minutes_remaining == 21


def test_checks_stop_at_first_failure():
    a = make_assessment(status="draft", access_code="X", max_attempts=1)
    assert governor.can_start(a, [attempt()], T0).reason == governor.NOT_PUBLISHED
    a = make_assessment(access_code="X", max_attempts=1)
    assert governor.can_start(a, [attempt(COMPLETED, 5)], T0, "nope").reason == governor.INVALID_CODE


def test_existing_in_progress_session_is_resumed():
    live = attempt(IN_PROGRESS)
    verdict = governor.can_start(make_assessment(max_attempts=1), [live], T0)
    assert verdict.allowed
    assert verdict.existing_session is live


def test_raise_for_reason_carries_minutes():
    verdict = governor.can_start(make_assessment(cooldown_minutes=30), [attempt(COMPLETED, 10)], T0)
    with pytest.raises(NotEligible) as exc:
        verdict.raise_for_reason()
    body = exc.value.to_dict()
    assert body["reason"] == "cooldown_active"
    assert body["minutes_remaining"] == 20
    assert body["message"] == "Please wait 20 minutes before retaking"
