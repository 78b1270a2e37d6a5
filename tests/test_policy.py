from datetime import datetime, timedelta, timezone

from passcode import generate_passcode, needs_refresh
from scoring import ABSENT, INCOMPLETE, PRESENT, evaluate
from settings import CHECK_BUDGET, MIN_REQUIRED


def test_policy_constants():
    assert CHECK_BUDGET == 7
    assert MIN_REQUIRED == 4


def test_threshold_reached_is_present():
    result = evaluate(4)
    assert result.verdict == PRESENT
    assert "4/7" in result.message


def test_below_threshold_is_incomplete_never_absent():
    for score in range(0, 4):
        result = evaluate(score)
        assert result.verdict == INCOMPLETE
        assert result.verdict != ABSENT
    assert evaluate(2).message == "Attendance incomplete: passed 2/7 checks, need 4"


def test_custom_budget():
    assert evaluate(3, budget=5, min_required=3).verdict == PRESENT
    assert evaluate(2, budget=5, min_required=3).message.endswith("2/5 checks, need 3")


def test_generated_passcodes_are_four_digits():
    for _ in range(200):
        code = generate_passcode()
        assert len(code) == 4
        assert 1000 <= int(code) <= 9999


def test_generated_passcode_differs_from_previous():
    for _ in range(200):
        assert generate_passcode(previous="4242") != "4242"


def test_needs_refresh_window():
    rotated = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)
    assert needs_refresh(None, rotated)
    assert not needs_refresh(rotated, rotated + timedelta(seconds=9))
    assert needs_refresh(rotated, rotated + timedelta(seconds=10))
    assert needs_refresh(rotated, rotated + timedelta(seconds=11))


def test_needs_refresh_accepts_naive_timestamps():
    rotated = datetime(2026, 3, 2, 10, 0, 0)
    now = datetime(2026, 3, 2, 10, 0, 5, tzinfo=timezone.utc)
    assert not needs_refresh(rotated, now)
