"""Tests for the subscription status evaluator (pure, no DB)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from services.evaluator import SubscriptionSnapshot, days_until, evaluate

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(status="trial", trial_end=None, subscription_end=None, profile_count=1, paid_slots=0):
    return SubscriptionSnapshot(
        id=str(uuid.uuid4()),
        identity_key="owner@example.com",
        status=status,
        trial_end=trial_end,
        subscription_end=subscription_end,
        profile_count=profile_count,
        paid_slots=paid_slots,
    )


def test_no_record_is_none():
    view = evaluate(None, NOW)
    assert view.status == "none"
    assert view.can_use_platform is False
    assert view.billing_only is False
    assert view.days_remaining is None


def test_fresh_trial_has_fifteen_days():
    view = evaluate(_record(trial_end=NOW + timedelta(days=15)), NOW)
    assert view.status == "trial"
    assert view.days_remaining == 15
    assert view.can_use_platform is True
    assert view.billing_only is False
    assert "15 days" in view.message


def test_partial_day_rounds_up():
    view = evaluate(_record(trial_end=NOW + timedelta(days=2, hours=1)), NOW)
    assert view.days_remaining == 3


def test_trial_one_second_left_is_one_day():
    view = evaluate(_record(trial_end=NOW + timedelta(seconds=1)), NOW)
    assert view.status == "trial"
    assert view.days_remaining == 1
    assert view.can_use_platform is True
    assert "1 day remaining" in view.message


def test_trial_end_equal_to_now_is_expired():
    view = evaluate(_record(trial_end=NOW), NOW)
    assert view.status == "expired"
    assert view.days_remaining == 0
    assert view.can_use_platform is False
    assert view.billing_only is True


def test_trial_past_end_is_expired():
    view = evaluate(_record(trial_end=NOW - timedelta(days=3)), NOW)
    assert view.status == "expired"
    assert view.billing_only is True
    assert "trial has expired" in view.message


def test_trial_without_end_is_expired():
    view = evaluate(_record(trial_end=None), NOW)
    assert view.status == "expired"


def test_active_without_end_is_open_ended():
    view = evaluate(_record(status="active"), NOW)
    assert view.status == "active"
    assert view.days_remaining is None
    assert view.can_use_platform is True


def test_active_until_end_inclusive():
    view = evaluate(_record(status="active", subscription_end=NOW), NOW)
    assert view.status == "active"
    assert view.can_use_platform is True


def test_active_past_end_is_expired():
    view = evaluate(_record(status="active", subscription_end=NOW - timedelta(seconds=1)), NOW)
    assert view.status == "expired"
    assert view.billing_only is True
    assert view.needs_persisting is True


def test_stored_expired_and_cancelled_are_blocked():
    for status in ("expired", "cancelled"):
        view = evaluate(_record(status=status, trial_end=NOW + timedelta(days=5)), NOW)
        assert view.status == status
        assert view.can_use_platform is False
        assert view.billing_only is True
        assert view.needs_persisting is False


def test_naive_datetimes_treated_as_utc():
    naive_end = (NOW + timedelta(days=4)).replace(tzinfo=None)
    view = evaluate(_record(trial_end=naive_end), NOW)
    assert view.status == "trial"
    assert view.days_remaining == 4


def test_evaluate_is_deterministic_and_does_not_mutate():
    record = _record(trial_end=NOW - timedelta(hours=1))
    before = replace(record)
    first = evaluate(record, NOW)
    second = evaluate(record, NOW)
    assert first == second
    assert record == before
    assert record.status == "trial"


def test_snapshot_dict_roundtrip_keeps_dates():
    record = _record(status="active", subscription_end=NOW + timedelta(days=30), paid_slots=3)
    restored = SubscriptionSnapshot.from_dict(record.to_dict())
    assert restored == record
    assert evaluate(restored, NOW) == evaluate(record, NOW)


def test_days_until():
    assert days_until(NOW + timedelta(days=1), NOW) == 1
    assert days_until(NOW + timedelta(hours=25), NOW) == 2
    assert days_until(NOW, NOW) == 0
