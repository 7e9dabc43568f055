"""Tests for plan pricing and term arithmetic."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from services.pricing import (
    DEFAULT_PLAN, SUBSCRIPTION_PLANS, add_months, from_paise, plan_amount, quote, term_end, to_paise,
)


def _coupon(discount_type="percentage", value=10, code="SAVE10"):
    return SimpleNamespace(code=code, discount_type=discount_type, discount_value=value)


def test_flat_plans_ignore_profile_count():
    assert plan_amount("monthly_basic", 5) == 999.0
    assert plan_amount("yearly_basic", 3) == 9999.0


def test_per_profile_plan_scales():
    assert plan_amount("per_profile_yearly", 3) == 297.0


def test_per_profile_plan_charges_at_least_one():
    assert plan_amount("per_profile_yearly", 0) == 99.0


def test_unknown_plan_raises():
    with pytest.raises(KeyError):
        plan_amount("lifetime_free")


def test_default_plan_exists():
    assert DEFAULT_PLAN in SUBSCRIPTION_PLANS


def test_quote_without_coupon():
    q = quote("per_profile_yearly", 3)
    assert q.base_amount == 297.0
    assert q.discount_amount == 0.0
    assert q.final_amount == 297.0
    assert q.amount_paise == 29700
    assert q.coupon_code is None


def test_quote_with_percentage_coupon():
    q = quote("monthly_basic", 1, _coupon(value=10))
    assert q.discount_amount == 100.0  # round(99.9)
    assert q.final_amount == 899.0
    assert q.coupon_code == "SAVE10"


def test_quote_with_fixed_coupon_never_negative():
    q = quote("per_profile_yearly", 1, _coupon("fixed", 500, "BIG"))
    assert q.discount_amount == 99.0
    assert q.final_amount == 0.0


def test_paise_conversion():
    assert to_paise(999.0) == 99900
    assert to_paise(0.1 + 0.2) == 30
    assert from_paise(29700) == 297.0


def test_monthly_term_clamps_to_month_end():
    start = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert term_end("monthly_basic", start) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)


def test_yearly_term_from_leap_day():
    start = datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert term_end("yearly_basic", start) == datetime(2029, 2, 28, tzinfo=timezone.utc)


def test_unknown_plan_term_is_a_year():
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert term_end(None, start) == datetime(2027, 3, 1, tzinfo=timezone.utc)
    assert term_end("something_else", start) == datetime(2027, 3, 1, tzinfo=timezone.utc)


def test_add_months_across_year():
    start = datetime(2026, 11, 15)
    assert add_months(start, 3) == datetime(2027, 2, 15)
