"""
Pricing — subscription plans and order quotes.

Plans:
  monthly_basic       ₹999 / month, flat
  yearly_basic        ₹9,999 / year, flat
  yearly_pro          ₹9,900 / year, flat
  per_profile_yearly  ₹99 per business profile / year

Amounts are rupees everywhere except the gateway, which takes paise.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime


# ── Constants ──────────────────────────────────────────────

PAISE_PER_RUPEE = 100

SUBSCRIPTION_PLANS = {
    "monthly_basic": {
        "name": "Monthly Basic",
        "price": 999.0,
        "interval": "monthly",
        "per_profile": False,
    },
    "yearly_basic": {
        "name": "Yearly Basic",
        "price": 9999.0,
        "interval": "yearly",
        "per_profile": False,
    },
    "yearly_pro": {
        "name": "Yearly Pro",
        "price": 9900.0,
        "interval": "yearly",
        "per_profile": False,
    },
    "per_profile_yearly": {
        "name": "Per Profile (Yearly)",
        "price": 99.0,
        "interval": "yearly",
        "per_profile": True,
    },
}

DEFAULT_PLAN = "per_profile_yearly"


# ── Data classes ───────────────────────────────────────────

@dataclass
class Quote:
    plan_id: str
    profile_count: int
    base_amount: float
    discount_amount: float
    final_amount: float
    coupon_code: str | None = None

    @property
    def amount_paise(self) -> int:
        return to_paise(self.final_amount)


# ── Core Functions ─────────────────────────────────────────

def get_plan(plan_id: str) -> dict:
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if plan is None:
        raise KeyError(plan_id)
    return plan


def to_paise(amount: float) -> int:
    return int(round(amount * PAISE_PER_RUPEE))


def from_paise(amount: int) -> float:
    return round(amount / PAISE_PER_RUPEE, 2)


def plan_amount(plan_id: str, profile_count: int = 1) -> float:
    """List price of a plan for the given number of profiles."""
    plan = get_plan(plan_id)
    if plan["per_profile"]:
        return round(plan["price"] * max(1, profile_count), 2)
    return plan["price"]


def quote(plan_id: str, profile_count: int = 1, coupon=None) -> Quote:
    """
    Price an order.

    Args:
        plan_id: Key of SUBSCRIPTION_PLANS
        profile_count: Business profiles being paid for
        coupon: Validated Coupon row or None

    Returns:
        Quote with base, discount and final amounts in rupees
    """
    from services.coupons import apply_discount

    base = plan_amount(plan_id, profile_count)
    discount = 0.0
    if coupon is not None:
        discount, _ = apply_discount(coupon, base)
    return Quote(
        plan_id=plan_id,
        profile_count=max(1, profile_count),
        base_amount=base,
        discount_amount=discount,
        final_amount=round(max(0.0, base - discount), 2),
        coupon_code=coupon.code if coupon is not None else None,
    )


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamped to the last day of the month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def term_end(plan_id: str | None, start: datetime) -> datetime:
    """End of a paid term starting at ``start``; unknown plans get a year."""
    plan = SUBSCRIPTION_PLANS.get(plan_id or DEFAULT_PLAN, SUBSCRIPTION_PLANS[DEFAULT_PLAN])
    if plan["interval"] == "monthly":
        return add_months(start, 1)
    return add_months(start, 12)
