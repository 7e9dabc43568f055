"""
Coupons — validation, discount maths and admin creation.

Redemption is not done here: the payment orchestrator redeems a coupon in
the same transaction that activates the subscription, so an abandoned
checkout never uses one up.
"""

import logging

from models.coupon import Coupon
from models.subscription import utcnow
from services import store
from services.evaluator import as_utc
from services.exceptions import CouponError

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = ("percentage", "fixed")


def apply_discount(coupon, amount: float) -> tuple[float, float]:
    """
    Discount for ``amount`` under ``coupon``.

    Returns:
        (discount, final_amount); the final amount never drops below zero
    """
    value = float(coupon.discount_value)
    if coupon.discount_type == "percentage":
        discount = round(amount * value / 100)
    else:
        discount = min(value, amount)
    discount = float(min(discount, amount))
    return discount, max(0.0, round(amount - discount, 2))


def effective_max_uses(coupon) -> int | None:
    if coupon.single_use:
        return 1
    return coupon.max_uses


def check_coupon(coupon: Coupon | None, plan_id: str | None, now, already_used: bool) -> Coupon:
    """Raise CouponError for the first rule the coupon breaks."""
    if coupon is None:
        raise CouponError("coupon_not_found", "Invalid coupon code")
    if not coupon.is_active:
        raise CouponError("coupon_inactive", "This coupon is no longer active")
    valid_from = as_utc(coupon.valid_from)
    if valid_from is not None and now < valid_from:
        raise CouponError("coupon_not_started", "This coupon is not valid yet")
    valid_until = as_utc(coupon.valid_until)
    if valid_until is not None and now > valid_until:
        raise CouponError("coupon_expired", "This coupon has expired")
    limit = effective_max_uses(coupon)
    if limit is not None and coupon.used_count >= limit:
        raise CouponError("coupon_exhausted", "This coupon has reached its usage limit")
    if coupon.applicable_plans and plan_id and plan_id not in coupon.applicable_plans:
        raise CouponError("coupon_not_applicable", "This coupon does not apply to the selected plan")
    if already_used:
        raise CouponError("coupon_already_used", "You have already used this coupon")
    return coupon


class CouponService:
    def __init__(self, sessions, clock=utcnow):
        self.sessions = sessions
        self.clock = clock

    async def validate_in(self, db, code: str, identity_key: str | None, plan_id: str | None = None) -> Coupon:
        """Validate within the caller's session."""
        code = (code or "").strip().upper()
        coupon = await store.get_coupon(db, code) if code else None
        used = False
        if coupon is not None and identity_key:
            used = await store.coupon_used_by(db, coupon.code, identity_key)
        return check_coupon(coupon, plan_id, self.clock(), used)

    async def validate(self, code: str, identity_key: str | None, plan_id: str | None = None) -> Coupon:
        async with self.sessions() as db:
            return await self.validate_in(db, code, store.normalize_email(identity_key), plan_id)

    async def list_public(self) -> list[Coupon]:
        now = self.clock()
        async with self.sessions() as db:
            coupons = await store.list_visible_coupons(db)
        return [
            c for c in coupons
            if (c.valid_until is None or as_utc(c.valid_until) >= now)
            and (effective_max_uses(c) is None or c.used_count < effective_max_uses(c))
        ]

    async def create(
        self,
        code: str,
        discount_type: str,
        discount_value: float,
        created_by: str | None = None,
        **options,
    ) -> Coupon:
        code = code.strip().upper()
        if discount_type not in DISCOUNT_TYPES:
            raise CouponError("invalid_discount_type", f"discount_type must be one of {DISCOUNT_TYPES}")
        if discount_value <= 0 or (discount_type == "percentage" and discount_value > 100):
            raise CouponError("invalid_discount_value", "Discount value is out of range")

        async with self.sessions.begin() as db:
            created = await store.insert_ignore(db, Coupon, {
                "code": code,
                "discount_type": discount_type,
                "discount_value": discount_value,
                "max_uses": options.get("max_uses"),
                "used_count": 0,
                "valid_from": options.get("valid_from"),
                "valid_until": options.get("valid_until"),
                "applicable_plans": options.get("applicable_plans"),
                "is_active": True,
                "single_use": bool(options.get("single_use", False)),
                "hidden": bool(options.get("hidden", False)),
                "description": options.get("description"),
                "created_by": created_by,
                "created_at": utcnow(),
                "updated_at": utcnow(),
            })
            if not created:
                raise CouponError("coupon_exists", f"Coupon {code} already exists")
            coupon = await store.get_coupon(db, code)
        logger.info("Coupon created: %s (%s %s) by %s", code, discount_type, discount_value, created_by)
        return coupon
