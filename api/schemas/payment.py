"""Pydantic schemas for checkout, mandate and coupon endpoints."""

from __future__ import annotations
from datetime import datetime
from pydantic import Field

from schemas import CamelModel, IdentityFields, StatusResponse


# ── Checkout ───────────────────────────────────────────────

class OrderNotes(CamelModel):
    profile_count: int | None = Field(None, ge=1)
    actual_profile_count: int | None = Field(None, ge=1)


class CreateOrderRequest(IdentityFields):
    plan_id: str
    profile_count: int | None = Field(None, ge=1)
    coupon_code: str | None = None
    currency: str | None = None
    notes: OrderNotes | None = None

    def resolved_profile_count(self) -> int | None:
        if self.profile_count is not None:
            return self.profile_count
        if self.notes is not None:
            return self.notes.profile_count or self.notes.actual_profile_count
        return None


class OrderResponse(CamelModel):
    order_id: str
    amount: int
    currency: str
    key_id: str | None = None
    receipt: str
    amount_before_coupon: float | None = None
    discount_amount: float | None = None
    final_amount: float | None = None
    coupon_code: str | None = None


class VerifyPaymentRequest(CamelModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class VerifyPaymentResponse(CamelModel):
    verified: bool
    duplicate: bool = False
    subscription: StatusResponse | None = None


# ── Mandates ───────────────────────────────────────────────

class MandateSetupRequest(IdentityFields):
    name: str | None = None
    contact: str | None = None


class MandateSetupResponse(CamelModel):
    customer_id: str
    already_authorized: bool


class AuthorizationOrderRequest(CamelModel):
    customer_id: str
    amount: int | None = Field(None, ge=100, description="Amount in paise")


class VerifyMandateRequest(VerifyPaymentRequest):
    customer_id: str


class MandateStatusResponse(CamelModel):
    mandate_authorized: bool
    mandate_auth_date: datetime | None = None
    customer_id: str | None = None


# ── Recurring subscriptions ────────────────────────────────

class CreateGatewayPlanRequest(CamelModel):
    plan_id: str
    currency: str | None = None


class GatewayPlanResponse(CamelModel):
    razorpay_plan_id: str
    plan_id: str
    amount: int = Field(..., description="Amount in paise")
    currency: str
    interval: str


class RecurringSubscriptionRequest(IdentityFields):
    razorpay_plan_id: str
    plan_id: str
    profile_count: int = Field(1, ge=1)
    name: str | None = None
    contact: str | None = None


class RecurringSubscriptionResponse(CamelModel):
    subscription_id: str
    status: str | None = None
    short_url: str | None = None
    customer_id: str
    razorpay_plan_id: str


class VerifySubscriptionPaymentRequest(CamelModel):
    razorpay_subscription_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class SubscriptionDetailsResponse(CamelModel):
    id: str
    status: str | None = None
    plan_id: str | None = None
    customer_id: str | None = None
    current_start: int | None = None
    current_end: int | None = None
    charge_at: int | None = None
    paid_count: int | None = None
    remaining_count: int | None = None
    total_count: int | None = None


# ── Coupons ────────────────────────────────────────────────

class ValidateCouponRequest(IdentityFields):
    code: str
    plan_id: str | None = None
    profile_count: int = Field(1, ge=1)


class ValidateCouponResponse(CamelModel):
    valid: bool
    code: str
    discount_type: str
    discount_value: float
    amount_before_coupon: float | None = None
    discount_amount: float | None = None
    final_amount: float | None = None


class CouponResponse(CamelModel):
    code: str
    discount_type: str
    discount_value: float
    valid_until: datetime | None = None
    applicable_plans: list[str] | None = None
    description: str | None = None


class CreateCouponRequest(CamelModel):
    code: str = Field(..., min_length=3, max_length=50)
    discount_type: str
    discount_value: float = Field(..., gt=0)
    max_uses: int | None = Field(None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    applicable_plans: list[str] | None = None
    single_use: bool = False
    hidden: bool = False
    description: str | None = None
    created_by: str | None = None


# ── Webhooks ───────────────────────────────────────────────

class WebhookResponse(CamelModel):
    status: str
    event: str | None = None
    event_id: str | None = None
