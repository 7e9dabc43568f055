"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """JSON bodies use camelCase; Python code uses snake_case."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ── Enums ──────────────────────────────────────────────────

class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PlanInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ── Identity ───────────────────────────────────────────────

class IdentityFields(CamelModel):
    email: str | None = None
    user_id: str | None = None
    gbp_account_id: str | None = None


# ── Subscription Schemas ───────────────────────────────────

class StatusResponse(CamelModel):
    status: SubscriptionStatus
    days_remaining: int | None = None
    can_use_platform: bool
    billing_only: bool
    message: str
    profile_count: int = 0
    paid_slots: int = 0
    trial_end: datetime | None = None
    subscription_end: datetime | None = None
    plan_id: str | None = None


class StartTrialRequest(IdentityFields):
    profile_count: int = Field(1, ge=0)


class ProfileCountRequest(IdentityFields):
    # Location counts of every connected business account.
    location_counts: list[int] = Field(..., min_length=1)


class CheckProfilePaymentRequest(IdentityFields):
    current_profile_count: int = Field(..., ge=0)


class CheckProfilePaymentResponse(CamelModel):
    paid_slots: int
    current_profile_count: int
    additional_needed: int
    requires_payment: bool


class CancelRequest(IdentityFields):
    reason: str | None = None


class SubscriptionResponse(CamelModel):
    id: uuid.UUID
    identity_key: str
    status: SubscriptionStatus
    plan_id: str | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    profile_count: int
    paid_slots: int
    mandate_authorized: bool
    cancelled_at: datetime | None = None
    created_at: datetime


class PaymentHistoryResponse(CamelModel):
    id: uuid.UUID
    kind: str
    amount: float
    currency: str
    status: str
    razorpay_payment_id: str
    razorpay_order_id: str | None = None
    plan_id: str | None = None
    profile_count: int | None = None
    description: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


# ── Plans ──────────────────────────────────────────────────

class PlanResponse(CamelModel):
    id: str
    name: str
    price: float
    currency: str
    interval: PlanInterval
    per_profile: bool


# ── Admin ──────────────────────────────────────────────────

class ReconcileRequest(CamelModel):
    identity_key: str | None = None


class ReconcileResult(CamelModel):
    identity_key: str
    kept: str | None = None
    kept_status: str | None = None
    removed: list[str] = []


class ExpirySweepResponse(CamelModel):
    expired: list[str]
    count: int
