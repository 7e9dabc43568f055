"""
Billing endpoints: subscription status, trials, checkout, mandates, coupons.

Identity comes from the request (email, userId, gbpAccountId). When a
Firebase project is configured, a verified bearer token overrides the
email and user id the client sent.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from deps import BillingServices, get_billing
from schemas import (
    CancelRequest, CheckProfilePaymentRequest, CheckProfilePaymentResponse, IdentityFields,
    PaymentHistoryResponse, PlanResponse, ProfileCountRequest, StartTrialRequest,
    StatusResponse, SubscriptionResponse,
)
from schemas.payment import (
    AuthorizationOrderRequest, CouponResponse, CreateOrderRequest, MandateSetupRequest,
    MandateSetupResponse, MandateStatusResponse, OrderResponse, RecurringSubscriptionRequest,
    RecurringSubscriptionResponse, SubscriptionDetailsResponse, ValidateCouponRequest,
    ValidateCouponResponse, VerifyMandateRequest, VerifyPaymentRequest, VerifyPaymentResponse,
    VerifySubscriptionPaymentRequest,
)
from services.coupons import apply_discount
from services.evaluator import StatusView, evaluate
from services.identity import BillingIdentity, bearer_token
from services.pricing import SUBSCRIPTION_PLANS, plan_amount

router = APIRouter()
logger = logging.getLogger(__name__)


async def caller_identity(
    request: Request,
    billing: BillingServices,
    email: str | None = None,
    user_id: str | None = None,
    account_id: str | None = None,
) -> BillingIdentity:
    identity = BillingIdentity.from_values(email=email, user_id=user_id, account_id=account_id)
    token = bearer_token(request.headers.get("authorization"))
    if billing.identity_provider is not None and token:
        identity = identity.with_verified(await billing.identity_provider.resolve(token))
    return identity


async def identity_from(request: Request, billing: BillingServices, fields: IdentityFields) -> BillingIdentity:
    return await caller_identity(request, billing, fields.email, fields.user_id, fields.gbp_account_id)


def status_response(record, view: StatusView) -> StatusResponse:
    return StatusResponse(
        status=view.status,
        days_remaining=view.days_remaining,
        can_use_platform=view.can_use_platform,
        billing_only=view.billing_only,
        message=view.message,
        profile_count=view.profile_count,
        paid_slots=view.paid_slots,
        trial_end=record.trial_end if record is not None else None,
        subscription_end=record.subscription_end if record is not None else None,
        plan_id=record.plan_id if record is not None else None,
    )


def _check_plan(plan_id: str | None) -> None:
    if plan_id is not None and plan_id not in SUBSCRIPTION_PLANS:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {plan_id}")


# ── Plans ──────────────────────────────────────────────────

@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(billing: BillingServices = Depends(get_billing)):
    currency = billing.settings.DEFAULT_CURRENCY
    return [
        PlanResponse(
            id=plan_id,
            name=plan["name"],
            price=plan["price"],
            currency=currency,
            interval=plan["interval"],
            per_profile=plan["per_profile"],
        )
        for plan_id, plan in SUBSCRIPTION_PLANS.items()
    ]


# ── Subscription ───────────────────────────────────────────

@router.get("/subscription/status", response_model=StatusResponse)
async def subscription_status(
    request: Request,
    email: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    gbp_account_id: str | None = Query(None, alias="gbpAccountId"),
    billing: BillingServices = Depends(get_billing),
):
    """
    Current subscription view for the caller. An expiry observed here is
    written back so the stored status catches up with the evaluated one.
    """
    identity = await caller_identity(request, billing, email, user_id, gbp_account_id)
    if identity.is_empty:
        raise HTTPException(status_code=400, detail="email, userId or gbpAccountId is required")

    record, view = await billing.trials.status(identity)
    if record is not None:
        await billing.trials.remember(record, identity)
        if view.needs_persisting:
            await billing.trials.persist_observed(record, view)
    return status_response(record, view)


@router.post("/subscription/trial", response_model=StatusResponse)
async def start_trial(
    data: StartTrialRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    """Start the free trial, or return the existing subscription unchanged."""
    identity = await identity_from(request, billing, data)
    if not identity.email:
        raise HTTPException(status_code=400, detail="email is required to start a trial")

    record = await billing.trials.start_trial(
        identity.email,
        data.profile_count,
        user_id=identity.user_id,
        account_id=identity.account_id,
    )
    return status_response(record, evaluate(record, billing.trials.clock()))


@router.post("/subscription/profile-count", response_model=SubscriptionResponse)
async def update_profile_count(
    data: ProfileCountRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    """Replace the profile count with the total across all connected accounts."""
    identity = await identity_from(request, billing, data)
    return await billing.trials.refresh_profile_count(identity, data.location_counts)


@router.post("/subscription/check-profile-payment", response_model=CheckProfilePaymentResponse)
async def check_profile_payment(
    data: CheckProfilePaymentRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    identity = await identity_from(request, billing, data)
    return await billing.payments.check_profile_payment(identity, data.current_profile_count)


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    data: CancelRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    identity = await identity_from(request, billing, data)
    record = await billing.payments.cancel(identity, cancelled_by=identity.email)
    if data.reason:
        logger.info("Cancellation reason for %s: %s", record.identity_key, data.reason)
    return record


@router.get("/subscription/payments", response_model=list[PaymentHistoryResponse])
async def payment_history(
    request: Request,
    email: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    gbp_account_id: str | None = Query(None, alias="gbpAccountId"),
    limit: int = Query(50, ge=1, le=200),
    billing: BillingServices = Depends(get_billing),
):
    identity = await caller_identity(request, billing, email, user_id, gbp_account_id)
    return await billing.payments.payment_history(identity, limit)


# ── Checkout ───────────────────────────────────────────────

@router.post("/order", response_model=OrderResponse)
async def create_order(
    data: CreateOrderRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    profile_count = data.resolved_profile_count()
    if profile_count is None:
        raise HTTPException(status_code=400, detail="profileCount is required to create an order")
    _check_plan(data.plan_id)
    identity = await identity_from(request, billing, data)
    if not identity.email:
        raise HTTPException(status_code=400, detail="email is required to create an order")

    ref = await billing.payments.create_order(
        identity, data.plan_id, profile_count, coupon_code=data.coupon_code, currency=data.currency
    )
    return OrderResponse(
        order_id=ref.order_id,
        amount=ref.amount,
        currency=ref.currency,
        key_id=ref.key_id,
        receipt=ref.receipt,
        amount_before_coupon=ref.quote.base_amount,
        discount_amount=ref.quote.discount_amount,
        final_amount=ref.quote.final_amount,
        coupon_code=ref.quote.coupon_code,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(data: VerifyPaymentRequest, billing: BillingServices = Depends(get_billing)):
    """Signature-checked payment confirmation; the only way to become active."""
    result = await billing.payments.verify_payment(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    )
    if not result.verified:
        raise HTTPException(status_code=400, detail="Payment verification failed")
    view = result.view
    return VerifyPaymentResponse(
        verified=True,
        duplicate=result.duplicate,
        subscription=status_response(result.subscription, view) if view is not None else None,
    )


# ── Mandates ───────────────────────────────────────────────

@router.post("/mandate/setup", response_model=MandateSetupResponse)
async def setup_mandate(
    data: MandateSetupRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    identity = await identity_from(request, billing, data)
    setup = await billing.payments.setup_mandate(identity, name=data.name, contact=data.contact)
    return MandateSetupResponse(customer_id=setup.customer_id, already_authorized=setup.already_authorized)


@router.post("/mandate/auth-order", response_model=OrderResponse)
async def create_authorization_order(
    data: AuthorizationOrderRequest,
    billing: BillingServices = Depends(get_billing),
):
    ref = await billing.payments.create_authorization_order(data.customer_id, data.amount)
    return OrderResponse(
        order_id=ref.order_id,
        amount=ref.amount,
        currency=ref.currency,
        key_id=ref.key_id,
        receipt=ref.receipt,
    )


@router.post("/mandate/verify")
async def verify_mandate(data: VerifyMandateRequest, billing: BillingServices = Depends(get_billing)):
    authorized = await billing.payments.verify_mandate(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature, data.customer_id
    )
    if not authorized:
        raise HTTPException(status_code=400, detail="Mandate verification failed")
    return {"verified": True, "mandateAuthorized": True}


@router.get("/mandate/status", response_model=MandateStatusResponse)
async def mandate_status(
    request: Request,
    email: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    gbp_account_id: str | None = Query(None, alias="gbpAccountId"),
    billing: BillingServices = Depends(get_billing),
):
    identity = await caller_identity(request, billing, email, user_id, gbp_account_id)
    return await billing.payments.mandate_status(identity)


# ── Recurring subscriptions ────────────────────────────────

@router.post("/subscription/create-with-mandate", response_model=RecurringSubscriptionResponse)
async def create_recurring_subscription(
    data: RecurringSubscriptionRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    """Gateway subscription with auto-debit; the customer authorizes it via short_url."""
    _check_plan(data.plan_id)
    identity = await identity_from(request, billing, data)
    if not identity.email:
        raise HTTPException(status_code=400, detail="email is required to subscribe")

    created = await billing.payments.create_recurring_subscription(
        identity,
        data.razorpay_plan_id,
        data.plan_id,
        data.profile_count,
        name=data.name,
        contact=data.contact,
    )
    return RecurringSubscriptionResponse(
        subscription_id=created.subscription_id,
        status=created.status,
        short_url=created.short_url,
        customer_id=created.customer_id,
        razorpay_plan_id=created.razorpay_plan_id,
    )


@router.post("/subscription/verify-payment", response_model=VerifyPaymentResponse)
async def verify_subscription_payment(
    data: VerifySubscriptionPaymentRequest,
    billing: BillingServices = Depends(get_billing),
):
    result = await billing.payments.verify_subscription_payment(
        data.razorpay_subscription_id, data.razorpay_payment_id, data.razorpay_signature
    )
    if not result.verified:
        raise HTTPException(status_code=400, detail="Subscription payment verification failed")
    view = result.view
    return VerifyPaymentResponse(
        verified=True,
        duplicate=result.duplicate,
        subscription=status_response(result.subscription, view) if view is not None else None,
    )


@router.get("/subscription/details/{subscription_id}", response_model=SubscriptionDetailsResponse)
async def subscription_details(subscription_id: str, billing: BillingServices = Depends(get_billing)):
    return await billing.payments.subscription_details(subscription_id)


# ── Coupons ────────────────────────────────────────────────

@router.post("/coupon/validate", response_model=ValidateCouponResponse)
async def validate_coupon(
    data: ValidateCouponRequest,
    request: Request,
    billing: BillingServices = Depends(get_billing),
):
    _check_plan(data.plan_id)
    identity = await identity_from(request, billing, data)
    coupon = await billing.coupons.validate(data.code, identity.email, data.plan_id)

    response = ValidateCouponResponse(
        valid=True,
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=float(coupon.discount_value),
    )
    if data.plan_id:
        amount = plan_amount(data.plan_id, data.profile_count)
        discount, final = apply_discount(coupon, amount)
        response.amount_before_coupon = amount
        response.discount_amount = discount
        response.final_amount = final
    return response


@router.get("/coupons", response_model=list[CouponResponse])
async def list_coupons(billing: BillingServices = Depends(get_billing)):
    return await billing.coupons.list_public()
