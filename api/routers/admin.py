"""Billing administration: duplicate reconciliation, expiry sweep, coupons, gateway plans."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from deps import BillingServices, get_billing, require_admin
from schemas import ExpirySweepResponse, ReconcileRequest, ReconcileResult
from schemas.payment import (
    CouponResponse, CreateCouponRequest, CreateGatewayPlanRequest, GatewayPlanResponse,
)
from services.pricing import SUBSCRIPTION_PLANS

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/reconcile", response_model=list[ReconcileResult])
async def reconcile(data: ReconcileRequest, billing: BillingServices = Depends(get_billing)):
    """Merge duplicate subscriptions for one identity, or for every identity."""
    if data.identity_key:
        results = [await billing.reconciler.reconcile_duplicates(data.identity_key)]
    else:
        results = await billing.reconciler.reconcile_all()
    return [
        ReconcileResult(
            identity_key=r.identity_key, kept=r.kept, kept_status=r.kept_status, removed=r.removed
        )
        for r in results
    ]


@router.post("/expire-lapsed", response_model=ExpirySweepResponse)
async def expire_lapsed(billing: BillingServices = Depends(get_billing)):
    expired = await billing.trials.expire_lapsed()
    return ExpirySweepResponse(expired=expired, count=len(expired))


@router.post("/coupons", response_model=CouponResponse)
async def create_coupon(data: CreateCouponRequest, billing: BillingServices = Depends(get_billing)):
    return await billing.coupons.create(
        data.code,
        data.discount_type,
        data.discount_value,
        created_by=data.created_by,
        max_uses=data.max_uses,
        valid_from=data.valid_from,
        valid_until=data.valid_until,
        applicable_plans=data.applicable_plans,
        single_use=data.single_use,
        hidden=data.hidden,
        description=data.description,
    )


@router.post("/plans", response_model=GatewayPlanResponse)
async def create_gateway_plan(data: CreateGatewayPlanRequest, billing: BillingServices = Depends(get_billing)):
    """Register a catalogue plan with Razorpay for recurring subscriptions."""
    if data.plan_id not in SUBSCRIPTION_PLANS:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {data.plan_id}")
    plan = await billing.payments.create_gateway_plan(data.plan_id, data.currency)
    item = plan.get("item") or {}
    return GatewayPlanResponse(
        razorpay_plan_id=plan["id"],
        plan_id=data.plan_id,
        amount=item.get("amount"),
        currency=item.get("currency"),
        interval=plan.get("period"),
    )
