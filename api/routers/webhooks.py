"""
Razorpay webhook endpoint.

Razorpay signs the raw body with the webhook secret (X-Razorpay-Signature)
and sends a unique X-Razorpay-Event-Id per event; redeliveries reuse it.
"""

from fastapi import APIRouter, Depends, Header, Request

from deps import BillingServices, get_billing
from schemas.payment import WebhookResponse

router = APIRouter()


@router.post("/razorpay", response_model=WebhookResponse)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(None),
    x_razorpay_event_id: str | None = Header(None),
    billing: BillingServices = Depends(get_billing),
):
    body = await request.body()
    result = await billing.payments.handle_webhook(body, x_razorpay_signature, x_razorpay_event_id)
    return WebhookResponse(status=result.status, event=result.event, event_id=result.event_id)
