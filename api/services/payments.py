"""
Payment and mandate orchestration against Razorpay.

Flows:
  checkout  create_order → (widget) → verify_payment → active
  mandate   setup_mandate → create_authorization_order → (widget)
            → verify_mandate → mandate_authorized
  recurring create_gateway_plan → create_recurring_subscription → (widget)
            → verify_subscription_payment → active + mandate_authorized
  webhooks  payment.captured, subscription.* → same transitions, deduped
            by event id

A subscription only becomes active here, and only from a payment whose
gateway signature checked out. Verification and webhooks may arrive in
either order or more than once: the ledger's unique payment id and the
webhook event table make every application idempotent.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from models.subscription import Subscription, utcnow
from services import store
from services.evaluator import StatusView, as_utc, evaluate
from services.exceptions import (
    BillingError, CouponError, GatewayNotConfigured, SignatureError, StoreError, SubscriptionNotFound,
)
from services.identity import BillingIdentity
from services.pricing import Quote, from_paise, get_plan, quote, term_end, to_paise
from services.razorpay import (
    verify_payment_signature, verify_subscription_signature, verify_webhook_signature,
)

logger = logging.getLogger(__name__)

MANDATE_PURPOSE = "mandate_authorization"
SETTLED_PAYMENT_STATES = ("captured", "authorized")
MIN_ORDER_PAISE = 100
SUBSCRIPTION_DETAIL_FIELDS = (
    "id", "status", "plan_id", "customer_id", "current_start", "current_end",
    "charge_at", "paid_count", "remaining_count", "total_count",
)


class MandateAlreadyAuthorized(BillingError):
    pass


class WebhookError(BillingError):
    pass


class PlanMismatch(BillingError):
    """A gateway plan does not match the catalogue plan it claims to bill."""


class _AlreadyApplied(Exception):
    """Rolls back a transaction whose payment or event was already recorded."""


@dataclass
class OrderRef:
    order_id: str
    amount: int
    currency: str
    key_id: str | None
    receipt: str
    quote: Quote | None = None


@dataclass
class VerificationResult:
    verified: bool
    duplicate: bool = False
    subscription: Subscription | None = None
    view: StatusView | None = None
    reason: str | None = None


@dataclass
class MandateSetup:
    customer_id: str
    already_authorized: bool


@dataclass
class RecurringSubscription:
    subscription_id: str
    status: str | None
    short_url: str | None
    customer_id: str
    razorpay_plan_id: str


@dataclass
class WebhookResult:
    status: str  # applied | duplicate | ignored
    event: str | None
    event_id: str | None


def _notes(entity: dict) -> dict:
    # Razorpay returns [] instead of {} when an entity has no notes.
    notes = entity.get("notes") if entity else None
    return notes if isinstance(notes, dict) else {}


def _from_unix(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _receipt(prefix: str, identity_key: str, now: datetime) -> str:
    digest = hashlib.sha256(identity_key.encode()).hexdigest()[:8]
    return f"{prefix}_{digest}_{int(now.timestamp())}"


class PaymentOrchestrator:
    def __init__(
        self,
        sessions,
        gateway,
        trials,
        coupons,
        cache=None,
        mandate_amount_paise: int = 200,
        currency: str = "INR",
        clock=utcnow,
    ):
        self.sessions = sessions
        self.gateway = gateway
        self.trials = trials
        self.coupons = coupons
        self.cache = cache
        self.mandate_amount_paise = mandate_amount_paise
        self.currency = currency
        self.clock = clock

    def _require_gateway(self) -> None:
        if self.gateway is None or not self.gateway.configured:
            raise GatewayNotConfigured()

    async def _invalidate(self, subscription_id) -> None:
        if self.cache is not None and subscription_id is not None:
            await self.cache.invalidate(subscription_id)

    async def _load(self, subscription_id) -> Subscription | None:
        async with self.sessions() as db:
            return await store.get_subscription(db, subscription_id)

    async def _require_record(self, identity: BillingIdentity) -> Subscription:
        record = await self.trials.resolve_identity(identity)
        if record is None:
            raise SubscriptionNotFound("No subscription found for this account")
        return record

    # ── Checkout ───────────────────────────────────────────

    async def create_order(
        self,
        identity: BillingIdentity,
        plan_id: str,
        profile_count: int,
        coupon_code: str | None = None,
        currency: str | None = None,
    ) -> OrderRef:
        """
        Price the plan, then ask the gateway for an order. The order id is
        stored on the subscription; its status is left alone.
        """
        self._require_gateway()
        if not identity.email:
            raise SubscriptionNotFound("An account email is required to create an order")
        if profile_count is None or profile_count < 1:
            raise ValueError("profile_count must be at least 1")
        get_plan(plan_id)

        coupon = None
        if coupon_code:
            async with self.sessions() as db:
                coupon = await self.coupons.validate_in(db, coupon_code, identity.email, plan_id)

        q = quote(plan_id, profile_count, coupon)
        if q.amount_paise < MIN_ORDER_PAISE:
            raise CouponError("amount_below_minimum", "The discounted amount is below the minimum payable")

        now = self.clock()
        currency = currency or self.currency
        receipt = _receipt("sub", identity.email, now)
        order = await self.gateway.create_order(
            q.amount_paise,
            currency,
            receipt,
            notes={
                "identityKey": identity.email,
                "userId": identity.user_id,
                "accountId": identity.account_id,
                "planId": plan_id,
                "profileCount": q.profile_count,
                "couponCode": q.coupon_code,
                "amountBeforeCoupon": q.base_amount,
                "discountAmount": q.discount_amount,
            },
        )

        record = await self.trials.resolve_identity(identity)
        if record is not None:
            async with self.sessions.begin() as db:
                await store.update_subscription(db, record.id, razorpay_order_id=order["id"])

        logger.info(
            "Order %s for %s: plan=%s profiles=%s amount=%s %s coupon=%s",
            order["id"], identity.email, plan_id, q.profile_count, q.final_amount, currency, q.coupon_code,
        )
        return OrderRef(
            order_id=order["id"],
            amount=q.amount_paise,
            currency=currency,
            key_id=self.gateway.key_id,
            receipt=receipt,
            quote=q,
        )

    async def verify_payment(self, order_id: str, payment_id: str, signature: str) -> VerificationResult:
        """
        Check the checkout signature and activate the subscription.

        Returns verified=False on a signature mismatch. A payment id that is
        already in the ledger returns verified=True, duplicate=True and
        changes nothing.
        """
        self._require_gateway()
        if not verify_payment_signature(self.gateway.key_secret, order_id, payment_id, signature):
            logger.warning("Payment signature mismatch: order=%s payment=%s", order_id, payment_id)
            return VerificationResult(verified=False, reason="signature_mismatch")

        async with self.sessions() as db:
            duplicate = await store.payment_recorded(db, payment_id)
            record = await store.get_by_gateway_ref(db, order_id=order_id) if duplicate else None
        if duplicate:
            return self._duplicate(record)

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.get("order_id") != order_id or payment.get("status") not in SETTLED_PAYMENT_STATES:
            logger.warning(
                "Payment %s not settled for order %s: status=%s",
                payment_id, order_id, payment.get("status"),
            )
            return VerificationResult(verified=False, reason="payment_not_settled")

        order = await self.gateway.fetch_order(order_id)
        if _notes(order).get("purpose") == MANDATE_PURPOSE:
            logger.warning("Mandate authorization order %s submitted as a subscription payment", order_id)
            return VerificationResult(verified=False, reason="mandate_order")
        return await self._apply_payment(order, payment, signature)

    def _duplicate(self, record: Subscription | None) -> VerificationResult:
        view = evaluate(record, self.clock()) if record is not None else None
        return VerificationResult(verified=True, duplicate=True, subscription=record, view=view)

    async def _apply_payment(
        self,
        source: dict,
        payment: dict,
        signature: str | None,
        event: tuple[str, str] | None = None,
        recurring: bool = False,
    ) -> VerificationResult:
        """
        Record the payment and move the subscription to active, atomically.

        ``source`` is the gateway order, or the gateway subscription when
        ``recurring``. Its notes carry the identity, plan and profile count.
        """
        notes = _notes(source)
        identity_key = store.normalize_email(notes.get("identityKey"))
        plan_id = notes.get("planId")
        profile_count = max(1, int(notes.get("profileCount") or source.get("quantity") or 1))
        coupon_code = notes.get("couponCode")
        payment_id = payment["id"]
        paid_paise = payment.get("amount") or 0
        gateway_ref = {"subscription_ref": source["id"]} if recurring else {"order_id": source["id"]}
        now = self.clock()

        fields = {
            "status": "active",
            "plan_id": plan_id,
            "subscription_start": now,
            "subscription_end": term_end(plan_id, now),
            "amount": from_paise(paid_paise if recurring else source.get("amount") or paid_paise),
            "currency": source.get("currency") or payment.get("currency") or self.currency,
            "razorpay_payment_id": payment_id,
            "last_payment_at": now,
        }
        if recurring:
            fields.update(
                razorpay_subscription_id=source["id"],
                mandate_authorized=True,
                mandate_auth_date=now,
                mandate_token_id=payment.get("token_id"),
            )
            if source.get("customer_id"):
                fields["razorpay_customer_id"] = source["customer_id"]
            if _from_unix(source.get("current_end")) is not None:
                fields["subscription_end"] = _from_unix(source["current_end"])
        else:
            fields["razorpay_order_id"] = source["id"]

        try:
            async with self.sessions.begin() as db:
                if event is not None and not await store.record_webhook_event(db, *event):
                    raise _AlreadyApplied()

                record = None
                if identity_key:
                    record = await store.get_live_by_identity(db, identity_key)
                if record is None:
                    record = await store.get_by_gateway_ref(db, **gateway_ref)

                subscription_id = previous_status = None
                if record is not None and record.status != "cancelled":
                    if await self._extend_term(db, record, fields, profile_count, now):
                        subscription_id, previous_status = record.id, record.status
                    else:
                        logger.warning(
                            "Subscription %s was cancelled while payment %s was applied; starting a new record",
                            record.id, payment_id,
                        )

                if subscription_id is None:
                    if not identity_key:
                        raise SubscriptionNotFound(f"No subscription for {source['id']}")
                    subscription_id = await self._insert_active(db, identity_key, notes, profile_count, fields)

                if subscription_id is None:
                    # A trial was created for this identity meanwhile.
                    record = await store.get_live_by_identity(db, identity_key)
                    if record is None or not await self._extend_term(db, record, fields, profile_count, now):
                        raise StoreError(
                            f"Subscription for {identity_key} changed while payment {payment_id} was applied"
                        )
                    subscription_id, previous_status = record.id, record.status

                appended = await store.append_payment(
                    db,
                    subscription_id=subscription_id,
                    kind="subscription",
                    amount=from_paise(paid_paise or source.get("amount") or 0),
                    currency=payment.get("currency") or self.currency,
                    status="success",
                    razorpay_payment_id=payment_id,
                    razorpay_order_id=payment.get("order_id") if recurring else source["id"],
                    razorpay_signature=signature,
                    plan_id=plan_id,
                    profile_count=profile_count,
                    description=f"{plan_id or 'subscription'} x{profile_count}",
                    paid_at=_from_unix(payment.get("created_at")) or now,
                )
                if not appended:
                    raise _AlreadyApplied()

                if coupon_code and identity_key:
                    if not await store.redeem_coupon(db, coupon_code, identity_key, subscription_id):
                        logger.warning("Coupon %s could not be redeemed for %s", coupon_code, identity_key)
        except _AlreadyApplied:
            logger.info("Payment %s already applied; skipping", payment_id)
            async with self.sessions() as db:
                record = await store.get_by_gateway_ref(db, **gateway_ref)
            return self._duplicate(record)

        await self._invalidate(subscription_id)
        record = await self._load(subscription_id)
        logger.info(
            "Payment verified: %s %s -> active until %s (plan=%s, slots=%s)",
            identity_key or subscription_id, previous_status, record.subscription_end,
            plan_id, record.paid_slots,
        )
        return VerificationResult(
            verified=True, subscription=record, view=evaluate(record, self.clock())
        )

    async def _extend_term(self, db, record: Subscription, fields: dict, profile_count: int, now) -> bool:
        """Apply a paid term to a live record. False when it was cancelled meanwhile."""
        still_active = evaluate(record, now).status == "active"
        return await store.update_subscription(
            db,
            record.id,
            expected_status=("trial", "active", "expired"),
            paid_slots=(record.paid_slots if still_active else 0) + profile_count,
            profile_count=max(record.profile_count or 0, profile_count),
            **fields,
        )

    async def _insert_active(self, db, identity_key: str, notes: dict, profile_count: int, fields: dict):
        subscription_id = uuid.uuid4()
        inserted = await store.insert_subscription(
            db,
            id=subscription_id,
            identity_key=identity_key,
            user_id=notes.get("userId"),
            account_id=notes.get("accountId"),
            profile_count=profile_count,
            paid_slots=profile_count,
            **fields,
        )
        return subscription_id if inserted else None

    # ── Mandates ───────────────────────────────────────────

    async def setup_mandate(
        self, identity: BillingIdentity, name: str | None = None, contact: str | None = None
    ) -> MandateSetup:
        """Ensure a gateway customer exists; never creates a second one."""
        record = await self._require_record(identity)
        if record.razorpay_customer_id:
            return MandateSetup(
                customer_id=record.razorpay_customer_id,
                already_authorized=bool(record.mandate_authorized),
            )

        self._require_gateway()
        customer = await self.gateway.create_customer(name, record.identity_key, contact)
        async with self.sessions.begin() as db:
            await store.update_subscription(db, record.id, razorpay_customer_id=customer["id"])
        await self._invalidate(record.id)
        logger.info("Mandate customer %s created for %s", customer["id"], record.identity_key)
        return MandateSetup(customer_id=customer["id"], already_authorized=False)

    async def create_authorization_order(self, customer_id: str, amount_paise: int | None = None) -> OrderRef:
        """
        Small charge that authorizes recurring debits. Refunding it is left
        to the gateway's own policy.
        """
        self._require_gateway()
        async with self.sessions() as db:
            record = await store.get_by_gateway_ref(db, customer_id=customer_id)
        if record is None:
            raise SubscriptionNotFound(f"No subscription for customer {customer_id}")
        if record.mandate_authorized:
            raise MandateAlreadyAuthorized("Auto-renewal is already authorized")

        amount = amount_paise or self.mandate_amount_paise
        receipt = _receipt("mandate", record.identity_key, self.clock())
        order = await self.gateway.create_order(
            amount,
            self.currency,
            receipt,
            notes={
                "purpose": MANDATE_PURPOSE,
                "identityKey": record.identity_key,
                "customerId": customer_id,
            },
            customer_id=customer_id,
        )
        logger.info("Mandate authorization order %s for %s", order["id"], record.identity_key)
        return OrderRef(
            order_id=order["id"],
            amount=amount,
            currency=self.currency,
            key_id=self.gateway.key_id,
            receipt=receipt,
        )

    async def verify_mandate(self, order_id: str, payment_id: str, signature: str, customer_id: str) -> bool:
        self._require_gateway()
        if not verify_payment_signature(self.gateway.key_secret, order_id, payment_id, signature):
            logger.warning("Mandate signature mismatch: order=%s customer=%s", order_id, customer_id)
            return False

        async with self.sessions() as db:
            if await store.payment_recorded(db, payment_id):
                return True

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.get("order_id") != order_id or payment.get("status") not in SETTLED_PAYMENT_STATES:
            logger.warning("Mandate payment %s not settled: %s", payment_id, payment.get("status"))
            return False
        order = await self.gateway.fetch_order(order_id)
        notes = _notes(order)
        if notes.get("purpose") != MANDATE_PURPOSE or notes.get("customerId") != customer_id:
            logger.warning("Order %s is not a mandate authorization for %s", order_id, customer_id)
            return False
        return await self._apply_mandate(order, payment, signature)

    async def _apply_mandate(
        self, order: dict, payment: dict, signature: str | None, event: tuple[str, str] | None = None
    ) -> bool:
        notes = _notes(order)
        customer_id = notes.get("customerId") or payment.get("customer_id")
        now = self.clock()
        try:
            async with self.sessions.begin() as db:
                if event is not None and not await store.record_webhook_event(db, *event):
                    raise _AlreadyApplied()
                record = await store.get_by_gateway_ref(db, customer_id=customer_id)
                if record is None and notes.get("identityKey"):
                    record = await store.get_live_by_identity(db, store.normalize_email(notes["identityKey"]))
                if record is None:
                    raise SubscriptionNotFound(f"No subscription for customer {customer_id}")

                appended = await store.append_payment(
                    db,
                    subscription_id=record.id,
                    kind=MANDATE_PURPOSE,
                    amount=from_paise(payment.get("amount") or 0),
                    currency=payment.get("currency") or self.currency,
                    status="success",
                    razorpay_payment_id=payment["id"],
                    razorpay_order_id=order["id"],
                    razorpay_signature=signature,
                    description="Auto-renewal authorization",
                    paid_at=now,
                )
                if not appended:
                    raise _AlreadyApplied()
                await store.update_subscription(
                    db,
                    record.id,
                    mandate_authorized=True,
                    mandate_auth_date=now,
                    mandate_token_id=payment.get("token_id"),
                    razorpay_customer_id=customer_id,
                )
        except _AlreadyApplied:
            return True

        await self._invalidate(record.id)
        logger.info("Mandate authorized for %s (customer %s)", record.identity_key, customer_id)
        return True

    async def mandate_status(self, identity: BillingIdentity) -> dict:
        record = await self._require_record(identity)
        async with self.sessions() as db:
            paid = await store.has_successful_payment(db, record.id)
        return {
            "mandateAuthorized": bool(record.mandate_authorized) or paid,
            "mandateAuthDate": record.mandate_auth_date,
            "customerId": record.razorpay_customer_id,
        }

    # ── Recurring subscriptions ────────────────────────────

    async def create_gateway_plan(self, plan_id: str, currency: str | None = None) -> dict:
        """
        Register a catalogue plan with the gateway. Per-profile plans are
        priced per unit and the subscription quantity carries the count.
        """
        self._require_gateway()
        plan = get_plan(plan_id)
        return await self.gateway.create_plan(
            plan["name"],
            to_paise(plan["price"]),
            currency or self.currency,
            period=plan["interval"],
            notes={"planId": plan_id},
        )

    async def create_recurring_subscription(
        self,
        identity: BillingIdentity,
        razorpay_plan_id: str,
        plan_id: str,
        profile_count: int,
        name: str | None = None,
        contact: str | None = None,
        total_count: int = 12,
    ) -> RecurringSubscription:
        """
        Create a gateway subscription that renews by auto-debit once the
        customer authorizes it. Only the gateway ids are stored here;
        activation waits for verify_subscription_payment.
        """
        self._require_gateway()
        if not identity.email:
            raise SubscriptionNotFound("An account email is required to subscribe")
        if profile_count is None or profile_count < 1:
            raise ValueError("profile_count must be at least 1")
        plan = get_plan(plan_id)

        gateway_plan = await self.gateway.fetch_plan(razorpay_plan_id)
        item = gateway_plan.get("item") or {}
        if _notes(gateway_plan).get("planId") != plan_id or item.get("amount") != to_paise(plan["price"]):
            raise PlanMismatch(f"Gateway plan {razorpay_plan_id} does not bill {plan_id}")

        record = await self.trials.resolve_identity(identity)
        customer_id = record.razorpay_customer_id if record is not None else None
        if not customer_id:
            customer = await self.gateway.create_customer(name, identity.email, contact)
            customer_id = customer["id"]

        subscription = await self.gateway.create_subscription(
            razorpay_plan_id,
            customer_id,
            quantity=profile_count if plan["per_profile"] else 1,
            total_count=total_count,
            notes={
                "identityKey": identity.email,
                "userId": identity.user_id,
                "accountId": identity.account_id,
                "planId": plan_id,
                "profileCount": profile_count,
            },
        )

        if record is not None and record.status != "cancelled":
            async with self.sessions.begin() as db:
                await store.update_subscription(
                    db,
                    record.id,
                    razorpay_subscription_id=subscription["id"],
                    razorpay_customer_id=customer_id,
                )
            await self._invalidate(record.id)
        logger.info(
            "Recurring subscription %s for %s: plan=%s profiles=%s",
            subscription["id"], identity.email, plan_id, profile_count,
        )
        return RecurringSubscription(
            subscription_id=subscription["id"],
            status=subscription.get("status"),
            short_url=subscription.get("short_url"),
            customer_id=customer_id,
            razorpay_plan_id=razorpay_plan_id,
        )

    async def verify_subscription_payment(
        self, subscription_id: str, payment_id: str, signature: str
    ) -> VerificationResult:
        """
        Check the subscription signature and activate with auto-renewal
        authorized. Idempotent on the payment id, like verify_payment.
        """
        self._require_gateway()
        if not verify_subscription_signature(self.gateway.key_secret, payment_id, subscription_id, signature):
            logger.warning("Subscription signature mismatch: subscription=%s payment=%s", subscription_id, payment_id)
            return VerificationResult(verified=False, reason="signature_mismatch")

        async with self.sessions() as db:
            duplicate = await store.payment_recorded(db, payment_id)
            record = await store.get_by_gateway_ref(db, subscription_ref=subscription_id) if duplicate else None
        if duplicate:
            return self._duplicate(record)

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.get("status") not in SETTLED_PAYMENT_STATES:
            logger.warning(
                "Payment %s not settled for subscription %s: status=%s",
                payment_id, subscription_id, payment.get("status"),
            )
            return VerificationResult(verified=False, reason="payment_not_settled")

        subscription = await self.gateway.fetch_subscription(subscription_id)
        return await self._apply_payment(subscription, payment, signature, recurring=True)

    async def subscription_details(self, subscription_id: str) -> dict:
        self._require_gateway()
        entity = await self.gateway.fetch_subscription(subscription_id)
        return {key: entity.get(key) for key in SUBSCRIPTION_DETAIL_FIELDS}

    # ── Account operations ─────────────────────────────────

    async def check_profile_payment(self, identity: BillingIdentity, current_profile_count: int) -> dict:
        record = await self._require_record(identity)
        paid_slots = record.paid_slots or 0
        additional = max(0, current_profile_count - paid_slots)
        return {
            "paidSlots": paid_slots,
            "currentProfileCount": current_profile_count,
            "additionalNeeded": additional,
            "requiresPayment": additional > 0,
        }

    async def cancel(self, identity: BillingIdentity, cancelled_by: str | None = None) -> Subscription:
        """Cancel at the gateway (when subscribed there), then locally. Terminal."""
        record = await self._require_record(identity)
        if record.status == "cancelled":
            return record

        if record.razorpay_subscription_id:
            self._require_gateway()
            await self.gateway.cancel_subscription(record.razorpay_subscription_id)

        now = self.clock()
        async with self.sessions.begin() as db:
            await store.update_subscription(
                db,
                record.id,
                expected_status=("trial", "active", "expired"),
                status="cancelled",
                cancelled_at=now,
                cancelled_by=cancelled_by or record.identity_key,
            )
        await self._invalidate(record.id)
        logger.info("Subscription %s cancelled by %s", record.identity_key, cancelled_by or record.identity_key)
        return await self._load(record.id)

    async def payment_history(self, identity: BillingIdentity, limit: int = 50) -> list:
        record = await self._require_record(identity)
        async with self.sessions() as db:
            return await store.list_payments(db, record.id, limit)

    # ── Webhooks ───────────────────────────────────────────

    async def handle_webhook(self, body: bytes, signature: str | None, event_id: str | None = None) -> WebhookResult:
        """
        Apply a gateway webhook. Raises SignatureError on a bad signature;
        redelivered events (same event id) are acknowledged as duplicates.
        """
        if self.gateway is None or not self.gateway.webhook_secret:
            raise GatewayNotConfigured("Webhook secret is not configured")
        if not verify_webhook_signature(self.gateway.webhook_secret, body, signature):
            logger.warning("Webhook signature mismatch")
            raise SignatureError("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise WebhookError("Webhook body is not JSON") from e

        name = payload.get("event")
        event_id = event_id or payload.get("id") or hashlib.sha256(body).hexdigest()
        handler = self._webhook_handlers().get(name)
        if handler is None:
            logger.info("Ignoring webhook %s (%s)", name, event_id)
            return WebhookResult(status="ignored", event=name, event_id=event_id)

        async with self.sessions() as db:
            if await store.webhook_event_seen(db, event_id):
                return WebhookResult(status="duplicate", event=name, event_id=event_id)

        applied = await handler(payload.get("payload") or {}, (event_id, name))
        logger.info("Webhook %s (%s): %s", name, event_id, "applied" if applied else "duplicate")
        return WebhookResult(
            status="applied" if applied else "duplicate", event=name, event_id=event_id
        )

    def _webhook_handlers(self) -> dict:
        return {
            "payment.captured": self._on_payment_captured,
            "subscription.charged": self._on_subscription_charged,
            "subscription.activated": self._on_subscription_authorized,
            "subscription.authenticated": self._on_subscription_authorized,
            "subscription.cancelled": self._on_subscription_ended,
            "subscription.halted": self._on_subscription_ended,
            "subscription.completed": self._on_subscription_ended,
            "subscription.expired": self._on_subscription_ended,
        }

    async def _mark_event(self, event: tuple[str, str]) -> bool:
        async with self.sessions.begin() as db:
            return await store.record_webhook_event(db, *event)

    async def _on_payment_captured(self, payload: dict, event: tuple[str, str]) -> bool:
        payment = (payload.get("payment") or {}).get("entity") or {}
        order_id = payment.get("order_id")
        if not order_id:
            return await self._mark_event(event)
        order = await self.gateway.fetch_order(order_id)
        if _notes(order).get("purpose") == MANDATE_PURPOSE:
            return await self._apply_mandate(order, payment, None, event=event)
        if not _notes(order).get("planId"):
            return await self._mark_event(event)
        result = await self._apply_payment(order, payment, None, event=event)
        return not result.duplicate

    async def _subscription_record(self, db, entity: dict) -> Subscription | None:
        record = await store.get_by_gateway_ref(
            db, subscription_ref=entity.get("id"), customer_id=entity.get("customer_id")
        )
        if record is None and _notes(entity).get("identityKey"):
            record = await store.get_live_by_identity(db, store.normalize_email(_notes(entity)["identityKey"]))
        return record

    async def _on_subscription_charged(self, payload: dict, event: tuple[str, str]) -> bool:
        entity = (payload.get("subscription") or {}).get("entity") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        now = self.clock()
        try:
            async with self.sessions.begin() as db:
                if not await store.record_webhook_event(db, *event):
                    raise _AlreadyApplied()
                record = await self._subscription_record(db, entity)
                if record is None:
                    logger.warning("subscription.charged for unknown subscription %s", entity.get("id"))
                    return True
                if payment.get("id"):
                    appended = await store.append_payment(
                        db,
                        subscription_id=record.id,
                        kind="renewal",
                        amount=from_paise(payment.get("amount") or 0),
                        currency=payment.get("currency") or self.currency,
                        status="success",
                        razorpay_payment_id=payment["id"],
                        razorpay_order_id=payment.get("order_id"),
                        plan_id=record.plan_id,
                        description="Auto-renewal charge",
                        paid_at=now,
                    )
                    if not appended:
                        raise _AlreadyApplied()
                current_end = _from_unix(entity.get("current_end"))
                if current_end is None:
                    end = as_utc(record.subscription_end)
                    current_end = term_end(record.plan_id, end if end is not None and end > now else now)
                await store.update_subscription(
                    db,
                    record.id,
                    expected_status=("trial", "active", "expired"),
                    status="active",
                    subscription_end=current_end,
                    razorpay_subscription_id=entity.get("id") or record.razorpay_subscription_id,
                    last_payment_at=now,
                )
        except _AlreadyApplied:
            return False
        await self._invalidate(record.id)
        logger.info("Renewal charged for %s: active until %s", record.identity_key, current_end)
        return True

    async def _on_subscription_authorized(self, payload: dict, event: tuple[str, str]) -> bool:
        entity = (payload.get("subscription") or {}).get("entity") or {}
        now = self.clock()
        try:
            async with self.sessions.begin() as db:
                if not await store.record_webhook_event(db, *event):
                    raise _AlreadyApplied()
                record = await self._subscription_record(db, entity)
                if record is None:
                    logger.warning("Mandate webhook for unknown subscription %s", entity.get("id"))
                    return True
                await store.update_subscription(
                    db,
                    record.id,
                    razorpay_subscription_id=entity.get("id"),
                    razorpay_customer_id=entity.get("customer_id") or record.razorpay_customer_id,
                    mandate_authorized=True,
                    mandate_auth_date=record.mandate_auth_date or now,
                )
        except _AlreadyApplied:
            return False
        await self._invalidate(record.id)
        logger.info("Gateway subscription %s authorized for %s", entity.get("id"), record.identity_key)
        return True

    async def _on_subscription_ended(self, payload: dict, event: tuple[str, str]) -> bool:
        entity = (payload.get("subscription") or {}).get("entity") or {}
        cancelled = event[1] == "subscription.cancelled"
        now = self.clock()
        try:
            async with self.sessions.begin() as db:
                if not await store.record_webhook_event(db, *event):
                    raise _AlreadyApplied()
                record = await self._subscription_record(db, entity)
                if record is None:
                    logger.warning("%s for unknown subscription %s", event[1], entity.get("id"))
                    return True
                if cancelled:
                    fields = {"status": "cancelled", "cancelled_at": now, "cancelled_by": "gateway"}
                else:
                    fields = {"status": "expired"}
                await store.update_subscription(
                    db, record.id, expected_status=("trial", "active", "expired"), **fields
                )
        except _AlreadyApplied:
            return False
        await self._invalidate(record.id)
        logger.info("Gateway %s: %s -> %s", event[1], record.identity_key, fields["status"])
        return True
