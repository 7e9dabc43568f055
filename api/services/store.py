"""
Queries and writes over the billing tables.

Every function takes the caller's AsyncSession so a service can group
several of them into one transaction. Inserts that may race use
INSERT ... ON CONFLICT DO NOTHING and report whether a row was written;
status changes use conditional UPDATEs that report whether they applied.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from models.coupon import Coupon, CouponUsage
from models.subscription import (
    PaymentHistory, Subscription, SubscriptionAlias, WebhookEvent, utcnow,
)

logger = logging.getLogger(__name__)

ALIAS_KINDS = ("user_id", "account_id")


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def _insert(db: AsyncSession, model):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"insert-or-ignore is not supported on {dialect}")


async def insert_ignore(db: AsyncSession, model, values: dict) -> bool:
    """Insert a row unless it violates a unique constraint. True if written."""
    stmt = _insert(db, model).values(**values).on_conflict_do_nothing()
    result = await db.execute(stmt)
    return (result.rowcount or 0) > 0


# ── Subscriptions ──────────────────────────────────────────

async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    return await db.get(Subscription, subscription_id)


async def get_live_by_identity(db: AsyncSession, identity_key: str) -> Subscription | None:
    """The non-cancelled record for an identity, falling back to the newest cancelled one."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.identity_key == identity_key)
        .order_by((Subscription.status == "cancelled").asc(), Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_alias(db: AsyncSession, kind: str, value: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .join(SubscriptionAlias, SubscriptionAlias.subscription_id == Subscription.id)
        .where(SubscriptionAlias.kind == kind, SubscriptionAlias.value == value)
        .limit(1)
    )
    found = result.scalar_one_or_none()
    if found is not None:
        return found

    # Rows written before aliases existed only carry the column.
    column = Subscription.user_id if kind == "user_id" else Subscription.account_id
    result = await db.execute(
        select(Subscription)
        .where(column == value)
        .order_by((Subscription.status == "cancelled").asc(), Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_gateway_ref(
    db: AsyncSession,
    order_id: str | None = None,
    subscription_ref: str | None = None,
    customer_id: str | None = None,
) -> Subscription | None:
    clauses = []
    if order_id:
        clauses.append(Subscription.razorpay_order_id == order_id)
    if subscription_ref:
        clauses.append(Subscription.razorpay_subscription_id == subscription_ref)
    if customer_id:
        clauses.append(Subscription.razorpay_customer_id == customer_id)
    if not clauses:
        return None
    result = await db.execute(
        select(Subscription).where(or_(*clauses)).order_by(Subscription.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def insert_trial(
    db: AsyncSession,
    identity_key: str,
    trial_start: datetime,
    trial_end: datetime,
    profile_count: int,
    user_id: str | None = None,
    account_id: str | None = None,
) -> bool:
    now = utcnow()
    return await insert_ignore(db, Subscription, {
        "id": uuid.uuid4(),
        "identity_key": identity_key,
        "user_id": user_id,
        "account_id": account_id,
        "status": "trial",
        "trial_start": trial_start,
        "trial_end": trial_end,
        "profile_count": profile_count,
        "paid_slots": 0,
        "currency": "INR",
        "mandate_authorized": False,
        "created_at": now,
        "updated_at": now,
    })


async def insert_subscription(db: AsyncSession, **values) -> bool:
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "currency": "INR",
        "profile_count": 1,
        "paid_slots": 0,
        "mandate_authorized": False,
        "created_at": now,
        "updated_at": now,
    }
    row.update(values)
    return await insert_ignore(db, Subscription, row)


async def add_alias(db: AsyncSession, subscription_id: uuid.UUID, kind: str, value: str | None) -> bool:
    if not value or kind not in ALIAS_KINDS:
        return False
    return await insert_ignore(db, SubscriptionAlias, {
        "id": uuid.uuid4(),
        "subscription_id": subscription_id,
        "kind": kind,
        "value": value,
        "created_at": utcnow(),
    })


async def update_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    expected_status: str | tuple[str, ...] | None = None,
    **fields,
) -> bool:
    """
    Conditional update. With ``expected_status`` the write only applies while
    the stored status still matches, so a concurrent transition is not lost.
    """
    stmt = update(Subscription).where(Subscription.id == subscription_id)
    if expected_status is not None:
        if isinstance(expected_status, str):
            expected_status = (expected_status,)
        stmt = stmt.where(Subscription.status.in_(expected_status))
    fields.setdefault("updated_at", utcnow())
    result = await db.execute(stmt.values(**fields).execution_options(synchronize_session=False))
    return (result.rowcount or 0) > 0


async def lapse_candidates(db: AsyncSession, now: datetime) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            or_(
                (Subscription.status == "trial") & (Subscription.trial_end <= now),
                (Subscription.status == "active")
                & Subscription.subscription_end.is_not(None)
                & (Subscription.subscription_end < now),
            )
        )
    )
    return list(result.scalars().all())


async def delete_subscriptions(db: AsyncSession, ids: list[uuid.UUID]) -> int:
    if not ids:
        return 0
    await db.execute(delete(SubscriptionAlias).where(SubscriptionAlias.subscription_id.in_(ids)))
    result = await db.execute(delete(Subscription).where(Subscription.id.in_(ids)))
    return result.rowcount or 0


async def repoint_children(db: AsyncSession, from_ids: list[uuid.UUID], to_id: uuid.UUID) -> None:
    """Move payment history and coupon usage onto the surviving record."""
    if not from_ids:
        return
    await db.execute(
        update(PaymentHistory)
        .where(PaymentHistory.subscription_id.in_(from_ids))
        .values(subscription_id=to_id)
    )
    await db.execute(
        update(CouponUsage)
        .where(CouponUsage.subscription_id.in_(from_ids))
        .values(subscription_id=to_id)
    )
    aliases = await db.execute(
        select(SubscriptionAlias.kind, SubscriptionAlias.value)
        .where(SubscriptionAlias.subscription_id.in_(from_ids))
    )
    rows = aliases.all()
    await db.execute(delete(SubscriptionAlias).where(SubscriptionAlias.subscription_id.in_(from_ids)))
    for kind, value in rows:
        await add_alias(db, to_id, kind, value)


# ── Payment history ────────────────────────────────────────

async def append_payment(db: AsyncSession, **values) -> bool:
    """Append a ledger row. False when the gateway payment id is already recorded."""
    row = {"id": uuid.uuid4(), "created_at": utcnow()}
    row.update(values)
    return await insert_ignore(db, PaymentHistory, row)


async def payment_recorded(db: AsyncSession, payment_id: str) -> bool:
    result = await db.execute(
        select(PaymentHistory.id).where(PaymentHistory.razorpay_payment_id == payment_id)
    )
    return result.first() is not None


async def has_successful_payment(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(PaymentHistory.id).where(
            PaymentHistory.subscription_id == subscription_id,
            PaymentHistory.status == "success",
        ).limit(1)
    )
    return result.first() is not None


async def list_payments(db: AsyncSession, subscription_id: uuid.UUID, limit: int = 50) -> list[PaymentHistory]:
    result = await db.execute(
        select(PaymentHistory)
        .where(PaymentHistory.subscription_id == subscription_id)
        .order_by(PaymentHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ── Webhook dedupe ─────────────────────────────────────────

async def webhook_event_seen(db: AsyncSession, event_id: str) -> bool:
    return await db.get(WebhookEvent, event_id) is not None


async def record_webhook_event(db: AsyncSession, event_id: str, event_type: str) -> bool:
    """True the first time an event id is seen."""
    return await insert_ignore(db, WebhookEvent, {
        "event_id": event_id,
        "event_type": event_type,
        "received_at": utcnow(),
    })


# ── Coupons ────────────────────────────────────────────────

async def get_coupon(db: AsyncSession, code: str) -> Coupon | None:
    return await db.get(Coupon, code.strip().upper())


async def list_visible_coupons(db: AsyncSession) -> list[Coupon]:
    result = await db.execute(
        select(Coupon)
        .where(Coupon.is_active.is_(True), Coupon.hidden.is_(False))
        .order_by(Coupon.created_at.desc())
    )
    return list(result.scalars().all())


async def coupon_used_by(db: AsyncSession, code: str, identity_key: str) -> bool:
    result = await db.execute(
        select(CouponUsage.id).where(
            CouponUsage.coupon_code == code, CouponUsage.identity_key == identity_key
        )
    )
    return result.first() is not None


async def redeem_coupon(
    db: AsyncSession, code: str, identity_key: str, subscription_id: uuid.UUID | None
) -> bool:
    """Record one redemption. False when already redeemed or the cap is reached."""
    claimed = await db.execute(
        update(Coupon)
        .where(
            Coupon.code == code,
            or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
            or_(Coupon.single_use.is_(False), Coupon.used_count < 1),
        )
        .values(used_count=Coupon.used_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        return False
    recorded = await insert_ignore(db, CouponUsage, {
        "id": uuid.uuid4(),
        "coupon_code": code,
        "identity_key": identity_key,
        "subscription_id": subscription_id,
        "used_at": utcnow(),
    })
    if not recorded:
        await db.execute(
            update(Coupon)
            .where(Coupon.code == code)
            .values(used_count=Coupon.used_count - 1)
            .execution_options(synchronize_session=False)
        )
    return recorded
