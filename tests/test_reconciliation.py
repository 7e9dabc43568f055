"""Tests for duplicate reconciliation and profile totals."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from models.subscription import PaymentHistory, Subscription
from services import store
from services.exceptions import ReconciliationError
from services.identity import BillingIdentity
from services.reconciliation import Reconciler, plan_merge, total_profile_count

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _rec(status, days):
    return SimpleNamespace(id=uuid.uuid4(), status=status, created_at=T0 + timedelta(days=days))


def test_plan_merge_prefers_active_over_newer_trial():
    active = _rec("active", 0)
    trial = _rec("trial", 5)
    expired = _rec("expired", 9)
    kept, removed = plan_merge([trial, expired, active])
    assert kept is active
    assert set(r.id for r in removed) == {trial.id, expired.id}


def test_plan_merge_same_status_keeps_newest():
    older = _rec("trial", 1)
    newer = _rec("trial", 2)
    kept, removed = plan_merge([older, newer])
    assert kept is newer
    assert removed == [older]


def test_plan_merge_single_and_empty():
    only = _rec("cancelled", 0)
    assert plan_merge([only]) == (only, [])
    assert plan_merge([]) == (None, [])


def test_plan_merge_is_pure():
    records = [_rec("trial", 1), _rec("active", 0)]
    snapshot = list(records)
    plan_merge(records)
    assert records == snapshot


def test_total_profile_count():
    assert total_profile_count([2, 5, 3]) == 10
    assert total_profile_count([]) == 0
    assert total_profile_count([0, None, 4]) == 4


def test_total_profile_count_rejects_negative():
    with pytest.raises(ValueError):
        total_profile_count([3, -1])


async def _insert(sessions, identity_key, status, created_at, **extra):
    subscription_id = uuid.uuid4()
    async with sessions.begin() as db:
        await store.insert_subscription(
            db, id=subscription_id, identity_key=identity_key, status=status, created_at=created_at, **extra
        )
    return subscription_id


@pytest.mark.asyncio
async def test_reconcile_merges_case_variants(sessions):
    trial_id = await _insert(sessions, "Owner@Example.com", "trial", T0 + timedelta(days=3))
    active_id = await _insert(sessions, "owner@example.com ", "active", T0)
    expired_id = await _insert(sessions, "OWNER@EXAMPLE.COM", "expired", T0 + timedelta(days=5))

    async with sessions.begin() as db:
        await store.append_payment(
            db,
            subscription_id=trial_id,
            kind="subscription",
            amount=99,
            currency="INR",
            status="success",
            razorpay_payment_id="pay_old",
        )
        await store.add_alias(db, expired_id, "account_id", "acct-1")

    result = await Reconciler(sessions).reconcile_duplicates("OWNER@example.com")

    assert result.kept == str(active_id)
    assert result.kept_status == "active"
    assert set(result.removed) == {str(trial_id), str(expired_id)}

    async with sessions() as db:
        rows = (await db.execute(select(Subscription))).scalars().all()
        payments = (await db.execute(select(PaymentHistory))).scalars().all()
        by_alias = await store.get_by_alias(db, "account_id", "acct-1")

    assert [r.id for r in rows] == [active_id]
    assert rows[0].identity_key == "owner@example.com"
    assert payments[0].subscription_id == active_id
    assert by_alias.id == active_id


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(sessions):
    await _insert(sessions, "a@example.com", "trial", T0)
    await _insert(sessions, "A@example.com", "trial", T0 + timedelta(days=1))
    reconciler = Reconciler(sessions)

    first = await reconciler.reconcile_duplicates("a@example.com")
    second = await reconciler.reconcile_duplicates("a@example.com")

    assert len(first.removed) == 1
    assert second.kept == first.kept
    assert second.removed == []


@pytest.mark.asyncio
async def test_reconcile_unknown_identity(sessions):
    result = await Reconciler(sessions).reconcile_duplicates("ghost@example.com")
    assert result.kept is None
    assert result.removed == []


@pytest.mark.asyncio
async def test_reconcile_requires_key(sessions):
    with pytest.raises(ReconciliationError):
        await Reconciler(sessions).reconcile_duplicates("  ")


@pytest.mark.asyncio
async def test_reconcile_all(sessions):
    await _insert(sessions, "x@example.com", "trial", T0)
    await _insert(sessions, "X@example.com", "active", T0)
    await _insert(sessions, "solo@example.com", "trial", T0)

    results = await Reconciler(sessions).reconcile_all()

    assert [r.identity_key for r in results] == ["x@example.com"]
    assert results[0].kept_status == "active"
    async with sessions() as db:
        remaining = (await db.execute(select(Subscription.identity_key))).scalars().all()
    assert sorted(remaining) == ["solo@example.com", "x@example.com"]


@pytest.mark.asyncio
async def test_reconcile_leaves_cancelled_history_alone(sessions):
    cancelled_id = await _insert(sessions, "Owner@Example.com", "cancelled", T0, cancelled_by="owner@example.com")
    trial_id = await _insert(sessions, "owner@example.com", "trial", T0 + timedelta(days=1))
    active_id = await _insert(sessions, "OWNER@example.com", "active", T0 + timedelta(days=2))

    result = await Reconciler(sessions).reconcile_duplicates("owner@example.com")

    assert result.kept == str(active_id)
    assert result.removed == [str(trial_id)]
    async with sessions() as db:
        ids = set((await db.execute(select(Subscription.id))).scalars().all())
    assert ids == {cancelled_id, active_id}


@pytest.mark.asyncio
async def test_resubscribed_identity_is_not_a_duplicate(billing, gateway):
    identity = BillingIdentity(email="owner@example.com")
    trial = await billing.trials.start_trial("owner@example.com")
    await billing.payments.cancel(identity)

    ref = await billing.payments.create_order(identity, "monthly_basic", 1)
    payment_id, signature = gateway.pay(ref.order_id)
    paid = await billing.payments.verify_payment(ref.order_id, payment_id, signature)
    assert paid.subscription.id != trial.id

    results = await billing.reconciler.reconcile_all()

    assert results == []
    async with billing.sessions() as db:
        old = await store.get_subscription(db, trial.id)
    assert old is not None
    assert old.status == "cancelled"
    assert old.cancelled_by == "owner@example.com"
