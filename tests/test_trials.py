"""Tests for the trial lifecycle against a SQLite store."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from models.subscription import Subscription
from services import store
from services.evaluator import as_utc, evaluate
from services.exceptions import StoreError, SubscriptionNotFound, TrialError
from services.identity import BillingIdentity
from services.trials import TrialManager


async def _count(sessions) -> int:
    async with sessions() as db:
        return (await db.execute(select(func.count(Subscription.id)))).scalar()


@pytest.mark.asyncio
async def test_start_trial_creates_fifteen_day_trial(sessions, clock):
    trials = TrialManager(sessions, trial_days=15, clock=clock)
    record = await trials.start_trial("Owner@Example.com ", profile_count=3)

    assert record.identity_key == "owner@example.com"
    assert record.status == "trial"
    assert record.profile_count == 3
    assert as_utc(record.trial_end) - as_utc(record.trial_start) == timedelta(days=15)

    view = evaluate(record, clock())
    assert view.status == "trial"
    assert view.days_remaining == 15
    assert view.can_use_platform is True


@pytest.mark.asyncio
async def test_start_trial_is_idempotent(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    first = await trials.start_trial("owner@example.com", profile_count=2)
    clock.advance(days=3)
    second = await trials.start_trial("OWNER@example.com", profile_count=9)

    assert second.id == first.id
    assert second.profile_count == 2
    assert as_utc(second.trial_end) == as_utc(first.trial_end)
    assert await _count(sessions) == 1


@pytest.mark.asyncio
async def test_concurrent_first_requests_create_one_trial(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    records = await asyncio.gather(*[
        trials.start_trial("race@example.com", profile_count=1) for _ in range(5)
    ])

    assert len({r.id for r in records}) == 1
    assert await _count(sessions) == 1


@pytest.mark.asyncio
async def test_zero_profiles_still_creates_trial_for_one(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record = await trials.start_trial("owner@example.com", profile_count=0)
    assert record.profile_count == 1


@pytest.mark.asyncio
async def test_start_trial_requires_email(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    with pytest.raises(TrialError):
        await trials.start_trial("   ")


@pytest.mark.asyncio
async def test_cancelled_identity_gets_no_second_trial(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    first = await trials.start_trial("owner@example.com")
    async with sessions.begin() as db:
        await store.update_subscription(db, first.id, status="cancelled")

    again = await trials.start_trial("owner@example.com")
    assert again.id == first.id
    assert again.status == "cancelled"
    assert await _count(sessions) == 1


@pytest.mark.asyncio
async def test_resolve_prefers_email_then_user_then_account(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    by_email = await trials.start_trial("a@example.com")
    by_alias = await trials.start_trial("b@example.com", user_id="uid-b", account_id="acct-b")

    # Email wins even when the other keys point elsewhere.
    found = await trials.resolve_identity(
        BillingIdentity(email="a@example.com", user_id="uid-b", account_id="acct-b")
    )
    assert found.id == by_email.id

    found = await trials.resolve_identity(BillingIdentity(email="nobody@example.com", user_id="uid-b"))
    assert found.id == by_alias.id

    found = await trials.resolve_identity(BillingIdentity(account_id="acct-b"))
    assert found.id == by_alias.id

    assert await trials.resolve_identity(BillingIdentity(user_id="uid-unknown")) is None
    assert await trials.resolve_identity(BillingIdentity()) is None


@pytest.mark.asyncio
async def test_remember_links_new_aliases(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record = await trials.start_trial("owner@example.com")
    await trials.remember(record, BillingIdentity(email="owner@example.com", account_id="acct-9"))

    found = await trials.resolve_identity(BillingIdentity(account_id="acct-9"))
    assert found.id == record.id


@pytest.mark.asyncio
async def test_status_without_record_is_none(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record, view = await trials.status(BillingIdentity(email="new@example.com"))
    assert record is None
    assert view.status == "none"


@pytest.mark.asyncio
async def test_persist_observed_expiry(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record = await trials.start_trial("owner@example.com")
    clock.advance(days=15)

    record, view = await trials.status(BillingIdentity(email="owner@example.com"))
    assert view.status == "expired"
    assert view.needs_persisting is True
    assert await trials.persist_observed(record, view) is True

    async with sessions() as db:
        stored = await store.get_subscription(db, record.id)
    assert stored.status == "expired"


@pytest.mark.asyncio
async def test_persist_observed_keeps_concurrent_activation(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record = await trials.start_trial("owner@example.com")
    clock.advance(days=16)
    stale, view = await trials.status(BillingIdentity(email="owner@example.com"))

    # A payment lands between the read and the write-back.
    async with sessions.begin() as db:
        await store.update_subscription(db, record.id, status="active", subscription_end=None)

    assert await trials.persist_observed(stale, view) is False
    async with sessions() as db:
        assert (await store.get_subscription(db, record.id)).status == "active"


@pytest.mark.asyncio
async def test_expire_lapsed_only_touches_lapsed(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    old = await trials.start_trial("old@example.com")
    clock.advance(days=10)
    fresh = await trials.start_trial("fresh@example.com")
    clock.advance(days=6)

    expired = await trials.expire_lapsed()
    assert expired == [str(old.id)]

    async with sessions() as db:
        assert (await store.get_subscription(db, old.id)).status == "expired"
        assert (await store.get_subscription(db, fresh.id)).status == "trial"

    # Second sweep has nothing left to do.
    assert await trials.expire_lapsed() == []


@pytest.mark.asyncio
async def test_refresh_profile_count_sums_in_one_write(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    record = await trials.start_trial("owner@example.com")

    with patch("services.trials.store.update_subscription", wraps=store.update_subscription) as update:
        refreshed = await trials.refresh_profile_count(
            BillingIdentity(email="owner@example.com"), [2, 5, 3]
        )

    assert refreshed.profile_count == 10
    update.assert_called_once()
    assert update.call_args.kwargs == {"profile_count": 10}
    assert refreshed.id == record.id


@pytest.mark.asyncio
async def test_refresh_profile_count_without_record(sessions, clock):
    trials = TrialManager(sessions, clock=clock)
    with pytest.raises(SubscriptionNotFound):
        await trials.refresh_profile_count(BillingIdentity(email="ghost@example.com"), [1])


@pytest.mark.asyncio
async def test_lookup_failure_raises_store_error(billing):
    failing = AsyncMock(side_effect=OperationalError("select", {}, Exception("down")))
    with patch.object(store, "get_live_by_identity", failing):
        with pytest.raises(StoreError):
            await billing.trials.resolve_identity(BillingIdentity(email="owner@example.com"))
