"""
Trial lifecycle: creating trials, resolving identities, expiring lapsed terms.

A trial is created once per identity, on the first qualifying connection.
Creation is insert-first with ON CONFLICT DO NOTHING against the unique
live-identity index, so concurrent first requests yield exactly one row.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from models.subscription import Subscription, utcnow
from services import store
from services.evaluator import StatusView, evaluate
from services.exceptions import StoreError, SubscriptionNotFound, TrialError
from services.identity import BillingIdentity
from services.reconciliation import total_profile_count

logger = logging.getLogger(__name__)


class TrialManager:
    def __init__(self, sessions, trial_days: int = 15, cache=None, clock=utcnow):
        self.sessions = sessions
        self.trial_duration = timedelta(days=trial_days)
        self.cache = cache
        self.clock = clock

    async def start_trial(
        self,
        identity_key: str,
        profile_count: int = 1,
        user_id: str | None = None,
        account_id: str | None = None,
    ) -> Subscription:
        """
        Create the trial for an identity, or return its existing record.

        An identity that already has a record (cancelled ones included)
        never gets a second trial.
        """
        key = store.normalize_email(identity_key)
        if not key:
            raise TrialError("An email address is required to start a trial")

        async with self.sessions() as db:
            existing = await store.get_live_by_identity(db, key)
        if existing is not None:
            await self._link_aliases(existing, user_id, account_id)
            return existing

        now = self.clock()
        async with self.sessions.begin() as db:
            created = await store.insert_trial(
                db,
                identity_key=key,
                trial_start=now,
                trial_end=now + self.trial_duration,
                profile_count=max(1, int(profile_count or 1)),
                user_id=user_id,
                account_id=account_id,
            )

        async with self.sessions() as db:
            record = await store.get_live_by_identity(db, key)
        if record is None:
            raise TrialError(f"Trial for {key} was not persisted")

        if created:
            logger.info(
                "Trial started: %s (%s profiles) ends %s",
                key, record.profile_count, record.trial_end,
            )
        await self._link_aliases(record, user_id, account_id)
        return record

    async def _link_aliases(self, record: Subscription, user_id: str | None, account_id: str | None) -> None:
        if not (user_id or account_id):
            return
        async with self.sessions.begin() as db:
            linked = await store.add_alias(db, record.id, "user_id", user_id)
            linked = await store.add_alias(db, record.id, "account_id", account_id) or linked
        if linked:
            logger.info("Linked aliases to %s: user_id=%s account_id=%s", record.id, user_id, account_id)

    async def resolve_identity(self, identity: BillingIdentity) -> Subscription | None:
        """Email first, then internal user id, then legacy account id. First hit wins."""
        if identity is None or identity.is_empty:
            return None
        try:
            async with self.sessions() as db:
                return await self._resolve(db, identity)
        except SQLAlchemyError as e:
            raise StoreError(f"Subscription lookup failed: {e}") from e

    async def _resolve(self, db, identity: BillingIdentity) -> Subscription | None:
        if identity.email:
            record = await store.get_live_by_identity(db, identity.email)
            if record is not None:
                return record
        if identity.user_id:
            record = await store.get_by_alias(db, "user_id", identity.user_id)
            if record is not None:
                return record
        if identity.account_id:
            return await store.get_by_alias(db, "account_id", identity.account_id)
        return None

    async def remember(self, record: Subscription, identity: BillingIdentity) -> None:
        """Record secondary keys a request used to reach ``record``."""
        await self._link_aliases(record, identity.user_id, identity.account_id)

    async def status(self, identity: BillingIdentity) -> tuple[Subscription | None, StatusView]:
        record = await self.resolve_identity(identity)
        return record, evaluate(record, self.clock())

    async def persist_observed(self, record: Subscription, view: StatusView) -> bool:
        """
        Write back an expiry the evaluator observed. The update is conditional
        on the stored status so a payment that landed meanwhile is kept.
        """
        if record is None or view.status != "expired" or record.status not in ("trial", "active"):
            return False
        async with self.sessions.begin() as db:
            changed = await store.update_subscription(
                db, record.id, expected_status=record.status, status="expired"
            )
        if changed:
            logger.info("Subscription %s (%s): %s -> expired", record.id, record.identity_key, record.status)
            if self.cache is not None:
                await self.cache.invalidate(record.id)
        return changed

    async def expire_lapsed(self, now=None) -> list[str]:
        """Persist ``expired`` on every trial/active record whose term has passed."""
        now = now or self.clock()
        async with self.sessions() as db:
            candidates = await store.lapse_candidates(db, now)

        expired = []
        for record in candidates:
            view = evaluate(record, now)
            if await self.persist_observed(record, view):
                expired.append(str(record.id))
        if expired:
            logger.info("Expiry sweep: %d subscriptions expired", len(expired))
        return expired

    async def refresh_profile_count(self, identity: BillingIdentity, location_counts) -> Subscription:
        """Replace profile_count with the total over all connected accounts, in one write."""
        total = total_profile_count(location_counts)
        record = await self.resolve_identity(identity)
        if record is None:
            raise SubscriptionNotFound("No subscription for this identity")

        async with self.sessions.begin() as db:
            await store.update_subscription(db, record.id, profile_count=total)
            refreshed = await store.get_subscription(db, record.id)
        logger.info("Profile count for %s set to %d (was %d)", record.identity_key, total, record.profile_count)
        if self.cache is not None:
            await self.cache.invalidate(record.id)
        return refreshed
