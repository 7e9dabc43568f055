"""
Reconciliation — merging duplicate subscriptions and totalling profiles.

Duplicates come from rows written before identity keys were normalized
(case or whitespace variants of the same email) and from legacy imports.
Cancelled rows are audit history, not duplicates, and are left alone. For
each identity the live records are ranked by (status priority, created_at),
both descending; the top record survives and the rest are deleted after
their payment history, coupon usage and aliases move onto the survivor.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select

from models.subscription import Subscription
from services import store
from services.evaluator import as_utc
from services.exceptions import ReconciliationError

logger = logging.getLogger(__name__)

STATUS_PRIORITY = {
    "active": 3,
    "paid": 3,
    "trial": 2,
    "expired": 1,
    "cancelled": 1,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_normalized_key = func.lower(func.trim(Subscription.identity_key))


def status_priority(status: str | None) -> int:
    return STATUS_PRIORITY.get(status or "", 0)


def rank_key(record) -> tuple[int, datetime]:
    return status_priority(record.status), as_utc(record.created_at) or _EPOCH


def plan_merge(records: list) -> tuple[object | None, list]:
    """
    Split records into (kept, removed). Pure; never removes the last record.
    """
    if not records:
        return None, []
    ranked = sorted(records, key=rank_key, reverse=True)
    return ranked[0], ranked[1:]


def total_profile_count(location_counts) -> int:
    """Sum of locations over every connected account."""
    total = 0
    for count in location_counts:
        count = int(count or 0)
        if count < 0:
            raise ValueError(f"location count cannot be negative: {count}")
        total += count
    return total


@dataclass
class ReconciliationResult:
    identity_key: str
    kept: str | None
    kept_status: str | None = None
    removed: list[str] = field(default_factory=list)


class Reconciler:
    def __init__(self, sessions, cache=None):
        self.sessions = sessions
        self.cache = cache

    async def _records_for(self, db, identity_key: str) -> list[Subscription]:
        """Live (non-cancelled) records whose normalized key matches."""
        result = await db.execute(
            select(Subscription).where(
                _normalized_key == identity_key,
                Subscription.status != "cancelled",
            )
        )
        return list(result.scalars().all())

    async def reconcile_duplicates(self, identity_key: str) -> ReconciliationResult:
        """Keep the best record for an identity and delete the others."""
        key = store.normalize_email(identity_key)
        if not key:
            raise ReconciliationError("identity key is required")

        async with self.sessions.begin() as db:
            records = await self._records_for(db, key)
            kept, removed = plan_merge(records)
            if kept is None:
                return ReconciliationResult(identity_key=key, kept=None)

            removed_ids: list[uuid.UUID] = [r.id for r in removed]
            if kept.id in removed_ids:
                raise ReconciliationError(f"refusing to delete surviving record {kept.id}")

            if removed_ids:
                await store.repoint_children(db, removed_ids, kept.id)
                await store.delete_subscriptions(db, removed_ids)
            if kept.identity_key != key:
                await store.update_subscription(db, kept.id, identity_key=key)

            result = ReconciliationResult(
                identity_key=key,
                kept=str(kept.id),
                kept_status=kept.status,
                removed=[str(i) for i in removed_ids],
            )

        if removed_ids:
            logger.info(
                "Reconciled %s: kept %s (%s), removed %s",
                key, result.kept, result.kept_status, ", ".join(result.removed),
            )
            if self.cache is not None:
                await self.cache.invalidate(result.kept)
                for removed_id in result.removed:
                    await self.cache.invalidate(removed_id)
        return result

    async def reconcile_all(self) -> list[ReconciliationResult]:
        async with self.sessions() as db:
            result = await db.execute(
                select(_normalized_key)
                .where(Subscription.status != "cancelled")
                .group_by(_normalized_key)
                .having(func.count(Subscription.id) > 1)
            )
            keys = [row[0] for row in result.all()]

        results = []
        for key in keys:
            results.append(await self.reconcile_duplicates(key))
        logger.info("Reconciliation pass: %d identities merged", len(results))
        return results
