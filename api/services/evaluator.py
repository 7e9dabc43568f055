"""
Subscription status evaluation.

evaluate(record, now) is a pure function: it reads the stored fields of a
subscription (ORM row or SubscriptionSnapshot) and the current time, and
returns the view the rest of the application acts on. It never writes.
Persisting a transition it observes (trial → expired) is the caller's job.

  stored status   condition                    view
  ─────────────   ─────────────────────────    ───────────────────────────
  (no record)                                  none,    no access
  active          end is null or now <= end    active,  full access
  active          now > end                    expired, billing only
  trial           ceil(days left) > 0          trial,   full access
  trial           ceil(days left) <= 0         expired, billing only
  expired                                      expired, billing only
  cancelled                                    cancelled, billing only
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

ONE_DAY = timedelta(days=1)

MESSAGES = {
    "none": "No subscription found. Start your free trial to continue.",
    "trial": "Free trial active: {days} day{plural} remaining.",
    "active": "Subscription active.",
    "trial_expired": "Your free trial has expired. Please upgrade to continue using all features.",
    "active_expired": "Your subscription has ended. Please renew to continue using all features.",
    "expired": "Your subscription has expired. Please upgrade to continue using all features.",
    "cancelled": "Your subscription was cancelled. Please subscribe again to continue.",
}


@dataclass(frozen=True)
class StatusView:
    status: str
    days_remaining: int | None
    can_use_platform: bool
    billing_only: bool
    message: str
    profile_count: int = 0
    paid_slots: int = 0
    stored_status: str | None = None
    subscription_id: str | None = None

    @property
    def needs_persisting(self) -> bool:
        """True when the stored status lags behind the evaluated one."""
        return self.stored_status is not None and self.stored_status != self.status

    def to_public(self) -> dict:
        return {
            "status": self.status,
            "daysRemaining": self.days_remaining,
            "canUsePlatform": self.can_use_platform,
            "billingOnly": self.billing_only,
            "message": self.message,
            "profileCount": self.profile_count,
            "paidSlots": self.paid_slots,
        }


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subset of a subscription row the evaluator needs."""

    id: str
    identity_key: str
    status: str
    trial_end: datetime | None
    subscription_end: datetime | None
    profile_count: int
    paid_slots: int

    @classmethod
    def from_record(cls, record) -> "SubscriptionSnapshot":
        return cls(
            id=str(record.id),
            identity_key=record.identity_key,
            status=record.status,
            trial_end=as_utc(record.trial_end),
            subscription_end=as_utc(record.subscription_end),
            profile_count=record.profile_count or 0,
            paid_slots=record.paid_slots or 0,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("trial_end", "subscription_end"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SubscriptionSnapshot":
        values = dict(data)
        for key in ("trial_end", "subscription_end"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (SQLite returns them) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_until(end: datetime, now: datetime) -> int:
    """Whole days left, rounded up: one second left counts as one day."""
    return math.ceil((end - now) / ONE_DAY)


def evaluate(record, now: datetime) -> StatusView:
    """Compute the subscription view for ``record`` at ``now``."""
    if record is None:
        return StatusView(
            status="none",
            days_remaining=None,
            can_use_platform=False,
            billing_only=False,
            message=MESSAGES["none"],
        )

    now = as_utc(now)
    stored = record.status
    common = {
        "profile_count": record.profile_count or 0,
        "paid_slots": record.paid_slots or 0,
        "stored_status": stored,
        "subscription_id": str(record.id) if record.id is not None else None,
    }

    if stored == "active":
        end = as_utc(record.subscription_end)
        if end is None or now <= end:
            return StatusView(
                status="active",
                days_remaining=days_until(end, now) if end is not None else None,
                can_use_platform=True,
                billing_only=False,
                message=MESSAGES["active"],
                **common,
            )
        return _blocked("expired", MESSAGES["active_expired"], common)

    if stored == "trial":
        end = as_utc(record.trial_end)
        days = days_until(end, now) if end is not None else 0
        if days > 0:
            return StatusView(
                status="trial",
                days_remaining=days,
                can_use_platform=True,
                billing_only=False,
                message=MESSAGES["trial"].format(days=days, plural="" if days == 1 else "s"),
                **common,
            )
        return _blocked("expired", MESSAGES["trial_expired"], common)

    if stored == "cancelled":
        return _blocked("cancelled", MESSAGES["cancelled"], common)

    return _blocked("expired", MESSAGES["expired"], common)


def _blocked(status: str, message: str, common: dict) -> StatusView:
    return StatusView(
        status=status,
        days_remaining=0,
        can_use_platform=False,
        billing_only=True,
        message=message,
        **common,
    )
