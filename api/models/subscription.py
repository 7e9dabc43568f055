"""Subscription ORM models: billing state per identity."""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    String, Integer, Numeric, Boolean, DateTime, ForeignKey, Index,
    UniqueConstraint, Enum as PgEnum, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base

SUBSCRIPTION_STATUSES = ("trial", "active", "expired", "cancelled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # One live record per identity; cancelled rows are kept for audit.
        Index(
            "uq_subscriptions_live_identity",
            "identity_key",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    identity_key: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128))
    account_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(
        PgEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="trial",
    )
    plan_id: Mapped[str | None] = mapped_column(String(64))

    trial_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    profile_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    paid_slots: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount: Mapped[float | None] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    razorpay_customer_id: Mapped[str | None] = mapped_column(String(255))
    razorpay_order_id: Mapped[str | None] = mapped_column(String(255), index=True)
    razorpay_payment_id: Mapped[str | None] = mapped_column(String(255))
    razorpay_subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)

    mandate_authorized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mandate_auth_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    mandate_token_id: Mapped[str | None] = mapped_column(String(255))

    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(320))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    aliases = relationship(
        "SubscriptionAlias", back_populates="subscription", cascade="all, delete-orphan"
    )
    payments = relationship(
        "PaymentHistory", back_populates="subscription", order_by="PaymentHistory.created_at"
    )


class SubscriptionAlias(Base):
    """Secondary lookup key (internal user id or external account id)."""

    __tablename__ = "subscription_aliases"
    __table_args__ = (UniqueConstraint("kind", "value", name="uq_subscription_alias"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # user_id | account_id
    value: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    subscription = relationship("Subscription", back_populates="aliases")


class PaymentHistory(Base):
    """Append-only payment ledger."""

    __tablename__ = "payment_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="subscription")
    amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    razorpay_payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    razorpay_order_id: Mapped[str | None] = mapped_column(String(255))
    razorpay_signature: Mapped[str | None] = mapped_column(String(255))
    plan_id: Mapped[str | None] = mapped_column(String(64))
    profile_count: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(String(255))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")


class WebhookEvent(Base):
    """Processed gateway webhook deliveries, keyed by the gateway's event id."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
