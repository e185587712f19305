"""
Billing models for payments-processor subscriptions.

One Subscription row per external subscription id. History is carried by
status transitions on that row, never by extra rows.
"""

import enum

from sqlalchemy import Column, String, Integer, Boolean, Numeric, Index, UniqueConstraint

from ledgerlink.db_base import Base
from ledgerlink.models.base import TimestampMixin, UTCDateTime, generate_uuid


class SubscriptionStatus(str, enum.Enum):
    """Local subscription status."""
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"


# Statuses in which a subscription can still receive invoices
NON_TERMINAL_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.INCOMPLETE,
    SubscriptionStatus.PAST_DUE,
)


class BillingCustomer(Base, TimestampMixin):
    """Maps a payments-processor customer to a local user."""

    __tablename__ = "billing_customers"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, unique=True)
    external_customer_id = Column(String(255), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<BillingCustomer(user_id={self.user_id}, external_customer_id={self.external_customer_id})>"


class Subscription(Base, TimestampMixin):
    """
    Local mirror of a payments-processor subscription.

    Attributes:
        external_subscription_id: Globally unique id assigned by the processor
        last_event_created_at: Processor timestamp of the newest subscription
            event applied; older events are stale
        provider_ended_at: Processor timestamp of the deletion event, if any
    """

    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)

    external_subscription_id = Column(String(255), nullable=False)
    external_customer_id = Column(String(255), nullable=True, index=True)
    external_price_id = Column(String(255), nullable=True)

    status = Column(
        String(32),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE.value,
    )

    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    trial_start = Column(UTCDateTime(), nullable=True)
    trial_end = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    failed_payment_attempts = Column(Integer, nullable=False, default=0)
    last_payment_amount = Column(Numeric(12, 2), nullable=True)
    last_payment_at = Column(UTCDateTime(), nullable=True)

    last_event_created_at = Column(UTCDateTime(), nullable=True)
    provider_ended_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_subscription_id", name="uq_subscriptions_external_id"),
        Index("ix_subscriptions_customer_status", "external_customer_id", "status"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, "
            f"external_subscription_id={self.external_subscription_id}, "
            f"status={self.status})>"
        )
