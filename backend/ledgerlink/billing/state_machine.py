"""
Subscription state transitions driven by payments-processor events.

Pure functions over a Subscription row; callers own the session.

Guards:
- Stale: a subscription-object event older than the newest one applied is skipped
- Grace: a deletion while the paid period is still running keeps the row
  ACTIVE with cancel_at_period_end until the period elapses
- No resurrection: subscription-object events at or before the deletion
  timestamp never move the row out of its post-deletion state
- Payment events never move a CANCELLED row
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from ledgerlink.billing.events import (
    customer_id,
    subscription_period,
    subscription_price_id,
    to_datetime,
)
from ledgerlink.models.base import ensure_utc
from ledgerlink.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# Stripe status -> local status
STRIPE_STATUS_MAP = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a Stripe subscription status to the local status.

    Raises:
        ValueError: If the status is unknown
    """
    try:
        return STRIPE_STATUS_MAP[stripe_status]
    except KeyError:
        raise ValueError(f"Unknown subscription status: {stripe_status!r}")


def is_stale(subscription: Subscription, event_created: datetime) -> bool:
    """True if a newer subscription-object event has already been applied."""
    last = ensure_utc(subscription.last_event_created_at)
    return last is not None and ensure_utc(event_created) < last


def is_resurrection_blocked(subscription: Subscription, event_created: datetime) -> bool:
    """True if the row was deleted at or after the event's timestamp."""
    ended = ensure_utc(subscription.provider_ended_at)
    return ended is not None and ensure_utc(event_created) <= ended


def apply_subscription_snapshot(
    subscription: Subscription,
    obj: Dict[str, Any],
    event_created: Optional[datetime],
) -> None:
    """Copy status, periods, trial bounds and cancellation fields from a subscription object."""
    subscription.status = map_stripe_status(obj.get("status")).value
    subscription.external_customer_id = customer_id(obj) or subscription.external_customer_id
    price_id = subscription_price_id(obj)
    if price_id:
        subscription.external_price_id = price_id

    period_start, period_end = subscription_period(obj)
    if period_start:
        subscription.current_period_start = period_start
    if period_end:
        subscription.current_period_end = period_end

    subscription.trial_start = to_datetime(obj.get("trial_start"))
    subscription.trial_end = to_datetime(obj.get("trial_end"))
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    subscription.cancelled_at = to_datetime(obj.get("canceled_at"))

    if event_created is not None:
        subscription.last_event_created_at = event_created


def apply_deletion(
    subscription: Subscription,
    obj: Dict[str, Any],
    event_created: datetime,
    now: Optional[datetime] = None,
) -> SubscriptionStatus:
    """
    Apply a deletion, keeping entitlement until a still-running paid period ends.

    Returns:
        The resulting status
    """
    now = now or datetime.now(timezone.utc)
    _, period_end = subscription_period(obj)
    period_end = period_end or ensure_utc(subscription.current_period_end)
    if period_end:
        subscription.current_period_end = period_end

    subscription.provider_ended_at = event_created
    subscription.last_event_created_at = event_created
    subscription.cancelled_at = (
        to_datetime(obj.get("canceled_at"))
        or ensure_utc(subscription.cancelled_at)
        or event_created
    )

    if period_end is not None and period_end > now:
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.cancel_at_period_end = True
    else:
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancel_at_period_end = False

    return SubscriptionStatus(subscription.status)


def expire_grace_period(subscription: Subscription) -> None:
    """End a grace period whose paid period has elapsed."""
    subscription.status = SubscriptionStatus.CANCELLED.value
    subscription.cancel_at_period_end = False


def apply_payment_succeeded(
    subscription: Subscription,
    amount: Decimal,
    paid_at: datetime,
) -> bool:
    """
    Record a successful payment.

    Returns:
        False if the row is CANCELLED and was left untouched
    """
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        logger.info(
            "Ignoring payment for cancelled subscription",
            extra={"subscription_id": subscription.id},
        )
        return False

    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.failed_payment_attempts = 0
    subscription.last_payment_amount = amount
    subscription.last_payment_at = paid_at
    return True


def apply_payment_failed(subscription: Subscription) -> bool:
    """
    Record a failed payment attempt.

    Returns:
        False if the row is CANCELLED and was left untouched
    """
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        logger.info(
            "Ignoring failed payment for cancelled subscription",
            extra={"subscription_id": subscription.id},
        )
        return False

    subscription.status = SubscriptionStatus.PAST_DUE.value
    subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
    return True
