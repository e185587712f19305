"""
Stripe webhook event parsing and signature verification.

SECURITY:
- Signatures are verified over the raw body before any parsing
- A missing webhook secret rejects every event; verification is never skipped
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ledgerlink.billing.errors import MalformedEventError, SignatureInvalidError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class EventType(str, Enum):
    """Stripe event types the reconciler acts on."""
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"


SUPPORTED_EVENT_TYPES = frozenset(t.value for t in EventType)


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    object_: Dict[str, Any] = Field(alias="object")


class StripeEvent(BaseModel):
    """Envelope of a Stripe event. Only the fields the reconciler needs."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    data: EventData
    livemode: bool = False

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object_

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)

    @property
    def is_supported(self) -> bool:
        return self.type in SUPPORTED_EVENT_TYPES


def verify_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int,
) -> None:
    """
    Verify a Stripe-Signature header over the raw body.

    Raises:
        SignatureInvalidError: On any verification failure
    """
    if not secret:
        logger.error("Webhook secret not configured - rejecting webhook")
        raise SignatureInvalidError("Webhook secret not configured")
    if not signature_header:
        raise SignatureInvalidError("Missing Stripe-Signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            secret,
            tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalidError(str(e.user_message or "Signature verification failed")) from e
    except UnicodeDecodeError as e:
        raise SignatureInvalidError("Payload is not valid UTF-8") from e


def parse_event(payload: bytes) -> StripeEvent:
    """
    Parse a verified payload into an event envelope.

    Raises:
        MalformedEventError: If the payload is not a JSON event object
    """
    try:
        raw = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEventError("Invalid JSON payload") from e

    if not isinstance(raw, dict):
        raise MalformedEventError("Event payload must be a JSON object")

    try:
        return StripeEvent.model_validate(raw)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MalformedEventError(f"Invalid event envelope: {', '.join(fields)}") from e


# ============================================================================
# Payload helpers
# ============================================================================

def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Unix seconds to aware UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def cents_to_amount(cents: Optional[int]) -> Decimal:
    """Minor units to a 2-place Decimal in major units."""
    return (Decimal(int(cents or 0)) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _first_line(invoice: Dict[str, Any]) -> Dict[str, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    return lines[0] if lines else {}


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from the invoice, falling back to its first line item."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    return _first_line(invoice).get("subscription") or None


def invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Service period from the first line item, else the invoice period."""
    period = _first_line(invoice).get("period") or {}
    if period.get("start") and period.get("end"):
        return to_datetime(period["start"]), to_datetime(period["end"])
    return to_datetime(invoice.get("period_start")), to_datetime(invoice.get("period_end"))


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    if price.get("id"):
        return price["id"]
    return (subscription.get("plan") or {}).get("id")


def subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period, read from the subscription or (newer API versions) its first item."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        item = _first_item(subscription)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return to_datetime(start), to_datetime(end)


def customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer
