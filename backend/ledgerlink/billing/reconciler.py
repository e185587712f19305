"""
Webhook reconciler: applies Stripe billing events to local records.

Every event is verified, parsed, and applied in one database unit of work.
Redelivery is safe: invoice events are keyed by invoice id, subscription
events are ordered by their timestamps. An insert that loses a unique-key race
to a concurrent delivery is rolled back and the event is applied once more
against the committed state.

SECURITY:
- Signature is verified before anything else; failures are security events
- An unverified event never touches the database

Usage:
    reconciler = WebhookReconciler(db_session)
    result = await reconciler.handle(raw_body, request.headers.get("Stripe-Signature"))
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerlink.billing.errors import (
    MalformedEventError,
    SignatureInvalidError,
    UnresolvableEntityError,
    WebhookProcessingTimeoutError,
)
from ledgerlink.billing.events import (
    EventType,
    StripeEvent,
    cents_to_amount,
    parse_event,
    subscription_price_id,
    to_datetime,
    verify_signature,
)
from ledgerlink.billing.ledger import PLAN_CHANGE_KEY_PREFIX, TransactionLedger
from ledgerlink.billing.provider_client import StripeSubscriptionClient
from ledgerlink.billing.state_machine import (
    apply_deletion,
    apply_payment_failed,
    apply_payment_succeeded,
    apply_subscription_snapshot,
    is_resurrection_blocked,
    is_stale,
)
from ledgerlink.billing.subscriptions import SubscriptionService
from ledgerlink.config import (
    get_stripe_webhook_secret,
    get_stripe_webhook_tolerance_seconds,
    get_webhook_processing_timeout_seconds,
)
from ledgerlink.models.transaction import TransactionStatus
from ledgerlink.platform.errors import RetryableStorageError

logger = logging.getLogger(__name__)


class WebhookResultStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


@dataclass
class WebhookResult:
    """Outcome of one acknowledged event."""
    status: WebhookResultStatus
    event_id: str
    event_type: str
    message: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "message": self.message,
        }


class WebhookReconciler:
    """Verifies and applies Stripe webhook events."""

    def __init__(
        self,
        db_session: Session,
        client: Optional[StripeSubscriptionClient] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db_session
        self.subscriptions = SubscriptionService(db_session, client=client)
        self.ledger = TransactionLedger(db_session)
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.timeout_seconds = timeout_seconds

    async def handle(self, payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify, parse and apply one delivery.

        Raises:
            SignatureInvalidError: Bad or missing signature (400, no state change)
            MalformedEventError: Unparseable payload (400)
            RetryableStorageError: Database failure, everything rolled back (500)
            PaymentsProcessorUnavailableError: Stripe lookup failed (500)
            WebhookProcessingTimeoutError: Time bound exceeded (500)
        """
        tolerance = self.tolerance_seconds
        if tolerance is None:
            tolerance = get_stripe_webhook_tolerance_seconds()
        try:
            verify_signature(
                payload,
                signature_header,
                self.webhook_secret or get_stripe_webhook_secret(),
                tolerance,
            )
        except SignatureInvalidError as e:
            logger.warning(
                "Webhook signature verification failed",
                extra={"security_event": True, "reason": e.message},
            )
            raise

        event = parse_event(payload)

        logger.info(
            "Processing webhook event",
            extra={"event_id": event.id, "event_type": event.type},
        )

        timeout = self.timeout_seconds
        if timeout is None:
            timeout = get_webhook_processing_timeout_seconds()
        try:
            return await asyncio.wait_for(self.process_event(event), timeout=timeout)
        except asyncio.TimeoutError:
            self.db.rollback()
            logger.error(
                "Webhook processing timed out",
                extra={"event_id": event.id, "event_type": event.type, "timeout_seconds": timeout},
            )
            raise WebhookProcessingTimeoutError(timeout)

    async def process_event(self, event: StripeEvent) -> WebhookResult:
        """
        Apply an already-verified event in one unit of work.

        A unique-key conflict means a concurrent delivery committed first. The
        event is re-applied once against the committed state: a redelivery then
        takes its duplicate path and a lost create race finds the winner's row.
        """
        if not event.is_supported:
            logger.info(
                "Ignoring unsupported webhook event",
                extra={"event_id": event.id, "event_type": event.type},
            )
            return WebhookResult(WebhookResultStatus.IGNORED, event.id, event.type, "unsupported event type")

        try:
            result = await self._apply(event)
        except IntegrityError:
            logger.info(
                "Unique key taken by a concurrent delivery, re-applying",
                extra={"event_id": event.id, "event_type": event.type},
            )
            try:
                result = await self._apply(event)
            except IntegrityError as e:
                logger.error(
                    "Webhook conflicted twice, rolled back",
                    extra={"event_id": event.id, "event_type": event.type},
                )
                raise RetryableStorageError(operation=event.type) from e

        logger.info(
            "Webhook event applied",
            extra={
                "event_id": event.id,
                "event_type": event.type,
                "result": result.status.value,
            }
        )
        return result

    async def _apply(self, event: StripeEvent) -> WebhookResult:
        handlers = {
            EventType.SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            EventType.SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            EventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_succeeded,
            EventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_failed,
            EventType.CHARGE_REFUNDED: self._handle_charge_refunded,
        }

        try:
            result = await handlers[EventType(event.type)](event)
            self.db.commit()
        except UnresolvableEntityError as e:
            self.db.rollback()
            logger.warning(
                "Webhook references an unknown entity, acknowledging",
                extra={
                    "event_id": event.id,
                    "event_type": event.type,
                    "entity": e.entity,
                    "external_id": e.external_id,
                }
            )
            return WebhookResult(WebhookResultStatus.UNRESOLVED, event.id, event.type, e.message)
        except IntegrityError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Webhook processing failed, rolled back",
                extra={"event_id": event.id, "event_type": event.type, "error_type": type(e).__name__},
            )
            raise RetryableStorageError(operation=event.type) from e
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            # Wrongly typed fields inside data.object
            self.db.rollback()
            logger.warning(
                "Webhook object has invalid fields, rejecting",
                extra={"event_id": event.id, "event_type": event.type, "error_type": type(e).__name__},
            )
            raise MalformedEventError(f"Invalid {event.type} object: {e}") from e
        except BaseException:
            self.db.rollback()
            raise

        return result

    # ------------------------------------------------------------------
    # Subscription object events
    # ------------------------------------------------------------------

    async def _handle_subscription_upsert(self, event: StripeEvent) -> WebhookResult:
        obj = event.object
        if not obj.get("id"):
            raise MalformedEventError("Subscription object has no id")

        subscription = self.subscriptions.find_by_external_id(obj["id"])
        if subscription is None:
            subscription = self.subscriptions.create_from_object(obj, event.created_at)
            return WebhookResult(
                WebhookResultStatus.PROCESSED, event.id, event.type,
                "subscription created", subscription_id=subscription.id,
            )

        if is_stale(subscription, event.created_at):
            return WebhookResult(
                WebhookResultStatus.IGNORED, event.id, event.type,
                "stale event", subscription_id=subscription.id,
            )
        if is_resurrection_blocked(subscription, event.created_at):
            return WebhookResult(
                WebhookResultStatus.IGNORED, event.id, event.type,
                "subscription already ended", subscription_id=subscription.id,
            )

        old_price_id = subscription.external_price_id
        apply_subscription_snapshot(subscription, obj, event.created_at)

        new_price_id = subscription_price_id(obj)
        if old_price_id and new_price_id and new_price_id != old_price_id:
            if self.ledger.get_by_invoice_id(f"{PLAN_CHANGE_KEY_PREFIX}{event.id}") is None:
                self.ledger.record_plan_change(
                    subscription,
                    event_id=event.id,
                    old_price_id=old_price_id,
                    new_price_id=new_price_id,
                    changed_at=event.created_at,
                    currency=obj.get("currency"),
                )
        self.db.flush()

        return WebhookResult(
            WebhookResultStatus.PROCESSED, event.id, event.type,
            f"status {subscription.status}", subscription_id=subscription.id,
        )

    async def _handle_subscription_deleted(self, event: StripeEvent) -> WebhookResult:
        obj = event.object
        subscription = self.subscriptions.find_by_external_id(obj.get("id") or "")
        if subscription is None:
            raise UnresolvableEntityError(
                f"Deleted subscription {obj.get('id')} is not known locally",
                entity="subscription",
                external_id=obj.get("id"),
            )

        if is_stale(subscription, event.created_at):
            return WebhookResult(
                WebhookResultStatus.IGNORED, event.id, event.type,
                "stale event", subscription_id=subscription.id,
            )

        status = apply_deletion(subscription, obj, event.created_at)
        self.db.flush()

        logger.info(
            "Subscription deleted at payments processor",
            extra={
                "subscription_id": subscription.id,
                "status": status.value,
                "grace_period": subscription.cancel_at_period_end,
            }
        )
        return WebhookResult(
            WebhookResultStatus.PROCESSED, event.id, event.type,
            f"status {status.value}", subscription_id=subscription.id,
        )

    # ------------------------------------------------------------------
    # Invoice and charge events
    # ------------------------------------------------------------------

    async def _handle_invoice_succeeded(self, event: StripeEvent) -> WebhookResult:
        invoice = event.object
        invoice_id = self._require_id(invoice, "Invoice")

        existing = self.ledger.get_by_invoice_id(invoice_id)
        if existing is not None and existing.status != TransactionStatus.FAILED.value:
            return WebhookResult(
                WebhookResultStatus.DUPLICATE, event.id, event.type,
                "invoice already recorded", transaction_id=existing.id,
            )

        subscription = await self.subscriptions.resolve_for_invoice(invoice)

        if existing is not None:
            transaction = self.ledger.mark_succeeded(existing, invoice)
        else:
            transaction = self.ledger.record_invoice(subscription, invoice, TransactionStatus.SUCCEEDED)

        paid_at = _paid_at(invoice) or event.created_at
        apply_payment_succeeded(subscription, transaction.amount, paid_at)
        self.db.flush()

        return WebhookResult(
            WebhookResultStatus.PROCESSED, event.id, event.type, "payment recorded",
            subscription_id=subscription.id, transaction_id=transaction.id,
        )

    async def _handle_invoice_failed(self, event: StripeEvent) -> WebhookResult:
        invoice = event.object
        invoice_id = self._require_id(invoice, "Invoice")

        existing = self.ledger.get_by_invoice_id(invoice_id)
        if existing is not None:
            return WebhookResult(
                WebhookResultStatus.DUPLICATE, event.id, event.type,
                "invoice already recorded", transaction_id=existing.id,
            )

        subscription = await self.subscriptions.resolve_for_invoice(invoice)
        transaction = self.ledger.record_invoice(subscription, invoice, TransactionStatus.FAILED)
        apply_payment_failed(subscription)
        self.db.flush()

        return WebhookResult(
            WebhookResultStatus.PROCESSED, event.id, event.type, "payment failure recorded",
            subscription_id=subscription.id, transaction_id=transaction.id,
        )

    async def _handle_charge_refunded(self, event: StripeEvent) -> WebhookResult:
        charge = event.object
        charge_id = self._require_id(charge, "Charge")

        transaction = self.ledger.get_by_charge_id(charge_id)
        if transaction is None and charge.get("invoice"):
            transaction = self.ledger.get_by_invoice_id(charge["invoice"])
        if transaction is None:
            raise UnresolvableEntityError(
                f"No transaction for charge {charge_id}",
                entity="charge",
                external_id=charge_id,
            )

        refunded_amount = cents_to_amount(charge.get("amount_refunded"))
        if (
            transaction.status == TransactionStatus.REFUNDED.value
            and transaction.refunded_amount == refunded_amount
        ):
            return WebhookResult(
                WebhookResultStatus.DUPLICATE, event.id, event.type,
                "refund already recorded", transaction_id=transaction.id,
            )

        self.ledger.mark_refunded(transaction, refunded_amount, event.created_at)
        return WebhookResult(
            WebhookResultStatus.PROCESSED, event.id, event.type, "refund recorded",
            transaction_id=transaction.id,
        )

    @staticmethod
    def _require_id(obj: dict, kind: str) -> str:
        if not obj.get("id"):
            raise MalformedEventError(f"{kind} object has no id")
        return obj["id"]


def _paid_at(invoice: dict):
    transitions = invoice.get("status_transitions") or {}
    return to_datetime(transitions.get("paid_at"))
