"""
Subscription lookup and creation.

Webhook handlers share the reconciler's unit of work and never commit here.
Local creation (link_customer, record_local_subscription) commits on its own.

Resolution order for an invoice:
1. The invoice's subscription id (or its first line item's)
2. If known to Stripe but not locally: fetch from Stripe and create
3. Otherwise the customer's most recently created non-terminal subscription
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerlink.billing.errors import UnresolvableEntityError
from ledgerlink.billing.events import customer_id, invoice_subscription_id
from ledgerlink.billing.provider_client import StripeSubscriptionClient
from ledgerlink.billing.state_machine import apply_subscription_snapshot
from ledgerlink.models.subscription import (
    NON_TERMINAL_STATUSES,
    BillingCustomer,
    Subscription,
)
from ledgerlink.platform.errors import ConflictError, RetryableStorageError

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Finds or creates local Subscription rows for payments-processor objects."""

    def __init__(self, db_session: Session, client: Optional[StripeSubscriptionClient] = None):
        self.db = db_session
        self.client = client or StripeSubscriptionClient()

    def find_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.external_subscription_id == external_subscription_id,
        ).first()

    def find_for_customer(self, external_customer_id: str) -> Optional[Subscription]:
        """Most recently created non-terminal subscription for a customer."""
        candidates = self.db.query(Subscription).filter(
            Subscription.external_customer_id == external_customer_id,
            Subscription.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
        ).order_by(Subscription.created_at.desc()).all()

        if len(candidates) > 1:
            logger.warning(
                "Multiple open subscriptions for customer, using most recent",
                extra={
                    "external_customer_id": external_customer_id,
                    "candidates": [c.external_subscription_id for c in candidates],
                }
            )
        return candidates[0] if candidates else None

    def resolve_user_id(self, obj: Dict[str, Any]) -> Optional[str]:
        """User for a subscription object: metadata.user_id, then the billing customer mapping."""
        metadata = obj.get("metadata") or {}
        if metadata.get("user_id"):
            return str(metadata["user_id"])

        external_customer = customer_id(obj)
        if external_customer:
            mapping = self.db.query(BillingCustomer).filter(
                BillingCustomer.external_customer_id == external_customer,
            ).first()
            if mapping:
                return mapping.user_id
        return None

    def create_from_object(self, obj: Dict[str, Any], event_created=None) -> Subscription:
        """
        Insert a Subscription mirroring a Stripe subscription object.

        Raises:
            UnresolvableEntityError: If no local user can be determined
        """
        user_id = self.resolve_user_id(obj)
        if not user_id:
            raise UnresolvableEntityError(
                f"No user for subscription {obj.get('id')}",
                entity="subscription",
                external_id=obj.get("id"),
            )

        subscription = Subscription(
            user_id=user_id,
            external_subscription_id=obj["id"],
            failed_payment_attempts=0,
        )
        apply_subscription_snapshot(subscription, obj, event_created)
        self.db.add(subscription)
        self.db.flush()

        logger.info(
            "Subscription created from payments processor",
            extra={
                "subscription_id": subscription.id,
                "external_subscription_id": subscription.external_subscription_id,
                "user_id": user_id,
                "status": subscription.status,
            }
        )
        return subscription

    async def resolve_for_invoice(self, invoice: Dict[str, Any]) -> Subscription:
        """
        Find (or create) the subscription an invoice belongs to.

        Raises:
            UnresolvableEntityError: If no subscription can be determined
            PaymentsProcessorUnavailableError: If Stripe must be consulted and is unreachable
        """
        external_id = invoice_subscription_id(invoice)
        if external_id:
            subscription = self.find_by_external_id(external_id)
            if subscription is not None:
                return subscription

            obj = await self.client.retrieve_subscription(external_id)
            # The fetch is a suspension point; a concurrent event may have inserted it
            subscription = self.find_by_external_id(external_id)
            if subscription is not None:
                return subscription
            return self.create_from_object(obj)

        external_customer = customer_id(invoice)
        if external_customer:
            subscription = self.find_for_customer(external_customer)
            if subscription is not None:
                return subscription

        raise UnresolvableEntityError(
            f"No subscription for invoice {invoice.get('id')}",
            entity="invoice",
            external_id=invoice.get("id"),
        )

    # ------------------------------------------------------------------
    # Local creation
    # ------------------------------------------------------------------

    def link_customer(self, user_id: str, external_customer_id: str) -> BillingCustomer:
        """
        Map a Stripe customer to a local user, creating the mapping if absent.

        Raises:
            ConflictError: If the user or the customer is already linked elsewhere
            RetryableStorageError: If the mapping could not be stored
        """
        if not user_id or not external_customer_id:
            raise ValueError("user_id and external_customer_id are required")

        mapping = self._find_customer_link(user_id, external_customer_id)
        if mapping is None:
            self.db.add(BillingCustomer(user_id=user_id, external_customer_id=external_customer_id))
            if self._commit("link_customer"):
                logger.info(
                    "Billing customer linked",
                    extra={"user_id": user_id, "external_customer_id": external_customer_id},
                )
            mapping = self._find_customer_link(user_id, external_customer_id)
            if mapping is None:
                raise RetryableStorageError(operation="link_customer")

        if mapping.user_id != user_id or mapping.external_customer_id != external_customer_id:
            raise ConflictError(
                "Billing customer is already linked to a different account",
                code="BILLING_CUSTOMER_CONFLICT",
                details={"external_customer_id": external_customer_id},
            )
        return mapping

    def record_local_subscription(self, user_id: str, obj: Dict[str, Any]) -> Subscription:
        """
        Save a subscription this application just created at Stripe.

        Create-if-absent on the external subscription id: when the webhook got
        here first its row is returned unchanged, and a later webhook applies
        on top of a locally created row. The customer is linked to the user.

        Raises:
            ValueError: If the object has no id or an unknown status
            ConflictError: If the subscription belongs to another user
            RetryableStorageError: If the row could not be stored
        """
        if not user_id:
            raise ValueError("user_id is required")
        if not obj.get("id"):
            raise ValueError("Subscription object has no id")

        external_customer = customer_id(obj)
        if external_customer:
            self.link_customer(user_id, external_customer)

        action = "existing"
        subscription = self.find_by_external_id(obj["id"])
        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                external_subscription_id=obj["id"],
                failed_payment_attempts=0,
            )
            # No event timestamp: any webhook for this subscription is newer
            apply_subscription_snapshot(subscription, obj, None)
            self.db.add(subscription)
            if self._commit("record_local_subscription"):
                action = "created"
            subscription = self.find_by_external_id(obj["id"])
            if subscription is None:
                raise RetryableStorageError(operation="record_local_subscription")

        if subscription.user_id != user_id:
            raise ConflictError(
                "Subscription belongs to a different account",
                code="SUBSCRIPTION_CONFLICT",
                details={"external_subscription_id": obj["id"]},
            )

        logger.info(
            "Subscription recorded locally",
            extra={
                "subscription_id": subscription.id,
                "external_subscription_id": subscription.external_subscription_id,
                "user_id": user_id,
                "status": subscription.status,
                "action": action,
            }
        )
        return subscription

    def _find_customer_link(self, user_id: str, external_customer_id: str) -> Optional[BillingCustomer]:
        return self.db.query(BillingCustomer).filter(
            or_(
                BillingCustomer.user_id == user_id,
                BillingCustomer.external_customer_id == external_customer_id,
            )
        ).first()

    def _commit(self, operation: str) -> bool:
        """
        Commit a create-if-absent insert.

        Returns False (after rolling back) when a concurrent writer inserted
        the same key first; the caller re-reads the winner's row.
        """
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Concurrent insert won, re-reading", extra={"operation": operation})
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Billing commit failed",
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            raise RetryableStorageError(operation=operation) from e
        return True
