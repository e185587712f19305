"""
Transaction ledger.

One row per external invoice id; plan changes get a synthetic key derived
from the event id. Writes are added to the caller's unit of work and only
flushed, never committed, here.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ledgerlink.billing.events import cents_to_amount, invoice_period
from ledgerlink.models.subscription import Subscription
from ledgerlink.models.transaction import Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

PLAN_CHANGE_KEY_PREFIX = "plan_change:"


class TransactionLedger:
    """Append-mostly ledger of money movements."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_invoice_id(self, external_invoice_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(
            Transaction.external_invoice_id == external_invoice_id,
        ).first()

    def get_by_charge_id(self, external_charge_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(
            Transaction.external_charge_id == external_charge_id,
        ).first()

    def record_invoice(
        self,
        subscription: Subscription,
        invoice: Dict[str, Any],
        status: TransactionStatus,
    ) -> Transaction:
        """Append the ledger row for an invoice payment attempt."""
        period_start, period_end = invoice_period(invoice)
        if status == TransactionStatus.SUCCEEDED:
            amount = cents_to_amount(invoice.get("amount_paid"))
        else:
            amount = cents_to_amount(invoice.get("amount_due"))

        transaction = Transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            external_invoice_id=invoice["id"],
            external_payment_intent_id=invoice.get("payment_intent"),
            external_charge_id=invoice.get("charge"),
            amount=amount,
            currency=(invoice.get("currency") or "usd").lower(),
            status=status.value,
            type=TransactionType.SUBSCRIPTION.value,
            description=invoice.get("description") or "Subscription payment",
            period_start=period_start,
            period_end=period_end,
            invoice_url=invoice.get("hosted_invoice_url"),
            failure_reason=_failure_reason(invoice) if status == TransactionStatus.FAILED else None,
        )
        self.db.add(transaction)
        self.db.flush()

        logger.info(
            "Transaction recorded",
            extra={
                "transaction_id": transaction.id,
                "external_invoice_id": transaction.external_invoice_id,
                "status": transaction.status,
                "subscription_id": subscription.id,
            }
        )
        return transaction

    def mark_succeeded(self, transaction: Transaction, invoice: Dict[str, Any]) -> Transaction:
        """Move a failed invoice row forward after a later successful attempt."""
        transaction.status = TransactionStatus.SUCCEEDED.value
        transaction.amount = cents_to_amount(invoice.get("amount_paid"))
        transaction.external_payment_intent_id = (
            invoice.get("payment_intent") or transaction.external_payment_intent_id
        )
        transaction.external_charge_id = invoice.get("charge") or transaction.external_charge_id
        transaction.failure_reason = None
        self.db.flush()
        return transaction

    def record_plan_change(
        self,
        subscription: Subscription,
        event_id: str,
        old_price_id: Optional[str],
        new_price_id: str,
        changed_at: datetime,
        currency: Optional[str] = None,
    ) -> Transaction:
        """Zero-amount marker row for a price change, keyed by the event id."""
        transaction = Transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            external_invoice_id=f"{PLAN_CHANGE_KEY_PREFIX}{event_id}",
            amount=Decimal("0.00"),
            currency=(currency or "usd").lower(),
            status=TransactionStatus.SUCCEEDED.value,
            type=TransactionType.PLAN_CHANGE.value,
            description=f"Plan changed from {old_price_id} to {new_price_id}",
            period_start=changed_at,
            period_end=subscription.current_period_end,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def mark_refunded(
        self,
        transaction: Transaction,
        refunded_amount: Decimal,
        refunded_at: datetime,
    ) -> Transaction:
        transaction.status = TransactionStatus.REFUNDED.value
        transaction.refunded_amount = refunded_amount
        transaction.refunded_at = refunded_at
        self.db.flush()

        logger.info(
            "Transaction refunded",
            extra={
                "transaction_id": transaction.id,
                "refunded_amount": str(refunded_amount),
            }
        )
        return transaction


def _failure_reason(invoice: Dict[str, Any]) -> str:
    error = invoice.get("last_payment_error") or invoice.get("last_finalization_error") or {}
    return error.get("message") or "Payment failed"
