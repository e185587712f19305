"""
Transaction ledger model.

Append-mostly record of money movements. external_invoice_id is the sole
deduplication key for invoice events; a row may later be marked refunded.
"""

import enum

from sqlalchemy import Column, String, Text, Numeric, ForeignKey, Index, UniqueConstraint

from ledgerlink.db_base import Base
from ledgerlink.models.base import UTCDateTime, generate_uuid, utcnow


class TransactionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    PLAN_CHANGE = "plan_change"


class Transaction(Base):
    """One ledger row per external invoice (or per plan-change event)."""

    __tablename__ = "transactions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(
        String(255),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )

    external_invoice_id = Column(String(255), nullable=False)
    external_payment_intent_id = Column(String(255), nullable=True)
    external_charge_id = Column(String(255), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    status = Column(String(32), nullable=False)
    type = Column(String(32), nullable=False, default=TransactionType.SUBSCRIPTION.value)
    description = Column(Text, nullable=True)

    period_start = Column(UTCDateTime(), nullable=True)
    period_end = Column(UTCDateTime(), nullable=True)

    refunded_amount = Column(Numeric(12, 2), nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)
    failure_reason = Column(Text, nullable=True)
    invoice_url = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("external_invoice_id", name="uq_transactions_external_invoice_id"),
        Index("ix_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, "
            f"external_invoice_id={self.external_invoice_id}, "
            f"status={self.status}, amount={self.amount})>"
        )
