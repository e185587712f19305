"""
Database models for provider connections, subscriptions and the ledger.
"""

from ledgerlink.models.base import TimestampMixin, UTCDateTime
from ledgerlink.models.connection import (
    ProviderConnection,
    ConnectionStatus,
    ConnectionProvider,
)
from ledgerlink.models.subscription import (
    BillingCustomer,
    Subscription,
    SubscriptionStatus,
    NON_TERMINAL_STATUSES,
)
from ledgerlink.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "ProviderConnection",
    "ConnectionStatus",
    "ConnectionProvider",
    "BillingCustomer",
    "Subscription",
    "SubscriptionStatus",
    "NON_TERMINAL_STATUSES",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
]
