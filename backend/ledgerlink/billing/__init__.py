"""
Billing event reconciliation: Stripe webhooks into subscriptions and the ledger.
"""

from ledgerlink.billing.errors import (
    MalformedEventError,
    PaymentsProcessorUnavailableError,
    SignatureInvalidError,
    UnresolvableEntityError,
    WebhookProcessingTimeoutError,
)
from ledgerlink.billing.ledger import TransactionLedger
from ledgerlink.billing.reconciler import WebhookReconciler, WebhookResult, WebhookResultStatus
from ledgerlink.billing.subscriptions import SubscriptionService

__all__ = [
    "MalformedEventError",
    "PaymentsProcessorUnavailableError",
    "SignatureInvalidError",
    "UnresolvableEntityError",
    "WebhookProcessingTimeoutError",
    "TransactionLedger",
    "WebhookReconciler",
    "WebhookResult",
    "WebhookResultStatus",
    "SubscriptionService",
]
