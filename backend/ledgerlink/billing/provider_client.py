"""
Stripe lookups for objects a webhook references but we lack locally.
"""

import logging
from typing import Any, Dict, Optional

import stripe

from ledgerlink.billing.errors import PaymentsProcessorUnavailableError, UnresolvableEntityError
from ledgerlink.config import get_stripe_secret_key

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class StripeSubscriptionClient:
    """Fetches subscription objects through the Stripe SDK."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        stripe_client: Optional[stripe.StripeClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._secret_key = secret_key
        self._stripe_client = stripe_client
        self.timeout = timeout

    @property
    def secret_key(self) -> Optional[str]:
        return self._secret_key or get_stripe_secret_key()

    def _client(self) -> stripe.StripeClient:
        if self._stripe_client is None:
            self._stripe_client = stripe.StripeClient(
                self.secret_key,
                http_client=stripe.HTTPXClient(timeout=self.timeout),
            )
        return self._stripe_client

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Retrieve a subscription by id.

        Raises:
            UnresolvableEntityError: If Stripe does not know the subscription
            PaymentsProcessorUnavailableError: On network failure, rate limiting,
                5xx, or missing API key
        """
        if self._stripe_client is None and not self.secret_key:
            raise PaymentsProcessorUnavailableError("STRIPE_SECRET_KEY not configured")

        try:
            subscription = await self._client().v1.subscriptions.retrieve_async(subscription_id)
        except stripe.InvalidRequestError as e:
            logger.warning(
                "Stripe rejected subscription lookup",
                extra={"subscription_id": subscription_id, "status_code": e.http_status},
            )
            if e.http_status == 404:
                message = f"Subscription {subscription_id} not found at Stripe"
            else:
                message = f"Stripe rejected subscription lookup: {e.http_status}"
            raise UnresolvableEntityError(
                message,
                entity="subscription",
                external_id=subscription_id,
            ) from e
        except stripe.StripeError as e:
            # Connection errors, 429, 5xx, and credential problems all clear up on retry
            logger.warning(
                "Stripe API request failed",
                extra={
                    "subscription_id": subscription_id,
                    "error_type": type(e).__name__,
                    "status_code": e.http_status,
                },
            )
            raise PaymentsProcessorUnavailableError() from e

        return subscription.to_dict()
