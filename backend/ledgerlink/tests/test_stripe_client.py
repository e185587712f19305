"""
Stripe subscription lookup tests.

The SDK client is replaced with a mock; nothing leaves the process.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from ledgerlink.billing.errors import PaymentsProcessorUnavailableError, UnresolvableEntityError
from ledgerlink.billing.provider_client import StripeSubscriptionClient


def _stripe_client(result=None, error=None):
    client = MagicMock()
    client.v1.subscriptions.retrieve_async = AsyncMock(return_value=result, side_effect=error)
    return client


class TestRetrieveSubscription:

    @pytest.mark.asyncio
    async def test_returns_plain_dict(self):
        remote = stripe.StripeObject.construct_from(
            {"id": "sub_remote", "status": "active", "items": {"data": [{"price": {"id": "price_basic"}}]}},
            "sk_test_not_real",
        )
        sdk = _stripe_client(result=remote)

        obj = await StripeSubscriptionClient(stripe_client=sdk).retrieve_subscription("sub_remote")

        sdk.v1.subscriptions.retrieve_async.assert_awaited_once_with("sub_remote")
        assert obj["id"] == "sub_remote"
        assert isinstance(obj["items"], dict)
        assert obj["items"]["data"][0]["price"]["id"] == "price_basic"

    @pytest.mark.asyncio
    async def test_not_found_is_unresolvable(self):
        error = stripe.InvalidRequestError("No such subscription: 'sub_ghost'", "id", http_status=404)
        client = StripeSubscriptionClient(stripe_client=_stripe_client(error=error))

        with pytest.raises(UnresolvableEntityError) as exc_info:
            await client.retrieve_subscription("sub_ghost")

        assert exc_info.value.external_id == "sub_ghost"
        assert "not found" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        stripe.APIConnectionError("connection reset"),
        stripe.RateLimitError("too many requests", http_status=429),
        stripe.APIError("internal error", http_status=500),
        stripe.AuthenticationError("invalid api key", http_status=401),
    ])
    async def test_transient_failures_are_retryable(self, error):
        client = StripeSubscriptionClient(stripe_client=_stripe_client(error=error))

        with pytest.raises(PaymentsProcessorUnavailableError) as exc_info:
            await client.retrieve_subscription("sub_1")

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_secret_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

        with pytest.raises(PaymentsProcessorUnavailableError):
            await StripeSubscriptionClient().retrieve_subscription("sub_1")

    def test_sdk_client_built_from_configured_key(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_not_real")
        client = StripeSubscriptionClient()

        assert isinstance(client._client(), stripe.StripeClient)
        assert client._client() is client._client()
