"""
Provider adapter tests.

Outbound calls go through httpx.MockTransport; nothing leaves the process.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from ledgerlink.credentials.errors import ProviderRefreshError, ProviderRevokeError
from ledgerlink.credentials.providers import (
    AMAZON_TOKEN_URL,
    QUICKBOOKS_REFRESH_BUFFER,
    QUICKBOOKS_TOKEN_URL,
    AmazonAdapter,
    QuickBooksAdapter,
    ShopifyAdapter,
    TokenPair,
    default_adapters,
    get_provider_adapter,
    refresh_buffer_for,
)
from ledgerlink.models.connection import ConnectionProvider


@pytest.fixture(autouse=True)
def client_credentials(monkeypatch):
    monkeypatch.setenv("QUICKBOOKS_CLIENT_ID", "qb-client")
    monkeypatch.setenv("QUICKBOOKS_CLIENT_SECRET", "qb-secret")
    monkeypatch.setenv("SHOPIFY_API_KEY", "shop-client")
    monkeypatch.setenv("SHOPIFY_API_SECRET", "shop-secret")
    monkeypatch.setenv("AMAZON_LWA_CLIENT_ID", "lwa-client")
    monkeypatch.setenv("AMAZON_LWA_CLIENT_SECRET", "lwa-secret")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestQuickBooksAdapter:

    @pytest.mark.asyncio
    async def test_refresh_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode("utf-8"))
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
            })

        async with _client(handler) as http_client:
            pair = await QuickBooksAdapter(http_client=http_client).refresh("old-refresh")

        assert seen["url"] == QUICKBOOKS_TOKEN_URL
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["old-refresh"]
        assert seen["auth"].startswith("Basic ")
        assert pair.access_token == "new-access"
        assert pair.refresh_token == "new-refresh"
        assert pair.refresh_token_expires_at is not None

    @pytest.mark.asyncio
    async def test_refresh_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with _client(handler) as http_client:
            with pytest.raises(ProviderRefreshError) as exc_info:
                await QuickBooksAdapter(http_client=http_client).refresh("old-refresh")

        assert exc_info.value.http_status == 400
        assert exc_info.value.code == "TOKEN_REFRESH_FAILED"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as http_client:
            with pytest.raises(ProviderRefreshError):
                await QuickBooksAdapter(http_client=http_client).refresh("old-refresh")

    @pytest.mark.asyncio
    async def test_missing_access_token_in_response(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "bearer"})

        async with _client(handler) as http_client:
            with pytest.raises(ProviderRefreshError):
                await QuickBooksAdapter(http_client=http_client).refresh("old-refresh")

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self, monkeypatch):
        monkeypatch.delenv("QUICKBOOKS_CLIENT_SECRET")
        with pytest.raises(ProviderRefreshError):
            await QuickBooksAdapter().refresh("old-refresh")

    @pytest.mark.asyncio
    async def test_revoke_failure(self):
        def handler(request):
            return httpx.Response(503)

        async with _client(handler) as http_client:
            with pytest.raises(ProviderRevokeError):
                await QuickBooksAdapter(http_client=http_client).revoke("token")

    @pytest.mark.asyncio
    async def test_revoke_sends_token(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200)

        async with _client(handler) as http_client:
            await QuickBooksAdapter(http_client=http_client).revoke("token-to-revoke")

        assert seen["body"] == {"token": "token-to-revoke"}


class TestShopifyAdapter:

    @pytest.mark.asyncio
    async def test_shop_domain_required(self):
        with pytest.raises(ProviderRefreshError):
            await ShopifyAdapter().refresh("old-refresh")

    @pytest.mark.asyncio
    async def test_refresh_posts_to_shop(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "shop-access", "expires_in": 86400})

        async with _client(handler) as http_client:
            pair = await ShopifyAdapter(http_client=http_client).refresh(
                "old-refresh", account_id="acme.myshopify.com"
            )

        assert seen["url"] == "https://acme.myshopify.com/admin/oauth/access_token"
        assert seen["body"]["client_id"] == "shop-client"
        assert pair.access_token == "shop-access"


class TestAmazonAdapter:

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(self):
        def handler(request):
            assert str(request.url) == AMAZON_TOKEN_URL
            return httpx.Response(200, json={"access_token": "Atza|new", "expires_in": 3600})

        async with _client(handler) as http_client:
            pair = await AmazonAdapter(http_client=http_client).refresh("Atzr|long-lived")

        assert pair.access_token == "Atza|new"
        assert pair.refresh_token == "Atzr|long-lived"


class TestRegistry:

    def test_lookup_by_value(self):
        assert isinstance(get_provider_adapter("quickbooks"), QuickBooksAdapter)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_provider_adapter("xero")

    def test_default_adapters_cover_every_provider(self):
        assert set(default_adapters()) == set(ConnectionProvider)

    def test_refresh_buffer(self):
        assert refresh_buffer_for(ConnectionProvider.QUICKBOOKS) == QUICKBOOKS_REFRESH_BUFFER


def test_token_pair_repr_has_no_tokens():
    pair = TokenPair.from_grant_response({"access_token": "secret-access", "refresh_token": "secret-refresh"})
    assert "secret" not in repr(pair)
