"""
OAuth provider adapters.

Each adapter knows how to exchange a refresh token for a new token pair
and, where the provider supports it, how to revoke a token. Adapters never
touch the database; the refresh coordinator owns persistence.

SECURITY:
- Token values are never logged
- Provider error bodies are not logged (they may echo tokens)

Usage:
    from ledgerlink.credentials.providers import get_provider_adapter

    adapter = get_provider_adapter("quickbooks")
    pair = await adapter.refresh(refresh_token, account_id=realm_id)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx

from ledgerlink.config import get_provider_client_credentials, get_token_refresh_timeout_seconds
from ledgerlink.credentials.errors import ProviderRefreshError, ProviderRevokeError
from ledgerlink.models.connection import ConnectionProvider

logger = logging.getLogger(__name__)


# Refresh buffers: a token is refreshed once it is this close to expiry
QUICKBOOKS_REFRESH_BUFFER = timedelta(minutes=10)
SHOPIFY_REFRESH_BUFFER = timedelta(minutes=5)
AMAZON_REFRESH_BUFFER = timedelta(minutes=5)

QUICKBOOKS_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QUICKBOOKS_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
AMAZON_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
SHOPIFY_TOKEN_URL_TEMPLATE = "https://{shop}/admin/oauth/access_token"


@dataclass
class TokenPair:
    """
    Result of an OAuth grant.

    SECURITY: Never log instances of this class.
    """
    access_token: str
    access_token_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"<TokenPair(access_token_expires_at={self.access_token_expires_at.isoformat()})>"

    @classmethod
    def from_grant_response(
        cls,
        data: dict,
        default_expires_in: int = 3600,
        refresh_expires_key: Optional[str] = None,
    ) -> "TokenPair":
        """Build from a standard OAuth2 token-endpoint JSON body."""
        if not data.get("access_token"):
            raise ValueError("Token response is missing access_token")

        now = datetime.now(timezone.utc)
        expires_in = int(data.get("expires_in") or default_expires_in)
        refresh_expires_at = None
        if refresh_expires_key and data.get(refresh_expires_key):
            refresh_expires_at = now + timedelta(seconds=int(data[refresh_expires_key]))

        return cls(
            access_token=data["access_token"],
            access_token_expires_at=now + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
            refresh_token_expires_at=refresh_expires_at,
        )


class OAuthProviderAdapter:
    """
    Base class for provider-specific token operations.

    Subclasses set `provider` and `refresh_buffer` and implement refresh().
    """

    provider: ConnectionProvider
    refresh_buffer: timedelta = timedelta(minutes=5)
    supports_revoke: bool = False

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            http_client: Shared client; a short-lived one is created per call if omitted
        """
        self._http_client = http_client

    def _client_credentials(self) -> tuple[str, str]:
        client_id, client_secret = get_provider_client_credentials(self.provider.value)
        if not client_id or not client_secret:
            raise ProviderRefreshError(
                f"{self.provider.value} OAuth credentials not configured",
                provider=self.provider.value,
            )
        return client_id, client_secret

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        timeout = kwargs.pop("timeout", get_token_refresh_timeout_seconds())
        if self._http_client is not None:
            return await self._http_client.post(url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, **kwargs)

    async def refresh(self, refresh_token: str, *, account_id: Optional[str] = None) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            ProviderRefreshError: If the provider rejects the grant or is unreachable
        """
        raise NotImplementedError

    async def revoke(self, token: str, *, account_id: Optional[str] = None) -> None:
        """Revoke a token with the provider. No-op where unsupported."""
        return None

    async def _grant(self, url: str, refresh_expires_key: Optional[str] = None, **kwargs) -> TokenPair:
        try:
            response = await self._post(url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderRefreshError(
                f"{self.provider.value} token endpoint unreachable: {type(e).__name__}",
                provider=self.provider.value,
            ) from e

        if response.status_code != 200:
            raise ProviderRefreshError(
                f"{self.provider.value} token refresh failed: {response.status_code}",
                provider=self.provider.value,
                http_status=response.status_code,
            )

        try:
            return TokenPair.from_grant_response(
                response.json(), refresh_expires_key=refresh_expires_key
            )
        except ValueError as e:
            raise ProviderRefreshError(
                f"{self.provider.value} returned an invalid token response",
                provider=self.provider.value,
                http_status=response.status_code,
            ) from e


class QuickBooksAdapter(OAuthProviderAdapter):
    """Intuit OAuth2. Refresh tokens rotate on every grant."""

    provider = ConnectionProvider.QUICKBOOKS
    refresh_buffer = QUICKBOOKS_REFRESH_BUFFER
    supports_revoke = True

    async def refresh(self, refresh_token: str, *, account_id: Optional[str] = None) -> TokenPair:
        client_id, client_secret = self._client_credentials()
        return await self._grant(
            QUICKBOOKS_TOKEN_URL,
            refresh_expires_key="x_refresh_token_expires_in",
            auth=(client_id, client_secret),
            headers={"Accept": "application/json"},
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    async def revoke(self, token: str, *, account_id: Optional[str] = None) -> None:
        client_id, client_secret = self._client_credentials()
        try:
            response = await self._post(
                QUICKBOOKS_REVOKE_URL,
                auth=(client_id, client_secret),
                headers={"Accept": "application/json"},
                json={"token": token},
            )
        except httpx.HTTPError as e:
            raise ProviderRevokeError(
                f"quickbooks revoke endpoint unreachable: {type(e).__name__}",
                provider=self.provider.value,
            ) from e

        if response.status_code != 200:
            raise ProviderRevokeError(
                f"quickbooks revoke failed: {response.status_code}",
                provider=self.provider.value,
                http_status=response.status_code,
            )


class ShopifyAdapter(OAuthProviderAdapter):
    """Shopify expiring offline tokens; account_id is the shop domain."""

    provider = ConnectionProvider.SHOPIFY
    refresh_buffer = SHOPIFY_REFRESH_BUFFER

    async def refresh(self, refresh_token: str, *, account_id: Optional[str] = None) -> TokenPair:
        if not account_id:
            raise ProviderRefreshError(
                "Shop domain is required to refresh a Shopify token",
                provider=self.provider.value,
            )
        client_id, client_secret = self._client_credentials()
        return await self._grant(
            SHOPIFY_TOKEN_URL_TEMPLATE.format(shop=account_id),
            refresh_expires_key="refresh_token_expires_in",
            json={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )


class AmazonAdapter(OAuthProviderAdapter):
    """Login with Amazon. Refresh tokens are long-lived and not rotated."""

    provider = ConnectionProvider.AMAZON
    refresh_buffer = AMAZON_REFRESH_BUFFER

    async def refresh(self, refresh_token: str, *, account_id: Optional[str] = None) -> TokenPair:
        client_id, client_secret = self._client_credentials()
        pair = await self._grant(
            AMAZON_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if pair.refresh_token is None:
            pair.refresh_token = refresh_token
        return pair


# ============================================================================
# Registry
# ============================================================================

_ADAPTER_CLASSES = {
    ConnectionProvider.QUICKBOOKS: QuickBooksAdapter,
    ConnectionProvider.SHOPIFY: ShopifyAdapter,
    ConnectionProvider.AMAZON: AmazonAdapter,
}


def get_provider_adapter(
    provider,
    http_client: Optional[httpx.AsyncClient] = None,
) -> OAuthProviderAdapter:
    """
    Return the adapter for a provider.

    Args:
        provider: ConnectionProvider or its string value

    Raises:
        ValueError: If the provider is unknown
    """
    provider = ConnectionProvider(provider)
    return _ADAPTER_CLASSES[provider](http_client=http_client)


def default_adapters(http_client: Optional[httpx.AsyncClient] = None) -> Dict[ConnectionProvider, OAuthProviderAdapter]:
    """One adapter per supported provider."""
    return {provider: cls(http_client=http_client) for provider, cls in _ADAPTER_CLASSES.items()}


def refresh_buffer_for(provider) -> timedelta:
    """Refresh buffer for a provider without building an adapter."""
    return _ADAPTER_CLASSES[ConnectionProvider(provider)].refresh_buffer
