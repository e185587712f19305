"""Configuration module for LedgerLink services."""

from ledgerlink.config.settings import (
    get_database_url,
    get_encryption_key,
    get_stripe_webhook_secret,
    get_stripe_secret_key,
    get_stripe_webhook_tolerance_seconds,
    get_token_refresh_timeout_seconds,
    get_webhook_processing_timeout_seconds,
    get_token_refresh_window_minutes,
    get_refresh_lock_redis_url,
    get_refresh_lease_seconds,
    get_provider_client_credentials,
)

__all__ = [
    "get_database_url",
    "get_encryption_key",
    "get_stripe_webhook_secret",
    "get_stripe_secret_key",
    "get_stripe_webhook_tolerance_seconds",
    "get_token_refresh_timeout_seconds",
    "get_webhook_processing_timeout_seconds",
    "get_token_refresh_window_minutes",
    "get_refresh_lock_redis_url",
    "get_refresh_lease_seconds",
    "get_provider_client_credentials",
]
