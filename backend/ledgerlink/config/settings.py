"""
Runtime settings read from the environment.

Values are read at call time so tests can monkeypatch the environment.
Secrets returned here must never be logged.
"""

import os
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./ledgerlink.db"

# Bounded waits for I/O that must never be left half-committed
DEFAULT_TOKEN_REFRESH_TIMEOUT_SECONDS = 15.0
DEFAULT_WEBHOOK_PROCESSING_TIMEOUT_SECONDS = 20.0

# Scheduled refresh looks this far ahead
DEFAULT_TOKEN_REFRESH_WINDOW_MINUTES = 30

# Stripe signature timestamp tolerance
DEFAULT_STRIPE_WEBHOOK_TOLERANCE_SECONDS = 300

# Redis lease for the cross-instance refresh guard
DEFAULT_REFRESH_LEASE_SECONDS = 30


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_encryption_key() -> Optional[str]:
    return os.getenv("ENCRYPTION_KEY")


def get_stripe_webhook_secret() -> Optional[str]:
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def get_stripe_secret_key() -> Optional[str]:
    return os.getenv("STRIPE_SECRET_KEY")


def get_stripe_webhook_tolerance_seconds() -> int:
    return _get_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_STRIPE_WEBHOOK_TOLERANCE_SECONDS)


def get_token_refresh_timeout_seconds() -> float:
    return _get_float("TOKEN_REFRESH_TIMEOUT_SECONDS", DEFAULT_TOKEN_REFRESH_TIMEOUT_SECONDS)


def get_webhook_processing_timeout_seconds() -> float:
    return _get_float("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", DEFAULT_WEBHOOK_PROCESSING_TIMEOUT_SECONDS)


def get_token_refresh_window_minutes() -> int:
    return _get_int("TOKEN_REFRESH_WINDOW_MINUTES", DEFAULT_TOKEN_REFRESH_WINDOW_MINUTES)


def get_refresh_lock_redis_url() -> Optional[str]:
    """Redis URL for the cross-instance refresh lease. Unset means process-local only."""
    return os.getenv("REFRESH_LOCK_REDIS_URL") or None


def get_refresh_lease_seconds() -> int:
    return _get_int("REFRESH_LEASE_SECONDS", DEFAULT_REFRESH_LEASE_SECONDS)


def get_provider_client_credentials(provider: str) -> tuple[Optional[str], Optional[str]]:
    """
    Return (client_id, client_secret) for an OAuth provider.

    Args:
        provider: ConnectionProvider value (quickbooks, shopify, amazon)
    """
    env_names = {
        "quickbooks": ("QUICKBOOKS_CLIENT_ID", "QUICKBOOKS_CLIENT_SECRET"),
        "shopify": ("SHOPIFY_API_KEY", "SHOPIFY_API_SECRET"),
        "amazon": ("AMAZON_LWA_CLIENT_ID", "AMAZON_LWA_CLIENT_SECRET"),
    }
    id_var, secret_var = env_names.get(provider, (None, None))
    if id_var is None:
        return None, None
    return os.getenv(id_var), os.getenv(secret_var)
