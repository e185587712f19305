"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token)
- ALLOWED in logs: account_name, external_account_id, provider
- All connection lifecycle operations logged for audit trail

Audit Events:
- connection.stored
- connection.refreshed
- connection.refresh_failed
- connection.paused
- connection.resumed
- connection.disconnected
- connection.revoke_failed

Usage:
    from ledgerlink.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger(user_id)
    audit.log(
        event_type=AuditEventType.CONNECTION_STORED,
        connection_id=connection.id,
        provider="quickbooks",
        account_name="Acme Books",
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "ledgerlink.credentials.audit"

REDACTED_VALUE = "[REDACTED]"


class AuditEventType(str, Enum):
    """Connection audit event types."""
    CONNECTION_STORED = "connection.stored"
    CONNECTION_REFRESHED = "connection.refreshed"
    CONNECTION_REFRESH_FAILED = "connection.refresh_failed"
    CONNECTION_PAUSED = "connection.paused"
    CONNECTION_RESUMED = "connection.resumed"
    CONNECTION_DISCONNECTED = "connection.disconnected"
    CONNECTION_REVOKE_FAILED = "connection.revoke_failed"


# Token shapes issued by the providers we talk to
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"(shpat_[a-fA-F0-9]+)"),  # Shopify access tokens
    re.compile(r"(shpss_[a-zA-Z0-9]+)"),  # Shopify shared secrets
    re.compile(r"(Atza\|[A-Za-z0-9_\-|.]+)"),  # Amazon LWA access tokens
    re.compile(r"(Atzr\|[A-Za-z0-9_\-|.]+)"),  # Amazon LWA refresh tokens
    re.compile(r"(AB11[A-Za-z0-9]{20,})"),  # QuickBooks refresh tokens
    re.compile(r"(whsec_[A-Za-z0-9]+)"),  # Stripe webhook secrets
    re.compile(r"(sk_(?:live|test)_[A-Za-z0-9]+)"),  # Stripe secret keys
    re.compile(r"(v1:[A-Za-z0-9+/=]{24,})"),  # Vault ciphertext
]

# Generic bearer/JWT shapes
SECRET_VALUE_PATTERNS = [
    re.compile(r"(?i)(?<=bearer )[A-Za-z0-9._~+/\-]+=*"),
    re.compile(r"(eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+)"),
]

# Key names that hold no secret even though they contain a marker word
SAFE_KEYS = frozenset({
    "account_name",
    "external_account_id",
    "provider",
    "access_token_expires_at",
    "refresh_token_expires_at",
    "has_refresh_token",
    "token_type",
})

SECRET_KEY_MARKERS = (
    "token", "secret", "credential", "auth", "bearer",
    "oauth", "api_key", "apikey", "password", "signature",
)


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Args:
        key: The key name to check

    Returns:
        True if the key likely contains a secret
    """
    key_lower = key.lower()
    if key_lower in SAFE_KEYS:
        return False
    return any(marker in key_lower for marker in SECRET_KEY_MARKERS)


def redact_credential_value(value: Any) -> Any:
    """Redact secret patterns from a string value."""
    if not isinstance(value, str):
        return value

    result = value
    for pattern in CREDENTIAL_SECRET_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    SECURITY:
    - Always use this before logging credential-related data
    - account_name and external_account_id are NOT redacted

    Usage:
        safe_data = redact_credential_data({"access_token": "shpat_xxx", "name": "test"})
        logger.info("Credential data", extra=safe_data)
    """
    # Prevent infinite recursion
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_credential_secret_key(key):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, list):
        return [redact_credential_data(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_credential_value(data)

    return data


class CredentialAuditLogger:
    """
    Structured audit logger for connection lifecycle operations.

    SECURITY:
    - Tokens are NEVER logged
    - account_name IS logged
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        connection_id: str,
        provider: str,
        account_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        SECURITY:
        - metadata is automatically redacted
        - Tokens must NEVER be passed in metadata
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": self.user_id,
            "connection_id": connection_id,
            "provider": provider,
            "account_name": account_name,
            **safe_metadata,
        }

        self.logger.info(
            f"Connection audit: {event_type.value}",
            extra=audit_record
        )

    def log_error(
        self,
        event_type: AuditEventType,
        connection_id: str,
        provider: str,
        error: str,
        error_code: Optional[str] = None,
        account_name: Optional[str] = None,
    ) -> None:
        """Log a failed operation. The error message is redacted first."""
        self.log(
            event_type=event_type,
            connection_id=connection_id,
            provider=provider,
            account_name=account_name,
            metadata={"error": redact_credential_value(error), "error_code": error_code},
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        logger.addFilter(CredentialLoggingFilter())
    """

    # Standard LogRecord attributes that are never secrets
    _RECORD_ATTRS = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
    ) | {"message", "asctime"}

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_credential_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        # Redact extra fields
        for key in list(record.__dict__.keys()):
            if key in self._RECORD_ATTRS:
                continue
            value = getattr(record, key)
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(value, str):
                setattr(record, key, redact_credential_value(value))

        return True


def setup_credential_logging() -> None:
    """
    Configure credential-safe logging.

    Call this during application startup so every credential and billing
    logger has the redaction filter applied.
    """
    redaction_filter = CredentialLoggingFilter()

    for logger_name in (
        "ledgerlink.credentials",
        "ledgerlink.credentials.store",
        "ledgerlink.credentials.refresh",
        "ledgerlink.credentials.providers",
        AUDIT_LOGGER_NAME,
        "ledgerlink.billing",
        "ledgerlink.workers",
    ):
        logging.getLogger(logger_name).addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
