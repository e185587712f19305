"""
ProviderConnection model - one authorized link per user and provider.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest (see ledgerlink.credentials.encryption)
- No plaintext tokens outside process memory
- Token columns never appear in repr, projections, or logs

Lifecycle:
- Created on a successful OAuth callback
- Token fields mutated only by the refresh coordinator
- status mutated by refresh failures (INACTIVE) and user action (PAUSED)
- Hard-deleted only on explicit disconnect
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Text, Enum, Index, UniqueConstraint

from ledgerlink.db_base import Base
from ledgerlink.models.base import TimestampMixin, UTCDateTime, generate_uuid


class ConnectionStatus(str, enum.Enum):
    """Connection status enumeration."""
    ACTIVE = "active"
    PAUSED = "paused"  # User-initiated, reversible
    INACTIVE = "inactive"  # Terminal until the user re-authorizes


class ConnectionProvider(str, enum.Enum):
    """Supported OAuth providers."""
    QUICKBOOKS = "quickbooks"
    SHOPIFY = "shopify"
    AMAZON = "amazon"


class ProviderConnection(Base, TimestampMixin):
    """
    Encrypted OAuth credential pair for one (user, provider).

    SECURITY:
    - access_token_encrypted and refresh_token_encrypted hold ciphertext only
    - account_name and external_account_id are allowed in logs
    """

    __tablename__ = "provider_connections"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )
    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user"
    )
    provider = Column(
        Enum(ConnectionProvider),
        nullable=False,
        comment="OAuth provider"
    )
    external_account_id = Column(
        String(255),
        nullable=True,
        comment="Realm id, shop domain or seller id"
    )
    account_name = Column(
        String(255),
        nullable=True,
        comment="Display name (allowed in logs)"
    )

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted access token"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token"
    )

    access_token_expires_at = Column(
        UTCDateTime(),
        nullable=False,
        comment="When the access token expires"
    )
    refresh_token_expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the refresh token expires (if the provider reports it)"
    )
    last_refreshed_at = Column(UTCDateTime(), nullable=True)
    last_used_at = Column(UTCDateTime(), nullable=True)

    status = Column(
        Enum(ConnectionStatus),
        default=ConnectionStatus.ACTIVE,
        nullable=False,
        index=True,
        comment="active / paused / inactive"
    )

    # Most recent failure, cleared on success
    last_error_message = Column(Text, nullable=True)
    last_error_code = Column(String(64), nullable=True)
    last_error_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_connections_user_provider"),
        Index("ix_provider_connections_status_expires", "status", "access_token_expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<ProviderConnection("
            f"id={self.id}, "
            f"provider={self.provider}, "
            f"user_id={self.user_id}, "
            f"status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    @property
    def has_refresh_token(self) -> bool:
        return self.refresh_token_encrypted is not None

    @property
    def is_refresh_token_expired(self) -> bool:
        if not self.refresh_token_expires_at:
            return False
        return datetime.now(timezone.utc) >= self.refresh_token_expires_at

    @property
    def last_error(self) -> Optional[dict]:
        """Most recent failure as {message, code, timestamp}, or None."""
        if not self.last_error_code and not self.last_error_message:
            return None
        return {
            "message": self.last_error_message,
            "code": self.last_error_code,
            "timestamp": self.last_error_at,
        }
