"""
Credential lifecycle errors.

ReauthorizationRequiredError is the "reconnect required" signal: the
connection is (or has just been made) inactive and only a fresh OAuth
authorization will bring it back.
"""

from typing import Optional

from fastapi import status

from ledgerlink.platform.errors import AppError, ConflictError, NotFoundError


# last_error codes recorded on a connection
TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
TOKEN_DECRYPTION_FAILED = "TOKEN_DECRYPTION_FAILED"


class VaultConfigurationError(Exception):
    """Raised when the encryption key is missing or unusable."""
    pass


class DecryptionFailedError(AppError):
    """Ciphertext could not be authenticated or decoded."""

    def __init__(self, message: str = "Stored credential could not be decrypted"):
        super().__init__(
            code="DECRYPTION_FAILED",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class ProviderError(Exception):
    """Base error for OAuth provider calls."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.http_status = http_status


class ProviderRefreshError(ProviderError):
    """The provider rejected or failed a refresh-token grant."""

    code = TOKEN_REFRESH_FAILED


class ProviderRevokeError(ProviderError):
    """The provider failed to revoke a token."""

    code = "TOKEN_REVOKE_FAILED"


class ReauthorizationRequiredError(AppError):
    """The user must re-authorize the provider connection."""

    def __init__(
        self,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.provider = provider
        self.connection_id = connection_id
        super().__init__(
            code="REAUTHORIZATION_REQUIRED",
            message=message or "Connection requires re-authorization",
            status_code=status.HTTP_401_UNAUTHORIZED,
            details={
                "provider": provider,
                "connection_id": connection_id,
                "reconnect_required": True,
            },
        )


class ConnectionPausedError(ConflictError):
    """The user paused this connection."""

    def __init__(self, provider: Optional[str] = None, connection_id: Optional[str] = None):
        self.provider = provider
        self.connection_id = connection_id
        super().__init__(
            message="Connection is paused",
            code="CONNECTION_PAUSED",
            details={"provider": provider, "connection_id": connection_id},
        )


class ConnectionNotFoundError(NotFoundError):
    """No connection with the given id (or for the given user and provider)."""

    def __init__(self, identifier: Optional[str] = None):
        super().__init__("Connection", identifier)
