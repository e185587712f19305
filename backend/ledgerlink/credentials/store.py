"""
Connection store: persistence for encrypted provider credentials.

SECURITY REQUIREMENTS:
- Tokens are encrypted with the token vault before storage
- No plaintext tokens outside process memory
- User-scoped lookups for API access
- Status projections never carry token material

Usage:
    store = ConnectionStore(db_session)

    # OAuth callback handed us a token pair
    connection = store.store_connection(
        user_id=user_id,
        provider=ConnectionProvider.QUICKBOOKS,
        token_pair=pair,
        external_account_id=realm_id,
        account_name="Acme Books",
    )

    # Disconnect (best-effort revoke, then delete)
    await store.disconnect(connection, adapter)
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerlink.credentials.encryption import TokenVault, get_token_vault
from ledgerlink.credentials.errors import (
    ConnectionNotFoundError,
    DecryptionFailedError,
    ProviderError,
    ReauthorizationRequiredError,
)
from ledgerlink.credentials.providers import (
    OAuthProviderAdapter,
    TokenPair,
    refresh_buffer_for,
)
from ledgerlink.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    redact_credential_value,
)
from ledgerlink.credentials.status import compute_status
from ledgerlink.models.connection import (
    ConnectionProvider,
    ConnectionStatus,
    ProviderConnection,
)
from ledgerlink.platform.errors import RetryableStorageError

logger = logging.getLogger(__name__)

# Longest error message kept on a connection row
MAX_ERROR_MESSAGE_LENGTH = 500


@dataclass
class ConnectionStatusProjection:
    """
    Public view of a connection.

    SECURITY: Does NOT include token values.
    """
    connection_id: str
    provider: str
    status: str
    paused: bool
    usable: bool
    needs_refresh: bool
    reconnect_required: bool
    access_token_expires_at: datetime
    last_refreshed_at: Optional[datetime] = None
    account_name: Optional[str] = None
    external_account_id: Optional[str] = None
    last_error: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ConnectionStore:
    """
    Service for encrypted provider connection storage.

    Every mutation commits immediately; storage failures roll back and
    surface as RetryableStorageError.
    """

    def __init__(self, db_session: Session, vault: Optional[TokenVault] = None):
        """
        Args:
            db_session: Database session
            vault: Token vault (defaults to the process-wide vault)
        """
        self.db = db_session
        self._vault = vault

    @property
    def vault(self) -> TokenVault:
        if self._vault is None:
            self._vault = get_token_vault()
        return self._vault

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Connection store commit failed",
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            raise RetryableStorageError(operation=operation) from e

    @staticmethod
    def _audit(connection: ProviderConnection) -> CredentialAuditLogger:
        return CredentialAuditLogger(connection.user_id)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> ProviderConnection:
        """
        Raises:
            ConnectionNotFoundError: If no such connection exists
        """
        connection = self.db.get(ProviderConnection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def get_connection_for_user(self, user_id: str, provider) -> ProviderConnection:
        """
        Raises:
            ConnectionNotFoundError: If the user has no connection for the provider
        """
        provider = ConnectionProvider(provider)
        connection = self.db.query(ProviderConnection).filter(
            ProviderConnection.user_id == user_id,
            ProviderConnection.provider == provider,
        ).first()
        if connection is None:
            raise ConnectionNotFoundError(provider.value)
        return connection

    def list_connections(self, user_id: str) -> List[ProviderConnection]:
        return self.db.query(ProviderConnection).filter(
            ProviderConnection.user_id == user_id,
        ).order_by(ProviderConnection.created_at).all()

    def list_expiring(self, within: timedelta, now: Optional[datetime] = None) -> List[ProviderConnection]:
        """Active connections with a refresh token whose access token expires within the window."""
        now = now or datetime.now(timezone.utc)
        return self.db.query(ProviderConnection).filter(
            ProviderConnection.status == ConnectionStatus.ACTIVE,
            ProviderConnection.access_token_expires_at <= now + within,
            ProviderConnection.refresh_token_encrypted.isnot(None),
        ).order_by(ProviderConnection.access_token_expires_at).all()

    def reload(self, connection_id: str) -> ProviderConnection:
        """Re-read a connection from the database, discarding cached state."""
        connection = self.get_connection(connection_id)
        self.db.refresh(connection)
        return connection

    # ------------------------------------------------------------------
    # Token access (in memory only)
    # ------------------------------------------------------------------

    def decrypt_access_token(self, connection: ProviderConnection) -> str:
        return self.vault.decrypt(connection.access_token_encrypted)

    def decrypt_refresh_token(self, connection: ProviderConnection) -> Optional[str]:
        if connection.refresh_token_encrypted is None:
            return None
        return self.vault.decrypt(connection.refresh_token_encrypted)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def store_connection(
        self,
        user_id: str,
        provider,
        token_pair: TokenPair,
        external_account_id: Optional[str] = None,
        account_name: Optional[str] = None,
    ) -> ProviderConnection:
        """
        Store tokens from a completed OAuth authorization.

        Creates the (user, provider) connection or re-activates the existing
        one; this is the only way out of INACTIVE.

        SECURITY:
        - Tokens are encrypted before storage
        - Plaintext tokens are not logged
        """
        if not user_id:
            raise ValueError("user_id is required")
        provider = ConnectionProvider(provider)

        access_encrypted = self.vault.encrypt(token_pair.access_token)
        refresh_encrypted = None
        if token_pair.refresh_token is not None:
            refresh_encrypted = self.vault.encrypt(token_pair.refresh_token)

        connection = self.db.query(ProviderConnection).filter(
            ProviderConnection.user_id == user_id,
            ProviderConnection.provider == provider,
        ).first()
        action = "updated" if connection else "created"

        if connection is None:
            connection = ProviderConnection(user_id=user_id, provider=provider)
            self.db.add(connection)

        connection.access_token_encrypted = access_encrypted
        connection.refresh_token_encrypted = refresh_encrypted
        connection.access_token_expires_at = token_pair.access_token_expires_at
        connection.refresh_token_expires_at = token_pair.refresh_token_expires_at
        if external_account_id:
            connection.external_account_id = external_account_id
        if account_name:
            connection.account_name = account_name
        connection.status = ConnectionStatus.ACTIVE
        connection.last_refreshed_at = datetime.now(timezone.utc)
        self._clear_error_fields(connection)

        self._commit("store_connection")

        self._audit(connection).log(
            event_type=AuditEventType.CONNECTION_STORED,
            connection_id=connection.id,
            provider=provider.value,
            account_name=connection.account_name,
            metadata={"action": action},
        )
        logger.info(
            "Connection stored",
            extra={
                "connection_id": connection.id,
                "user_id": user_id,
                "provider": provider.value,
                "account_name": connection.account_name,
                "action": action,
            }
        )
        return connection

    def commit_refresh(self, connection: ProviderConnection, token_pair: TokenPair) -> ProviderConnection:
        """
        Persist a refreshed token pair in one update.

        Providers that do not rotate refresh tokens return none; the stored
        refresh token is kept in that case.
        """
        now = datetime.now(timezone.utc)
        connection.access_token_encrypted = self.vault.encrypt(token_pair.access_token)
        if token_pair.refresh_token is not None:
            connection.refresh_token_encrypted = self.vault.encrypt(token_pair.refresh_token)
        if token_pair.refresh_token_expires_at is not None:
            connection.refresh_token_expires_at = token_pair.refresh_token_expires_at
        connection.access_token_expires_at = token_pair.access_token_expires_at
        connection.last_refreshed_at = now
        connection.last_used_at = now
        self._clear_error_fields(connection)

        self._commit("commit_refresh")

        self._audit(connection).log(
            event_type=AuditEventType.CONNECTION_REFRESHED,
            connection_id=connection.id,
            provider=connection.provider.value,
            account_name=connection.account_name,
            metadata={"new_expires_at": token_pair.access_token_expires_at.isoformat()},
        )
        return connection

    def touch(self, connection: ProviderConnection) -> None:
        """Record use of the access token. Failures are logged, not raised."""
        connection.last_used_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(
                "Failed to record connection use",
                extra={"connection_id": connection.id},
                exc_info=True,
            )

    def mark_inactive(self, connection: ProviderConnection, code: str, message: str) -> ProviderConnection:
        """Demote to INACTIVE; only a new authorization reactivates it."""
        connection.status = ConnectionStatus.INACTIVE
        self._set_error_fields(connection, code, message)
        self._commit("mark_inactive")

        self._audit(connection).log_error(
            event_type=AuditEventType.CONNECTION_REFRESH_FAILED,
            connection_id=connection.id,
            provider=connection.provider.value,
            error=message,
            error_code=code,
            account_name=connection.account_name,
        )
        logger.error(
            "Connection marked inactive",
            extra={
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "provider": connection.provider.value,
                "error_code": code,
            }
        )
        return connection

    def record_error(self, connection: ProviderConnection, code: str, message: str) -> ProviderConnection:
        """Record a failure without changing status."""
        self._set_error_fields(connection, code, message)
        self._commit("record_error")
        return connection

    def clear_error(self, connection: ProviderConnection) -> ProviderConnection:
        self._clear_error_fields(connection)
        self._commit("clear_error")
        return connection

    def pause(self, connection: ProviderConnection) -> ProviderConnection:
        """
        User-initiated pause. Pausing an inactive connection is rejected.

        Raises:
            ReauthorizationRequiredError: If the connection is inactive
        """
        status = ConnectionStatus(connection.status)
        if status == ConnectionStatus.INACTIVE:
            raise ReauthorizationRequiredError(
                provider=connection.provider.value,
                connection_id=connection.id,
            )
        if status == ConnectionStatus.PAUSED:
            return connection

        connection.status = ConnectionStatus.PAUSED
        self._commit("pause")
        self._audit(connection).log(
            event_type=AuditEventType.CONNECTION_PAUSED,
            connection_id=connection.id,
            provider=connection.provider.value,
            account_name=connection.account_name,
        )
        return connection

    def resume(self, connection: ProviderConnection) -> ProviderConnection:
        """
        Undo a pause.

        Raises:
            ReauthorizationRequiredError: If the connection is inactive
        """
        status = ConnectionStatus(connection.status)
        if status == ConnectionStatus.INACTIVE:
            raise ReauthorizationRequiredError(
                provider=connection.provider.value,
                connection_id=connection.id,
            )
        if status == ConnectionStatus.ACTIVE:
            return connection

        connection.status = ConnectionStatus.ACTIVE
        self._commit("resume")
        self._audit(connection).log(
            event_type=AuditEventType.CONNECTION_RESUMED,
            connection_id=connection.id,
            provider=connection.provider.value,
            account_name=connection.account_name,
        )
        return connection

    async def disconnect(
        self,
        connection: ProviderConnection,
        adapter: Optional[OAuthProviderAdapter] = None,
    ) -> None:
        """
        Revoke with the provider (best effort) and delete the connection.

        A failed revoke is logged and audited but never blocks the delete.
        """
        audit = self._audit(connection)
        connection_id = connection.id
        provider = connection.provider.value
        account_name = connection.account_name

        if adapter is not None and adapter.supports_revoke:
            try:
                token = self.decrypt_refresh_token(connection) or self.decrypt_access_token(connection)
                await adapter.revoke(token, account_id=connection.external_account_id)
            except (ProviderError, DecryptionFailedError) as e:
                audit.log_error(
                    event_type=AuditEventType.CONNECTION_REVOKE_FAILED,
                    connection_id=connection_id,
                    provider=provider,
                    error=str(e),
                    account_name=account_name,
                )
                logger.warning(
                    "Token revoke failed, continuing with disconnect",
                    extra={
                        "connection_id": connection_id,
                        "provider": provider,
                        "error_type": type(e).__name__,
                    }
                )

        self.db.delete(connection)
        self._commit("disconnect")

        audit.log(
            event_type=AuditEventType.CONNECTION_DISCONNECTED,
            connection_id=connection_id,
            provider=provider,
            account_name=account_name,
        )
        logger.info(
            "Connection disconnected",
            extra={"connection_id": connection_id, "provider": provider},
        )

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def to_status_projection(
        self,
        connection: ProviderConnection,
        now: Optional[datetime] = None,
    ) -> ConnectionStatusProjection:
        view = compute_status(connection, now=now, buffer=refresh_buffer_for(connection.provider))
        return ConnectionStatusProjection(
            connection_id=connection.id,
            provider=ConnectionProvider(connection.provider).value,
            status=ConnectionStatus(connection.status).value,
            paused=view.paused,
            usable=view.usable,
            needs_refresh=view.needs_refresh,
            reconnect_required=view.reconnect_required,
            access_token_expires_at=connection.access_token_expires_at,
            last_refreshed_at=connection.last_refreshed_at,
            account_name=connection.account_name,
            external_account_id=connection.external_account_id,
            last_error=connection.last_error,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _set_error_fields(connection: ProviderConnection, code: str, message: str) -> None:
        connection.last_error_code = code
        connection.last_error_message = redact_credential_value(message)[:MAX_ERROR_MESSAGE_LENGTH]
        connection.last_error_at = datetime.now(timezone.utc)

    @staticmethod
    def _clear_error_fields(connection: ProviderConnection) -> None:
        connection.last_error_code = None
        connection.last_error_message = None
        connection.last_error_at = None
