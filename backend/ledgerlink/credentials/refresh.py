"""
Refresh coordinator for provider connections.

Implements BOTH refresh strategies:
1. On-demand refresh: ensure_usable() refreshes just-in-time before a provider call
2. Scheduled refresh: refresh_expiring() proactively refreshes from a background job

At most one refresh per connection is in flight per process. Concurrent
callers for the same connection wait on the in-flight refresh and receive
its result (or its failure). The refresh itself runs as its own task, so
cancelling any one caller never cancels it for the others. An optional
Redis lease extends the guard across instances.

SECURITY REQUIREMENTS:
- Tokens are decrypted only in memory
- No plaintext tokens in logs
- Audit events for all refresh outcomes

Usage:
    coordinator = RefreshCoordinator(db_session)

    # Before every provider call
    access_token = await coordinator.ensure_usable(connection_id)

    # Background job
    outcomes = await coordinator.refresh_expiring(within_minutes=30)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ledgerlink.config import (
    get_refresh_lease_seconds,
    get_refresh_lock_redis_url,
    get_token_refresh_timeout_seconds,
    get_token_refresh_window_minutes,
)
from ledgerlink.credentials.encryption import TokenVault
from ledgerlink.credentials.errors import (
    TOKEN_DECRYPTION_FAILED,
    TOKEN_REFRESH_FAILED,
    ConnectionPausedError,
    DecryptionFailedError,
    ProviderError,
    ReauthorizationRequiredError,
)
from ledgerlink.credentials.locks import (
    RedisRefreshLease,
    RefreshLockRegistry,
    get_refresh_lock_registry,
)
from ledgerlink.credentials.providers import OAuthProviderAdapter, default_adapters
from ledgerlink.credentials.status import DEFAULT_REFRESH_BUFFER, compute_status
from ledgerlink.credentials.store import ConnectionStore
from ledgerlink.models.connection import ConnectionProvider, ConnectionStatus, ProviderConnection
from ledgerlink.platform.errors import AppError

logger = logging.getLogger(__name__)


class RefreshOutcomeStatus(str, Enum):
    """Result status for scheduled refresh operations."""
    SUCCESS = "success"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RefreshOutcome:
    """
    Result of refreshing one connection.

    SECURITY: Does NOT include token values.
    """
    status: RefreshOutcomeStatus
    connection_id: str
    provider: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None


_lease: Optional[RedisRefreshLease] = None

# Strong references to detached refreshes until they finish
_refresh_tasks: Set[asyncio.Task] = set()


def get_refresh_lease() -> Optional[RedisRefreshLease]:
    """Process-wide Redis lease, or None when REFRESH_LOCK_REDIS_URL is unset."""
    global _lease
    url = get_refresh_lock_redis_url()
    if url is None:
        return None
    if _lease is None:
        _lease = RedisRefreshLease.from_url(url, lease_seconds=get_refresh_lease_seconds())
    return _lease


class RefreshCoordinator:
    """
    Keeps provider connections usable.

    The lock registry is process-wide by default so per-request
    coordinators still share one in-flight refresh per connection.
    """

    def __init__(
        self,
        db_session: Session,
        adapters: Optional[Dict[ConnectionProvider, OAuthProviderAdapter]] = None,
        vault: Optional[TokenVault] = None,
        locks: Optional[RefreshLockRegistry] = None,
        lease: Optional[RedisRefreshLease] = None,
        refresh_timeout_seconds: Optional[float] = None,
    ):
        """
        Args:
            db_session: Database session
            adapters: Provider adapters keyed by provider (defaults to all built-ins)
            vault: Token vault (defaults to the process-wide vault)
            locks: Single-flight registry (defaults to the process-wide registry)
            lease: Cross-instance lease (defaults to one built from config, if any)
            refresh_timeout_seconds: Bound on each provider refresh call
        """
        self.db = db_session
        self.store = ConnectionStore(db_session, vault=vault)
        self.adapters = adapters if adapters is not None else default_adapters()
        self.locks = locks or get_refresh_lock_registry()
        self.lease = lease if lease is not None else get_refresh_lease()
        self.refresh_timeout_seconds = (
            refresh_timeout_seconds
            if refresh_timeout_seconds is not None
            else get_token_refresh_timeout_seconds()
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure_usable(self, connection_id: str) -> str:
        """
        Return a usable access token, refreshing first if it is about to expire.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionPausedError: If the user paused the connection
            ReauthorizationRequiredError: If the connection is (or just became) inactive
            RetryableStorageError: If the refreshed tokens could not be stored
        """
        connection = self.store.get_connection(connection_id)
        self._check_status(connection)

        view = compute_status(connection, buffer=self._buffer_for(connection))
        if not view.needs_refresh:
            access_token = self._decrypt_access_token(connection)
            self.store.touch(connection)
            return access_token

        return await self._single_flight(connection_id, force=False)

    async def refresh_now(self, connection_id: str) -> str:
        """
        Refresh immediately regardless of expiry, through the same lock.

        Only ACTIVE connections can be refreshed.
        """
        connection = self.store.get_connection(connection_id)
        self._check_status(connection)
        return await self._single_flight(connection_id, force=True)

    async def refresh_expiring(self, within_minutes: Optional[int] = None) -> List[RefreshOutcome]:
        """
        Refresh every active connection expiring within the window.

        SCHEDULED REFRESH: call from a background job. Failures are
        collected per connection; one failure never stops the batch.
        """
        if within_minutes is None:
            within_minutes = get_token_refresh_window_minutes()

        expiring = self.store.list_expiring(timedelta(minutes=within_minutes))
        connection_ids = [(c.id, ConnectionProvider(c.provider).value) for c in expiring]

        outcomes = []
        for connection_id, provider in connection_ids:
            try:
                await self.refresh_now(connection_id)
                outcomes.append(RefreshOutcome(
                    status=RefreshOutcomeStatus.SUCCESS,
                    connection_id=connection_id,
                    provider=provider,
                ))
            except ReauthorizationRequiredError as e:
                outcomes.append(RefreshOutcome(
                    status=RefreshOutcomeStatus.REAUTHORIZATION_REQUIRED,
                    connection_id=connection_id,
                    provider=provider,
                    error_code=e.code,
                    error_message=e.message,
                ))
            except ConnectionPausedError as e:
                outcomes.append(RefreshOutcome(
                    status=RefreshOutcomeStatus.SKIPPED,
                    connection_id=connection_id,
                    provider=provider,
                    error_code=e.code,
                ))
            except AppError as e:
                logger.error(
                    "Failed to refresh connection in batch",
                    extra={
                        "connection_id": connection_id,
                        "provider": provider,
                        "error_code": e.code,
                    }
                )
                outcomes.append(RefreshOutcome(
                    status=RefreshOutcomeStatus.FAILED,
                    connection_id=connection_id,
                    provider=provider,
                    error_code=e.code,
                    error_message=e.message,
                ))

        logger.info(
            "Completed scheduled token refresh",
            extra={
                "total": len(outcomes),
                "success": sum(1 for o in outcomes if o.status == RefreshOutcomeStatus.SUCCESS),
                "reauthorization_required": sum(
                    1 for o in outcomes if o.status == RefreshOutcomeStatus.REAUTHORIZATION_REQUIRED
                ),
                "failed": sum(1 for o in outcomes if o.status == RefreshOutcomeStatus.FAILED),
            }
        )
        return outcomes

    # ------------------------------------------------------------------
    # Single flight
    # ------------------------------------------------------------------

    async def _single_flight(self, connection_id: str, force: bool) -> str:
        future, is_owner = self.locks.claim(connection_id)
        if is_owner:
            # Runs detached so a cancelled caller cannot abort the shared refresh
            task = asyncio.create_task(self._resolve(connection_id, future, force))
            _refresh_tasks.add(task)
            task.add_done_callback(_refresh_tasks.discard)
        else:
            logger.debug(
                "Waiting on in-flight refresh",
                extra={"connection_id": connection_id},
            )
        return await asyncio.shield(future)

    async def _resolve(self, connection_id: str, future: asyncio.Future, force: bool) -> None:
        """Run the refresh and hand its outcome to every caller waiting on future."""
        try:
            access_token = await self._refresh_locked(connection_id, force)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved in case every caller has gone away
            future.exception()
        else:
            future.set_result(access_token)
        finally:
            self.locks.release(connection_id, future)

    async def _refresh_locked(self, connection_id: str, force: bool) -> str:
        # Another refresher may have committed while we were queued
        connection = self.store.reload(connection_id)
        self._check_status(connection)
        buffer = self._buffer_for(connection)

        if not force and not compute_status(connection, buffer=buffer).needs_refresh:
            return self._decrypt_access_token(connection)

        lease_token = None
        if self.lease is not None:
            lease_token = await self.lease.acquire(connection_id)
            if lease_token is None:
                await self.lease.wait_released(connection_id)
                connection = self.store.reload(connection_id)
                self._check_status(connection)
                if not compute_status(connection, buffer=buffer).needs_refresh:
                    return self._decrypt_access_token(connection)
                lease_token = await self.lease.acquire(connection_id)

        try:
            return await self._call_provider(connection)
        finally:
            if lease_token is not None:
                await self.lease.release(connection_id, lease_token)

    async def _call_provider(self, connection: ProviderConnection) -> str:
        provider = ConnectionProvider(connection.provider)
        adapter = self.adapters.get(provider)
        if adapter is None:
            self._fail(connection, TOKEN_REFRESH_FAILED, f"No refresh handler for provider: {provider.value}")

        if not connection.has_refresh_token:
            self._fail(connection, TOKEN_REFRESH_FAILED, "No refresh token stored")
        if connection.is_refresh_token_expired:
            self._fail(connection, TOKEN_REFRESH_FAILED, "Refresh token expired")

        try:
            refresh_token = self.store.decrypt_refresh_token(connection)
        except DecryptionFailedError:
            self._fail(connection, TOKEN_DECRYPTION_FAILED, "Stored refresh token could not be decrypted")

        try:
            token_pair = await asyncio.wait_for(
                adapter.refresh(refresh_token, account_id=connection.external_account_id),
                timeout=self.refresh_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._fail(
                connection,
                TOKEN_REFRESH_FAILED,
                f"{provider.value} token refresh timed out after {self.refresh_timeout_seconds}s",
            )
        except ProviderError as e:
            self._fail(connection, TOKEN_REFRESH_FAILED, e.message)

        # Storage failures surface as RetryableStorageError without demoting
        self.store.commit_refresh(connection, token_pair)

        logger.info(
            "Connection refreshed",
            extra={
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "provider": provider.value,
                "new_expires_at": token_pair.access_token_expires_at.isoformat(),
            }
        )
        return token_pair.access_token

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _buffer_for(self, connection: ProviderConnection) -> timedelta:
        adapter = self.adapters.get(ConnectionProvider(connection.provider))
        return adapter.refresh_buffer if adapter is not None else DEFAULT_REFRESH_BUFFER

    @staticmethod
    def _check_status(connection: ProviderConnection) -> None:
        status = ConnectionStatus(connection.status)
        provider = ConnectionProvider(connection.provider).value
        if status == ConnectionStatus.INACTIVE:
            raise ReauthorizationRequiredError(provider=provider, connection_id=connection.id)
        if status == ConnectionStatus.PAUSED:
            raise ConnectionPausedError(provider=provider, connection_id=connection.id)

    def _decrypt_access_token(self, connection: ProviderConnection) -> str:
        try:
            return self.store.decrypt_access_token(connection)
        except DecryptionFailedError:
            self._fail(connection, TOKEN_DECRYPTION_FAILED, "Stored access token could not be decrypted")

    def _fail(self, connection: ProviderConnection, code: str, message: str) -> None:
        """Demote to INACTIVE and raise. No automatic retry follows."""
        logger.error(
            "Token refresh failed",
            extra={
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "provider": ConnectionProvider(connection.provider).value,
                "error_code": code,
            }
        )
        self.store.mark_inactive(connection, code, message)
        raise ReauthorizationRequiredError(
            provider=ConnectionProvider(connection.provider).value,
            connection_id=connection.id,
        )
