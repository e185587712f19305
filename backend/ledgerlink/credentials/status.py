"""
Connection status aggregation.

Pure derivation of a connection's usability from its stored fields.
Consulted before every outbound provider call and by the status API.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ledgerlink.models.base import ensure_utc
from ledgerlink.models.connection import ConnectionStatus, ProviderConnection

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class ConnectionStatusView:
    """Derived flags for one connection at one instant."""
    usable: bool
    needs_refresh: bool
    expired: bool
    reconnect_required: bool
    paused: bool


def compute_status(
    connection: ProviderConnection,
    now: Optional[datetime] = None,
    buffer: Optional[timedelta] = None,
) -> ConnectionStatusView:
    """
    Derive status flags for a connection.

    Args:
        connection: The stored connection
        now: Evaluation instant (defaults to current UTC time)
        buffer: Refresh buffer (defaults to 5 minutes)
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    buffer = DEFAULT_REFRESH_BUFFER if buffer is None else buffer
    expires_at = ensure_utc(connection.access_token_expires_at)
    status = ConnectionStatus(connection.status)
    active = status == ConnectionStatus.ACTIVE

    return ConnectionStatusView(
        usable=active and expires_at > now,
        needs_refresh=active and expires_at <= now + buffer,
        expired=expires_at <= now,
        reconnect_required=status == ConnectionStatus.INACTIVE,
        paused=status == ConnectionStatus.PAUSED,
    )
