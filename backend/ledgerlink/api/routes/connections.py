"""
Connections API: status and lifecycle of a user's provider connections.

SECURITY: All routes require an authenticated user; responses never carry tokens.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends

from ledgerlink.api.dependencies.auth import get_current_user_id
from ledgerlink.api.dependencies.services import (
    get_connection_store,
    get_provider_adapters,
    get_refresh_coordinator,
)
from ledgerlink.api.schemas.connections import (
    ConnectionListResponse,
    ConnectionResponse,
    DisconnectResponse,
)
from ledgerlink.credentials.providers import OAuthProviderAdapter
from ledgerlink.credentials.refresh import RefreshCoordinator
from ledgerlink.credentials.store import ConnectionStore
from ledgerlink.models.connection import ConnectionProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["connections"])


@router.get("", response_model=ConnectionListResponse)
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
):
    """List every provider connection of the current user."""
    connections = [
        ConnectionResponse.from_projection(store.to_status_projection(c))
        for c in store.list_connections(user_id)
    ]
    return ConnectionListResponse(connections=connections, total=len(connections))


@router.get("/{provider}", response_model=ConnectionResponse)
async def get_connection(
    provider: ConnectionProvider,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
):
    connection = store.get_connection_for_user(user_id, provider)
    return ConnectionResponse.from_projection(store.to_status_projection(connection))


@router.post("/{provider}/refresh", response_model=ConnectionResponse)
async def refresh_connection(
    provider: ConnectionProvider,
    user_id: str = Depends(get_current_user_id),
    coordinator: RefreshCoordinator = Depends(get_refresh_coordinator),
):
    """
    Refresh the connection's tokens now.

    A provider rejection demotes the connection and returns 401
    REAUTHORIZATION_REQUIRED; the user must reconnect.
    """
    connection = coordinator.store.get_connection_for_user(user_id, provider)
    await coordinator.refresh_now(connection.id)

    logger.info(
        "Manual connection refresh",
        extra={"connection_id": connection.id, "user_id": user_id, "provider": provider.value},
    )
    connection = coordinator.store.get_connection(connection.id)
    return ConnectionResponse.from_projection(coordinator.store.to_status_projection(connection))


@router.post("/{provider}/pause", response_model=ConnectionResponse)
async def pause_connection(
    provider: ConnectionProvider,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
):
    connection = store.pause(store.get_connection_for_user(user_id, provider))
    return ConnectionResponse.from_projection(store.to_status_projection(connection))


@router.post("/{provider}/resume", response_model=ConnectionResponse)
async def resume_connection(
    provider: ConnectionProvider,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
):
    connection = store.resume(store.get_connection_for_user(user_id, provider))
    return ConnectionResponse.from_projection(store.to_status_projection(connection))


@router.delete("/{provider}", response_model=DisconnectResponse)
async def disconnect_connection(
    provider: ConnectionProvider,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
    adapters: Dict[ConnectionProvider, OAuthProviderAdapter] = Depends(get_provider_adapters),
):
    """Disconnect: revoke with the provider where supported, then delete."""
    connection = store.get_connection_for_user(user_id, provider)
    await store.disconnect(connection, adapters.get(provider))
    return DisconnectResponse(provider=provider.value)
