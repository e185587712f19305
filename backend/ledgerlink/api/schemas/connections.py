"""
Connection status schemas for the Connections API.

SECURITY: No schema here carries token material.
"""

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel

from ledgerlink.credentials.store import ConnectionStatusProjection


class ConnectionErrorInfo(BaseModel):
    message: Optional[str] = None
    code: Optional[str] = None
    timestamp: Optional[datetime] = None


class ConnectionResponse(BaseModel):
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
    last_error: Optional[ConnectionErrorInfo] = None

    @classmethod
    def from_projection(cls, projection: ConnectionStatusProjection) -> "ConnectionResponse":
        return cls(**projection.to_dict())


class ConnectionListResponse(BaseModel):
    connections: List[ConnectionResponse]
    total: int


class DisconnectResponse(BaseModel):
    status: str = "disconnected"
    provider: str
