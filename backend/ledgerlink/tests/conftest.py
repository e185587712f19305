"""
Shared fixtures: in-memory SQLite, token vault, connection factory.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ledgerlink.models  # noqa: F401  (registers mappers)
from ledgerlink.credentials.encryption import get_token_vault, reset_token_vault
from ledgerlink.db_base import Base
from ledgerlink.models.connection import ConnectionProvider, ConnectionStatus, ProviderConnection

from helpers import USER_ID

# Base64 of 32 bytes; obviously fake
TEST_ENCRYPTION_KEY = "dGVzdC1sZWRnZXJsaW5rLWVuY3J5cHRpb24ta2V5ISE="


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Known encryption key, no Redis lease, fresh vault per test."""
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.delenv("REFRESH_LOCK_REDIS_URL", raising=False)
    reset_token_vault()
    yield
    reset_token_vault()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def vault():
    return get_token_vault()


@pytest.fixture
def connection_factory(db_session, vault):
    """Insert a ProviderConnection directly, bypassing the store."""

    def _make(
        provider: ConnectionProvider = ConnectionProvider.QUICKBOOKS,
        user_id: str = USER_ID,
        access_token: str = "test_access_token_not_real",
        refresh_token: Optional[str] = "test_refresh_token_not_real",
        expires_in: timedelta = timedelta(hours=1),
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
        **fields,
    ) -> ProviderConnection:
        connection = ProviderConnection(
            user_id=user_id,
            provider=provider,
            access_token_encrypted=vault.encrypt(access_token),
            refresh_token_encrypted=vault.encrypt(refresh_token) if refresh_token is not None else None,
            access_token_expires_at=datetime.now(timezone.utc) + expires_in,
            status=status,
            **fields,
        )
        db_session.add(connection)
        db_session.commit()
        return connection

    return _make

