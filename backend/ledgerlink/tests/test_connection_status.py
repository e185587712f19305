"""Connection status aggregation tests."""

from datetime import datetime, timedelta, timezone

import pytest

from ledgerlink.credentials.status import compute_status
from ledgerlink.models.connection import ConnectionProvider, ConnectionStatus, ProviderConnection

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BUFFER = timedelta(minutes=10)


def _connection(status=ConnectionStatus.ACTIVE, expires_in=timedelta(hours=1)):
    return ProviderConnection(
        user_id="user-1",
        provider=ConnectionProvider.QUICKBOOKS,
        access_token_encrypted="v1:irrelevant",
        access_token_expires_at=NOW + expires_in,
        status=status,
    )


class TestComputeStatus:

    def test_fresh_active(self):
        view = compute_status(_connection(), now=NOW, buffer=BUFFER)
        assert view.usable
        assert not view.needs_refresh
        assert not view.expired
        assert not view.reconnect_required
        assert not view.paused

    def test_inside_buffer_needs_refresh_but_still_usable(self):
        view = compute_status(_connection(expires_in=timedelta(minutes=5)), now=NOW, buffer=BUFFER)
        assert view.usable
        assert view.needs_refresh
        assert not view.expired

    def test_exactly_at_buffer_needs_refresh(self):
        view = compute_status(_connection(expires_in=BUFFER), now=NOW, buffer=BUFFER)
        assert view.needs_refresh

    def test_expired(self):
        view = compute_status(_connection(expires_in=timedelta(seconds=-1)), now=NOW, buffer=BUFFER)
        assert view.expired
        assert not view.usable
        assert view.needs_refresh

    def test_inactive(self):
        view = compute_status(_connection(status=ConnectionStatus.INACTIVE), now=NOW, buffer=BUFFER)
        assert view.reconnect_required
        assert not view.usable
        assert not view.needs_refresh

    def test_paused(self):
        view = compute_status(
            _connection(status=ConnectionStatus.PAUSED, expires_in=timedelta(minutes=1)),
            now=NOW,
            buffer=BUFFER,
        )
        assert view.paused
        assert not view.usable
        assert not view.needs_refresh

    def test_naive_now_treated_as_utc(self):
        view = compute_status(_connection(), now=NOW.replace(tzinfo=None), buffer=BUFFER)
        assert view.usable

    @pytest.mark.parametrize("status", list(ConnectionStatus))
    def test_default_buffer(self, status):
        view = compute_status(_connection(status=status, expires_in=timedelta(minutes=4)), now=NOW)
        assert view.needs_refresh == (status == ConnectionStatus.ACTIVE)
