"""Refresh lock registry and Redis lease tests."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ledgerlink.credentials.locks import (
    LEASE_KEY_PREFIX,
    RedisRefreshLease,
    RefreshLockRegistry,
    get_refresh_lock_registry,
)


class TestRefreshLockRegistry:

    @pytest.mark.asyncio
    async def test_first_claim_owns(self):
        registry = RefreshLockRegistry()

        future, is_owner = registry.claim("conn-1")
        second, second_is_owner = registry.claim("conn-1")

        assert is_owner
        assert not second_is_owner
        assert second is future

    @pytest.mark.asyncio
    async def test_connections_are_independent(self):
        registry = RefreshLockRegistry()
        _, first = registry.claim("conn-1")
        _, second = registry.claim("conn-2")
        assert first and second

    @pytest.mark.asyncio
    async def test_release_frees_slot(self):
        registry = RefreshLockRegistry()
        future, _ = registry.claim("conn-1")
        registry.release("conn-1", future)

        # Even an unresolved future no longer blocks new claims once released
        second, is_owner = registry.claim("conn-1")
        assert is_owner
        assert second is not future

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_future(self):
        registry = RefreshLockRegistry()
        future, _ = registry.claim("conn-1")
        registry.release("conn-1", asyncio.get_running_loop().create_future())

        second, is_owner = registry.claim("conn-1")
        assert not is_owner
        assert second is future

    def test_process_wide_registry(self):
        assert get_refresh_lock_registry() is get_refresh_lock_registry()


class TestRedisRefreshLease:

    @pytest.mark.asyncio
    async def test_acquire(self):
        redis_client = AsyncMock()
        redis_client.set.return_value = True
        lease = RedisRefreshLease(redis_client, lease_seconds=30)

        token = await lease.acquire("conn-1")

        assert token
        redis_client.set.assert_awaited_once_with(
            f"{LEASE_KEY_PREFIX}conn-1", token, nx=True, px=30000
        )

    @pytest.mark.asyncio
    async def test_acquire_held_elsewhere(self):
        redis_client = AsyncMock()
        redis_client.set.return_value = None
        lease = RedisRefreshLease(redis_client)

        assert await lease.acquire("conn-1") is None

    @pytest.mark.asyncio
    async def test_acquire_fails_open(self):
        redis_client = AsyncMock()
        redis_client.set.side_effect = RedisConnectionError("redis down")
        lease = RedisRefreshLease(redis_client)

        assert await lease.acquire("conn-1") is not None

    @pytest.mark.asyncio
    async def test_release_uses_token(self):
        redis_client = AsyncMock()
        lease = RedisRefreshLease(redis_client)

        await lease.release("conn-1", "lease-token")

        args = redis_client.eval.await_args.args
        assert args[1:] == (1, f"{LEASE_KEY_PREFIX}conn-1", "lease-token")

    @pytest.mark.asyncio
    async def test_release_swallows_redis_errors(self):
        redis_client = AsyncMock()
        redis_client.eval.side_effect = RedisConnectionError("redis down")
        await RedisRefreshLease(redis_client).release("conn-1", "lease-token")

    @pytest.mark.asyncio
    async def test_wait_released_polls_until_gone(self):
        redis_client = AsyncMock()
        redis_client.exists.side_effect = [1, 1, 0]
        lease = RedisRefreshLease(redis_client, poll_interval=0)

        await lease.wait_released("conn-1")

        assert redis_client.exists.await_count == 3

    @pytest.mark.asyncio
    async def test_wait_released_gives_up_after_lease_period(self):
        redis_client = AsyncMock()
        redis_client.exists.return_value = 1
        lease = RedisRefreshLease(redis_client, lease_seconds=0.05, poll_interval=0.01)

        await asyncio.wait_for(lease.wait_released("conn-1"), timeout=1)
