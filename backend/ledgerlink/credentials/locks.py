"""
Per-connection refresh locks.

RefreshLockRegistry is the process-local single-flight map: at most one
in-flight refresh future per connection id. Claiming is a synchronous
check-and-insert, so no other task can interleave between the check and
the insert.

RedisRefreshLease optionally extends the guard across instances with a
`SET NX PX` lease. Redis failures degrade to the process-local lock.
"""

import asyncio
import logging
import secrets
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

LEASE_KEY_PREFIX = "ledgerlink:refresh_lease:"

# Compare-and-delete so an expired lease taken over by another instance is not released
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RefreshLockRegistry:
    """Maps connection id to the future of its in-flight refresh."""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    def claim(self, connection_id: str) -> Tuple[asyncio.Future, bool]:
        """
        Return (future, is_owner).

        The owner must resolve the future and call release(); everyone else
        awaits the returned future.
        """
        existing = self._inflight.get(connection_id)
        if existing is not None and not existing.done():
            return existing, False

        future = asyncio.get_running_loop().create_future()
        self._inflight[connection_id] = future
        return future, True

    def release(self, connection_id: str, future: asyncio.Future) -> None:
        if self._inflight.get(connection_id) is future:
            del self._inflight[connection_id]


_default_registry = RefreshLockRegistry()


def get_refresh_lock_registry() -> RefreshLockRegistry:
    """Process-wide registry shared by every coordinator instance."""
    return _default_registry


class RedisRefreshLease:
    """
    Cross-instance refresh lease backed by Redis.

    All methods handle Redis failures gracefully: they log a warning and
    fall back to process-local behaviour rather than raising.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        lease_seconds: int = 30,
        poll_interval: float = 0.25,
    ):
        self._redis = redis_client
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval

    @classmethod
    def from_url(cls, url: str, lease_seconds: int = 30) -> "RedisRefreshLease":
        return cls(aioredis.from_url(url), lease_seconds=lease_seconds)

    @staticmethod
    def _key(connection_id: str) -> str:
        return f"{LEASE_KEY_PREFIX}{connection_id}"

    async def acquire(self, connection_id: str) -> Optional[str]:
        """
        Try to take the lease.

        Returns:
            Lease token when acquired (or when Redis is unavailable),
            None when another instance holds the lease
        """
        token = secrets.token_hex(16)
        try:
            acquired = await self._redis.set(
                self._key(connection_id),
                token,
                nx=True,
                px=int(self.lease_seconds * 1000),
            )
        except Exception:
            logger.warning(
                "Refresh lease unavailable, using process-local lock only",
                extra={"connection_id": connection_id},
                exc_info=True,
            )
            return token
        return token if acquired else None

    async def wait_released(self, connection_id: str) -> None:
        """Poll until the lease is gone or a full lease period has passed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lease_seconds
        while loop.time() < deadline:
            try:
                if not await self._redis.exists(self._key(connection_id)):
                    return
            except Exception:
                logger.warning(
                    "Failed to poll refresh lease",
                    extra={"connection_id": connection_id},
                    exc_info=True,
                )
                return
            await asyncio.sleep(self.poll_interval)

    async def release(self, connection_id: str, token: str) -> None:
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(connection_id), token)
        except Exception:
            logger.warning(
                "Failed to release refresh lease",
                extra={"connection_id": connection_id},
                exc_info=True,
            )
