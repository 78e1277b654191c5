from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


def _denylist_key(token_id: str) -> str:
    return f"fleetauth:token:denylist:{token_id}"


class RedisCache:
    """Thin Redis wrapper holding the short-lived revoked-token denylist.

    Entries expire together with the token they refer to. The store remains
    the authority on revocation; this cache only lets verification reject a
    revoked token without a database round trip.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(_denylist_key(token_id), "1", ex=ttl_seconds)

    async def is_token_denylisted(self, token_id: str) -> bool:
        return bool(await self.client.exists(_denylist_key(token_id)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def denylist_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(_denylist_key(token_id), "1", ex=ttl_seconds)

    async def is_token_denylisted(self, token_id: str) -> bool:
        return bool(self.client.exists(_denylist_key(token_id)))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
