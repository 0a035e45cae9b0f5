from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

REVOKED_PREFIX = "auth:revoked:"


def revoked_key(token_key: str) -> str:
    return f"{REVOKED_PREFIX}{token_key}"


def _client_options(socket_timeout: float) -> dict:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
    }


class RedisCache:
    """Revoked-token markers in Redis; each key expires with its token."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._socket_timeout = socket_timeout
        self.client = aioredis.from_url(redis_url, **_client_options(socket_timeout))

    def verify_connection(self) -> None:
        # Startup runs outside the serving loop, so probe with a throwaway sync client
        probe = Redis.from_url(self.redis_url, **_client_options(self._socket_timeout))
        try:
            probe.ping()
        finally:
            probe.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def revoke(self, token_key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(revoked_key(token_key), "1", ex=ttl_seconds)

    async def is_revoked(self, token_key: str) -> bool:
        return await self.client.exists(revoked_key(token_key)) > 0

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same awaitable surface as RedisCache over a blocking client.

    Used under TEST_MODE, where each test may run on a fresh event loop and
    an asyncio connection pool would stay bound to the first one.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(redis_url, **_client_options(socket_timeout))

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def revoke(self, token_key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self.client.set(revoked_key(token_key), "1", ex=ttl_seconds)

    async def is_revoked(self, token_key: str) -> bool:
        return self.client.exists(revoked_key(token_key)) > 0

    async def close(self) -> None:
        self.client.close()


def describe_cache(cache: Optional[object]) -> str:
    """Short label for logs and the health check."""
    if isinstance(cache, RedisCache):
        return "redis"
    if isinstance(cache, SyncRedisCache):
        return "redis_sync"
    return "memory"
