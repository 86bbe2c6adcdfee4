from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the session-token deny-list."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_seconds(expires_at: datetime, now: datetime) -> int:
        """Remaining lifetime in whole seconds, clamped to at least one.

        Naive timestamps are treated as UTC.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the deny-list."""
        # short-lived sync client so the async client is not bound to a
        # temporary event loop during startup
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:session:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:session:denylist:{jti}"))

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
