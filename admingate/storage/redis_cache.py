from __future__ import annotations

import hashlib

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for state that must outlive a single process."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _totp_key(token: str) -> str:
        # Raw codes are short-lived credentials; keep them out of key listings
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"totp:used:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_totp_token(self, token: str, ttl_seconds: int) -> bool:
        """Atomically mark ``token`` used; False if it was already marked."""
        created = await self.client.set(
            self._totp_key(token), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(created)

    async def is_totp_token_used(self, token: str) -> bool:
        return bool(await self.client.exists(self._totp_key(token)))

    async def mark_totp_token_used(self, token: str, ttl_seconds: int) -> None:
        await self.client.set(self._totp_key(token), "1", ex=max(1, ttl_seconds))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
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

    async def claim_totp_token(self, token: str, ttl_seconds: int) -> bool:
        created = self.client.set(
            RedisCache._totp_key(token), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(created)

    async def is_totp_token_used(self, token: str) -> bool:
        return bool(self.client.exists(RedisCache._totp_key(token)))

    async def mark_totp_token_used(self, token: str, ttl_seconds: int) -> None:
        self.client.set(RedisCache._totp_key(token), "1", ex=max(1, ttl_seconds))

    async def close(self) -> None:
        self.client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
