"""Replay protection for accepted TOTP codes.

Entries are keyed by the raw code value only, not by secret or session. Two
admins whose codes happen to collide inside the TTL will block each other;
that behaviour is kept deliberately and covered by tests.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Union

from admingate.logging import get_logger
from admingate.storage.redis_cache import RedisCache, SyncRedisCache

DEFAULT_TTL_SECONDS = 5 * 60

logger = get_logger(__name__)


class TokenGuard(Protocol):
    async def is_used(self, token: str) -> bool: ...

    async def mark_used(self, token: str) -> None: ...

    async def claim(self, token: str) -> bool: ...


class ReplayGuard:
    """Process-local TTL map of accepted codes.

    Expiry is lazy: stale entries are dropped whenever the map is touched,
    so no timer or background task is needed.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._used: Dict[str, float] = {}

    def _purge(self, now: float) -> None:
        expired = [token for token, until in self._used.items() if until <= now]
        for token in expired:
            del self._used[token]

    async def is_used(self, token: str) -> bool:
        with self._lock:
            self._purge(self._clock())
            return token in self._used

    async def mark_used(self, token: str) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._used[token] = now + self.ttl_seconds

    async def claim(self, token: str) -> bool:
        with self._lock:
            now = self._clock()
            self._purge(now)
            if token in self._used:
                return False
            self._used[token] = now + self.ttl_seconds
            return True

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._used)


class RedisReplayGuard:
    """Replay guard backed by Redis keys with a TTL (``SET NX EX``)."""

    def __init__(
        self,
        cache: Union[RedisCache, SyncRedisCache],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def is_used(self, token: str) -> bool:
        return await self.cache.is_totp_token_used(token)

    async def mark_used(self, token: str) -> None:
        await self.cache.mark_totp_token_used(token, self.ttl_seconds)

    async def claim(self, token: str) -> bool:
        claimed = await self.cache.claim_totp_token(token, self.ttl_seconds)
        if not claimed:
            logger.info("totp_token_already_claimed")
        return claimed


__all__ = ["DEFAULT_TTL_SECONDS", "RedisReplayGuard", "ReplayGuard", "TokenGuard"]
