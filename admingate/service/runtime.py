from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from admingate.config import get_settings, reset_settings_cache
from admingate.logging import get_logger
from admingate.service.enrollment import TwoFactorEnrollment
from admingate.service.replay_guard import RedisReplayGuard, ReplayGuard, TokenGuard
from admingate.service.session import SessionManager
from admingate.service.two_factor import TwoFactorAuth
from admingate.storage.memory import MemoryStore
from admingate.storage.postgres import PostgresStore
from admingate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the per-process service instances."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        self.close_task: Optional[asyncio.Task] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

            if not self.cache:
                if (
                    not self.settings.test_mode
                    and not self.settings.allow_redis_fallback_dev
                ):
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; start Redis or set "
                        "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process replay guard."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_unavailable",
                    message="Replay protection is process-local only.",
                )

        ttl = self.settings.replay_guard_ttl_seconds
        self.replay_guard: TokenGuard = (
            RedisReplayGuard(self.cache, ttl_seconds=ttl)
            if self.cache
            else ReplayGuard(ttl_seconds=ttl)
        )
        self.two_factor = TwoFactorAuth(
            self.settings.totp_issuer,
            digits=self.settings.totp_digits,
            period=self.settings.totp_period_seconds,
            window=self.settings.totp_window_steps,
            guard=self.replay_guard,
        )
        self.sessions = SessionManager(
            self.store,
            self.two_factor,
            self.replay_guard,
            validity_minutes=self.settings.session_validity_minutes,
            cleanup_interval_minutes=self.settings.session_cleanup_interval_minutes,
        )
        self.enrollment = TwoFactorEnrollment(
            self.store,
            self.two_factor,
            backup_code_count=self.settings.backup_code_count,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            session_validity_minutes=self.settings.session_validity_minutes,
            totp_window_steps=self.settings.totp_window_steps,
        )

    def close(self) -> Optional[asyncio.Task]:
        """Release cache and database connections.

        Inside a running event loop the async cache is closed by a task that is
        returned, and kept on ``close_task``, so callers can await it.
        """
        task: Optional[asyncio.Task] = None
        if self.cache is not None:
            try:
                if isinstance(self.cache, SyncRedisCache):
                    self.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        asyncio.run(self.cache.close())
                    else:
                        task = loop.create_task(self.cache.close())
                        task.add_done_callback(_log_close_failure)
                        self.close_task = task
            except Exception as exc:
                # Connection may already be closed
                logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()
        return task


def _log_close_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it once under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
