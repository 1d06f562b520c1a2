from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from admingate.logging import get_logger, session_ref
from admingate.service.errors import SessionCreationFailed
from admingate.service.replay_guard import TokenGuard
from admingate.service.two_factor import TwoFactorAuth
from admingate.storage.common import AdminStore, SessionStore
from admingate.storage.models import AdminUser, Session, SessionStats

logger = get_logger(__name__)


class SessionBackend(SessionStore, AdminStore, Protocol):
    """Everything the manager needs from persistence."""


class SessionManager:
    """Admin session lifecycle and the password -> 2FA state machine.

    Sessions are cached in-process in front of the store. Lookups read through
    the cache; writes go to the store first and then to the cache. Creation
    failures raise; every verification path answers ``None``/``False`` instead
    of raising so internal errors never reach a security decision.
    """

    def __init__(
        self,
        store: SessionBackend,
        two_factor: TwoFactorAuth,
        guard: TokenGuard,
        *,
        validity_minutes: int = 30,
        cleanup_interval_minutes: int = 5,
    ) -> None:
        self.store = store
        self.two_factor = two_factor
        self.guard = guard
        self.validity_minutes = validity_minutes
        self.cleanup_interval_minutes = cleanup_interval_minutes
        self.sessions: Dict[str, Session] = {}
        self._cache_lock = threading.Lock()
        self._last_cleanup = self._now()
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # cache helpers
    def _cache_get(self, session_id: str) -> Optional[Session]:
        with self._cache_lock:
            return self.sessions.get(session_id)

    def _cache_put(self, session: Session) -> None:
        with self._cache_lock:
            self.sessions[session.id] = session

    def _cache_evict(self, session_id: str) -> None:
        with self._cache_lock:
            self.sessions.pop(session_id, None)

    def _sweep_cache(self, now: datetime) -> int:
        with self._cache_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                del self.sessions[sid]
        return len(expired)

    async def create_session(
        self,
        user_id: str,
        ip_address: str,
        user_agent: str,
        validity_minutes: Optional[int] = None,
    ) -> str:
        minutes = self.validity_minutes if validity_minutes is None else validity_minutes
        now = self._now()
        try:
            session = Session.new(
                user_id, ip_address, user_agent, validity_minutes=minutes, now=now
            )
            self.store.save_session(session)
        except Exception as exc:
            self.logger.error(
                "session_creation_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise SessionCreationFailed("Session creation failed") from exc

        self._cache_put(session)
        swept = self._sweep_cache(now)
        self.logger.info(
            "session_created",
            user_id=user_id,
            sid_prefix=session_ref(session.id),
            expires_at=session.expires_at.isoformat(),
            cache_swept=swept,
        )
        return session.id

    async def validate_session(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        now = self._now()
        session = self._cache_get(session_id)
        if session is None:
            try:
                session = self.store.find_session(session_id, active_at=now)
            except Exception as exc:
                self.logger.error(
                    "session_lookup_failed",
                    sid_prefix=session_ref(session_id),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return None
            if session is None:
                return None
            self._cache_put(session)

        if session.is_expired(now):
            self._cache_evict(session_id)
            try:
                self.store.delete_session(session_id)
            except Exception as exc:
                self.logger.warning(
                    "expired_session_delete_failed",
                    sid_prefix=session_ref(session_id),
                    error=str(exc),
                )
            self.logger.info("session_expired", sid_prefix=session_ref(session_id))
            return None
        return session

    async def update_session(
        self,
        session_id: str,
        *,
        is_authenticated: Optional[bool] = None,
        two_factor_verified: Optional[bool] = None,
    ) -> bool:
        """Apply a state transition to a session already cached in this process."""
        session = self._cache_get(session_id)
        if session is None:
            return False
        updates: Dict[str, bool] = {}
        if is_authenticated is not None:
            updates["is_authenticated"] = is_authenticated
        if two_factor_verified is not None:
            updates["two_factor_verified"] = two_factor_verified
        if not updates:
            return True
        try:
            self.store.update_session(session_id, **updates)
        except Exception as exc:
            self.logger.error(
                "session_update_failed",
                sid_prefix=session_ref(session_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        with self._cache_lock:
            for name, value in updates.items():
                setattr(session, name, value)
        return True

    async def destroy_session(self, session_id: str) -> bool:
        self._cache_evict(session_id)
        try:
            self.store.delete_session(session_id)
        except Exception as exc:
            self.logger.error(
                "session_destroy_failed",
                sid_prefix=session_ref(session_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info("session_destroyed", sid_prefix=session_ref(session_id))
        return True

    async def destroy_all_user_sessions(self, user_id: str) -> bool:
        with self._cache_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                del self.sessions[sid]
        try:
            removed = self.store.delete_user_sessions(user_id)
        except Exception as exc:
            self.logger.error(
                "destroy_all_sessions_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info(
            "user_sessions_destroyed", user_id=user_id, cached=len(stale), stored=removed
        )
        return True

    async def get_admin(self, user_id: str) -> Optional[AdminUser]:
        try:
            return self.store.get_admin(user_id)
        except Exception as exc:
            self.logger.error(
                "admin_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def verify_two_factor(
        self, session_id: str, token: str, backup_code: Optional[str] = None
    ) -> bool:
        session = await self.validate_session(session_id)
        if session is None:
            return False
        user = await self.get_admin(session.user_id)
        if user is None or not user.two_factor_enabled:
            return False

        try:
            if backup_code:
                verified = await self._consume_backup_code(user, backup_code)
            elif user.two_factor_secret:
                verified = await self._accept_totp(user, token)
            else:
                verified = False
        except Exception as exc:
            self.logger.error(
                "two_factor_verification_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        if not verified:
            self.logger.info(
                "two_factor_rejected",
                user_id=user.id,
                sid_prefix=session_ref(session_id),
                method="backup_code" if backup_code else "totp",
            )
            return False
        if not await self.update_session(session_id, two_factor_verified=True):
            return False
        self.logger.info(
            "two_factor_verified",
            user_id=user.id,
            sid_prefix=session_ref(session_id),
            method="backup_code" if backup_code else "totp",
        )
        return True

    async def _consume_backup_code(self, user: AdminUser, backup_code: str) -> bool:
        codes = user.two_factor_backup_codes
        if not codes:
            return False
        result = self.two_factor.verify_backup_code(codes, backup_code)
        if not result.is_valid:
            return False
        # Persisting the shorter list is what makes a backup code single-use
        swapped = self.store.replace_backup_codes(user.id, codes, result.remaining_codes)
        if not swapped:
            self.logger.warning("backup_code_race_lost", user_id=user.id)
            return False
        self.logger.info(
            "backup_code_consumed", user_id=user.id, remaining=len(result.remaining_codes)
        )
        return True

    async def _accept_totp(self, user: AdminUser, token: str) -> bool:
        if not self.two_factor.verify_token(user.two_factor_secret or "", token):
            return False
        candidate = "".join(token.split())
        if not await self.guard.claim(candidate):
            self.logger.warning("totp_replay_rejected", user_id=user.id)
            return False
        return True

    async def audit_session(
        self, session_id: str, ip_address: str, user_agent: str
    ) -> bool:
        """Check the caller's fingerprint against the one bound at creation.

        An IP change ends the session; a user-agent change is only logged.
        """
        session = await self.validate_session(session_id)
        if session is None:
            return False
        if session.ip_address != ip_address:
            self.logger.warning(
                "session_ip_changed",
                sid_prefix=session_ref(session_id),
                user_id=session.user_id,
                previous_ip=session.ip_address,
                current_ip=ip_address,
            )
            await self.destroy_session(session_id)
            return False
        if session.user_agent != user_agent:
            self.logger.warning(
                "session_user_agent_changed",
                sid_prefix=session_ref(session_id),
                user_id=session.user_id,
            )
        return True

    async def is_fully_authenticated(self, session_id: str) -> bool:
        session = await self.validate_session(session_id)
        if session is None or not session.is_authenticated:
            return False
        if session.two_factor_verified:
            return True
        user = await self.get_admin(session.user_id)
        # Unknown owner is treated as a failed check, never as "2FA off"
        return user is not None and not user.two_factor_enabled

    def get_session_stats(self) -> SessionStats:
        """Counts over this process's cache; sessions only in the store are not seen."""
        now = self._now()
        with self._cache_lock:
            total = len(self.sessions)
            expired = sum(1 for sess in self.sessions.values() if sess.is_expired(now))
        return SessionStats(
            active_sessions=total - expired,
            total_sessions=total,
            expired_sessions=expired,
        )

    async def purge_expired(self) -> int:
        now = self._now()
        swept = self._sweep_cache(now)
        try:
            removed = self.store.delete_expired_sessions(now)
        except Exception as exc:
            self.logger.error(
                "expired_session_purge_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            removed = 0
        self._last_cleanup = now
        if swept or removed:
            self.logger.info("expired_sessions_purged", cached=swept, stored=removed)
        return removed

    async def maybe_cleanup(self, interval_minutes: Optional[int] = None) -> int:
        interval = (
            self.cleanup_interval_minutes if interval_minutes is None else interval_minutes
        )
        if self._now() - self._last_cleanup < timedelta(minutes=interval):
            return 0
        return await self.purge_expired()


__all__ = ["SessionBackend", "SessionManager"]
