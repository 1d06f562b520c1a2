from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from admingate.logging import get_logger
from admingate.storage.common import (
    admin_from_row,
    admin_to_row,
    check_session_fields,
    session_from_row,
    session_to_row,
)
from admingate.storage.errors import ConstraintViolation, StoreError
from admingate.storage.models import AdminUser, Session


class MemoryStore:
    """In-memory session and admin store persisted to a JSON state file."""

    def __init__(
        self, fs_root: str = "/tmp/admingate", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.admins: Dict[str, AdminUser] = {}
        # RLock so helpers can nest under public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            key_path = self.fs_root / ".mfa_secret"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = ""
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _public_admin(self, stored: AdminUser) -> AdminUser:
        return dataclasses.replace(
            stored,
            two_factor_secret=self._decrypt_secret(stored.two_factor_secret),
            two_factor_backup_codes=list(stored.two_factor_backup_codes),
        )

    def _persist_or_rollback(self, rollback: Callable[[], None]) -> None:
        """Write the state file; undo the in-memory change if the write fails."""
        try:
            self._persist_state()
        except StoreError:
            rollback()
            raise

    # sessions
    def save_session(self, session: Session) -> None:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists")
            self.sessions[session.id] = dataclasses.replace(session)
            self._persist_or_rollback(lambda: self.sessions.pop(session.id, None))

    def find_session(
        self, session_id: str, *, active_at: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if active_at is not None and not sess.expires_at > active_at:
                return None
            return dataclasses.replace(sess)

    def update_session(self, session_id: str, **fields: bool) -> None:
        updates = check_session_fields(fields)
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not updates:
                return
            self.sessions[session_id] = dataclasses.replace(sess, **updates)
            self._persist_or_rollback(lambda: self.sessions.__setitem__(session_id, sess))

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._persist_or_rollback(
                    lambda: self.sessions.__setitem__(session_id, removed)
                )

    def _delete_sessions_where(self, predicate: Callable[[Session], bool]) -> int:
        with self._data_lock:
            stale = {sid: sess for sid, sess in self.sessions.items() if predicate(sess)}
            for sid in stale:
                del self.sessions[sid]
            if stale:
                self._persist_or_rollback(lambda: self.sessions.update(stale))
            return len(stale)

    def delete_user_sessions(self, user_id: str) -> int:
        return self._delete_sessions_where(lambda sess: sess.user_id == user_id)

    def delete_expired_sessions(self, now: datetime) -> int:
        return self._delete_sessions_where(lambda sess: sess.is_expired(now))

    # admins
    def create_admin(
        self, email: str, name: str, *, admin_id: Optional[str] = None
    ) -> AdminUser:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(a.email == normalized for a in self.admins.values()):
                raise ConstraintViolation("email already exists", {"email": email})
            admin = AdminUser(id=admin_id or str(uuid.uuid4()), email=normalized, name=name)
            if admin.id in self.admins:
                raise ConstraintViolation("admin id already exists", {"id": admin.id})
            self.admins[admin.id] = admin
            self._persist_or_rollback(lambda: self.admins.pop(admin.id, None))
            return self._public_admin(admin)

    def get_admin(self, user_id: str) -> Optional[AdminUser]:
        with self._data_lock:
            admin = self.admins.get(user_id)
            return self._public_admin(admin) if admin else None

    def get_admin_by_email(self, email: str) -> Optional[AdminUser]:
        normalized = email.strip().lower()
        with self._data_lock:
            for admin in self.admins.values():
                if admin.email == normalized:
                    return self._public_admin(admin)
        return None

    def _swap_admin(self, admin: AdminUser, **changes) -> AdminUser:
        updated = dataclasses.replace(admin, **changes)
        self.admins[admin.id] = updated
        self._persist_or_rollback(lambda: self.admins.__setitem__(admin.id, admin))
        return updated

    def replace_backup_codes(
        self, user_id: str, expected: List[str], remaining: List[str]
    ) -> bool:
        with self._data_lock:
            admin = self.admins.get(user_id)
            if not admin:
                raise ConstraintViolation("admin not found", {"user_id": user_id})
            if admin.two_factor_backup_codes != list(expected):
                return False
            self._swap_admin(admin, two_factor_backup_codes=list(remaining))
            return True

    def set_two_factor(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        backup_codes: List[str],
        enabled: bool,
    ) -> AdminUser:
        with self._data_lock:
            admin = self.admins.get(user_id)
            if not admin:
                raise ConstraintViolation("admin not found", {"user_id": user_id})
            updated = self._swap_admin(
                admin,
                two_factor_secret=self._encrypt_secret(secret),
                two_factor_backup_codes=list(backup_codes),
                two_factor_enabled=enabled,
            )
            return self._public_admin(updated)

    def _persist_state(self) -> None:
        state = {
            "sessions": [session_to_row(s) for s in self.sessions.values()],
            # secrets stay encrypted on disk
            "admins": [admin_to_row(a) for a in self.admins.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: session_from_row(s) for s in data.get("sessions", [])
        }
        self.admins = {a["id"]: admin_from_row(a) for a in data.get("admins", [])}
        return True


__all__ = ["MemoryStore"]
