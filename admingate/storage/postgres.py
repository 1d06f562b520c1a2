from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from admingate.logging import get_logger
from admingate.storage.common import (
    admin_from_row,
    check_session_fields,
    decode_backup_codes,
    encode_backup_codes,
    session_from_row,
)
from admingate.storage.errors import ConstraintViolation
from admingate.storage.models import AdminUser, Session

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS admins (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT NULL,
        two_factor_backup_codes TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_authenticated BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_verified BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS admin_sessions_user_id_idx ON admin_sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS admin_sessions_expires_at_idx ON admin_sessions (expires_at)",
)


class PostgresStore:
    """Thin Postgres-backed store for admin sessions and admin 2FA state."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``admins`` and ``admin_sessions`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # sessions
    def save_session(self, session: Session) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_sessions (id, user_id, expires_at, ip_address, user_agent, created_at, is_authenticated, two_factor_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.is_authenticated,
                        session.two_factor_verified,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session id already exists") from exc

    def find_session(
        self, session_id: str, *, active_at: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            if active_at is None:
                row = conn.execute(
                    "SELECT * FROM admin_sessions WHERE id = %s", (session_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM admin_sessions WHERE id = %s AND expires_at > %s",
                    (session_id, active_at),
                ).fetchone()
        if not row:
            return None
        return session_from_row(row)

    def update_session(self, session_id: str, **fields: bool) -> None:
        updates = check_session_fields(fields)
        if not updates:
            return
        # Column names come from the MUTABLE_SESSION_FIELDS allow-list
        assignments = ", ".join(f"{name} = %s" for name in updates)
        params: List[Any] = list(updates.values())
        params.append(session_id)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE admin_sessions SET {assignments} WHERE id = %s",
                params,
            )

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM admin_sessions WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM admin_sessions WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM admin_sessions WHERE expires_at < %s", (now,)
            )
            removed = result.rowcount
        if removed:
            self.logger.info("expired_sessions_deleted", count=removed)
        return removed

    # admins
    def create_admin(
        self, email: str, name: str, *, admin_id: Optional[str] = None
    ) -> AdminUser:
        new_id = admin_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admins (id, email, name, two_factor_enabled, created_at)
                    VALUES (%s, %s, %s, FALSE, now())
                    RETURNING *
                    """,
                    (new_id, email.strip().lower(), name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"email": email}) from exc
        return admin_from_row(row)

    def get_admin(self, user_id: str) -> Optional[AdminUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, email, name, two_factor_enabled, two_factor_secret, two_factor_backup_codes, created_at
                FROM admins WHERE id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return admin_from_row(row)

    def get_admin_by_email(self, email: str) -> Optional[AdminUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admins WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return admin_from_row(row)

    def replace_backup_codes(
        self, user_id: str, expected: List[str], remaining: List[str]
    ) -> bool:
        """Compare-and-swap the backup code list.

        The row is locked and its codes decoded before comparing, so any JSON
        spelling of the same list matches ``expected``. A concurrent consumer
        that got there first changes the list and this call returns False.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT two_factor_backup_codes FROM admins WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation("admin not found", {"user_id": user_id})
            swapped = decode_backup_codes(row["two_factor_backup_codes"]) == list(expected)
            if swapped:
                conn.execute(
                    "UPDATE admins SET two_factor_backup_codes = %s WHERE id = %s",
                    (encode_backup_codes(remaining), user_id),
                )
        if not swapped:
            self.logger.warning("backup_codes_swap_conflict", user_id=user_id)
        return swapped

    def set_two_factor(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        backup_codes: List[str],
        enabled: bool,
    ) -> AdminUser:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE admins
                    SET two_factor_secret = %s, two_factor_backup_codes = %s, two_factor_enabled = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        secret,
                        encode_backup_codes(backup_codes) if backup_codes else None,
                        enabled,
                        user_id,
                    ),
                ).fetchone()
        except Exception as exc:
            self.logger.warning("set_two_factor_failed", user_id=user_id, error=str(exc))
            raise
        if not row:
            raise ConstraintViolation("admin not found", {"user_id": user_id})
        return admin_from_row(row)


__all__ = ["PostgresStore"]
