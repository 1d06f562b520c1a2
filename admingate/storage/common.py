"""Common storage utilities shared between memory and postgres implementations.

Rows coming back from either backend are loosely typed (psycopg ``dict_row``
results, or JSON-decoded dicts from the memory state file). The mappers here
are the only place those rows are turned into ``Session``/``AdminUser``
objects, so nothing above the storage layer handles raw rows.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from admingate.storage.models import AdminUser, Session

# Fields of a session that may change after creation
MUTABLE_SESSION_FIELDS = frozenset({"is_authenticated", "two_factor_verified"})


class SessionStore(Protocol):
    def save_session(self, session: Session) -> None: ...

    def find_session(
        self, session_id: str, *, active_at: Optional[datetime] = None
    ) -> Optional[Session]: ...

    def update_session(self, session_id: str, **fields: bool) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class AdminStore(Protocol):
    def create_admin(
        self, email: str, name: str, *, admin_id: Optional[str] = None
    ) -> AdminUser: ...

    def get_admin(self, user_id: str) -> Optional[AdminUser]: ...

    def get_admin_by_email(self, email: str) -> Optional[AdminUser]: ...

    def replace_backup_codes(
        self, user_id: str, expected: List[str], remaining: List[str]
    ) -> bool: ...

    def set_two_factor(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        backup_codes: List[str],
        enabled: bool,
    ) -> AdminUser: ...


def check_session_fields(fields: Mapping[str, Any]) -> Dict[str, bool]:
    """Reject attempts to patch immutable session columns."""

    unknown = set(fields) - MUTABLE_SESSION_FIELDS
    if unknown:
        raise ValueError(f"immutable session fields: {sorted(unknown)}")
    return {key: bool(value) for key, value in fields.items() if value is not None}


def as_utc(value: Any) -> datetime:
    """Coerce a stored timestamp into an aware UTC datetime."""

    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise TypeError(f"unsupported timestamp value: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_backup_codes(codes: Iterable[str]) -> str:
    return json.dumps(list(codes))


def decode_backup_codes(raw: Any) -> List[str]:
    """Decode the JSON-encoded backup code column; NULL/garbage means none."""

    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return [str(code) for code in raw]
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(decoded, list):
        return []
    return [str(code) for code in decoded]


def session_from_row(row: Mapping[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        expires_at=as_utc(row["expires_at"]),
        ip_address=row.get("ip_address") or "",
        user_agent=row.get("user_agent") or "",
        created_at=as_utc(row["created_at"]),
        is_authenticated=bool(row.get("is_authenticated") or False),
        two_factor_verified=bool(row.get("two_factor_verified") or False),
    )


def session_to_row(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "expires_at": session.expires_at.isoformat(),
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "created_at": session.created_at.isoformat(),
        "is_authenticated": session.is_authenticated,
        "two_factor_verified": session.two_factor_verified,
    }


def admin_from_row(row: Mapping[str, Any]) -> AdminUser:
    created = row.get("created_at")
    admin = AdminUser(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name") or "",
        two_factor_enabled=bool(row.get("two_factor_enabled") or False),
        two_factor_secret=row.get("two_factor_secret") or None,
        two_factor_backup_codes=decode_backup_codes(row.get("two_factor_backup_codes")),
    )
    if created is not None:
        admin.created_at = as_utc(created)
    return admin


def admin_to_row(admin: AdminUser) -> Dict[str, Any]:
    return {
        "id": admin.id,
        "email": admin.email,
        "name": admin.name,
        "two_factor_enabled": admin.two_factor_enabled,
        "two_factor_secret": admin.two_factor_secret,
        "two_factor_backup_codes": encode_backup_codes(admin.two_factor_backup_codes),
        "created_at": admin.created_at.isoformat(),
    }


__all__ = [
    "AdminStore",
    "MUTABLE_SESSION_FIELDS",
    "SessionStore",
    "admin_from_row",
    "admin_to_row",
    "as_utc",
    "check_session_fields",
    "decode_backup_codes",
    "encode_backup_codes",
    "session_from_row",
    "session_to_row",
]
