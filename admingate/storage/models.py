from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    ip_address: str
    user_agent: str
    created_at: datetime
    is_authenticated: bool = False
    two_factor_verified: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        ip_address: str,
        user_agent: str,
        validity_minutes: int = 30,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        if validity_minutes <= 0:
            raise ValueError("validity_minutes must be positive")
        created = now or utcnow()
        return cls(
            id=secrets.token_hex(32),
            user_id=user_id,
            expires_at=created + timedelta(minutes=validity_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class AdminUser:
    id: str
    email: str
    name: str
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionStats:
    """Counts over the process-local session cache, not the whole store."""

    active_sessions: int
    total_sessions: int
    expired_sessions: int


@dataclass
class GeneratedSecret:
    secret: str
    otpauth_url: str


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code_url: str
    backup_codes: List[str]


@dataclass
class BackupCodeResult:
    is_valid: bool
    remaining_codes: List[str]


@dataclass
class TwoFactorStatus:
    enabled: bool
    has_secret: bool
    backup_codes_remaining: int
