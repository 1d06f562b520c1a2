from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin session and two-factor core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/admingate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/admingate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    session_validity_minutes: int = env_field(
        30,
        "SESSION_VALIDITY_MINUTES",
        description="Lifetime of a newly created admin session",
    )
    session_cleanup_interval_minutes: int = env_field(
        5,
        "SESSION_CLEANUP_INTERVAL_MINUTES",
        description="Minimum spacing between expired-session sweeps",
    )
    totp_issuer: str = env_field("Admin Console", "TOTP_ISSUER")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_period_seconds: int = env_field(30, "TOTP_PERIOD_SECONDS")
    totp_window_steps: int = env_field(
        2,
        "TOTP_WINDOW_STEPS",
        description="Accepted clock drift in TOTP steps on either side of now",
    )
    replay_guard_ttl_seconds: int = env_field(
        300,
        "REPLAY_GUARD_TTL_SECONDS",
        description="How long an accepted TOTP code stays blocked",
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest (memory store)",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_validity_minutes",
        "session_cleanup_interval_minutes",
        "totp_period_seconds",
        "replay_guard_ttl_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_window_steps")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if not 0 <= value <= 10:
            raise ValueError("totp_window_steps must be between 0 and 10")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in (6, 8):
            raise ValueError("totp_digits must be 6 or 8")
        return value

    @field_validator("backup_code_count")
    @classmethod
    def _validate_backup_count(cls, value: int) -> int:
        if not 1 <= value <= 50:
            raise ValueError("backup_code_count must be between 1 and 50")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _replay_ttl_covers_window(self) -> "Settings":
        # A replayed code must stay blocked for as long as it can still verify
        window_seconds = (2 * self.totp_window_steps + 1) * self.totp_period_seconds
        if self.replay_guard_ttl_seconds < window_seconds:
            raise ValueError(
                "replay_guard_ttl_seconds must cover the TOTP acceptance window "
                f"({window_seconds}s)"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
