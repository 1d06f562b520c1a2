from __future__ import annotations

from typing import List, Optional

from admingate.logging import get_logger
from admingate.service.errors import (
    ConflictError,
    NotFoundError,
    TwoFactorSetupError,
    ValidationError,
)
from admingate.service.two_factor import TwoFactorAuth
from admingate.storage.common import AdminStore
from admingate.storage.models import AdminUser, TwoFactorSetup, TwoFactorStatus

logger = get_logger(__name__)


class TwoFactorEnrollment:
    """Setting up, confirming and tearing down an admin's second factor.

    These are provisioning operations: unknown admins and storage failures
    raise ``ServiceError`` subclasses rather than answering ``False``.
    """

    def __init__(
        self, store: AdminStore, two_factor: TwoFactorAuth, *, backup_code_count: int = 10
    ) -> None:
        self.store = store
        self.two_factor = two_factor
        self.backup_code_count = backup_code_count

    def _load(self, user_id: str) -> AdminUser:
        admin = self.store.get_admin(user_id)
        if admin is None:
            raise NotFoundError("admin not found", detail={"user_id": user_id})
        return admin

    def _store_two_factor(
        self, user_id: str, *, secret: Optional[str], backup_codes: List[str], enabled: bool
    ) -> AdminUser:
        try:
            return self.store.set_two_factor(
                user_id, secret=secret, backup_codes=backup_codes, enabled=enabled
            )
        except Exception as exc:
            logger.error(
                "two_factor_store_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TwoFactorSetupError("failed to store two-factor settings") from exc

    def begin(self, user_id: str) -> TwoFactorSetup:
        """Generate a fresh secret and backup codes; 2FA stays off until confirmed."""
        admin = self._load(user_id)
        if admin.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        setup = self.two_factor.setup_two_factor(
            admin.email or admin.name, backup_count=self.backup_code_count
        )
        self._store_two_factor(
            user_id, secret=setup.secret, backup_codes=setup.backup_codes, enabled=False
        )
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return setup

    async def confirm(self, user_id: str, token: str) -> bool:
        admin = self._load(user_id)
        if admin.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not admin.two_factor_secret:
            raise ValidationError("2FA secret not found; start enrollment first")
        if not self.two_factor.verify_token(admin.two_factor_secret, token):
            logger.info("two_factor_enrollment_code_rejected", user_id=user_id)
            return False
        # The confirming code must not be reusable for a login right after
        if not await self.two_factor.claim_token("".join(token.split())):
            return False
        backup_codes = admin.two_factor_backup_codes or self.two_factor.generate_backup_codes(
            self.backup_code_count
        )
        self._store_two_factor(
            user_id,
            secret=admin.two_factor_secret,
            backup_codes=backup_codes,
            enabled=True,
        )
        logger.info("two_factor_enabled", user_id=user_id)
        return True

    def disable(self, user_id: str, token: Optional[str] = None) -> bool:
        """Turn 2FA off. Re-checking the password is the caller's job."""
        admin = self._load(user_id)
        if token is not None and admin.two_factor_secret:
            if not self.two_factor.verify_token(admin.two_factor_secret, token):
                logger.info("two_factor_disable_code_rejected", user_id=user_id)
                return False
        self._store_two_factor(user_id, secret=None, backup_codes=[], enabled=False)
        logger.info("two_factor_disabled", user_id=user_id)
        return True

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        admin = self._load(user_id)
        if not admin.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        codes = self.two_factor.generate_backup_codes(self.backup_code_count)
        self._store_two_factor(
            user_id, secret=admin.two_factor_secret, backup_codes=codes, enabled=True
        )
        logger.info("backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    def status(self, user_id: str) -> TwoFactorStatus:
        admin = self._load(user_id)
        return TwoFactorStatus(
            enabled=admin.two_factor_enabled,
            has_secret=self.two_factor.is_two_factor_enabled(admin.two_factor_secret),
            backup_codes_remaining=len(admin.two_factor_backup_codes),
        )


__all__ = ["TwoFactorEnrollment"]
