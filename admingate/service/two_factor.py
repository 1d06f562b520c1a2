from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import secrets
import string
import time
from typing import Iterable, List, Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.exceptions import DataOverflowError

from admingate.logging import get_logger
from admingate.service.errors import QRGenerationError, TwoFactorSetupError
from admingate.service.replay_guard import TokenGuard
from admingate.storage.models import (
    BackupCodeResult,
    GeneratedSecret,
    TwoFactorSetup,
)

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_LENGTH = 8
SECRET_BYTES = 32

logger = get_logger(__name__)


class TwoFactorAuth:
    """TOTP (RFC 6238, HMAC-SHA1) and backup-code primitives.

    Holds configuration only. Replay bookkeeping lives in the shared guard
    passed in at construction so every caller sees the same used-code set.
    """

    def __init__(
        self,
        issuer: str = "Admin Console",
        *,
        digits: int = 6,
        period: int = 30,
        window: int = 2,
        guard: Optional[TokenGuard] = None,
    ) -> None:
        self.issuer = issuer
        self.digits = digits
        self.period = period
        self.window = window
        self.guard = guard

    def generate_secret(
        self, username: str, issuer: Optional[str] = None
    ) -> GeneratedSecret:
        issuer = issuer or self.issuer
        secret = base64.b32encode(os.urandom(SECRET_BYTES)).decode("ascii").rstrip("=")
        return GeneratedSecret(
            secret=secret, otpauth_url=self.build_otpauth_url(secret, username, issuer)
        )

    def build_otpauth_url(
        self, secret: str, username: str, issuer: Optional[str] = None
    ) -> str:
        issuer = issuer or self.issuer
        label = quote(f"{issuer}:{username}", safe="@:")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.period,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    def generate_qr_code(self, otpauth_url: str) -> str:
        """Render an otpauth URI as a ``data:image/png;base64`` URL."""
        if not isinstance(otpauth_url, str) or not otpauth_url.startswith("otpauth://"):
            raise QRGenerationError("QR code generation failed: not an otpauth URI")
        try:
            qr = qrcode.QRCode(
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=8,
                border=2,
            )
            qr.add_data(otpauth_url)
            qr.make(fit=True)
            img = qr.make_image(fill_color="black", back_color="white")
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
        except (DataOverflowError, ValueError, OSError) as exc:
            logger.error("qr_generation_failed", error=str(exc))
            raise QRGenerationError("QR code generation failed") from exc
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            return None
        return key or None

    def generate_token(self, secret: str, timestamp: Optional[float] = None) -> str:
        """Return the code for ``timestamp`` (now by default), or "" for a bad secret."""
        key = self._decode_secret(secret) if isinstance(secret, str) else None
        if key is None:
            logger.warning("totp_secret_invalid")
            return ""
        moment = time.time() if timestamp is None else timestamp
        counter = int(moment // self.period).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_token(
        self,
        secret: str,
        token: str,
        window_steps: Optional[int] = None,
        *,
        now: Optional[float] = None,
    ) -> bool:
        """Check ``token`` against every step within ``window_steps`` of now."""
        if not secret or not isinstance(token, str):
            return False
        candidate = "".join(token.split())
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        steps = self.window if window_steps is None else max(0, window_steps)
        moment = time.time() if now is None else now
        matched = False
        for offset in range(-steps, steps + 1):
            generated = self.generate_token(secret, moment + offset * self.period)
            if not generated:
                return False
            # Constant-time comparison, and no early exit on a match
            if hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def time_remaining(self, now: Optional[float] = None) -> int:
        """Seconds until the current code rolls over."""
        moment = int(time.time() if now is None else now)
        return self.period - (moment % self.period)

    def is_configured(self, secret: Optional[str]) -> bool:
        return bool(secret) and self._decode_secret(secret) is not None

    @staticmethod
    def is_two_factor_enabled(secret: Optional[str]) -> bool:
        return secret is not None and len(secret) > 0

    def generate_backup_codes(self, count: int = 10) -> List[str]:
        if count < 0:
            raise ValueError("count must not be negative")
        codes: List[str] = []
        seen: set[str] = set()
        while len(codes) < count:
            code = "".join(
                secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)
            )
            if code in seen:
                continue
            seen.add(code)
            codes.append(code)
        return codes

    @staticmethod
    def verify_backup_code(codes: Iterable[str], candidate: str) -> BackupCodeResult:
        """Match ``candidate`` case-insensitively; a hit removes that one code."""
        original = list(codes)
        if not isinstance(candidate, str):
            return BackupCodeResult(is_valid=False, remaining_codes=original)
        normalized = candidate.strip().upper()
        if not normalized:
            return BackupCodeResult(is_valid=False, remaining_codes=original)
        index = -1
        for position, code in enumerate(original):
            if hmac.compare_digest(code.upper().encode(), normalized.encode()) and index < 0:
                index = position
        if index < 0:
            return BackupCodeResult(is_valid=False, remaining_codes=original)
        remaining = original[:index] + original[index + 1 :]
        return BackupCodeResult(is_valid=True, remaining_codes=remaining)

    def setup_two_factor(self, username: str, *, backup_count: int = 10) -> TwoFactorSetup:
        generated = self.generate_secret(username)
        try:
            qr_code_url = self.generate_qr_code(generated.otpauth_url)
        except QRGenerationError as exc:
            logger.error("two_factor_setup_failed", error=str(exc))
            raise TwoFactorSetupError("2FA setup failed") from exc
        return TwoFactorSetup(
            secret=generated.secret,
            otpauth_url=generated.otpauth_url,
            qr_code_url=qr_code_url,
            backup_codes=self.generate_backup_codes(backup_count),
        )

    # replay bookkeeping, delegated to the shared guard
    def _require_guard(self) -> TokenGuard:
        if self.guard is None:
            raise RuntimeError("TwoFactorAuth was built without a replay guard")
        return self.guard

    async def is_token_used(self, token: str) -> bool:
        return await self._require_guard().is_used(token)

    async def mark_token_as_used(self, token: str) -> None:
        await self._require_guard().mark_used(token)

    async def claim_token(self, token: str) -> bool:
        return await self._require_guard().claim(token)


__all__ = ["BACKUP_CODE_ALPHABET", "BACKUP_CODE_LENGTH", "TwoFactorAuth"]
