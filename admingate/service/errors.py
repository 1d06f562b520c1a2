from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code for the transport layer:
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Verification outcomes (wrong code, expired session, replayed token) are
    not exceptions; they come back as ``False``/``None``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., enrolling 2FA twice (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SessionCreationFailed(ServerError):
    """The session row could not be persisted."""
    error_code = "session_creation_failed"


class QRGenerationError(ServerError):
    """An otpauth URI could not be rendered as a QR image."""
    error_code = "qr_generation_failed"


class TwoFactorSetupError(ServerError):
    """Two-factor enrollment material could not be produced or stored."""
    error_code = "two_factor_setup_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "SessionCreationFailed",
    "QRGenerationError",
    "TwoFactorSetupError",
]
