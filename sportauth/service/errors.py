from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)

    Authentication failures keep their client-facing message generic; the
    precise cause belongs in the audit trail, not in ``message``.
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


class MfaStateError(ValidationError):
    """MFA operation attempted in the wrong state (already enabled / not enabled)."""
    error_code = "mfa_state"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but it has expired; clients may silently refresh."""
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, tampered with, or issued for another purpose."""
    error_code = "token_invalid"


class AccountLockedError(AuthenticationError):
    """Account is temporarily locked after repeated failures (401)."""
    pass


class InvalidCodeError(AuthenticationError):
    """TOTP or backup code did not verify (401)."""
    error_code = "invalid_code"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email or provider link (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class InternalError(ServiceError):
    """Storage or infrastructure failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MfaStateError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "AccountLockedError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InternalError",
]
