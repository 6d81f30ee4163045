from __future__ import annotations

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a transport ``status_code`` and a stable
    ``error_code``. Business-rule failures answered by an endpoint use 200 so
    clients branch on the envelope ``status``; rejections raised before the
    endpoint runs (gate, CSRF, rate limiting) use the matching 4xx code.

    ``clear_cookies`` names credential cookies the response must delete;
    ``headers`` are copied onto the error response.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        clear_cookies: Iterable[str] = (),
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.clear_cookies = tuple(clear_cookies)
        self.headers = dict(headers or {})


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """No usable credential on the request (401)."""
    status_code = 401
    error_code = "UNAUTHENTICATED"


class InvalidCredentialsError(ServiceError):
    """Email/password pair rejected."""
    status_code = 200
    error_code = "INVALID_CREDENTIALS"


class TokenExpiredError(AuthenticationError):
    """Signed credential is past its ``exp``."""
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(AuthenticationError):
    """Signature, structure, key id, issuer, audience or type check failed."""
    error_code = "TOKEN_INVALID"


class SessionNotFoundError(ServiceError):
    """No active session matches (also used for sessions owned by someone else)."""
    status_code = 200
    error_code = "SESSION_NOT_FOUND"


class SessionRevokedError(AuthenticationError):
    """Refresh credential no longer maps to an active session."""
    error_code = "SESSION_REVOKED"


class AccountRestrictedError(ServiceError):
    """Account is locked, suspended or banned and the restriction has not lapsed.

    ``detail`` carries ``account_status``, ``reason`` and ``expires_at``.
    """
    status_code = 403
    error_code = "ACCOUNT_LOCKED"

    _CODES = {
        "locked": "ACCOUNT_LOCKED",
        "suspended": "ACCOUNT_SUSPENDED",
        "banned": "ACCOUNT_BANNED",
    }

    @classmethod
    def for_status(
        cls,
        account_status: str,
        *,
        reason: str | None,
        expires_at: str | None,
        support_email: str | None = None,
        status_code: int | None = None,
    ) -> "AccountRestrictedError":
        return cls(
            f"Your account is {account_status}.",
            status_code=status_code,
            error_code=cls._CODES.get(account_status, "ACCOUNT_LOCKED"),
            detail={
                "account_status": account_status,
                "reason": reason,
                "expires_at": expires_at,
                "support_email": support_email,
            },
        )


class CsrfError(ServiceError):
    """Write-intent check failed (403)."""
    status_code = 403
    error_code = "CSRF_INVALID"


class TwoFactorInvalidCodeError(ServiceError):
    status_code = 200
    error_code = "TWO_FACTOR_INVALID_CODE"


class TwoFactorAlreadyEnabledError(ServiceError):
    status_code = 200
    error_code = "TWO_FACTOR_ALREADY_ENABLED"


class TwoFactorNotEnabledError(ServiceError):
    status_code = 200
    error_code = "TWO_FACTOR_NOT_ENABLED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); carries ``Retry-After``."""
    status_code = 429
    error_code = "RATE_LIMITED"

    @classmethod
    def retry_after(cls, seconds: int) -> "RateLimitedError":
        return cls(
            "Too many requests, please try again later",
            headers={"Retry-After": str(max(1, seconds))},
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "SessionNotFoundError",
    "SessionRevokedError",
    "AccountRestrictedError",
    "CsrfError",
    "TwoFactorInvalidCodeError",
    "TwoFactorAlreadyEnabledError",
    "TwoFactorNotEnabledError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
