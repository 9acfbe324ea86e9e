from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core exceptions.

    Every error carries a stable ``error_code`` and an HTTP-style
    ``status_code`` so the surrounding gateway can render it without
    inspecting the type. ``cause`` keeps the original exception when an
    unexpected failure is wrapped by :func:`enhance_error`.
    """

    status_code: int = 400
    error_code: str = "validation_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "detail": self.detail,
        }


class ValidationFailedError(ServiceError):
    """Input or verification code did not validate (400)."""
    status_code = 400
    error_code = "validation_failed"


class InvalidCredentialsError(ServiceError):
    """Username/password rejected by the identity provider (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class TokenInvalidError(ServiceError):
    """Access or refresh token is invalid, inactive or expired (401)."""
    status_code = 401
    error_code = "token_invalid"


class ForbiddenError(ServiceError):
    """Caller lacks permission at the identity provider (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested user, method, device or link not found (404)."""
    status_code = 404
    error_code = "not_found"


class NoActiveMFAMethodsError(NotFoundError):
    """User has no enabled MFA method able to serve a challenge."""
    error_code = "no_active_mfa_methods"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate user (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyUsedError(ConflictError):
    """Single-use token or code was already redeemed."""
    error_code = "already_used"


class ExpiredError(ServiceError):
    """Challenge, link or grant is past its expiry (410)."""
    status_code = 410
    error_code = "expired"


class RevokedError(ExpiredError):
    """Link was revoked before use."""
    error_code = "revoked"


class RateLimitedError(ServiceError):
    """Attempt ceiling reached for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"


class MagicLinkLimitError(RateLimitedError):
    """Daily magic-link issuance cap reached for an email."""
    error_code = "daily_limit_exceeded"


class ServerError(ServiceError):
    """Unexpected internal failure (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """Identity provider, policy service or cache store unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServiceTimeoutError(ServiceUnavailableError):
    """Outbound call exceeded its timeout (504)."""
    status_code = 504
    error_code = "service_timeout"


_ERRORS_BY_CODE = {
    cls.error_code: cls
    for cls in (
        ValidationFailedError,
        InvalidCredentialsError,
        TokenInvalidError,
        ForbiddenError,
        NotFoundError,
        NoActiveMFAMethodsError,
        ConflictError,
        AlreadyUsedError,
        ExpiredError,
        RevokedError,
        RateLimitedError,
        MagicLinkLimitError,
        ServerError,
        ServiceUnavailableError,
        ServiceTimeoutError,
    )
}


def enhance_error(code: str, original: BaseException, message: Optional[str] = None) -> ServiceError:
    """Wrap ``original`` in the ServiceError registered for ``code``.

    A ServiceError passes through untouched so the most specific code wins.
    """
    if isinstance(original, ServiceError):
        return original
    error_cls = _ERRORS_BY_CODE.get(code, ServerError)
    return error_cls(message or str(original) or code, error_code=code, cause=original)


__all__ = [
    "ServiceError",
    "ValidationFailedError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "NoActiveMFAMethodsError",
    "ConflictError",
    "AlreadyUsedError",
    "ExpiredError",
    "RevokedError",
    "RateLimitedError",
    "MagicLinkLimitError",
    "ServerError",
    "ServiceUnavailableError",
    "ServiceTimeoutError",
    "enhance_error",
]
