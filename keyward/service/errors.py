from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on. Generic categories:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# -- credential and session failures -------------------------------------------


class DuplicateEmail(ConflictError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "User already exists with this email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    """Wrong password or unknown account; the two are indistinguishable to callers."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ForbiddenError):
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account is temporarily locked due to too many failed login attempts",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountSuspended(ForbiddenError):
    error_code = "account_suspended"

    def __init__(
        self,
        message: str = "Your account has been suspended. Please contact support.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerified(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(
        self, message: str = "Please verify your email before logging in", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredCode(ValidationError):
    """OTP or reset token rejected.

    ``reason`` records which check failed (``missing``, ``expired``,
    ``mismatch``, ``already_verified``) for audit logs; it is not part of the
    message returned to the client.
    """

    error_code = "invalid_or_expired_code"

    def __init__(
        self, message: str = "Invalid or expired code", *, reason: str = "mismatch", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class TwoFactorNotEnabled(ValidationError):
    error_code = "two_factor_not_enabled"

    def __init__(self, message: str = "2FA is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AlreadyEnabled(ConflictError):
    error_code = "two_factor_already_enabled"

    def __init__(self, message: str = "2FA is already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCode(AuthenticationError):
    error_code = "invalid_two_factor_code"

    def __init__(self, message: str = "Invalid 2FA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(
        self, message: str = "Invalid or expired refresh token", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidAccessToken(AuthenticationError):
    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFound(NotFoundError):
    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PermissionDenied(ForbiddenError):
    pass


class UpstreamDeliveryFailure(ServerError):
    """An outbound collaborator (SMTP, OAuth provider) failed."""

    status_code = 502
    error_code = "upstream_delivery_failure"


class MissingProviderEmail(ValidationError):
    error_code = "missing_provider_email"

    def __init__(
        self, message: str = "No email address returned by the identity provider", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DuplicateEmail",
    "InvalidCredentials",
    "AccountLocked",
    "AccountSuspended",
    "EmailNotVerified",
    "InvalidOrExpiredCode",
    "TwoFactorNotEnabled",
    "AlreadyEnabled",
    "InvalidTwoFactorCode",
    "InvalidOrExpiredRefreshToken",
    "InvalidAccessToken",
    "NotFound",
    "PermissionDenied",
    "UpstreamDeliveryFailure",
    "MissingProviderEmail",
]
