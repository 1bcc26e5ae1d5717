from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from keyward.service.codec import PASSWORD_MAX_BYTES, password_too_long
from keyward.storage.models import ROLES

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "validation_error",
    "conflict",
    "server_error",
    "duplicate_email",
    "invalid_credentials",
    "account_locked",
    "account_suspended",
    "email_not_verified",
    "invalid_or_expired_code",
    "two_factor_not_enabled",
    "two_factor_not_initiated",
    "two_factor_already_enabled",
    "invalid_two_factor_code",
    "invalid_refresh_token",
    "upstream_delivery_failure",
    "missing_provider_email",
    "oauth_not_configured",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_PATTERN = r"^\d{6}$"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    return _validate_password_size(value)


def _validate_password_size(value: str) -> str:
    if password_too_long(value):
        raise ValueError(f"password must be at most {PASSWORD_MAX_BYTES} bytes in UTF-8")
    return value


# -- registration / login ---------------------------------------------------------------


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class VerifyEmailRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    otp: str = Field(..., pattern=_OTP_PATTERN)


class ResendOtpRequest(BaseModel):
    user_id: str = Field(..., max_length=64)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password_size(value)


class TwoFactorValidateRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=10)
    temp_token: Optional[str] = Field(default=None, max_length=2048)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class PendingTwoFactorResponse(BaseModel):
    requires_two_factor: bool = True
    temp_token: str
    user_id: str


# -- password flows ---------------------------------------------------------------------


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetOtpRequest(BaseModel):
    email: str
    otp: str = Field(..., pattern=_OTP_PATTERN)

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    reset_token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("current_password")
    @classmethod
    def _validate_current_password(cls, value: str) -> str:
        return _validate_password_size(value)


# -- two-factor -------------------------------------------------------------------------


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=10)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("password")
    @classmethod
    def _validate_disable_password(cls, value: str) -> str:
        return _validate_password_size(value)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str


# -- OAuth ------------------------------------------------------------------------------


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


# -- profile / admin --------------------------------------------------------------------


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = None
    profile_picture: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class SuspendUserRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateUserRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        if value not in ROLES:
            raise ValueError(f"role must be one of: {', '.join(ROLES)}")
        return value


class UserListResponse(BaseModel):
    users: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
    total_pages: int


class UserDetailResponse(BaseModel):
    user: Dict[str, Any]
    active_sessions: int


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    checks: Dict[str, Dict[str, Any]]
    version: str
    timestamp: str
