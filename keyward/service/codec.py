"""Password hashing, signed tokens, one-time codes and TOTP helpers.

Everything here is free of shared state; the service classes own the policy
and pass in the secrets and lifetimes they are configured with.
"""

from __future__ import annotations

import base64
import io
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import bcrypt
import jwt
import pyotp
import qrcode

from keyward.config import Settings
from keyward.logging import get_logger

logger = get_logger(__name__)

OTP_DIGITS = 6
# bcrypt only reads the first 72 bytes and current releases reject longer input
PASSWORD_MAX_BYTES = 72
OPAQUE_TOKEN_BYTES = 32
TOKEN_TYPE_REFRESH = "refresh"


class TokenError(Exception):
    """Base class for signed-token verification failures."""


class TokenExpired(TokenError):
    pass


class TokenInvalid(TokenError):
    pass


# -- passwords -------------------------------------------------------------------


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > PASSWORD_MAX_BYTES


def hash_password(plain: str, rounds: int = 12) -> str:
    """Hash a password using bcrypt with the given cost factor.

    Raises ValueError for passwords longer than ``PASSWORD_MAX_BYTES`` bytes.
    """
    if password_too_long(plain):
        raise ValueError(f"password cannot be longer than {PASSWORD_MAX_BYTES} bytes")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, password_hash: Optional[str]) -> bool:
    """Check a password against a bcrypt hash.

    Any failure inside bcrypt (malformed hash, oversized input) counts as a
    mismatch.
    """
    if not plain or not password_hash or password_too_long(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), password_hash.encode("utf-8"))
    except (ValueError, TypeError) as exc:
        logger.warning("password_verify_error", error=str(exc))
        return False


# -- one-time codes ------------------------------------------------------------------


def generate_otp() -> str:
    """Six random digits, leading zeros included."""
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def generate_opaque_token() -> str:
    return secrets.token_hex(OPAQUE_TOKEN_BYTES)


def generate_unusable_password() -> str:
    """Random password for accounts created through an identity provider."""
    return secrets.token_urlsafe(32)


# -- signed tokens ---------------------------------------------------------------------


def verify_token(token: str, secret: str, algorithm: str = "HS256") -> Dict[str, Any]:
    """Decode a signed token, raising ``TokenExpired`` or ``TokenInvalid``."""
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpired("token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalid(f"invalid token: {exc}") from exc


class TokenCodec:
    """Issues and verifies the three signed token classes.

    Access and temp tokens are signed with the access secret, refresh tokens
    with the refresh secret. The temp token is only accepted where a pending
    second factor is expected.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        temp_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.temp_ttl = temp_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            temp_ttl=timedelta(minutes=settings.temp_token_ttl_minutes),
        )

    def _encode(self, claims: Dict[str, Any], secret: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {**claims, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, secret, algorithm=self.algorithm)

    def issue_access_token(self, user_id: str, email: str, role: str) -> str:
        return self._encode(
            {"userId": user_id, "email": email, "role": role},
            self.access_secret,
            self.access_ttl,
        )

    def issue_refresh_token(self, user_id: str) -> str:
        # jti keeps two tokens minted within the same second distinct
        return self._encode(
            {"userId": user_id, "type": TOKEN_TYPE_REFRESH, "jti": uuid.uuid4().hex},
            self.refresh_secret,
            self.refresh_ttl,
        )

    def issue_temp_token(self, user_id: str) -> str:
        return self._encode(
            {"userId": user_id, "requiresTwoFactor": True},
            self.access_secret,
            self.temp_ttl,
        )

    def refresh_expiry(self) -> datetime:
        return self._clock() + self.refresh_ttl

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        claims = verify_token(token, self.access_secret, self.algorithm)
        if claims.get("requiresTwoFactor") or claims.get("type") or not claims.get("userId"):
            raise TokenInvalid("not an access token")
        return claims

    def verify_refresh_token(self, token: str) -> Dict[str, Any]:
        claims = verify_token(token, self.refresh_secret, self.algorithm)
        if claims.get("type") != TOKEN_TYPE_REFRESH or not claims.get("userId"):
            raise TokenInvalid("not a refresh token")
        return claims

    def verify_temp_token(self, token: str) -> Dict[str, Any]:
        claims = verify_token(token, self.access_secret, self.algorithm)
        if claims.get("requiresTwoFactor") is not True or not claims.get("userId"):
            raise TokenInvalid("not a two-factor continuation token")
        return claims


# -- TOTP ------------------------------------------------------------------------------


@dataclass
class TotpProvisioning:
    secret: str
    otpauth_uri: str


def provision_totp_secret(label: str, issuer: str) -> TotpProvisioning:
    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=issuer)
    return TotpProvisioning(secret=secret, otpauth_uri=uri)


def totp_qr_data_uri(otpauth_uri: str) -> str:
    """Render a provisioning URI as a PNG data URI for authenticator apps."""
    img = qrcode.make(otpauth_uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    b64 = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{b64}"


def verify_totp(
    secret: Optional[str],
    code: Optional[str],
    *,
    window: int = 2,
    for_time: Optional[datetime] = None,
) -> bool:
    """Check a TOTP code, tolerating ``window`` 30-second steps of drift either way."""
    if not secret or not code:
        return False
    code = code.strip().replace(" ", "")
    if len(code) != OTP_DIGITS or not code.isdigit():
        return False
    kwargs: Dict[str, Any] = {"valid_window": window}
    if for_time is not None:
        kwargs["for_time"] = for_time
    return pyotp.TOTP(secret).verify(code, **kwargs)
