from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeviceInfo:
    browser: Optional[str] = None
    os: Optional[str] = None
    platform: Optional[str] = None
    source: str = "web"

    def describe(self) -> str:
        """Human readable descriptor recorded as the last login device."""
        return f"{self.browser or 'Unknown'} on {self.os or 'Unknown'}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            browser=data.get("browser"),
            os=data.get("os"),
            platform=data.get("platform"),
            source=data.get("source") or "web",
        )


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str = ""
    role: str = ROLE_USER
    is_email_verified: bool = False
    profile_picture: Optional[str] = None
    email_verification_otp: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_otp: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    last_login: Optional[datetime] = None
    last_login_device: Optional[str] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    is_suspended: bool = False
    suspended_at: Optional[datetime] = None
    suspended_by: Optional[str] = None
    suspension_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        role: str = ROLE_USER,
        is_email_verified: bool = False,
        profile_picture: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name,
            role=role,
            is_email_verified=is_email_verified,
            profile_picture=profile_picture,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view that never carries hashes, OTPs or the TOTP secret."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_email_verified": self.is_email_verified,
            "profile_picture": self.profile_picture,
            "two_factor_enabled": self.two_factor_enabled,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "last_login_device": self.last_login_device,
            "is_suspended": self.is_suspended,
            "suspended_at": self.suspended_at.isoformat() if self.suspended_at else None,
            "suspension_reason": self.suspension_reason,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        expires_at: datetime,
        device_info: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            device_info=device_info or DeviceInfo(),
            ip_address=ip_address,
        )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now
