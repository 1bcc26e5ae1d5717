from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import (
    TokenCodec,
    TokenError,
    TokenExpired,
    verify_password,
)
from keyward.service.errors import (
    AccountLocked,
    AccountSuspended,
    EmailNotVerified,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidOrExpiredRefreshToken,
    NotFound,
)
from keyward.storage.common import CredentialStore
from keyward.storage.models import DeviceInfo, RefreshToken, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


@dataclass
class SessionTokens:
    """Outcome of a fully authenticated login."""

    access_token: str
    refresh_token: str
    user: User


@dataclass
class PendingTwoFactor:
    """Password accepted, second factor still owed. No session exists yet."""

    temp_token: str
    user_id: str
    requires_two_factor: bool = True


LoginResult = Union[SessionTokens, PendingTwoFactor]


class SessionManager:
    """Password login, refresh and logout on top of a credential store.

    Owns the lockout policy and the refresh-token revocation rules. The clock
    is injectable so lockout windows can be tested without sleeping.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def login(
        self,
        email: str,
        password: str,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_unknown_email", email=email)
            raise InvalidCredentials()

        now = self._now()
        if user.is_locked(now):
            self.logger.warning(
                "login_locked_account", user_id=user.id, lock_until=user.lock_until.isoformat()
            )
            raise AccountLocked()

        if user.is_suspended:
            self.logger.warning("login_suspended_account", user_id=user.id)
            raise AccountSuspended()

        if not verify_password(password, user.password_hash):
            self.register_failed_attempt(user)
            raise InvalidCredentials()

        if not user.is_email_verified:
            self.logger.info("login_email_not_verified", user_id=user.id)
            raise EmailNotVerified()

        if user.two_factor_enabled:
            self.logger.info("login_two_factor_required", user_id=user.id)
            return PendingTwoFactor(
                temp_token=self.codec.issue_temp_token(user.id), user_id=user.id
            )

        return await self.issue_session(user, device, ip)

    def register_failed_attempt(self, user: User) -> User:
        """Count a failed password attempt and lock the account at the threshold.

        A lock that has already run out starts a fresh window at one attempt.
        """
        now = self._now()
        if user.lock_until is not None and user.lock_until <= now:
            attempts = 1
            lock_until = None
        else:
            attempts = user.login_attempts + 1
            lock_until = user.lock_until
        if attempts >= self.settings.max_login_attempts and lock_until is None:
            lock_until = now + timedelta(minutes=self.settings.lockout_minutes)
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=attempts,
                lock_until=lock_until.isoformat(),
            )
        else:
            self.logger.info("login_failed_password", user_id=user.id, attempts=attempts)
        updated = self.store.update_user(
            user.id, login_attempts=attempts, lock_until=lock_until
        )
        return updated or user

    async def issue_session(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> SessionTokens:
        """Complete authentication: reset lockout state, record the login, mint tokens."""
        device = device or DeviceInfo()
        updated = self.store.update_user(
            user.id,
            login_attempts=0,
            lock_until=None,
            last_login=self._now(),
            last_login_device=device.describe(),
        )
        if updated is None:
            raise NotFound()

        access_token = self.codec.issue_access_token(updated.id, updated.email, updated.role)
        refresh_token = self.codec.issue_refresh_token(updated.id)
        self.store.create_refresh_token(
            RefreshToken.new(
                updated.id,
                refresh_token,
                self.codec.refresh_expiry(),
                device_info=device,
                ip_address=ip,
            )
        )
        self.logger.info(
            "session_issued", user_id=updated.id, device=device.describe(), ip=ip
        )
        return SessionTokens(
            access_token=access_token, refresh_token=refresh_token, user=updated
        )

    async def refresh_access_token(self, refresh_token: str) -> str:
        """Mint a new access token from a refresh token.

        The signature check alone is not enough: the stored record must also be
        unrevoked and unexpired, since revocation happens server side.
        """
        if not refresh_token:
            raise InvalidOrExpiredRefreshToken()
        try:
            claims = self.codec.verify_refresh_token(refresh_token)
        except TokenExpired:
            self.logger.info("refresh_token_expired")
            raise InvalidOrExpiredRefreshToken()
        except TokenError as exc:
            self.logger.warning("refresh_token_invalid", error=str(exc))
            raise InvalidOrExpiredRefreshToken()

        user_id = claims["userId"]
        record = self.store.get_refresh_token(refresh_token, user_id=user_id)
        if not record or not record.is_valid(self._now()):
            self.logger.warning(
                "refresh_token_rejected",
                user_id=user_id,
                found=record is not None,
                revoked=bool(record and record.is_revoked),
            )
            raise InvalidOrExpiredRefreshToken()

        user = self.store.get_user(user_id)
        if not user:
            raise InvalidOrExpiredRefreshToken()
        if user.is_suspended:
            self.logger.warning("refresh_suspended_account", user_id=user.id)
            raise AccountSuspended()
        return self.codec.issue_access_token(user.id, user.email, user.role)

    async def logout(
        self, refresh_token: Optional[str] = None, user_id: Optional[str] = None
    ) -> bool:
        """Revoke one refresh token. Unknown or already revoked tokens are not an error."""
        if not refresh_token:
            self.logger.warning("logout_without_refresh_token", user_id=user_id)
            return False
        revoked = self.store.revoke_refresh_token(refresh_token, user_id=user_id)
        self.logger.info("logout", user_id=user_id, revoked=revoked)
        return revoked

    async def logout_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        self.logger.info("logout_all", user_id=user_id, revoked=revoked)
        return revoked

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve a bearer access token to the caller, rejecting suspended accounts."""
        if not access_token:
            raise InvalidAccessToken("No token provided")
        try:
            claims = self.codec.verify_access_token(access_token)
        except TokenExpired:
            raise InvalidAccessToken("Token expired")
        except TokenError:
            raise InvalidAccessToken()
        user = self.store.get_user(claims["userId"])
        if not user:
            raise InvalidAccessToken("User not found")
        if user.is_suspended:
            self.logger.warning("authenticate_suspended_account", user_id=user.id)
            raise AccountSuspended()
        return AuthContext(user_id=user.id, email=user.email, role=user.role)

    async def purge_expired_tokens(self) -> int:
        purged = self.store.purge_expired_refresh_tokens(self._now())
        self.logger.info("expired_refresh_records_purged", count=purged)
        return purged
