from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import (
    TokenError,
    TokenExpired,
    provision_totp_secret,
    totp_qr_data_uri,
    verify_password,
    verify_totp,
)
from keyward.service.email import EmailDispatcher
from keyward.service.errors import (
    AccountSuspended,
    AlreadyEnabled,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFound,
    TwoFactorNotEnabled,
    ValidationError,
)
from keyward.service.sessions import SessionManager, SessionTokens
from keyward.storage.common import CredentialStore
from keyward.storage.models import DeviceInfo, User

logger = get_logger(__name__)


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code: str


class TwoFactorWorkflow:
    """TOTP provisioning, confirmation, login continuation and removal.

    A secret is stored as soon as setup starts but only counts once the
    enabled flag is set by a confirmed code.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        settings: Settings,
        *,
        email: Optional[EmailDispatcher] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.email = email
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound()
        return user

    def _check_code(self, user: User, code: str) -> bool:
        return verify_totp(
            user.two_factor_secret,
            code,
            window=self.settings.totp_valid_window,
            for_time=self._clock(),
        )

    async def setup(self, user_id: str) -> TwoFactorSetup:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise AlreadyEnabled()
        provisioning = provision_totp_secret(
            label=user.email, issuer=self.settings.two_factor_issuer
        )
        self.store.update_user(
            user.id, two_factor_secret=provisioning.secret, two_factor_enabled=False
        )
        self.logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(
            secret=provisioning.secret,
            otpauth_uri=provisioning.otpauth_uri,
            qr_code=totp_qr_data_uri(provisioning.otpauth_uri),
        )

    async def verify(self, user_id: str, code: str) -> None:
        """Confirm a pending secret with a code from the authenticator app."""
        user = self._require_user(user_id)
        if not user.two_factor_secret:
            raise ValidationError(
                "2FA setup not initiated", error_code="two_factor_not_initiated"
            )
        if not self._check_code(user, code):
            self.logger.warning("two_factor_confirm_failed", user_id=user.id)
            raise InvalidTwoFactorCode()
        self.store.update_user(user.id, two_factor_enabled=True)
        self.logger.info("two_factor_enabled", user_id=user.id)
        if self.email is not None:
            # notification only; the state change has already happened
            sent = await asyncio.to_thread(
                self.email.send_two_factor_enabled, user.email, user.name
            )
            if not sent:
                self.logger.warning("two_factor_notice_not_sent", user_id=user.id)

    async def validate(
        self,
        user_id: str,
        code: str,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
        *,
        temp_token: Optional[str] = None,
    ) -> SessionTokens:
        """Finish a login that stopped at the second factor.

        A failed code leaves the temp token usable until its own expiry.
        """
        if temp_token is not None:
            try:
                claims = self.sessions.codec.verify_temp_token(temp_token)
            except TokenExpired:
                raise InvalidAccessToken("Two-factor session expired, please log in again")
            except TokenError:
                raise InvalidAccessToken("Invalid two-factor session")
            if claims["userId"] != user_id:
                self.logger.warning("two_factor_temp_token_mismatch", user_id=user_id)
                raise InvalidAccessToken("Invalid two-factor session")

        user = self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise TwoFactorNotEnabled()
        if user.is_suspended:
            raise AccountSuspended()
        if not self._check_code(user, code):
            self.logger.warning("two_factor_login_failed", user_id=user.id)
            raise InvalidTwoFactorCode()
        self.logger.info("two_factor_login_passed", user_id=user.id)
        return await self.sessions.issue_session(user, device, ip)

    async def disable(self, user_id: str, password: str) -> None:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise TwoFactorNotEnabled()
        if not verify_password(password, user.password_hash):
            self.logger.warning("two_factor_disable_wrong_password", user_id=user.id)
            raise InvalidCredentials("Invalid password")
        self.store.update_user(user.id, two_factor_enabled=False, two_factor_secret=None)
        self.logger.info("two_factor_disabled", user_id=user.id)
