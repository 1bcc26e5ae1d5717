from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import (
    PASSWORD_MAX_BYTES,
    generate_opaque_token,
    generate_otp,
    hash_password,
    password_too_long,
    verify_password,
)
from keyward.service.email import EmailDispatcher
from keyward.service.errors import (
    DuplicateEmail,
    InvalidCredentials,
    InvalidOrExpiredCode,
    NotFound,
    UpstreamDeliveryFailure,
    ValidationError,
)
from keyward.storage.common import CredentialStore
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import User

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists with this email, a reset code has been sent"


class VerificationWorkflow:
    """Registration, email verification, password reset and password change.

    One-time codes live on the user record next to their expiry; both are
    written together and cleared together. Email dispatch happens after the
    code is persisted, so a delivery failure is reported to the caller while
    the stored code stays usable for a resend.
    """

    def __init__(
        self,
        store: CredentialStore,
        email: EmailDispatcher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.email = email
        self.settings = settings
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _otp_expiry(self) -> datetime:
        return self._now() + timedelta(minutes=self.settings.otp_ttl_minutes)

    def _hash(self, password: str) -> str:
        if password_too_long(password):
            raise ValidationError(
                f"Password must be at most {PASSWORD_MAX_BYTES} bytes",
                detail={"field": "password"},
            )
        return hash_password(password, rounds=self.settings.bcrypt_rounds)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound()
        return user

    async def _deliver(self, send: Callable[..., bool], *args, event: str, user_id: str) -> None:
        sent = await asyncio.to_thread(send, *args)
        if not sent:
            self.logger.error(f"{event}_delivery_failed", user_id=user_id)
            raise UpstreamDeliveryFailure(
                "Failed to send email. Please try again.",
                detail={"user_id": user_id},
            )
        self.logger.info(f"{event}_sent", user_id=user_id)

    # -- registration / email verification --------------------------------------------

    async def register(self, name: str, email: str, password: str) -> User:
        """Create an unverified account and mail its verification code.

        Raises ``UpstreamDeliveryFailure`` after the account is persisted if the
        mail cannot be sent; the caller is expected to offer a resend.
        """
        if self.store.get_user_by_email(email):
            self.logger.info("register_duplicate_email", email=email)
            raise DuplicateEmail()
        user = User.new(email, self._hash(password), name=name)
        user.email_verification_otp = generate_otp()
        user.email_verification_expires = self._otp_expiry()
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            raise DuplicateEmail()
        self.logger.info("user_registered", user_id=user.id, email=user.email)
        await self._deliver(
            self.email.send_verification_otp,
            user.email,
            user.name,
            user.email_verification_otp,
            self.settings.otp_ttl_minutes,
            event="verification_otp",
            user_id=user.id,
        )
        return user

    async def resend_verification_otp(self, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.is_email_verified:
            raise InvalidOrExpiredCode("Email already verified", reason="already_verified")
        otp = generate_otp()
        user = self.store.update_user(
            user.id,
            email_verification_otp=otp,
            email_verification_expires=self._otp_expiry(),
        ) or user
        await self._deliver(
            self.email.send_verification_otp,
            user.email,
            user.name,
            otp,
            self.settings.otp_ttl_minutes,
            event="verification_otp",
            user_id=user.id,
        )

    async def verify_email(self, user_id: str, otp: str) -> User:
        user = self._require_user(user_id)
        if user.is_email_verified:
            raise InvalidOrExpiredCode("Email already verified", reason="already_verified")
        if not user.email_verification_otp or not user.email_verification_expires:
            raise self._rejection("email_verification", user.id, "missing")
        if user.email_verification_expires <= self._now():
            raise self._rejection("email_verification", user.id, "expired")
        if user.email_verification_otp != otp:
            raise self._rejection("email_verification", user.id, "mismatch")

        verified = self.store.update_user(
            user.id,
            is_email_verified=True,
            email_verification_otp=None,
            email_verification_expires=None,
        )
        self.logger.info("email_verified", user_id=user.id)
        return verified or user

    def _rejection(self, flow: str, user_id: str, reason: str) -> InvalidOrExpiredCode:
        self.logger.warning(f"{flow}_rejected", user_id=user_id, reason=reason)
        return InvalidOrExpiredCode(reason=reason)

    # -- password reset -------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> str:
        """Start a reset. The returned message is the same whether or not the account exists."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email=email)
            return RESET_REQUESTED_MESSAGE

        otp = generate_otp()
        user = self.store.update_user(
            user.id,
            password_reset_otp=otp,
            password_reset_token=generate_opaque_token(),
            password_reset_expires=self._otp_expiry(),
        ) or user
        await self._deliver(
            self.email.send_password_reset_otp,
            user.email,
            user.name,
            otp,
            self.settings.otp_ttl_minutes,
            event="password_reset_otp",
            user_id=user.id,
        )
        return RESET_REQUESTED_MESSAGE

    async def verify_reset_otp(self, email: str, otp: str) -> str:
        """Exchange a correct reset code for the opaque reset token."""
        user = self.store.get_user_by_email(email)
        if not user:
            raise InvalidOrExpiredCode(reason="missing")
        if (
            not user.password_reset_otp
            or not user.password_reset_expires
            or not user.password_reset_token
        ):
            raise self._rejection("password_reset", user.id, "missing")
        if user.password_reset_expires <= self._now():
            raise self._rejection("password_reset", user.id, "expired")
        if user.password_reset_otp != otp:
            raise self._rejection("password_reset", user.id, "mismatch")
        self.logger.info("password_reset_otp_verified", user_id=user.id)
        return user.password_reset_token

    async def reset_password(self, reset_token: str, new_password: str) -> None:
        """Set a new password from a reset token and end every session of the account.

        The hash update and the revocation are two separate writes.
        """
        user = self.store.get_user_by_reset_token(reset_token)
        if not user:
            self.logger.warning("password_reset_rejected", reason="unknown_token")
            raise InvalidOrExpiredCode("Invalid or expired reset token", reason="missing")
        if not user.password_reset_expires or user.password_reset_expires <= self._now():
            self.logger.warning("password_reset_rejected", user_id=user.id, reason="expired")
            raise InvalidOrExpiredCode("Invalid or expired reset token", reason="expired")

        self.store.update_user(
            user.id,
            password_hash=self._hash(new_password),
            password_reset_otp=None,
            password_reset_token=None,
            password_reset_expires=None,
        )
        revoked = self.store.revoke_user_refresh_tokens(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        user = self._require_user(user_id)
        if not verify_password(old_password, user.password_hash):
            self.logger.warning("password_change_wrong_password", user_id=user.id)
            raise InvalidCredentials("Current password is incorrect")
        self.store.update_user(user.id, password_hash=self._hash(new_password))
        revoked = self.store.revoke_user_refresh_tokens(user.id)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)


__all__ = ["VerificationWorkflow", "RESET_REQUESTED_MESSAGE"]
