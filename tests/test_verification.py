"""Unit tests for registration, email verification, password reset and change."""

import pytest

from keyward.service.codec import verify_password
from keyward.service.errors import (
    DuplicateEmail,
    InvalidCredentials,
    InvalidOrExpiredCode,
    InvalidOrExpiredRefreshToken,
    NotFound,
    UpstreamDeliveryFailure,
    ValidationError,
)
from keyward.service.verification import RESET_REQUESTED_MESSAGE, VerificationWorkflow

TEST_PASSWORD = "Correct-Horse-9"


def _one_digit_off(otp: str, position: int = 0) -> str:
    digit = str((int(otp[position]) + 1) % 10)
    return otp[:position] + digit + otp[position + 1 :]


@pytest.fixture
def workflow(store, email, settings, clock):
    return VerificationWorkflow(store, email, settings, clock=clock)


class TestRegistration:
    async def test_register_creates_unverified_user_and_sends_code(self, workflow, email, store):
        user = await workflow.register("Alice", "Alice@Example.com", TEST_PASSWORD)

        assert user.email == "alice@example.com"
        assert not user.is_email_verified
        assert verify_password(TEST_PASSWORD, store.get_user(user.id).password_hash)
        sent = email.last("verification")
        assert sent["to"] == "alice@example.com"
        assert sent["otp"] == store.get_user(user.id).email_verification_otp
        assert sent["ttl"] == 10

    async def test_duplicate_email_rejected(self, workflow):
        await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        with pytest.raises(DuplicateEmail):
            await workflow.register("Other", "ALICE@example.com", TEST_PASSWORD)

    async def test_delivery_failure_keeps_account(self, store, settings, clock, failing_email):
        workflow = VerificationWorkflow(store, failing_email, settings, clock=clock)
        with pytest.raises(UpstreamDeliveryFailure):
            await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        persisted = store.get_user_by_email("alice@example.com")
        assert persisted is not None
        assert persisted.email_verification_otp is not None

    async def test_password_over_bcrypt_limit(self, workflow, store):
        with pytest.raises(ValidationError):
            await workflow.register("Alice", "alice@example.com", "p" * 73)
        assert store.get_user_by_email("alice@example.com") is None


class TestEmailVerification:
    async def test_correct_code_verifies_and_clears(self, workflow, email, store):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        otp = email.last("verification")["otp"]

        verified = await workflow.verify_email(user.id, otp)
        assert verified.is_email_verified
        stored = store.get_user(user.id)
        assert stored.email_verification_otp is None
        assert stored.email_verification_expires is None

    async def test_wrong_code(self, workflow, email):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        otp = email.last("verification")["otp"]
        for position in (0, 5):
            with pytest.raises(InvalidOrExpiredCode):
                await workflow.verify_email(user.id, _one_digit_off(otp, position))
        assert (await workflow.verify_email(user.id, otp)).is_email_verified

    async def test_expired_code(self, workflow, email, clock):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        otp = email.last("verification")["otp"]
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_email(user.id, otp)

    async def test_code_accepted_just_before_expiry(self, workflow, email, clock):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        otp = email.last("verification")["otp"]
        clock.advance(minutes=9, seconds=59)
        assert (await workflow.verify_email(user.id, otp)).is_email_verified

    async def test_code_rejected_at_expiry(self, workflow, email, clock):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        otp = email.last("verification")["otp"]
        clock.advance(minutes=10)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_email(user.id, otp)

    async def test_already_verified(self, workflow, make_user):
        user = make_user(is_email_verified=True)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_email(user.id, "123456")

    async def test_unknown_user(self, workflow):
        with pytest.raises(NotFound):
            await workflow.verify_email("missing", "123456")

    async def test_resend_replaces_code(self, workflow, email, store, clock):
        user = await workflow.register("Alice", "alice@example.com", TEST_PASSWORD)
        clock.advance(minutes=11)
        await workflow.resend_verification_otp(user.id)
        fresh = email.last("verification")["otp"]
        assert store.get_user(user.id).email_verification_otp == fresh
        verified = await workflow.verify_email(user.id, fresh)
        assert verified.is_email_verified

    async def test_resend_for_verified_user_rejected(self, workflow, make_user):
        user = make_user(is_email_verified=True)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.resend_verification_otp(user.id)


class TestPasswordReset:
    async def test_unknown_email_gets_same_message(self, workflow, email):
        message = await workflow.request_password_reset("nobody@example.com")
        assert message == RESET_REQUESTED_MESSAGE
        assert email.sent == []

    async def test_full_reset_flow_revokes_sessions(self, workflow, make_user, sessions, email, store):
        user = make_user()
        tokens = await sessions.login(user.email, TEST_PASSWORD)

        assert await workflow.request_password_reset(user.email) == RESET_REQUESTED_MESSAGE
        otp = email.last("password_reset")["otp"]
        reset_token = await workflow.verify_reset_otp(user.email, otp)
        assert len(reset_token) == 64

        await workflow.reset_password(reset_token, "Brand-New-Pass-1")
        stored = store.get_user(user.id)
        assert verify_password("Brand-New-Pass-1", stored.password_hash)
        assert stored.password_reset_otp is None
        assert stored.password_reset_token is None
        assert stored.password_reset_expires is None
        with pytest.raises(InvalidOrExpiredRefreshToken):
            await sessions.refresh_access_token(tokens.refresh_token)

    async def test_reset_token_single_use(self, workflow, make_user, email):
        user = make_user()
        await workflow.request_password_reset(user.email)
        reset_token = await workflow.verify_reset_otp(
            user.email, email.last("password_reset")["otp"]
        )
        await workflow.reset_password(reset_token, "Brand-New-Pass-1")
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.reset_password(reset_token, "Another-Pass-22")

    async def test_wrong_reset_otp(self, workflow, make_user, email):
        user = make_user()
        await workflow.request_password_reset(user.email)
        otp = email.last("password_reset")["otp"]
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_reset_otp(user.email, _one_digit_off(otp, 3))

    async def test_reset_code_window_boundary(self, workflow, make_user, email, clock):
        user = make_user()
        await workflow.request_password_reset(user.email)
        otp = email.last("password_reset")["otp"]
        clock.advance(minutes=9, seconds=59)
        assert await workflow.verify_reset_otp(user.email, otp)
        clock.advance(seconds=1)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_reset_otp(user.email, otp)

    async def test_expired_reset_window(self, workflow, make_user, email, clock):
        user = make_user()
        await workflow.request_password_reset(user.email)
        otp = email.last("password_reset")["otp"]
        reset_token = await workflow.verify_reset_otp(user.email, otp)
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_reset_otp(user.email, otp)
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.reset_password(reset_token, "Brand-New-Pass-1")

    async def test_verify_without_request(self, workflow, make_user):
        user = make_user()
        with pytest.raises(InvalidOrExpiredCode):
            await workflow.verify_reset_otp(user.email, "123456")

    async def test_delivery_failure_surfaces(self, store, settings, clock, make_user, failing_email):
        user = make_user()
        workflow = VerificationWorkflow(store, failing_email, settings, clock=clock)
        with pytest.raises(UpstreamDeliveryFailure):
            await workflow.request_password_reset(user.email)

    async def test_new_request_replaces_previous_code(self, workflow, make_user, email):
        user = make_user()
        await workflow.request_password_reset(user.email)
        first = email.last("password_reset")["otp"]
        await workflow.request_password_reset(user.email)
        second = email.last("password_reset")["otp"]
        if first != second:
            with pytest.raises(InvalidOrExpiredCode):
                await workflow.verify_reset_otp(user.email, first)
        assert await workflow.verify_reset_otp(user.email, second)


class TestPasswordChange:
    async def test_change_requires_current_password(self, workflow, make_user):
        user = make_user()
        with pytest.raises(InvalidCredentials):
            await workflow.change_password(user.id, "wrong-password", "Brand-New-Pass-1")

    async def test_change_updates_hash_and_revokes(self, workflow, make_user, sessions, store):
        user = make_user()
        tokens = await sessions.login(user.email, TEST_PASSWORD)
        await workflow.change_password(user.id, TEST_PASSWORD, "Brand-New-Pass-1")
        assert verify_password("Brand-New-Pass-1", store.get_user(user.id).password_hash)
        with pytest.raises(InvalidOrExpiredRefreshToken):
            await sessions.refresh_access_token(tokens.refresh_token)

    async def test_change_revokes_every_device(self, workflow, make_user, sessions, store):
        user = make_user()
        laptop = await sessions.login(user.email, TEST_PASSWORD)
        phone = await sessions.login(user.email, TEST_PASSWORD)
        assert laptop.refresh_token != phone.refresh_token

        await workflow.change_password(user.id, TEST_PASSWORD, "Brand-New-Pass-1")
        for tokens in (laptop, phone):
            assert store.get_refresh_token(tokens.refresh_token).is_revoked
            with pytest.raises(InvalidOrExpiredRefreshToken):
                await sessions.refresh_access_token(tokens.refresh_token)

    async def test_change_to_oversized_password(self, workflow, make_user, store):
        user = make_user()
        before = store.get_user(user.id).password_hash
        with pytest.raises(ValidationError):
            await workflow.change_password(user.id, TEST_PASSWORD, "\u00e9" * 40)
        assert store.get_user(user.id).password_hash == before
