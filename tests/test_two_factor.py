"""Unit tests for TOTP setup, confirmation, login continuation and removal."""

import pyotp
import pytest

from keyward.service.errors import (
    AccountSuspended,
    AlreadyEnabled,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidTwoFactorCode,
    TwoFactorNotEnabled,
    ValidationError,
)
from keyward.service.sessions import PendingTwoFactor, SessionTokens
from keyward.service.two_factor import TwoFactorWorkflow

TEST_PASSWORD = "Correct-Horse-9"


@pytest.fixture
def two_factor(store, sessions, settings, email, clock):
    return TwoFactorWorkflow(store, sessions, settings, email=email, clock=clock)


def _code(secret, clock):
    return pyotp.TOTP(secret).at(clock.now)


def _wrong_code(secret, clock):
    right = _code(secret, clock)
    # far enough from every code inside the drift window
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555"):
        if not pyotp.TOTP(secret).verify(candidate, for_time=clock.now, valid_window=2):
            return candidate
    raise AssertionError(f"could not find a wrong code distinct from {right}")


async def _enable(two_factor, user, clock):
    setup = await two_factor.setup(user.id)
    await two_factor.verify(user.id, _code(setup.secret, clock))
    return setup.secret


class TestSetup:
    async def test_setup_stores_pending_secret(self, two_factor, make_user, store):
        user = make_user()
        setup = await two_factor.setup(user.id)

        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert setup.qr_code.startswith("data:image/png;base64,")
        stored = store.get_user(user.id)
        assert stored.two_factor_secret == setup.secret
        assert not stored.two_factor_enabled

    async def test_setup_when_enabled_rejected(self, two_factor, make_user, clock):
        user = make_user()
        await _enable(two_factor, user, clock)
        with pytest.raises(AlreadyEnabled):
            await two_factor.setup(user.id)

    async def test_repeated_setup_replaces_secret(self, two_factor, make_user, store):
        user = make_user()
        first = await two_factor.setup(user.id)
        second = await two_factor.setup(user.id)
        assert first.secret != second.secret
        assert store.get_user(user.id).two_factor_secret == second.secret


class TestVerify:
    async def test_verify_enables_and_notifies(self, two_factor, make_user, store, email, clock):
        user = make_user()
        await _enable(two_factor, user, clock)
        assert store.get_user(user.id).two_factor_enabled
        assert email.last("two_factor_enabled")["to"] == user.email

    async def test_verify_without_setup(self, two_factor, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as excinfo:
            await two_factor.verify(user.id, "123456")
        assert excinfo.value.error_code == "two_factor_not_initiated"

    async def test_verify_wrong_code(self, two_factor, make_user, store, clock):
        user = make_user()
        setup = await two_factor.setup(user.id)
        with pytest.raises(InvalidTwoFactorCode):
            await two_factor.verify(user.id, _wrong_code(setup.secret, clock))
        assert not store.get_user(user.id).two_factor_enabled

    async def test_failed_notice_does_not_undo_enable(
        self, store, sessions, settings, failing_email, clock, make_user
    ):
        workflow = TwoFactorWorkflow(store, sessions, settings, email=failing_email, clock=clock)
        user = make_user()
        setup = await workflow.setup(user.id)
        await workflow.verify(user.id, _code(setup.secret, clock))
        assert store.get_user(user.id).two_factor_enabled


class TestValidate:
    async def test_login_then_validate_issues_session(self, two_factor, sessions, make_user, clock):
        user = make_user()
        secret = await _enable(two_factor, user, clock)

        pending = await sessions.login(user.email, TEST_PASSWORD)
        assert isinstance(pending, PendingTwoFactor)
        tokens = await two_factor.validate(
            user.id, _code(secret, clock), temp_token=pending.temp_token
        )
        assert isinstance(tokens, SessionTokens)
        assert await sessions.refresh_access_token(tokens.refresh_token)

    async def test_validate_without_temp_token(self, two_factor, make_user, clock):
        user = make_user()
        secret = await _enable(two_factor, user, clock)
        tokens = await two_factor.validate(user.id, _code(secret, clock))
        assert tokens.user.id == user.id

    async def test_wrong_code_then_retry(self, two_factor, sessions, make_user, clock):
        user = make_user()
        secret = await _enable(two_factor, user, clock)
        pending = await sessions.login(user.email, TEST_PASSWORD)
        with pytest.raises(InvalidTwoFactorCode):
            await two_factor.validate(
                user.id, _wrong_code(secret, clock), temp_token=pending.temp_token
            )
        # the temp token stays usable until its own expiry
        tokens = await two_factor.validate(
            user.id, _code(secret, clock), temp_token=pending.temp_token
        )
        assert tokens.access_token

    async def test_temp_token_for_other_user_rejected(self, two_factor, sessions, make_user, clock):
        alice = make_user()
        bob = make_user(email="bob@example.com", name="Bob")
        secret = await _enable(two_factor, alice, clock)
        await _enable(two_factor, bob, clock)
        bob_pending = await sessions.login(bob.email, TEST_PASSWORD)
        with pytest.raises(InvalidAccessToken):
            await two_factor.validate(
                alice.id, _code(secret, clock), temp_token=bob_pending.temp_token
            )

    async def test_access_token_not_accepted_as_temp_token(self, two_factor, sessions, make_user, clock):
        user = make_user()
        secret = await _enable(two_factor, user, clock)
        access = sessions.codec.issue_access_token(user.id, user.email, user.role)
        with pytest.raises(InvalidAccessToken):
            await two_factor.validate(user.id, _code(secret, clock), temp_token=access)

    async def test_not_enabled(self, two_factor, make_user):
        user = make_user()
        with pytest.raises(TwoFactorNotEnabled):
            await two_factor.validate(user.id, "123456")

    async def test_pending_secret_is_not_enough(self, two_factor, make_user, clock):
        user = make_user()
        setup = await two_factor.setup(user.id)
        with pytest.raises(TwoFactorNotEnabled):
            await two_factor.validate(user.id, _code(setup.secret, clock))

    async def test_suspended_user_rejected(self, two_factor, make_user, store, clock):
        user = make_user()
        secret = await _enable(two_factor, user, clock)
        store.update_user(user.id, is_suspended=True)
        with pytest.raises(AccountSuspended):
            await two_factor.validate(user.id, _code(secret, clock))


class TestDisable:
    async def test_disable_clears_secret(self, two_factor, make_user, store, clock):
        user = make_user()
        await _enable(two_factor, user, clock)
        await two_factor.disable(user.id, TEST_PASSWORD)
        stored = store.get_user(user.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None

    async def test_disable_requires_password(self, two_factor, make_user, store, clock):
        user = make_user()
        await _enable(two_factor, user, clock)
        with pytest.raises(InvalidCredentials):
            await two_factor.disable(user.id, "wrong-password")
        assert store.get_user(user.id).two_factor_enabled

    async def test_disable_when_not_enabled(self, two_factor, make_user):
        user = make_user()
        with pytest.raises(TwoFactorNotEnabled):
            await two_factor.disable(user.id, TEST_PASSWORD)
