"""Integration tests for authentication flow.

Tests the complete auth flow including:
- Registration and email verification
- Login with password and lockout
- Two-factor setup and login continuation
- Password reset
- Token refresh and logout
"""

from datetime import datetime, timedelta, timezone

import pyotp
import pytest
from fastapi.testclient import TestClient

from keyward import app as app_module
from keyward.service.codec import TokenCodec
from keyward.service.runtime import get_runtime

TEST_PASSWORD = "Correct-Horse-9"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", password=TEST_PASSWORD, name="Alice"):
    response = client.post(
        "/v1/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201
    return response.json()["data"]["user_id"]


def _register_verified(client, email="alice@example.com", password=TEST_PASSWORD):
    user_id = _register(client, email=email, password=password)
    otp = get_runtime().store.get_user(user_id).email_verification_otp
    response = client.post("/v1/auth/verify-email", json={"user_id": user_id, "otp": otp})
    assert response.status_code == 200
    return user_id


def _login(client, email="alice@example.com", password=TEST_PASSWORD, **kwargs):
    return client.post("/v1/auth/login", json={"email": email, "password": password}, **kwargs)


def _auth(access_token):
    return {"Authorization": f"Bearer {access_token}"}


class TestRegistration:
    def test_register_creates_unverified_user(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "Alice@Example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == "alice@example.com"
        stored = get_runtime().store.get_user(data["user_id"])
        assert not stored.is_email_verified
        assert stored.email_verification_otp

    def test_duplicate_email(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register",
            json={"name": "Other", "email": "alice@example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "duplicate_email"

    def test_short_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "short"},
        )
        assert response.status_code == 422

    def test_password_over_bcrypt_limit_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "p" * 100},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert get_runtime().store.get_user_by_email("alice@example.com") is None

    def test_multibyte_password_counts_bytes(self, client):
        # 25 three-byte characters: 25 chars, 75 bytes
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "\u20ac" * 25},
        )
        assert response.status_code == 422

    def test_password_at_bcrypt_limit_accepted(self, client):
        _register_verified(client, password="p" * 72)
        assert _login(client, password="p" * 72).status_code == 200

    def test_unverified_login_blocked(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_wrong_verification_code(self, client):
        user_id = _register(client)
        otp = get_runtime().store.get_user(user_id).email_verification_otp
        wrong = "000000" if otp != "000000" else "111111"
        response = client.post("/v1/auth/verify-email", json={"user_id": user_id, "otp": wrong})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired_code"

    def test_resend_otp(self, client):
        user_id = _register(client)
        response = client.post("/v1/auth/resend-otp", json={"user_id": user_id})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "sent"


class TestLoginAndSessions:
    def test_login_me_refresh_logout(self, client):
        user_id = _register_verified(client)
        response = _login(
            client,
            headers={
                "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
                "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
            },
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"]["id"] == user_id
        assert "password_hash" not in data["user"]

        record = get_runtime().store.get_refresh_token(data["refresh_token"])
        assert record.ip_address == "203.0.113.7"
        assert record.device_info.browser == "Firefox"

        me = client.get("/v1/auth/me", headers=_auth(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["access_token"]

        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_auth(data["access_token"]),
        )
        assert logout.status_code == 200
        assert logout.json()["data"]["revoked"] is True

        again = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_with_expired_access_token(self, client):
        _register_verified(client)
        data = _login(client).json()["data"]
        user = get_runtime().store.get_user_by_email("alice@example.com")
        settings = get_runtime().settings
        an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        stale_codec = TokenCodec(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            clock=lambda: an_hour_ago,
        )
        expired = stale_codec.issue_access_token(user.id, user.email, user.role)
        assert client.get("/v1/auth/me", headers=_auth(expired)).status_code == 401

        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_auth(expired),
        )
        assert logout.status_code == 200
        assert logout.json()["data"]["revoked"] is True

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401

    def test_logout_without_access_token(self, client):
        _register_verified(client)
        data = _login(client).json()["data"]
        logout = client.post("/v1/auth/logout", json={"refresh_token": data["refresh_token"]})
        assert logout.json()["data"]["revoked"] is True
        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401

    def test_logout_with_valid_token_is_scoped_to_caller(self, client):
        _register_verified(client)
        _register_verified(client, email="bob@example.com")
        alice = _login(client).json()["data"]
        bob = _login(client, email="bob@example.com").json()["data"]
        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": alice["refresh_token"]},
            headers=_auth(bob["access_token"]),
        )
        assert logout.json()["data"]["revoked"] is False
        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert refreshed.status_code == 200

    def test_logout_all(self, client):
        _register_verified(client)
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]
        response = client.post("/v1/auth/logout-all", headers=_auth(first["access_token"]))
        assert response.json()["data"]["sessions_revoked"] == 2
        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert refreshed.status_code == 401

    def test_lockout_after_repeated_failures(self, client):
        _register_verified(client)
        for _ in range(5):
            response = _login(client, password="Wrong-Password-1")
            assert response.status_code == 401
        response = _login(client)
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_bad_bearer_token(self, client):
        response = client.get("/v1/auth/me", headers=_auth("not-a-token"))
        assert response.status_code == 401

    def test_profile_update(self, client):
        _register_verified(client)
        tokens = _login(client).json()["data"]
        response = client.patch(
            "/v1/users/me", json={"name": "Alice L."}, headers=_auth(tokens["access_token"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice L."


class TestPasswordFlows:
    def test_reset_flow(self, client):
        user_id = _register_verified(client)
        old_session = _login(client).json()["data"]

        forgot = client.post("/v1/auth/password/forgot", json={"email": "alice@example.com"})
        assert forgot.status_code == 200
        otp = get_runtime().store.get_user(user_id).password_reset_otp

        verified = client.post(
            "/v1/auth/password/verify-otp", json={"email": "alice@example.com", "otp": otp}
        )
        reset_token = verified.json()["data"]["reset_token"]
        reset = client.post(
            "/v1/auth/password/reset",
            json={"reset_token": reset_token, "new_password": "Brand-New-Pass-1"},
        )
        assert reset.status_code == 200

        assert _login(client).status_code == 401
        assert _login(client, password="Brand-New-Pass-1").status_code == 200
        stale = client.post("/v1/auth/refresh", json={"refresh_token": old_session["refresh_token"]})
        assert stale.status_code == 401

    def test_forgot_hides_unknown_accounts(self, client):
        _register_verified(client)
        known = client.post("/v1/auth/password/forgot", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"]

    def test_change_password(self, client):
        _register_verified(client)
        tokens = _login(client).json()["data"]
        other_device = _login(client, headers={"User-Agent": "curl/8.5.0"}).json()["data"]
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": TEST_PASSWORD, "new_password": "Brand-New-Pass-1"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert _login(client, password="Brand-New-Pass-1").status_code == 200
        for session in (tokens, other_device):
            stale = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
            assert stale.status_code == 401


class TestTwoFactor:
    def test_enable_then_login_with_code(self, client):
        user_id = _register_verified(client)
        tokens = _login(client).json()["data"]
        headers = _auth(tokens["access_token"])

        setup = client.post("/v1/auth/2fa/setup", headers=headers).json()["data"]
        assert setup["qr_code"].startswith("data:image/png;base64,")
        totp = pyotp.TOTP(setup["secret"])
        enabled = client.post("/v1/auth/2fa/verify", json={"code": totp.now()}, headers=headers)
        assert enabled.status_code == 200

        pending = _login(client).json()["data"]
        assert pending["requires_two_factor"] is True
        assert "access_token" not in pending

        response = client.post(
            "/v1/auth/2fa/validate",
            json={"user_id": user_id, "code": totp.now(), "temp_token": pending["temp_token"]},
        )
        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"]

        disabled = client.post(
            "/v1/auth/2fa/disable", json={"password": TEST_PASSWORD}, headers=headers
        )
        assert disabled.status_code == 200
        assert "access_token" in _login(client).json()["data"]

    def test_verify_before_setup(self, client):
        _register_verified(client)
        tokens = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/2fa/verify", json={"code": "123456"}, headers=_auth(tokens["access_token"])
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "two_factor_not_initiated"


class TestOAuthRoutes:
    def test_start_without_credentials(self, client):
        response = client.get("/v1/auth/oauth/google/start")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "oauth_not_configured"

    def test_callback_with_provider_error(self, client):
        response = client.get("/v1/auth/oauth/google/callback?error=access_denied")
        assert response.status_code == 401
