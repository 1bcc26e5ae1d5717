from keyward.logging import _redact_pii, mask_email


def test_secret_keys_are_redacted():
    event = _redact_pii(
        None,
        "warning",
        {
            "event": "password_reset_rejected",
            "reset_token": "a" * 64,
            "token_prefix": "abcdef12",
            "otp": "123456",
            "new_password": "Brand-New-Pass-1",
            "reason": "unknown_token",
        },
    )
    assert event["reset_token"] == "[REDACTED]"
    assert event["token_prefix"] == "[REDACTED]"
    assert event["otp"] == "[REDACTED]"
    assert event["new_password"] == "[REDACTED]"
    assert event["reason"] == "unknown_token"
    assert event["event"] == "password_reset_rejected"


def test_email_keys_are_masked():
    event = _redact_pii(None, "info", {"event": "user_registered", "email": "alice@example.com"})
    assert event["email"] == "a***@example.com"


def test_mask_email_without_domain():
    assert mask_email("not-an-address") == "***"
