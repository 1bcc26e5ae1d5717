from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_MIN_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field("postgresql://localhost:5432/keyward", "DATABASE_URL")
    shared_fs_root: str = env_field("/srv/keyward", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    store_encryption_key: str | None = env_field(
        None,
        "STORE_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest (memory store)",
    )

    # Signing keys, one per token class
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    temp_token_ttl_minutes: int = env_field(5, "TEMP_TOKEN_TTL_MINUTES", ge=1)
    refresh_purge_interval_seconds: int = env_field(
        3600, "REFRESH_PURGE_INTERVAL_SECONDS", ge=1, description="Expired refresh record sweep period"
    )

    # Credential policy
    bcrypt_rounds: int = env_field(12, "BCRYPT_ROUNDS")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    totp_valid_window: int = env_field(
        2, "TOTP_VALID_WINDOW", ge=0, description="Accepted TOTP drift in 30s steps"
    )
    two_factor_issuer: str = env_field("Keyward", "TWO_FACTOR_ISSUER")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Keyward", "EMAIL_FROM_NAME")

    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")
    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma separated origins; defaults to CLIENT_URL",
    )

    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("signing secret must be configured")
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"signing secret must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def _validate_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh signing secrets must differ")
        return self

    def allowed_origins(self) -> list[str]:
        raw = self.cors_allow_origins or self.client_url
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
