from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import generate_unusable_password, hash_password
from keyward.service.errors import (
    AccountSuspended,
    AuthenticationError,
    MissingProviderEmail,
    UpstreamDeliveryFailure,
    ValidationError,
)
from keyward.service.sessions import SessionManager, SessionTokens
from keyward.storage.common import CredentialStore
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import DeviceInfo, User

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


@dataclass
class OAuthProfile:
    """Identity asserted by a provider; the email is the only join key."""

    provider: str
    email: Optional[str]
    name: Optional[str] = None
    avatar: Optional[str] = None


def parse_provider_profile(provider: str, userinfo: Dict[str, Any]) -> OAuthProfile:
    """Map a provider userinfo payload onto an ``OAuthProfile``."""
    if provider == "google":
        return OAuthProfile(
            provider=provider,
            email=userinfo.get("email"),
            name=userinfo.get("name"),
            avatar=userinfo.get("picture"),
        )
    if provider == "github":
        return OAuthProfile(
            provider=provider,
            email=userinfo.get("email"),
            name=userinfo.get("name") or userinfo.get("login"),
            avatar=userinfo.get("avatar_url"),
        )
    raise ValidationError(f"Unsupported OAuth provider: {provider}")


class OAuthAdapter:
    """Maps a provider-verified identity onto a local account and signs it in."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.logger = logger
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: Dict[str, tuple[str, datetime]] = {}
        self._state_lock = threading.Lock()

    def _provider_config(self, provider: str) -> Dict[str, str]:
        config = OAUTH_PROVIDERS.get(provider)
        if not config:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        return config

    def _credentials(self, provider: str) -> tuple[str, str]:
        client_id, client_secret = self.settings.oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                f"OAuth provider {provider} is not configured",
                error_code="oauth_not_configured",
            )
        return client_id, client_secret

    def _redirect_uri(self, provider: str) -> str:
        base = self.settings.oauth_redirect_uri or (
            f"{self.settings.app_base_url.rstrip('/')}/v1/auth/oauth/{{provider}}/callback"
        )
        return base.replace("{provider}", provider)

    # -- redirect start -----------------------------------------------------------------

    def authorization_url(self, provider: str) -> tuple[str, str]:
        """Build the provider redirect and remember the anti-forgery state."""
        config = self._provider_config(provider)
        client_id, _ = self._credentials(provider)
        now = self._clock()
        state = secrets.token_urlsafe(24)
        with self._state_lock:
            for key, (_, expires_at) in list(self._states.items()):
                if expires_at <= now:
                    self._states.pop(key, None)
            self._states[state] = (provider, now + OAUTH_STATE_TTL)
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        return f"{config['auth_url']}?{urlencode(params)}", state

    def consume_state(self, provider: str, state: Optional[str]) -> None:
        with self._state_lock:
            stored = self._states.pop(state, None) if state else None
        if not stored or stored[0] != provider or stored[1] <= self._clock():
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise AuthenticationError("Invalid or expired OAuth state")

    # -- code exchange ---------------------------------------------------------------------

    async def exchange_code(self, provider: str, code: str) -> OAuthProfile:
        """Trade an authorization code for the provider's view of the user."""
        config = self._provider_config(provider)
        client_id, client_secret = self._credentials(provider)
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    raise UpstreamDeliveryFailure("OAuth provider returned no access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                profile = parse_provider_profile(provider, userinfo_response.json())

                # GitHub hides private addresses from /user
                if provider == "github" and not profile.email:
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        profile.email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status=e.response.status_code,
            )
            raise UpstreamDeliveryFailure("OAuth provider rejected the request") from e
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers undecodable JSON bodies
            self.logger.error("oauth_exchange_error", provider=provider, error=str(e))
            raise UpstreamDeliveryFailure("OAuth provider unreachable") from e

        self.logger.info("oauth_exchange_success", provider=provider)
        return profile

    # -- account mapping -------------------------------------------------------------------

    async def oauth_login(
        self,
        profile: OAuthProfile,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> SessionTokens:
        """Sign in the account matching the profile email, creating it if absent.

        No password or lockout checks apply; the provider vouched for the email.
        """
        if not profile.email:
            self.logger.warning("oauth_profile_without_email", provider=profile.provider)
            raise MissingProviderEmail()

        user = self.store.get_user_by_email(profile.email)
        if user:
            if user.is_suspended:
                self.logger.warning("oauth_login_suspended_account", user_id=user.id)
                raise AccountSuspended()
            if not user.is_email_verified:
                user = self.store.update_user(user.id, is_email_verified=True) or user
            self.logger.info(
                "oauth_login_existing_user", provider=profile.provider, user_id=user.id
            )
        else:
            user = self._create_user(profile)
        return await self.sessions.issue_session(user, device, ip)

    def _create_user(self, profile: OAuthProfile) -> User:
        # the random password is never shown; a password reset is the only way to learn one
        password_hash = hash_password(
            generate_unusable_password(), rounds=self.settings.bcrypt_rounds
        )
        user = User.new(
            profile.email,
            password_hash,
            name=profile.name or profile.email.split("@")[0],
            is_email_verified=True,
            profile_picture=profile.avatar,
        )
        try:
            created = self.store.create_user(user)
        except ConstraintViolation:
            # lost a race with a concurrent first login for the same email
            existing = self.store.get_user_by_email(profile.email)
            if existing is None:
                raise
            return existing
        self.logger.info(
            "oauth_user_created", provider=profile.provider, user_id=created.id
        )
        return created

    async def complete(
        self,
        provider: str,
        code: str,
        state: Optional[str],
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> SessionTokens:
        self.consume_state(provider, state)
        profile = await self.exchange_code(provider, code)
        return await self.oauth_login(profile, device, ip)
