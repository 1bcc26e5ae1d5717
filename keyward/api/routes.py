from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from keyward.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    PasswordResetOtpRequest,
    PendingTwoFactorResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResendOtpRequest,
    SuspendUserRequest,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorValidateRequest,
    UpdateUserRoleRequest,
    UserDetailResponse,
    UserListResponse,
    VerifyEmailRequest,
)
from keyward.logging import get_logger
from keyward.service.errors import (
    AccountSuspended,
    AuthenticationError,
    InvalidAccessToken,
    PermissionDenied,
)
from keyward.service.runtime import get_runtime
from keyward.service.sessions import AuthContext, PendingTwoFactor, SessionTokens
from keyward.storage.models import ROLE_ADMIN, DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_MAX_FORWARDED_HOPS = 5
_BROWSERS = (
    ("Edg/", "Edge"),
    ("OPR/", "Opera"),
    ("Firefox/", "Firefox"),
    ("Chrome/", "Chrome"),
    ("Safari/", "Safari"),
    ("curl/", "curl"),
)
_OPERATING_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
)


def _device_from_request(request: Request) -> DeviceInfo:
    """Best-effort browser and OS detection from the User-Agent header."""
    ua = request.headers.get("user-agent", "")
    browser = next((name for marker, name in _BROWSERS if marker in ua), None)
    os_name = next((name for marker, name in _OPERATING_SYSTEMS if marker in ua), None)
    if os_name in ("Android", "iOS"):
        platform = "mobile"
    elif os_name:
        platform = "desktop"
    else:
        platform = None
    return DeviceInfo(browser=browser, os=os_name, platform=platform, source=ua[:256] or "web")


def _client_ip(request: Request) -> Optional[str]:
    """First address in X-Forwarded-For, else the socket peer.

    The header is trusted as set by the fronting proxy; only the leading hops
    are considered.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [ip.strip() for ip in forwarded.split(",")][:_MAX_FORWARDED_HOPS]
        if hops and hops[0]:
            return hops[0]
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _session_response(tokens: SessionTokens) -> AuthResponse:
    return AuthResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        user=tokens.user.public_dict(),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.sessions.authenticate(_bearer_token(authorization))


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Resolve the caller when a usable bearer token is sent, else None."""
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return await get_runtime().sessions.authenticate(token)
    except (InvalidAccessToken, AccountSuspended) as exc:
        logger.info("optional_auth_ignored", reason=exc.message)
        return None


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != ROLE_ADMIN:
        logger.warning("admin_access_denied", user_id=principal.user_id)
        raise PermissionDenied("Access denied. Insufficient permissions.")
    return principal


# -- registration / verification ---------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and email its verification code.

    Raises:
        409: If the email is already registered
        502: If the verification email could not be sent
    """
    runtime = get_runtime()
    user = await runtime.verification.register(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data={
            "user_id": user.id,
            "email": user.email,
            "message": "Registration successful. Please verify your email.",
        },
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.verification.verify_email(body.user_id, body.otp)
    return Envelope(status="ok", data={"status": "verified", "user": user.public_dict()})


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest):
    runtime = get_runtime()
    await runtime.verification.resend_verification_otp(body.user_id)
    return Envelope(status="ok", data={"status": "sent"})


# -- login / sessions ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Accounts with two-factor enabled get a short-lived temp token instead of
    a session; the login is completed through ``/auth/2fa/validate``.

    Raises:
        401: If credentials are invalid
        403: If the account is suspended or its email is unverified
        423: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.email, body.password, _device_from_request(request), _client_ip(request)
    )
    if isinstance(result, PendingTwoFactor):
        return Envelope(
            status="ok",
            data=PendingTwoFactorResponse(
                temp_token=result.temp_token, user_id=result.user_id
            ),
        )
    return Envelope(status="ok", data=_session_response(result))


@router.post("/auth/2fa/validate", response_model=Envelope, tags=["auth"])
async def validate_two_factor(body: TwoFactorValidateRequest, request: Request):
    runtime = get_runtime()
    tokens = await runtime.two_factor.validate(
        body.user_id,
        body.code,
        _device_from_request(request),
        _client_ip(request),
        temp_token=body.temp_token,
    )
    return Envelope(status="ok", data=_session_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    access_token = await runtime.sessions.refresh_access_token(body.refresh_token)
    return Envelope(
        status="ok", data={"access_token": access_token, "token_type": "bearer"}
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    runtime = get_runtime()
    user_id = principal.user_id if principal else None
    revoked = await runtime.sessions.logout(body.refresh_token, user_id=user_id)
    return Envelope(status="ok", data={"status": "logged_out", "revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.sessions.logout_all(principal.user_id)
    return Envelope(status="ok", data={"status": "logged_out", "sessions_revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.accounts.get_profile(principal.user_id)
    return Envelope(status="ok", data=user.public_dict())


# -- password flows ------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    message = await runtime.verification.request_password_reset(body.email)
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/password/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_reset_otp(body: PasswordResetOtpRequest):
    runtime = get_runtime()
    reset_token = await runtime.verification.verify_reset_otp(body.email, body.otp)
    return Envelope(status="ok", data={"reset_token": reset_token})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.verification.reset_password(body.reset_token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.verification.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})


# -- two-factor ----------------------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_two_factor(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    setup = await runtime.two_factor.setup(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret, otpauth_uri=setup.otpauth_uri, qr_code=setup.qr_code
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.two_factor.verify(principal.user_id, body.code)
    return Envelope(status="ok", data={"status": "enabled"})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.two_factor.disable(principal.user_id, body.password)
    return Envelope(status="ok", data={"status": "disabled"})


# -- OAuth ---------------------------------------------------------------------------------


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., description="OAuth provider (google, github)"),
):
    """Return the provider authorization URL the client should redirect to."""
    runtime = get_runtime()
    url, state = runtime.oauth.authorization_url(provider)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(authorization_url=url, state=state, provider=provider),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., description="OAuth provider (google, github)"),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    if error or not code:
        logger.warning("oauth_callback_rejected", provider=provider, reason=error or "missing")
        raise AuthenticationError("OAuth authentication failed")
    runtime = get_runtime()
    tokens = await runtime.oauth.complete(
        provider, code, state, _device_from_request(request), _client_ip(request)
    )
    return Envelope(status="ok", data=_session_response(tokens))


# -- profile -------------------------------------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.accounts.get_profile(principal.user_id)
    return Envelope(status="ok", data=user.public_dict())


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.update_profile(
        principal.user_id,
        name=body.name,
        email=body.email,
        profile_picture=body.profile_picture,
    )
    return Envelope(status="ok", data=user.public_dict())


# -- admin ---------------------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    search: Optional[str] = Query(None, max_length=254),
    role: Optional[str] = Query(None, max_length=16),
    suspended: Optional[bool] = None,
    verified: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100, description="Maximum users to return"),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = await runtime.accounts.list_users(
        search=search,
        role=role,
        suspended=suspended,
        verified=verified,
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[u.public_dict() for u in result.users],
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def admin_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = await runtime.accounts.stats()
    return Envelope(status="ok", data=stats.as_dict())


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    detail = await runtime.accounts.get_user(user_id)
    return Envelope(
        status="ok",
        data=UserDetailResponse(
            user=detail.user.public_dict(), active_sessions=detail.active_sessions
        ),
    )


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.accounts.delete_user(principal.user_id, user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.post("/admin/users/{user_id}/suspend", response_model=Envelope, tags=["admin"])
async def admin_suspend_user(
    user_id: str,
    body: Optional[SuspendUserRequest] = None,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.accounts.suspend_user(
        principal.user_id, user_id, body.reason if body else None
    )
    return Envelope(status="ok", data=user.public_dict())


@router.post("/admin/users/{user_id}/unsuspend", response_model=Envelope, tags=["admin"])
async def admin_unsuspend_user(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.unsuspend_user(principal.user_id, user_id)
    return Envelope(status="ok", data=user.public_dict())


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.accounts.update_role(principal.user_id, user_id, body.role)
    return Envelope(status="ok", data=user.public_dict())
