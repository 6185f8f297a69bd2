from __future__ import annotations

import ipaddress
from typing import Optional, Sequence
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from nexora.api.schemas import (
    AccessTokenResponse,
    ActivityListResponse,
    ActivityResponse,
    AuthResponse,
    ChangePasswordRequest,
    CountResponse,
    DeleteAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokeSessionsRequest,
    SessionListResponse,
    SessionResponse,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserResponse,
    VerifyEmailRequest,
)
from nexora.logging import get_logger
from nexora.service.auth import AuthTokens, LoginOutcome
from nexora.service.errors import (
    AuthenticationError,
    ForbiddenError,
    Failure,
    error_for_failure,
    unwrap,
)
from nexora.service.rate_limit import RateLimitDecision
from nexora.service.runtime import Runtime, get_runtime
from nexora.service.sessions import token_digest
from nexora.storage.models import DeviceInfo, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this email, you will receive a password reset link."
)


def _is_trusted_proxy(host: str, trusted: Sequence[str]) -> bool:
    if not host:
        return False
    for entry in trusted:
        if host == entry:
            return True
        if "/" in entry:
            try:
                if ipaddress.ip_address(host) in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
    return False


def _client_ip(request: Request, trusted: Optional[Sequence[str]] = None) -> str:
    """Address used for rate-limit keys and session metadata.

    Forwarding headers only count when the socket peer is a trusted proxy.
    ``X-Forwarded-For`` is then read right to left and the first hop that
    is not itself a trusted proxy wins.
    """
    if trusted is None:
        trusted = get_runtime().settings.trusted_proxies
    peer = request.client.host if request.client else ""
    if not _is_trusted_proxy(peer, trusted):
        return peer or "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted_proxy(hop, trusted):
                return hop
        if hops:
            return hops[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer


def _device(request: Request) -> DeviceInfo:
    return DeviceInfo.from_user_agent(request.headers.get("user-agent"), _client_ip(request))


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = decision.reset_at.isoformat()


def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitDecision:
    """Count one request against ``key``; raises 429 once the window is full."""

    decision = runtime.rate_limiter.check(key, window_seconds, limit)
    if not decision.allowed:
        raise error_for_failure(decision.as_failure())
    if response is not None:
        _apply_rate_limit_headers(response, decision)
    return decision


def _apply_session_cookies(response: Response, runtime: Runtime, tokens: AuthTokens) -> None:
    secure = runtime.settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response, runtime: Runtime) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=runtime.settings.cookie_secure, httponly=True, samesite="lax"
        )


def _auth_response(outcome: LoginOutcome) -> AuthResponse:
    tokens = outcome.tokens
    return AuthResponse(
        user=UserResponse.from_user(outcome.user),
        requires_two_factor=outcome.requires_two_factor,
        challenge_token=outcome.challenge_token,
        access_token=tokens.access_token if tokens else None,
        refresh_token=tokens.refresh_token if tokens else None,
        session_id=tokens.session.id if tokens else None,
        session_expires_at=tokens.session.expires_at if tokens else None,
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> User:
    """Resolve the caller from a bearer header or the access-token cookie."""

    token = _bearer_token(authorization) or request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise AuthenticationError("Authentication required")
    runtime = get_runtime()
    return unwrap(await runtime.auth.authenticate(token))


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account and open its first session.

    Raises:
        400: Weak password or malformed input
        409: Email already registered
        429: Too many registrations from this address
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit,
        runtime.settings.register_rate_window_seconds,
        response=response,
    )
    outcome = unwrap(
        await runtime.auth.register(
            body.email, body.password, body.name, device=_device(request)
        )
    )
    _apply_session_cookies(response, runtime, outcome.tokens)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    When two-factor authentication is enabled no session is opened; the
    response carries a challenge token for ``/auth/2fa/verify`` instead.
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    outcome = unwrap(
        await runtime.auth.login(body.email, body.password, device=_device(request))
    )
    if outcome.tokens:
        _apply_session_cookies(response, runtime, outcome.tokens)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"2fa:{_client_ip(request)}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
        response=response,
    )
    outcome = unwrap(
        await runtime.auth.complete_two_factor_login(
            body.challenge_token, body.code.strip(), device=_device(request)
        )
    )
    _apply_session_cookies(response, runtime, outcome.tokens)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_two_factor(user: User = Depends(get_current_user)):
    """Generate a secret for the authenticator app; nothing is stored yet."""
    runtime = get_runtime()
    enrollment = unwrap(await runtime.auth.begin_two_factor(user))
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=enrollment.secret, otpauth_uri=enrollment.display_uri
        ),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_two_factor(
    body: TwoFactorEnableRequest, request: Request, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    unwrap(
        await runtime.auth.enable_two_factor(
            user, body.secret, body.code.strip(), device=_device(request)
        )
    )
    return Envelope(
        status="ok",
        data=MessageResponse(message="Two-factor authentication enabled successfully"),
    )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, request: Request, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    unwrap(await runtime.auth.disable_two_factor(user, body.password, device=_device(request)))
    return Envelope(
        status="ok",
        data=MessageResponse(message="Two-factor authentication disabled successfully"),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    """Exchange a live refresh token for a new access token."""
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise AuthenticationError("Refresh token required")
    access_token = unwrap(await runtime.auth.refresh(refresh_token))
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )
    return Envelope(status="ok", data=AccessTokenResponse(access_token=access_token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    """End the current session; repeating it is harmless."""
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    unwrap(await runtime.auth.logout(refresh_token, device=_device(request)))
    _clear_session_cookies(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(request: Request, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    current = request.cookies.get(REFRESH_COOKIE)
    current_digest = token_digest(current) if current else None
    items = [
        SessionResponse.from_session(
            sess, current=sess.refresh_token_digest == current_digest
        )
        for sess in runtime.auth.list_sessions(user)
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    request: Request,
    body: Optional[RevokeSessionsRequest] = None,
    session_id: Optional[str] = Query(None, alias="id", min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    """Sign out one device (``?id=``) or every other device.

    Without ``id`` the caller's own session, named by the refresh token in
    the body or cookie, is kept.
    """
    runtime = get_runtime()
    if session_id:
        unwrap(await runtime.auth.revoke_session(user, session_id, device=_device(request)))
        return Envelope(
            status="ok", data=CountResponse(message="Session signed out", count=1)
        )
    keep = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    removed = unwrap(
        await runtime.auth.revoke_other_sessions(user, keep, device=_device(request))
    )
    return Envelope(
        status="ok", data=CountResponse(message="Other sessions signed out", count=removed)
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset. The answer never reveals whether the email exists."""
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit,
        runtime.settings.reset_rate_window_seconds,
        response=response,
    )
    await runtime.auth.forgot_password(body.email, device=_device(request))
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    unwrap(await runtime.auth.reset_password(body.token, body.password, device=_device(request)))
    _clear_session_cookies(response, runtime)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Password reset successfully. Please log in with your new password."
        ),
    )


@router.post("/auth/send-verification", response_model=Envelope, tags=["auth"])
async def send_verification(
    request: Request, response: Response, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.verify_rate_limit,
        runtime.settings.verify_rate_window_seconds,
        response=response,
    )
    unwrap(await runtime.auth.send_verification(user))
    return Envelope(status="ok", data=MessageResponse(message="Verification email sent"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    outcome = unwrap(await runtime.auth.verify_email(body.token, device=_device(request)))
    _apply_session_cookies(response, runtime, outcome.tokens)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.get("/auth/callback/{provider}", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., description="OAuth provider (github, google)"),
    code: Optional[str] = Query(None, max_length=512),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish an OAuth sign-in and redirect back into the web app."""
    runtime = get_runtime()
    base_url = runtime.settings.app_base_url.rstrip("/")
    if error:
        return RedirectResponse(f"{base_url}/login?error={quote(error)}", status_code=302)
    if not code:
        return RedirectResponse(
            f"{base_url}/login?error={quote('No authorization code')}", status_code=302
        )
    result = await runtime.auth.oauth_callback(provider, code, device=_device(request))
    if isinstance(result, Failure):
        logger.warning("oauth_callback_failed", provider=provider, kind=result.kind.value)
        return RedirectResponse(
            f"{base_url}/login?error={quote(result.message)}", status_code=302
        )
    outcome = result.value
    if outcome.requires_two_factor:
        return RedirectResponse(
            f"{base_url}/login/2fa?challenge={quote(outcome.challenge_token)}", status_code=302
        )
    redirect = RedirectResponse(f"{base_url}/dashboard", status_code=302)
    _apply_session_cookies(redirect, runtime, outcome.tokens)
    return redirect


@router.post("/user/change-password", response_model=Envelope, tags=["user"])
async def change_password(
    body: ChangePasswordRequest, request: Request, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    unwrap(
        await runtime.auth.change_password(
            user, body.current_password, body.new_password, device=_device(request)
        )
    )
    return Envelope(status="ok", data=MessageResponse(message="Password changed successfully"))


@router.post("/user/delete-account", response_model=Envelope, tags=["user"])
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
):
    """Permanently delete the caller's account and sign it out everywhere."""
    runtime = get_runtime()
    unwrap(
        await runtime.auth.delete_account(
            user, body.confirmation, body.password, device=_device(request)
        )
    )
    _clear_session_cookies(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="Account deleted successfully"))


@router.get("/user/activity", response_model=Envelope, tags=["user"])
async def user_activity(
    limit: int = Query(50, ge=1, le=200), user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    items = [ActivityResponse.from_entry(e) for e in runtime.auth.recent_activity(user, limit)]
    return Envelope(status="ok", data=ActivityListResponse(items=items))


@router.post("/admin/cleanup-sessions", response_model=Envelope, tags=["admin"])
async def cleanup_sessions(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    removed = unwrap(await runtime.auth.cleanup_sessions(admin))
    return Envelope(
        status="ok",
        data=CountResponse(message=f"Cleaned up {removed} expired sessions", count=removed),
    )
