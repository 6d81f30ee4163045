from __future__ import annotations

from html import escape
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import HTMLResponse

from shopgate.api.error_handling import REFRESHED_ACCESS_STATE, set_credential_cookie
from shopgate.api.schemas import (
    AccountStatusRequest,
    ActivityResponse,
    BroadcastNotificationRequest,
    EmailRequest,
    EmailVerifyRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    NotificationResponse,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    SessionResponse,
    TwoFactorChallengeResponse,
    TwoFactorEnableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupRequest,
    UserResponse,
)
from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.csrf import CSRF_HEADER
from shopgate.service.errors import (
    AuthenticationError,
    CsrfError,
    ForbiddenError,
    RateLimitedError,
)
from shopgate.service.gate import (
    ACCESS_COOKIE,
    BROWSER_SESSION_COOKIE,
    REFRESH_COOKIE,
    CallerContext,
)
from shopgate.service.rate_limit import rate_limit_key
from shopgate.service.runtime import Runtime, get_runtime
from shopgate.service.sessions import LoginResult
from shopgate.storage.models import DeviceInfo, Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
page_router = APIRouter()


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        RateLimitedError with ``Retry-After`` once the window is spent
    """
    decision = await runtime.rate_limiter.check(key, limit, window_seconds)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not decision.allowed:
        logger.warning("rate_limited", key=key, limit=limit)
        raise RateLimitedError.retry_after(decision.reset_seconds)
    return info


async def _limit_route(
    runtime: Runtime, request: Request, route: str, limit: int, response: Response
) -> RateLimitInfo:
    return await _enforce_rate_limit(
        runtime,
        rate_limit_key(_client_ip(request), route),
        limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _browser_session_id(request: Request) -> Optional[str]:
    return getattr(request.state, "browser_session_id", None) or request.cookies.get(
        BROWSER_SESSION_COOKIE
    )


def _device_info(request: Request) -> DeviceInfo:
    return DeviceInfo.from_headers(
        _user_agent(request), request.headers.get("sec-ch-ua-platform")
    )


def _apply_login_cookies(response: Response, result: LoginResult, settings: Settings) -> None:
    set_credential_cookie(
        response,
        ACCESS_COOKIE,
        result.access_token,
        settings.access_token_ttl_minutes * 60,
        settings,
    )
    if result.refresh_token:
        set_credential_cookie(
            response,
            REFRESH_COOKIE,
            result.refresh_token,
            settings.refresh_token_ttl_days * 24 * 60 * 60,
            settings,
        )
    else:
        response.delete_cookie(REFRESH_COOKIE, path="/")


def _clear_login_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.public_dict())


# -- dependencies ----------------------------------------------------------


async def get_caller(
    request: Request,
    response: Response,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
) -> CallerContext:
    """Run the authentication gate over the request cookies.

    A transparently refreshed access credential is set on the response and
    kept on ``request.state`` so error responses carry it as well.
    """
    runtime = get_runtime()
    outcome = await runtime.gate.authenticate(
        access_token, refresh_token, ip=_client_ip(request)
    )
    if outcome.new_access_token:
        setattr(request.state, REFRESHED_ACCESS_STATE, outcome.new_access_token)
        set_credential_cookie(
            response,
            ACCESS_COOKIE,
            outcome.new_access_token,
            runtime.settings.access_token_ttl_minutes * 60,
            runtime.settings,
        )
    return outcome.caller


async def get_optional_caller(
    request: Request,
    response: Response,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
) -> Optional[CallerContext]:
    if not access_token and not refresh_token:
        return None
    try:
        return await get_caller(request, response, access_token, refresh_token)
    except AuthenticationError as exc:
        logger.info("optional_auth_rejected", error_code=exc.error_code)
        for name in exc.clear_cookies:
            response.delete_cookie(name, path="/")
        return None


async def require_csrf(
    request: Request,
    caller: CallerContext = Depends(get_caller),
    csrf_header: Optional[str] = Header(None, alias=CSRF_HEADER),
) -> CallerContext:
    """Authenticated caller whose write intent carries a user-bound CSRF token."""
    runtime = get_runtime()
    check = runtime.csrf.verify(csrf_header, user_id=caller.user_id)
    if not check.ok:
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            user_id=caller.user_id,
            error_code=check.error_code,
        )
        raise CsrfError(check.message or "Invalid CSRF token", error_code=check.error_code)
    return caller


async def require_anonymous_csrf(
    request: Request,
    csrf_header: Optional[str] = Header(None, alias=CSRF_HEADER),
) -> Optional[str]:
    """Pre-login write intent: token bound to the browser session, no user."""
    runtime = get_runtime()
    browser_session_id = _browser_session_id(request)
    check = runtime.csrf.verify(csrf_header, browser_session_id=browser_session_id)
    if not check.ok:
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            error_code=check.error_code,
        )
        raise CsrfError(check.message or "Invalid CSRF token", error_code=check.error_code)
    return browser_session_id


async def require_staff(caller: CallerContext = Depends(require_csrf)) -> CallerContext:
    if caller.user.role not in (Role.ADMIN, Role.STAFF):
        raise ForbiddenError("Admin or staff role required")
    return caller


# -- csrf, registration, login ---------------------------------------------


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def issue_csrf_token(
    request: Request, caller: Optional[CallerContext] = Depends(get_optional_caller)
):
    """Issue a write-intent token for the caller's binding.

    Signed-in callers get a user-bound token; everyone else gets one bound to
    the ``SSID`` browser session.
    """
    runtime = get_runtime()
    token = runtime.csrf.issue(
        user_id=caller.user_id if caller else None,
        browser_session_id=_browser_session_id(request),
    )
    return Envelope(status="success", data={"csrf_token": token})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "register", runtime.settings.register_rate_limit_per_minute, response
    )
    user = runtime.auth.register(body.email, body.username, body.password)
    return Envelope(
        status="success",
        message="Registration successful. Please check your email for the verification code.",
        data={"user": _user_to_response(user), "requires_email_verification": True},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    browser_session_id: Optional[str] = Depends(require_anonymous_csrf),
):
    """Password login.

    Answers with credentials, or with ``two_factor_required`` plus a challenge
    token, or with ``requires_email_verification`` for unverified accounts.
    Wrong credentials and restricted accounts are reported in the envelope.
    """
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "login", runtime.settings.login_rate_limit_per_minute, response
    )
    outcome = runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        device_info=_device_info(request),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        browser_session_id=browser_session_id,
    )
    if outcome.email_verification_required:
        return Envelope(
            status="success",
            message="Please verify your email. A new code has been sent.",
            data={"requires_email_verification": True, "email": outcome.user.email},
        )
    if outcome.two_factor is not None:
        return Envelope(
            status="success",
            message="Two-factor authentication required",
            data={
                "code": "TWO_FACTOR_REQUIRED",
                **TwoFactorChallengeResponse(**outcome.two_factor).model_dump(),
            },
        )
    return _complete_login(runtime, response, outcome.result, browser_session_id)


def _complete_login(
    runtime: Runtime,
    response: Response,
    result: LoginResult,
    browser_session_id: Optional[str],
) -> Envelope:
    _apply_login_cookies(response, result, runtime.settings)
    csrf_token = runtime.csrf.issue(
        user_id=result.user.id, browser_session_id=browser_session_id
    )
    return Envelope(
        status="success",
        message="Login successful",
        data=LoginResponse(
            user=_user_to_response(result.user),
            csrf_token=csrf_token,
            session_id=result.session.id if result.session else None,
            remember_me=result.session is not None,
        ),
    )


@router.post("/auth/2fa/verify-login", response_model=Envelope, tags=["auth"])
async def verify_two_factor_login(
    body: TwoFactorLoginRequest,
    request: Request,
    response: Response,
    browser_session_id: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "2fa-verify", runtime.settings.otp_rate_limit_per_minute, response
    )
    result = runtime.two_factor.verify_login(
        body.email,
        body.otp,
        body.method,
        challenge_token=body.challenge_token,
        remember_me=body.remember_me,
        device_info=_device_info(request),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        browser_session_id=browser_session_id,
    )
    return _complete_login(runtime, response, result, browser_session_id)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_access_token(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    access_token, session, user = runtime.auth.refresh(
        refresh_token, ip=_client_ip(request)
    )
    set_credential_cookie(
        response,
        ACCESS_COOKIE,
        access_token,
        runtime.settings.access_token_ttl_minutes * 60,
        runtime.settings,
    )
    return Envelope(
        status="success",
        message="Token refreshed successfully",
        data={"user_id": user.id, "session_id": session.id},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    caller: CallerContext = Depends(require_csrf),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        caller, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    _clear_login_cookies(response)
    return Envelope(status="success", message="Logged out successfully")


# -- sessions --------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(request: Request, caller: CallerContext = Depends(get_caller)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_active(
        caller.user_id,
        current_refresh_token=caller.refresh_token,
        browser_session_id=_browser_session_id(request),
    )
    return Envelope(
        status="success",
        data={"sessions": [SessionResponse(**item) for item in sessions]},
    )


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    request: Request, caller: CallerContext = Depends(require_csrf)
):
    runtime = get_runtime()
    revoked = runtime.sessions.revoke_all_except(
        caller.user_id, caller.refresh_token, _client_ip(request)
    )
    return Envelope(
        status="success",
        message="All other sessions have been revoked",
        data={"revoked": revoked},
    )


@router.post("/auth/sessions/{session_id}/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str,
    request: Request,
    response: Response,
    caller: CallerContext = Depends(require_csrf),
):
    runtime = get_runtime()
    runtime.sessions.revoke_owned(caller.user_id, session_id, _client_ip(request))
    if session_id == caller.session_id:
        _clear_login_cookies(response)
    return Envelope(status="success", message="Session revoked successfully")


# -- account ---------------------------------------------------------------


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def verify_me(caller: CallerContext = Depends(get_caller)):
    return Envelope(
        status="success",
        data={
            "user": _user_to_response(caller.user),
            "session_id": caller.session_id,
            "credential_state": caller.credential_state.value,
        },
    )


@router.get("/auth/activity", response_model=Envelope, tags=["auth"])
async def list_activity(
    limit: int = Query(20, ge=1, le=100),
    caller: CallerContext = Depends(get_caller),
):
    """The caller's recent security events, newest first."""
    runtime = get_runtime()
    events = runtime.auth.recent_activity(caller.user_id, limit=limit)
    return Envelope(
        status="success",
        data={
            "activity": [
                ActivityResponse(
                    event_type=event.event_type.value,
                    description=event.description,
                    ip_address=event.ip_address,
                    created_at=event.created_at.isoformat(),
                )
                for event in events
            ]
        },
    )


@router.post("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    caller: CallerContext = Depends(require_csrf),
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        caller.user,
        username=body.username,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="success",
        message="Profile updated successfully",
        data={"user": _user_to_response(user)},
    )


@router.post("/auth/email/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "email-resend", runtime.settings.otp_rate_limit_per_minute, response
    )
    runtime.auth.resend_verification(body.email)
    return Envelope(status="success", message="Verification email resent successfully")


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: EmailVerifyRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "email-verify", runtime.settings.otp_rate_limit_per_minute, response
    )
    user = runtime.auth.verify_email(
        body.email, body.otp, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(
        status="success",
        message="Email verified successfully",
        data={"user": _user_to_response(user)},
    )


@router.post("/auth/password-reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: EmailRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "password-reset", runtime.settings.otp_rate_limit_per_minute, response
    )
    runtime.auth.request_password_reset(
        body.email, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(
        status="success",
        message="If that email is registered, a reset code has been sent",
    )


@router.post("/auth/verify-password-reset", response_model=Envelope, tags=["auth"])
async def verify_password_reset(
    body: EmailVerifyRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "password-reset-verify", runtime.settings.otp_rate_limit_per_minute, response
    )
    runtime.auth.verify_password_reset(body.email, body.otp)
    return Envelope(status="success", message="Reset code verified")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetRequest,
    request: Request,
    response: Response,
    _: Optional[str] = Depends(require_anonymous_csrf),
):
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "password-reset-verify", runtime.settings.otp_rate_limit_per_minute, response
    )
    runtime.auth.reset_password(
        body.email,
        body.otp,
        body.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _clear_login_cookies(response)
    return Envelope(status="success", message="Password has been reset, please sign in")


# -- second factor ---------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(
    body: TwoFactorSetupRequest, caller: CallerContext = Depends(require_csrf)
):
    runtime = get_runtime()
    data = runtime.two_factor.setup(caller.user, body.method)
    message = (
        "2FA setup initiated"
        if body.method == "app"
        else "2FA setup initiated. Check your email for verification code."
    )
    return Envelope(status="success", message=message, data=data)


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(
    body: TwoFactorEnableRequest,
    request: Request,
    caller: CallerContext = Depends(require_csrf),
):
    runtime = get_runtime()
    user = runtime.two_factor.verify_and_enable(
        caller.user,
        body.method,
        body.otp,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="success",
        message="2FA enabled successfully",
        data={"user": _user_to_response(user)},
    )


@router.post("/auth/2fa/disable-request", response_model=Envelope, tags=["2fa"])
async def request_two_factor_disable(caller: CallerContext = Depends(require_csrf)):
    runtime = get_runtime()
    runtime.two_factor.request_disable(caller.user)
    return Envelope(
        status="success",
        message="Check your email to confirm disabling 2FA",
    )


@router.get("/auth/2fa/disable-confirm", response_model=Envelope, tags=["2fa"])
async def confirm_two_factor_disable(
    request: Request,
    response: Response,
    user_id: str = Query(..., max_length=64),
    token: str = Query(..., max_length=128),
):
    """Target of the emailed confirmation link; the token is the credential."""
    runtime = get_runtime()
    await _limit_route(
        runtime, request, "2fa-disable", runtime.settings.otp_rate_limit_per_minute, response
    )
    runtime.two_factor.confirm_disable(
        user_id, token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="success", message="2FA disabled successfully")


# -- notifications ---------------------------------------------------------


@router.get("/notifications", response_model=Envelope, tags=["notifications"])
async def list_notifications(caller: CallerContext = Depends(get_caller)):
    runtime = get_runtime()
    items = runtime.notifications.list_for_user(caller.user_id)
    return Envelope(
        status="success",
        data={
            "notifications": [NotificationResponse(**item) for item in items],
            "unread": sum(1 for item in items if not item["viewed"]),
        },
    )


@router.post("/notifications/viewed", response_model=Envelope, tags=["notifications"])
async def mark_notifications_viewed(caller: CallerContext = Depends(require_csrf)):
    runtime = get_runtime()
    updated = runtime.notifications.mark_viewed(caller.user_id)
    return Envelope(status="success", data={"updated": updated})


# -- administration --------------------------------------------------------


@router.post("/admin/notifications", response_model=Envelope, tags=["admin"])
async def broadcast_notification(
    body: BroadcastNotificationRequest, caller: CallerContext = Depends(require_staff)
):
    runtime = get_runtime()
    created = runtime.notifications.push(body.notification_type, item=body.message)
    logger.info(
        "notification_broadcast",
        admin_id=caller.user_id,
        notification_type=body.type,
        recipients=len(created),
    )
    return Envelope(
        status="success",
        message="Notification sent",
        data={"recipients": len(created)},
    )


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def change_account_status(
    user_id: str,
    body: AccountStatusRequest,
    request: Request,
    caller: CallerContext = Depends(require_staff),
):
    runtime = get_runtime()
    user = runtime.auth.change_account_status(
        caller.user,
        user_id,
        body.status,
        reason=body.reason,
        duration_days=body.duration_days,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="success",
        message=f"Account status updated to {body.status.value}",
        data={
            "user": _user_to_response(user),
            "status_expires_at": (
                user.status_expires_at.isoformat() if user.status_expires_at else None
            ),
        },
    )


# -- pages -----------------------------------------------------------------


@page_router.get("/account", response_class=HTMLResponse, include_in_schema=False)
async def account_page(caller: CallerContext = Depends(get_caller)):
    """Signed-in landing page; unauthenticated visitors are redirected to login."""
    return HTMLResponse(
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>Account</title></head>"
        f"<body><h1>Signed in as {escape(caller.user.username)}</h1></body></html>"
    )
