from __future__ import annotations

import secrets
from typing import List, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from brewstore.api.schemas import (
    ActivityLogResponse,
    ActivityLogUser,
    AdminUserSummary,
    AuthUser,
    BackupCodeCountResponse,
    BackupCodesResponse,
    CsrfTokenResponse,
    EmailEntry,
    EmailRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserListResponse,
)
from brewstore.logging import get_logger
from brewstore.service.auth import LoginState
from brewstore.service.errors import AuthFailure, RateLimitedError
from brewstore.service.runtime import check_rate_limit, get_runtime
from brewstore.service.tokens import ACCESS_COOKIE, REFRESH_COOKIE, TokenPair
from brewstore.storage.models import User
from brewstore.storage.redis_cache import rate_key

logger = get_logger(__name__)

router = APIRouter()

CSRF_COOKIE = "csrf_token"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket.

    Args:
        runtime: Application runtime context
        key: Rate limit key (e.g., "login:{email}")
        limit: Maximum requests allowed per window
        response: Optional response to add rate limit headers to

    Raises:
        RateLimitedError (429) if the bucket is empty
    """
    window_seconds = runtime.settings.rate_limit_window_seconds
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", scope=key.split(":", 1)[0])
        raise RateLimitedError(AuthFailure.RATE_LIMITED)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_auth_cookies(response: Response, tokens: TokenPair, settings) -> None:
    secure = settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


def _auth_user(user: User) -> AuthUser:
    return AuthUser(**user.public_dict())


def _profile(user: User) -> ProfileResponse:
    return ProfileResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        is_admin=user.is_admin,
        emails=[
            EmailEntry(address=entry.address, verified=entry.verified)
            for entry in user.emails
        ],
        two_factor_enabled=user.two_factor_enabled,
    )


def _otp_pending(user: User, msg: str, *, include_user: bool = False) -> LoginResponse:
    return LoginResponse(
        msg=msg,
        otp_required=True,
        user_id=user.id,
        email=user.email,
        user=_auth_user(user) if include_user else None,
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> User:
    token = access_cookie
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip() or None
    return get_runtime().auth.authenticate_access_token(token)


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    get_runtime().auth.require_admin(user)
    return user


@router.get("/csrf-token", response_model=CsrfTokenResponse, tags=["auth"])
async def csrf_token(response: Response):
    """Issue a double-submit CSRF token as both a cookie and a body field."""
    runtime = get_runtime()
    token = secrets.token_urlsafe(32)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        secure=runtime.settings.is_production,
        samesite="lax",
        path="/",
    )
    return CsrfTokenResponse(csrf_token=token)


@router.post(
    "/auth/register", response_model=MessageResponse, status_code=201, tags=["auth"]
)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a new account after reCAPTCHA verification.

    Raises:
        400: Invalid name, email or password, duplicate email, failed reCAPTCHA
        429: If rate limit exceeded for this client
        500: If the reCAPTCHA service is unreachable
    """
    runtime = get_runtime()
    remote_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        rate_key("register", remote_ip),
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.register(
        body.name, body.email, body.password, body.token, remote_ip=remote_ip
    )
    return MessageResponse(msg="User registered successfully")


@router.post(
    "/auth/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def login(body: LoginRequest, response: Response):
    """Run one step of the login protocol.

    A ``userId``/``otpCode`` pair completes a pending login and sets the
    session cookies. Anything else starts from the password; when a further
    factor is still needed the response is 206 and names it.

    Raises:
        400: Invalid credentials, OTP or 2FA code
        403: Locked, blocked or expired account
        429: If rate limit exceeded for this account
        500: If the OTP email could not be sent
    """
    runtime = get_runtime()
    subject = body.user_id if body.user_id and body.otp_code else body.email
    await _enforce_rate_limit(
        runtime,
        rate_key("login", subject),
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        two_factor_code=body.two_factor_code,
        user_id=body.user_id,
        otp_code=body.otp_code,
    )
    if result.state == LoginState.AUTHENTICATED and result.tokens:
        _apply_auth_cookies(response, result.tokens, runtime.settings)
        return LoginResponse(token=result.tokens.access_token, user=_auth_user(result.user))
    response.status_code = 206
    if result.state == LoginState.TWO_FACTOR_PENDING:
        return LoginResponse(
            msg="2FA required",
            two_factor_required=True,
            user_id=result.user.id,
            email=result.user.email,
        )
    return _otp_pending(result.user, "OTP sent to your email")


@router.post("/auth/resend-otp", response_model=MessageResponse, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, response: Response):
    """Replace the pending login OTP and email it again.

    Raises:
        404: Unknown user id
        429: If rate limit exceeded for this user
        500: If the OTP email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        rate_key("otp_resend", body.user_id),
        runtime.settings.otp_resend_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.resend_otp(body.user_id)
    return MessageResponse(msg="New OTP sent to your email")


@router.post("/auth/refresh", response_model=MessageResponse, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token and set a fresh cookie pair.

    Raises:
        401: Missing, invalid or already rotated refresh token
    """
    runtime = get_runtime()
    token = refresh_cookie or (body.refresh_token if body else None)
    _, tokens = runtime.auth.refresh(token)
    _apply_auth_cookies(response, tokens, runtime.settings)
    return MessageResponse(msg="Token refreshed")


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    runtime.auth.logout(refresh_cookie)
    _clear_auth_cookies(response)
    return MessageResponse(msg="Logged out")


@router.post("/auth/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    """Email a single-use password reset link.

    Raises:
        404: No account uses this email
        429: If rate limit exceeded for this email
        500: If the reset email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        rate_key("reset", body.email),
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.forgot_password(body.email)
    return MessageResponse(msg="Password reset email sent")


@router.post("/auth/reset-password/{token}", response_model=MessageResponse, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    token: str = Path(..., max_length=128),
):
    """Set a new password using an emailed reset token.

    Raises:
        400: Unknown or expired token, weak or reused password
    """
    runtime = get_runtime()
    runtime.auth.reset_password(token, body.password)
    return MessageResponse(msg="Password reset successful. Please login.")


@router.get("/users/profile", response_model=ProfileResponse, tags=["users"])
async def get_profile(user: User = Depends(get_current_user)):
    return _profile(user)


@router.put("/users/profile", response_model=ProfileResponse, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, user: User = Depends(get_current_user)
):
    """Change the display name and, with the current password, the password.

    Raises:
        400: Invalid name, wrong current password, weak or reused password
        401: Missing or invalid access token
    """
    runtime = get_runtime()
    updated = runtime.auth.update_profile(
        user,
        name=body.name,
        password=body.password,
        current_password=body.current_password,
    )
    return _profile(updated)


@router.get("/users", response_model=UserListResponse, tags=["admin"])
async def list_users(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    users = runtime.auth.list_users(admin)
    return UserListResponse(
        users=[
            AdminUserSummary(
                id=u.id,
                name=u.name,
                email=u.email,
                is_admin=u.is_admin,
                is_blocked=u.is_blocked,
                two_factor_enabled=u.two_factor_enabled,
            )
            for u in users
        ]
    )


@router.get(
    "/users/activity-logs", response_model=List[ActivityLogResponse], tags=["users"]
)
async def activity_logs(
    limit: int = Query(100, ge=1, le=500), user: User = Depends(get_current_user)
):
    """Recent account events; admins see every account, others only their own."""
    logs = get_runtime().auth.activity_logs(user, limit=limit)
    return [
        ActivityLogResponse(
            id=entry.id,
            action=entry.action,
            info=entry.info,
            user=(
                ActivityLogUser(id=owner.id, name=owner.name, email=owner.email)
                if owner
                else None
            ),
            created_at=entry.created_at,
        )
        for entry, owner in logs
    ]


@router.patch("/users/{user_id}/block", response_model=MessageResponse, tags=["admin"])
async def block_user(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    """Block an account so that its logins are refused.

    Raises:
        401: Missing or invalid access token
        403: Caller is not an admin
        404: Unknown user id
    """
    get_runtime().auth.set_blocked(admin, user_id, True)
    return MessageResponse(msg="User blocked")


@router.patch("/users/{user_id}/unblock", response_model=MessageResponse, tags=["admin"])
async def unblock_user(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    get_runtime().auth.set_blocked(admin, user_id, False)
    return MessageResponse(msg="User unblocked")


@router.post("/users/2fa/generate", response_model=TwoFactorSetupResponse, tags=["2fa"])
async def generate_two_factor(user: User = Depends(get_current_user)):
    """Start 2FA enrolment and return the authenticator QR code."""
    setup = get_runtime().auth.generate_two_factor(user)
    return TwoFactorSetupResponse(**setup)


@router.post("/users/2fa/confirm", response_model=MessageResponse, tags=["2fa"])
async def confirm_two_factor(
    body: TwoFactorCodeRequest, user: User = Depends(get_current_user)
):
    """Enable 2FA once the authenticator produces a matching code.

    Raises:
        400: Setup not started or the code does not match
    """
    get_runtime().auth.confirm_two_factor(user, body.code)
    return MessageResponse(msg="2FA enabled")


@router.post("/users/2fa/disable", response_model=MessageResponse, tags=["2fa"])
async def disable_two_factor(user: User = Depends(get_current_user)):
    get_runtime().auth.disable_two_factor(user)
    return MessageResponse(msg="2FA disabled")


@router.post(
    "/users/2fa/verify",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    tags=["2fa"],
)
async def verify_two_factor(body: TwoFactorVerifyRequest, response: Response):
    """Answer a pending 2FA challenge; the login continues with the email OTP.

    Raises:
        400: No pending challenge, or the code does not match
        429: If rate limit exceeded for this user
        500: If the OTP email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        rate_key("two_factor", body.user_id),
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    user = await runtime.auth.verify_two_factor(body.user_id, body.code)
    return _otp_pending(user, "2FA verified", include_user=True)


@router.post(
    "/users/2fa/backup/generate", response_model=BackupCodesResponse, tags=["2fa"]
)
async def generate_backup_codes(user: User = Depends(get_current_user)):
    """Replace the account's backup codes; the plain codes are shown only once.

    Raises:
        400: 2FA is not enabled
    """
    codes = get_runtime().auth.generate_backup_codes(user)
    return BackupCodesResponse(backup_codes=codes)


@router.get("/users/2fa/backup", response_model=BackupCodeCountResponse, tags=["2fa"])
async def backup_code_count(user: User = Depends(get_current_user)):
    return BackupCodeCountResponse(count=get_runtime().auth.backup_code_count(user))


@router.post(
    "/users/2fa/backup/use",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    tags=["2fa"],
)
async def use_backup_code(body: TwoFactorVerifyRequest, response: Response):
    """Answer a pending 2FA challenge with a single-use backup code.

    Raises:
        400: No pending challenge, or the code is unknown or already used
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        rate_key("two_factor", body.user_id),
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    user = await runtime.auth.use_backup_code(body.user_id, body.code)
    return _otp_pending(user, "Backup code accepted", include_user=True)


@router.post("/users/emails", response_model=MessageResponse, tags=["users"])
async def add_email(body: EmailRequest, user: User = Depends(get_current_user)):
    """Attach a secondary email and send it a verification link.

    Raises:
        400: Invalid address or already used by an account
        500: If the verification email could not be sent
    """
    await get_runtime().auth.add_email(user, body.email)
    return MessageResponse(msg="Verification email sent")


@router.get("/users/emails/verify/{token}", response_model=MessageResponse, tags=["users"])
async def verify_email(token: str = Path(..., max_length=128)):
    get_runtime().auth.verify_email(token)
    return MessageResponse(msg="Email verified")


@router.delete("/users/emails", response_model=MessageResponse, tags=["users"])
async def remove_email(body: EmailRequest, user: User = Depends(get_current_user)):
    """Detach a secondary email.

    Raises:
        400: Address is the primary email or is not on the account
    """
    get_runtime().auth.remove_email(user, body.email)
    return MessageResponse(msg="Email removed")
