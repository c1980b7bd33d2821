from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from brewstore.logging import get_logger
from brewstore.service.errors import AuthFailure, ServiceError
from brewstore.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# User-facing text for each failure kind; existing storefront clients match on
# several of these strings, so they must not change.
FAILURE_MESSAGES: dict[AuthFailure, str] = {
    AuthFailure.INVALID_REQUEST: "Invalid request",
    AuthFailure.INVALID_NAME: "Name must be at least 2 letters and only contain letters and spaces.",
    AuthFailure.INVALID_EMAIL: "Invalid email format.",
    AuthFailure.WEAK_PASSWORD: (
        "Password must be at least 8 characters, include upper, lower, number, "
        "and special character."
    ),
    AuthFailure.USER_EXISTS: "User already exists",
    AuthFailure.RECAPTCHA_FAILED: "Recaptcha verification failed",
    AuthFailure.INVALID_CREDENTIALS: "Invalid credentials",
    AuthFailure.INVALID_USER: "Invalid user",
    AuthFailure.INVALID_OTP: "Invalid or expired OTP code",
    AuthFailure.INVALID_TWO_FACTOR: "Invalid 2FA code",
    AuthFailure.TWO_FACTOR_NOT_STARTED: "2FA setup not started",
    AuthFailure.TWO_FACTOR_NOT_ENABLED: "2FA is not enabled",
    AuthFailure.INVALID_RESET_TOKEN: "Invalid or expired token",
    AuthFailure.PASSWORD_REUSED: "You cannot reuse your last {count} passwords.",
    AuthFailure.CURRENT_PASSWORD_INCORRECT: "Current password is incorrect",
    AuthFailure.EMAIL_IN_USE: "Email already in use",
    AuthFailure.EMAIL_NOT_FOUND: "Email not found",
    AuthFailure.PRIMARY_EMAIL_REMOVAL: "Cannot remove primary email",
    AuthFailure.INVALID_EMAIL_TOKEN: "Invalid or expired verification link",
    AuthFailure.NO_REFRESH_TOKEN: "No refresh token",
    AuthFailure.INVALID_REFRESH_TOKEN: "Invalid refresh token",
    AuthFailure.NO_ACCESS_TOKEN: "Not authorized, no token",
    AuthFailure.INVALID_ACCESS_TOKEN: "Not authorized, token failed",
    AuthFailure.ACCOUNT_LOCKED: "Account locked. Try again in {minutes} minute(s).",
    AuthFailure.LOCKOUT_TRIGGERED: (
        "Account locked due to too many failed login attempts. "
        "Try again in {minutes} minutes."
    ),
    AuthFailure.USER_BLOCKED: "User is blocked. Please contact support.",
    AuthFailure.PASSWORD_EXPIRED: "Password expired. Please reset your password.",
    AuthFailure.ADMIN_REQUIRED: "Admin access required",
    AuthFailure.INVALID_CSRF: "Invalid CSRF token",
    AuthFailure.USER_NOT_FOUND: "User not found",
    AuthFailure.RATE_LIMITED: "Too many requests. Please try again later.",
    AuthFailure.OTP_DELIVERY_FAILED: "Failed to send OTP email",
    AuthFailure.EMAIL_DELIVERY_FAILED: "Failed to send email",
    AuthFailure.RECAPTCHA_UNAVAILABLE: "Recaptcha verification unavailable",
    AuthFailure.SERVER_ERROR: "Internal server error",
}


def render_failure(kind: AuthFailure, **params) -> str:
    template = FAILURE_MESSAGES.get(kind, FAILURE_MESSAGES[AuthFailure.SERVER_ERROR])
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"msg": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into a flat ``{"msg": ...}`` body."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            failure=exc.error_code,
        )
        return error_response(exc.status_code, render_failure(exc.kind, **exc.params))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        return error_response(400, render_failure(AuthFailure.INVALID_REQUEST))

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            detail=exc.detail,
        )
        return error_response(400, render_failure(AuthFailure.USER_EXISTS))

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
            return error_response(exc.status_code, render_failure(AuthFailure.SERVER_ERROR))
        logger.warning(
            "http_client_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
        )
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, render_failure(AuthFailure.SERVER_ERROR))
