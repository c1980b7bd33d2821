from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class AuthFailure(str, Enum):
    """Stable failure kinds raised by the auth services.

    The HTTP layer turns each kind into its user-facing message; services
    never build response text themselves.
    """

    INVALID_REQUEST = "invalid_request"
    INVALID_NAME = "invalid_name"
    INVALID_EMAIL = "invalid_email"
    WEAK_PASSWORD = "weak_password"
    USER_EXISTS = "user_exists"
    RECAPTCHA_FAILED = "recaptcha_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_USER = "invalid_user"
    INVALID_OTP = "invalid_otp"
    INVALID_TWO_FACTOR = "invalid_two_factor"
    TWO_FACTOR_NOT_STARTED = "two_factor_not_started"
    TWO_FACTOR_NOT_ENABLED = "two_factor_not_enabled"
    INVALID_RESET_TOKEN = "invalid_reset_token"
    PASSWORD_REUSED = "password_reused"
    CURRENT_PASSWORD_INCORRECT = "current_password_incorrect"
    EMAIL_IN_USE = "email_in_use"
    EMAIL_NOT_FOUND = "email_not_found"
    PRIMARY_EMAIL_REMOVAL = "primary_email_removal"
    INVALID_EMAIL_TOKEN = "invalid_email_token"
    NO_REFRESH_TOKEN = "no_refresh_token"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    NO_ACCESS_TOKEN = "no_access_token"
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    ACCOUNT_LOCKED = "account_locked"
    LOCKOUT_TRIGGERED = "lockout_triggered"
    USER_BLOCKED = "user_blocked"
    PASSWORD_EXPIRED = "password_expired"
    ADMIN_REQUIRED = "admin_required"
    INVALID_CSRF = "invalid_csrf"
    USER_NOT_FOUND = "user_not_found"
    RATE_LIMITED = "rate_limited"
    OTP_DELIVERY_FAILED = "otp_delivery_failed"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"
    RECAPTCHA_UNAVAILABLE = "recaptcha_unavailable"
    SERVER_ERROR = "server_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes the HTTP status; the ``kind`` selects the message.
    Keyword params are substituted into the message template, e.g. the
    remaining lockout minutes.
    """

    status_code: int = 400

    def __init__(
        self,
        kind: AuthFailure,
        *,
        status_code: Optional[int] = None,
        **params: Any,
    ) -> None:
        super().__init__(kind.value)
        self.kind = kind
        self.params = params
        if status_code is not None:
            self.status_code = status_code

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Bad input shape or strength (400)."""
    status_code = 400


class AuthenticationError(ServiceError):
    """Wrong credentials, OTP or 2FA code (400)."""
    status_code = 400


class UnauthorizedError(ServiceError):
    """Missing or invalid session token (401)."""
    status_code = 401


class AuthorizationError(ServiceError):
    """Blocked, locked, expired or not permitted (403)."""
    status_code = 403


class NotFoundError(ServiceError):
    """Unknown user or token (404)."""
    status_code = 404


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429


class DependencyError(ServiceError):
    """Email delivery or reCAPTCHA call failed (500)."""
    status_code = 500


__all__ = [
    "AuthFailure",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthorizedError",
    "AuthorizationError",
    "NotFoundError",
    "RateLimitedError",
    "DependencyError",
]
