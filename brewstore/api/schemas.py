from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bounds only; content rules are enforced by the services so the
# historical per-field messages come back in their original order.
MAX_NAME_LENGTH = 128
MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 256
MAX_TOKEN_LENGTH = 4096
MAX_CODE_LENGTH = 32


class _ClientModel(BaseModel):
    """Request bodies use the storefront's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _coerce_code(value: Any) -> Any:
    # Numeric inputs on the storefront post codes as JSON numbers
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value).zfill(6)
    return value


class RegisterRequest(_ClientModel):
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LoginRequest(_ClientModel):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    two_factor_code: Optional[str] = Field(
        default=None, alias="twoFactorCode", max_length=MAX_CODE_LENGTH
    )
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)
    otp_code: Optional[str] = Field(default=None, alias="otpCode", max_length=MAX_CODE_LENGTH)

    @field_validator("two_factor_code", "otp_code", mode="before")
    @classmethod
    def _coerce_codes(cls, value: Any) -> Any:
        return _coerce_code(value)


class ResendOtpRequest(_ClientModel):
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)


class RefreshRequest(_ClientModel):
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


class ForgotPasswordRequest(_ClientModel):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)


class ResetPasswordRequest(_ClientModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(_ClientModel):
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_PASSWORD_LENGTH
    )


class TwoFactorCodeRequest(_ClientModel):
    code: Optional[str] = Field(default=None, max_length=MAX_CODE_LENGTH)

    @field_validator("code", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        return _coerce_code(value)


class TwoFactorVerifyRequest(TwoFactorCodeRequest):
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)


class EmailRequest(_ClientModel):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)


# responses
class _ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MessageResponse(_ResponseModel):
    msg: str


class AuthUser(_ResponseModel):
    id: str
    name: str
    email: str
    is_admin: bool = Field(alias="isAdmin")


class LoginResponse(_ResponseModel):
    """200 body on full authentication, 206 body while a step is pending."""

    msg: Optional[str] = None
    token: Optional[str] = None
    user: Optional[AuthUser] = None
    two_factor_required: Optional[bool] = Field(default=None, alias="twoFactorRequired")
    otp_required: Optional[bool] = Field(default=None, alias="otpRequired")
    user_id: Optional[str] = Field(default=None, alias="userId")
    email: Optional[str] = None


class CsrfTokenResponse(_ResponseModel):
    csrf_token: str = Field(alias="csrfToken")


class TwoFactorSetupResponse(_ResponseModel):
    qr: str
    secret: str


class BackupCodesResponse(_ResponseModel):
    backup_codes: List[str] = Field(alias="backupCodes")


class BackupCodeCountResponse(_ResponseModel):
    count: int


class EmailEntry(_ResponseModel):
    address: str
    verified: bool


class ProfileResponse(_ResponseModel):
    id: str
    name: str
    email: str
    is_admin: bool = Field(alias="isAdmin")
    emails: List[EmailEntry] = Field(default_factory=list)
    two_factor_enabled: bool = Field(alias="twoFactorEnabled")


class AdminUserSummary(_ResponseModel):
    id: str
    name: str
    email: str
    is_admin: bool = Field(alias="isAdmin")
    is_blocked: bool = Field(alias="isBlocked")
    two_factor_enabled: bool = Field(alias="twoFactorEnabled")


class UserListResponse(_ResponseModel):
    users: List[AdminUserSummary]


class ActivityLogUser(_ResponseModel):
    id: str
    name: str
    email: str


class ActivityLogResponse(_ResponseModel):
    """One row of the storefront's activity log table."""

    id: str = Field(alias="_id")
    action: str
    info: Optional[str] = None
    user: Optional[ActivityLogUser] = None
    created_at: datetime = Field(alias="createdAt")
