from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from brewstore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    environment: str = env_field(
        "development",
        "ENVIRONMENT",
        description="'production' enables secure cookies and mandatory secrets",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/brewstore", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for the test suite",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("brewstore", "JWT_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key for encrypting TOTP seeds at rest; defaults to JWT_SECRET",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Credential policy
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    two_factor_challenge_minutes: int = env_field(5, "TWO_FACTOR_CHALLENGE_MINUTES")
    password_max_age_days: int = env_field(7, "PASSWORD_MAX_AGE_DAYS")
    password_history_size: int = env_field(2, "PASSWORD_HISTORY_SIZE")
    max_failed_logins: int = env_field(10, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    email_verify_ttl_hours: int = env_field(24, "EMAIL_VERIFY_TTL_HOURS")
    totp_issuer: str = env_field("brewstore", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("brewstore", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # reCAPTCHA
    recaptcha_secret_key: str | None = env_field(None, "RECAPTCHA_SECRET_KEY")
    recaptcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )
    outbound_timeout_seconds: float = env_field(
        10.0,
        "OUTBOUND_TIMEOUT_SECONDS",
        description="Upper bound for SMTP and reCAPTCHA calls",
    )

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")

    # Rate limits (requests per window)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_per_minute: int = env_field(30, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(10, "REGISTER_RATE_LIMIT_PER_MINUTE")
    otp_resend_rate_limit_per_minute: int = env_field(5, "OTP_RESEND_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    two_factor_rate_limit_per_minute: int = env_field(10, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE")

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        for attr, env_name in (
            ("jwt_secret", "JWT_SECRET"),
            ("jwt_refresh_secret", "JWT_REFRESH_SECRET"),
        ):
            if getattr(self, attr):
                continue
            if self.is_production:
                raise ValueError(f"{env_name} must be set when ENVIRONMENT=production")
            # Tokens signed with a generated secret do not survive a restart
            logger.warning("jwt_secret_generated", setting=env_name)
            setattr(self, attr, secrets.token_urlsafe(64))
        if self.jwt_secret == self.jwt_refresh_secret:
            logger.warning("jwt_secrets_shared")
        return self

    @model_validator(mode="after")
    def _require_recaptcha_in_production(self) -> "Settings":
        # Without a secret the verifier skips the check entirely
        if self.is_production and not (self.recaptcha_secret_key or "").strip():
            raise ValueError("RECAPTCHA_SECRET_KEY must be set when ENVIRONMENT=production")
        return self


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
