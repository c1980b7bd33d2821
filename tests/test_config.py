import pytest
from pydantic import ValidationError

from brewstore.config import Settings, get_settings, reset_settings_cache


def test_policy_defaults(monkeypatch):
    for name in ("OTP_TTL_MINUTES", "MAX_FAILED_LOGINS", "LOCKOUT_MINUTES", "PASSWORD_MAX_AGE_DAYS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.otp_ttl_minutes == 5
    assert settings.max_failed_logins == 10
    assert settings.lockout_minutes == 15
    assert settings.password_max_age_days == 7
    assert settings.password_history_size == 2
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60


def test_env_overrides_are_coerced(monkeypatch):
    monkeypatch.setenv("LOCKOUT_MINUTES", "30")
    monkeypatch.setenv("SMTP_USE_TLS", "false")
    monkeypatch.setenv("OUTBOUND_TIMEOUT_SECONDS", "2.5")
    settings = Settings.from_env()
    assert settings.lockout_minutes == 30
    assert settings.smtp_use_tls is False
    assert settings.outbound_timeout_seconds == 2.5


def test_cors_origins_split_on_commas(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://shop.example.com, ,https://admin.example.com")
    settings = Settings.from_env()
    assert settings.cors_allow_origins == ["https://shop.example.com", "https://admin.example.com"]


def test_blank_redis_url_means_no_redis(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")
    assert Settings.from_env().redis_url is None


def test_production_requires_jwt_secrets(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("RECAPTCHA_SECRET_KEY", "recaptcha-secret")
    monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_production_requires_recaptcha_secret(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("RECAPTCHA_SECRET_KEY", "  ")
    with pytest.raises(ValidationError, match="RECAPTCHA_SECRET_KEY"):
        Settings.from_env()

    monkeypatch.setenv("RECAPTCHA_SECRET_KEY", "recaptcha-secret")
    settings = Settings.from_env()
    assert settings.is_production
    assert settings.recaptcha_secret_key == "recaptcha-secret"


def test_missing_secrets_generated_outside_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)
    settings = Settings.from_env()
    assert settings.jwt_secret and settings.jwt_refresh_secret
    assert settings.jwt_secret != settings.jwt_refresh_secret
    assert not settings.is_production


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("LOCKOUT_MINUTES", "45")
    reset_settings_cache()
    assert get_settings().lockout_minutes == 45
    monkeypatch.delenv("LOCKOUT_MINUTES")
    reset_settings_cache()
