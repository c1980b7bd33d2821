import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from brewstore import app as app_module
from brewstore.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://shop.example.com, https://admin.example.com")
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
        importlib.reload(app_module)


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["version"] == app_module.__version__
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Content-Security-Policy"].startswith("default-src")
    assert "Strict-Transport-Security" not in response.headers


def test_request_id_is_echoed():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"X-Request-ID": "order-1234"})
    assert response.headers["X-Request-ID"] == "order-1234"

    generated = client.get("/healthz").headers["X-Request-ID"]
    assert generated and generated != "order-1234"


def test_cors_origins_from_env(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "https://admin.example.com"})
    assert response.headers["access-control-allow-origin"] == "https://admin.example.com"
    assert response.headers["access-control-allow-credentials"] == "true"

    response = client.get("/healthz", headers={"Origin": "https://evil.example.com"})
    assert "access-control-allow-origin" not in response.headers


def test_allowed_origins_default():
    assert "http://localhost:5173" in app_module._allowed_origins()


def test_unknown_route_uses_flat_body():
    client = TestClient(app_module.app)
    response = client.get("/no-such-route")
    assert response.status_code == 404
    assert response.json() == {"msg": "Not Found"}


def test_csrf_token_cookie_is_readable_by_scripts():
    client = TestClient(app_module.app)
    response = client.get("/csrf-token")
    token = response.json()["csrfToken"]
    assert client.cookies.get("csrf_token") == token
    header = response.headers["set-cookie"].lower()
    assert "httponly" not in header
    assert "samesite=lax" in header


def test_login_request_accepts_camel_case_and_numeric_codes():
    req = schemas.LoginRequest(**{"userId": "u1", "otpCode": 42})
    assert req.user_id == "u1"
    assert req.otp_code == "000042"

    req = schemas.LoginRequest(email="jane@x.com", password="pw", user_id="u2")
    assert req.user_id == "u2"
    assert req.otp_code is None


def test_two_factor_code_coercion_ignores_booleans():
    with pytest.raises(ValidationError):
        schemas.TwoFactorCodeRequest(code=True)
    assert schemas.TwoFactorCodeRequest(code=123456).code == "123456"


def test_request_bodies_are_bounded():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(name="x" * (schemas.MAX_NAME_LENGTH + 1))
    # Content rules are left to the services
    req = schemas.RegisterRequest(name="J", email="nope", password="weak")
    assert req.name == "J"


def test_login_response_serializes_aliases():
    response = schemas.LoginResponse(
        msg="OTP sent to your email", otp_required=True, user_id="u1", email="jane@x.com"
    )
    dumped = response.model_dump(by_alias=True, exclude_none=True)
    assert dumped == {
        "msg": "OTP sent to your email",
        "otpRequired": True,
        "userId": "u1",
        "email": "jane@x.com",
    }
