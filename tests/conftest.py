import asyncio
import inspect
import os
import re
import sys
from pathlib import Path
from typing import List, Optional

# Configure the environment before anything imports brewstore.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("RECAPTCHA_SECRET_KEY", "")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("CSRF_ENABLED", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from brewstore.service.errors import AuthFailure, ValidationError  # noqa: E402
from brewstore.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

_OTP_PATTERN = re.compile(r"\b(\d{6})\b")
_LINK_PATTERN = re.compile(r"(https?://\S+)")


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.fail = False

    async def send_mail(self, to_email, subject, html_body, text_body=None) -> bool:
        if self.fail:
            return False
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body or ""}
        )
        return True

    def _last_for(self, to_email: Optional[str]) -> dict:
        for message in reversed(self.sent):
            if to_email is None or message["to"] == to_email:
                return message
        raise AssertionError(f"no email sent to {to_email}")

    def last_otp(self, to_email: Optional[str] = None) -> str:
        match = _OTP_PATTERN.search(self._last_for(to_email)["text"])
        assert match, "last email carried no OTP"
        return match.group(1)

    def last_link(self, to_email: Optional[str] = None) -> str:
        match = _LINK_PATTERN.search(self._last_for(to_email)["text"])
        assert match, "last email carried no link"
        return match.group(1)

    def last_token(self, to_email: Optional[str] = None) -> str:
        return self.last_link(to_email).rstrip("/").rsplit("/", 1)[1]


class StubCaptcha:
    """Accepts any token except "bad-captcha"."""

    def __init__(self) -> None:
        self.calls: List[Optional[str]] = []

    async def verify(self, token, remote_ip=None) -> None:
        self.calls.append(token)
        if not token or token == "bad-captcha":
            raise ValidationError(AuthFailure.RECAPTCHA_FAILED)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def mailer():
    recording = RecordingMailer()
    get_runtime().auth.mailer = recording
    return recording


@pytest.fixture
def captcha():
    stub = StubCaptcha()
    get_runtime().auth.captcha = stub
    return stub


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
