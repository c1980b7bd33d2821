from __future__ import annotations

from typing import Optional, Protocol

import httpx

from brewstore.logging import get_logger
from brewstore.service.errors import AuthFailure, DependencyError, ValidationError

logger = get_logger(__name__)


class CaptchaVerifier(Protocol):
    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> None: ...


class RecaptchaVerifier:
    """Checks reCAPTCHA tokens against Google's siteverify endpoint.

    Raises ValidationError when Google rejects the token and DependencyError
    when the call itself fails or times out.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> None:
        if not self.secret_key:
            logger.warning("recaptcha_not_configured")
            return
        if not token:
            raise ValidationError(AuthFailure.RECAPTCHA_FAILED)
        data = {"secret": self.secret_key, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(self.verify_url, data=data)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "recaptcha_request_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise DependencyError(AuthFailure.RECAPTCHA_UNAVAILABLE) from exc
        if not body.get("success"):
            logger.info("recaptcha_rejected", error_codes=body.get("error-codes"))
            raise ValidationError(AuthFailure.RECAPTCHA_FAILED)
