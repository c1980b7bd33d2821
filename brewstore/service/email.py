from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from brewstore.logging import get_logger

logger = get_logger(__name__)


@dataclass
class EmailMessage:
    subject: str
    html_body: str
    text_body: str


class Mailer(Protocol):
    async def send_mail(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


_LAYOUT = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #3b2314;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <h2 style="color: #6f4e37;">{title}</h2>
    {content}
    <p style="color: #8a7363; font-size: 12px;">If you did not request this, you can ignore this email.</p>
  </div>
</body>
</html>
"""


def login_otp_message(code: str, ttl_minutes: int) -> EmailMessage:
    content = (
        f"<p>Your login verification code is:</p>"
        f"<p style=\"font-size: 28px; letter-spacing: 6px;\"><strong>{code}</strong></p>"
        f"<p>This code expires in {ttl_minutes} minutes.</p>"
    )
    return EmailMessage(
        subject="brewstore Login OTP Verification",
        html_body=_LAYOUT.format(title="Login verification", content=content),
        text_body=f"Your OTP code is {code}. It expires in {ttl_minutes} minutes.",
    )


def password_reset_message(reset_url: str, ttl_minutes: int) -> EmailMessage:
    content = (
        f"<p>We received a request to reset your brewstore password.</p>"
        f"<p><a href=\"{reset_url}\">Reset your password</a></p>"
        f"<p>The link is valid for {ttl_minutes} minutes.</p>"
    )
    return EmailMessage(
        subject="brewstore Password Reset",
        html_body=_LAYOUT.format(title="Reset your password", content=content),
        text_body=(
            f"Reset your password using this link: {reset_url}\n"
            f"The link is valid for {ttl_minutes} minutes."
        ),
    )


def email_verification_message(verify_url: str, ttl_hours: int) -> EmailMessage:
    content = (
        f"<p>Confirm this address to use it with your brewstore account.</p>"
        f"<p><a href=\"{verify_url}\">Verify email</a></p>"
        f"<p>The link is valid for {ttl_hours} hours.</p>"
    )
    return EmailMessage(
        subject="Verify your brewstore email",
        html_body=_LAYOUT.format(title="Verify your email", content=content),
        text_body=f"Verify this email address: {verify_url}",
    )


class EmailService:
    """SMTP mailer for transactional auth emails.

    Logs instead of sending when SMTP is not configured (dev mode). Sends run
    in a worker thread and are bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "brewstore",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send_mail(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "email_timeout",
                to=redact_email(to_email),
                host=self.smtp_host,
                timeout=self.timeout,
            )
            return False

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
