"""One-time codes: emailed login OTPs, authenticator TOTP and backup codes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

import qrcode

from brewstore.logging import get_logger
from brewstore.storage.models import User

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999
TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_email_otp() -> str:
    """Uniform 6-digit code from the CSPRNG."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def issue_email_otp(now: datetime, ttl: timedelta = timedelta(minutes=5)) -> dict:
    """Field updates that arm a fresh email OTP; replaces any previous code."""
    return {
        "otp_code": generate_email_otp(),
        "otp_expires_at": now + ttl,
        "otp_verified": False,
    }


def verify_email_otp(user: User, code: Optional[str], now: datetime) -> bool:
    if not user.otp_code or not user.otp_expires_at or not code:
        return False
    expires_at = user.otp_expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if now >= expires_at:
        return False
    return hmac.compare_digest(user.otp_code.encode(), str(code).strip().encode())


def consume_email_otp() -> dict:
    return {"otp_code": None, "otp_expires_at": None, "otp_verified": True}


def generate_totp_secret() -> str:
    # 160-bit seed, the size authenticator apps expect
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def qr_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except Exception:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: Optional[str],
    code: Optional[str],
    *,
    now: datetime,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not secret or not code:
        return False
    code = str(code).strip().replace(" ", "")
    if not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    timestamp = now.timestamp()
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def _hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().lower().encode()).hexdigest()


def generate_backup_codes(count: int = 10) -> Tuple[List[str], List[str]]:
    """Return (plaintext codes for the user, hashes to store)."""
    codes = [secrets.token_hex(4) for _ in range(count)]
    return codes, [_hash_backup_code(code) for code in codes]


def consume_backup_code(hashes: List[str], code: Optional[str]) -> Optional[List[str]]:
    """Return the remaining hashes if ``code`` matched one, else None."""
    if not code:
        return None
    candidate = _hash_backup_code(code)
    for index, stored in enumerate(hashes):
        if hmac.compare_digest(stored, candidate):
            return hashes[:index] + hashes[index + 1 :]
    return None
