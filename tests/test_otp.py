"""Unit tests for email OTPs, TOTP and backup codes."""

import base64
import time
from datetime import datetime, timedelta, timezone

from brewstore.service import otp
from brewstore.storage.models import User


def _user(**fields) -> User:
    return User(id="u1", name="Jane Doe", email="jane@x.com", password_hash="h", **fields)


class TestEmailOtp:
    def test_codes_are_six_digits(self):
        for _ in range(200):
            code = otp.generate_email_otp()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999

    def test_issue_sets_expiry_and_clears_verified(self):
        now = datetime.now(timezone.utc)
        changes = otp.issue_email_otp(now, timedelta(minutes=5))
        assert changes["otp_expires_at"] == now + timedelta(minutes=5)
        assert changes["otp_verified"] is False
        assert len(changes["otp_code"]) == 6

    def test_verify_accepts_match_before_expiry(self):
        now = datetime.now(timezone.utc)
        user = _user(otp_code="123456", otp_expires_at=now + timedelta(minutes=5))
        assert otp.verify_email_otp(user, "123456", now)
        assert not otp.verify_email_otp(user, "654321", now)

    def test_verify_refuses_at_and_after_expiry(self):
        now = datetime.now(timezone.utc)
        user = _user(otp_code="123456", otp_expires_at=now)
        assert not otp.verify_email_otp(user, "123456", now)
        assert not otp.verify_email_otp(user, "123456", now + timedelta(seconds=1))

    def test_verify_refuses_when_no_code_armed(self):
        now = datetime.now(timezone.utc)
        assert not otp.verify_email_otp(_user(), "123456", now)
        user = _user(otp_code="123456", otp_expires_at=now + timedelta(minutes=1))
        assert not otp.verify_email_otp(user, None, now)

    def test_consume_clears_code(self):
        assert otp.consume_email_otp() == {
            "otp_code": None,
            "otp_expires_at": None,
            "otp_verified": True,
        }


class TestTotp:
    def test_rfc6238_sha1_vector(self):
        # RFC 6238 appendix B, SHA1 seed "12345678901234567890", truncated to 6 digits
        secret = base64.b32encode(b"12345678901234567890").decode()
        assert otp.generate_totp(secret, 59) == "287082"
        assert otp.generate_totp(secret, 1111111109) == "081804"

    def test_secret_is_base32(self):
        secret = otp.generate_totp_secret()
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        assert len(base64.b32decode(padded)) == 20

    def test_verify_accepts_adjacent_steps_only(self):
        secret = otp.generate_totp_secret()
        now = datetime.now(timezone.utc)
        ts = now.timestamp()
        assert otp.verify_totp(secret, otp.generate_totp(secret, ts), now=now)
        assert otp.verify_totp(secret, otp.generate_totp(secret, ts - 30), now=now)
        assert otp.verify_totp(secret, otp.generate_totp(secret, ts + 30), now=now)
        stale = otp.generate_totp(secret, ts - 120)
        window = {otp.generate_totp(secret, ts + off * 30) for off in (-1, 0, 1)}
        if stale not in window:
            assert not otp.verify_totp(secret, stale, now=now)

    def test_verify_rejects_malformed_codes(self):
        secret = otp.generate_totp_secret()
        now = datetime.now(timezone.utc)
        assert not otp.verify_totp(secret, "12345", now=now)
        assert not otp.verify_totp(secret, "abcdef", now=now)
        assert not otp.verify_totp(None, "123456", now=now)

    def test_provisioning_uri_and_qr(self):
        uri = otp.provisioning_uri("JBSWY3DPEHPK3PXP", "jane@x.com", "brewstore")
        assert uri.startswith("otpauth://totp/brewstore%3Ajane%40x.com?")
        assert "secret=JBSWY3DPEHPK3PXP" in uri
        assert "issuer=brewstore" in uri
        assert otp.qr_data_url(uri).startswith("data:image/png;base64,")


class TestBackupCodes:
    def test_generate_returns_hashes_not_codes(self):
        codes, hashes = otp.generate_backup_codes(10)
        assert len(codes) == len(hashes) == 10
        assert len(set(codes)) == 10
        assert not set(codes) & set(hashes)

    def test_consume_is_single_use(self):
        codes, hashes = otp.generate_backup_codes(3)
        remaining = otp.consume_backup_code(hashes, codes[1])
        assert remaining is not None
        assert len(remaining) == 2
        assert otp.consume_backup_code(remaining, codes[1]) is None

    def test_consume_is_case_insensitive(self):
        codes, hashes = otp.generate_backup_codes(1)
        assert otp.consume_backup_code(hashes, codes[0].upper()) == []

    def test_consume_rejects_unknown(self):
        _, hashes = otp.generate_backup_codes(2)
        assert otp.consume_backup_code(hashes, "deadbeef0") is None
        assert otp.consume_backup_code(hashes, None) is None


def test_generate_totp_current_time_matches_verify():
    secret = otp.generate_totp_secret()
    code = otp.generate_totp(secret, time.time())
    assert otp.verify_totp(secret, code, now=datetime.now(timezone.utc))
