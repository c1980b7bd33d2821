"""Unit tests for the password policy.

Tests for:
- Strength rules
- Argon2id hashing and verification
- Reuse detection against the remembered hashes
- Expiry by age
"""

from datetime import datetime, timedelta, timezone

import pytest

from brewstore.service.passwords import PasswordPolicy


@pytest.fixture
def policy():
    return PasswordPolicy(history_size=2, max_age=timedelta(days=7))


class TestStrength:
    @pytest.mark.parametrize(
        "password",
        ["Abcdef1!", "Coffee#Beans42", "x Y 9 ?long-enough"],
    )
    def test_accepts_strong_passwords(self, password):
        assert PasswordPolicy.validate_strength(password)

    @pytest.mark.parametrize(
        "password",
        [
            "Abcde1!",  # seven characters
            "abcdef1!",  # no upper case
            "ABCDEF1!",  # no lower case
            "Abcdefg!",  # no digit
            "Abcdefg1",  # no symbol
            "",
        ],
    )
    def test_rejects_weak_passwords(self, password):
        assert not PasswordPolicy.validate_strength(password)

    def test_rejects_non_string(self):
        assert not PasswordPolicy.validate_strength(None)


class TestHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, policy):
        password_hash = policy.hash("Abcdef1!")
        assert password_hash.startswith("$argon2id$")
        assert "Abcdef1!" not in password_hash

    def test_verify_round_trip(self, policy):
        password_hash = policy.hash("Abcdef1!")
        assert policy.verify(password_hash, "Abcdef1!")
        assert not policy.verify(password_hash, "Abcdef1?")

    def test_verify_tolerates_garbage_hash(self, policy):
        assert not policy.verify("not-a-hash", "Abcdef1!")
        assert not policy.verify(None, "Abcdef1!")


class TestHistory:
    def test_history_keeps_newest_two(self, policy):
        now = datetime.now(timezone.utc)
        changes = policy.apply_change(["h2", "h1"], "h3", now)
        assert changes["password_hash"] == "h3"
        assert changes["password_history"] == ["h3", "h2"]
        assert changes["password_last_changed"] == now

    def test_reuse_detected_only_within_history(self, policy):
        first, second, third = (policy.hash(p) for p in ("Abcdef1!", "Bcdefg2@", "Cdefgh3#"))
        history = [third, second]
        assert not policy.check_not_reused("Cdefgh3#", history)
        assert not policy.check_not_reused("Bcdefg2@", history)
        assert policy.check_not_reused("Abcdef1!", history)
        assert first not in history


class TestExpiry:
    def test_expired_after_max_age(self, policy):
        now = datetime.now(timezone.utc)
        assert policy.is_expired(now - timedelta(days=8), now)
        assert not policy.is_expired(now - timedelta(days=6), now)

    def test_naive_timestamp_treated_as_utc(self, policy):
        now = datetime.now(timezone.utc)
        naive = (now - timedelta(days=10)).replace(tzinfo=None)
        assert policy.is_expired(naive, now)

    def test_missing_timestamp_never_expires(self, policy):
        assert not policy.is_expired(None, datetime.now(timezone.utc))
