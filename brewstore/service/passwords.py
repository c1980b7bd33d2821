from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from brewstore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
MIN_PASSWORD_LENGTH = 8

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


class PasswordPolicy:
    """Strength, reuse and expiry rules for account passwords."""

    def __init__(
        self,
        *,
        history_size: int = 2,
        max_age: timedelta = timedelta(days=7),
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.history_size = history_size
        self.max_age = max_age
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def validate_strength(password: str) -> bool:
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            return False
        return bool(
            _LOWER.search(password)
            and _UPPER.search(password)
            and _DIGIT.search(password)
            and any(ch in PASSWORD_SYMBOLS for ch in password)
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str | None, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    def check_not_reused(self, password: str, history: Iterable[str]) -> bool:
        """Return False when ``password`` matches any remembered hash."""
        return not any(self.verify(previous, password) for previous in history)

    def is_expired(self, password_last_changed: datetime | None, now: datetime) -> bool:
        if password_last_changed is None:
            return False
        if password_last_changed.tzinfo is None:
            password_last_changed = password_last_changed.replace(tzinfo=timezone.utc)
        return now - password_last_changed > self.max_age

    def apply_change(
        self, history: List[str], new_hash: str, now: datetime
    ) -> dict:
        """Field updates for a password change; newest hash first."""
        return {
            "password_hash": new_hash,
            "password_history": ([new_hash] + list(history))[: self.history_size],
            "password_last_changed": now,
        }
