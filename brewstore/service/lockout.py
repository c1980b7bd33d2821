from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from brewstore.logging import get_logger
from brewstore.storage.models import User

logger = get_logger(__name__)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LockoutGuard:
    """Counts password mismatches and applies a timed account lock."""

    def __init__(
        self, *, max_attempts: int = 10, lock_duration: timedelta = timedelta(minutes=15)
    ) -> None:
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    @property
    def lock_minutes(self) -> int:
        return int(self.lock_duration.total_seconds() // 60)

    def remaining_minutes(self, user: User, now: datetime) -> Optional[int]:
        """Whole minutes left on an active lock, rounded up; None when unlocked."""
        if not user.lockout_until:
            return None
        remaining = _aware(user.lockout_until) - now
        if remaining <= timedelta(0):
            return None
        return math.ceil(remaining.total_seconds() / 60)

    def record_failure(self, user: User, now: datetime) -> Tuple[bool, dict]:
        attempts = user.failed_login_attempts + 1
        changes: dict = {"failed_login_attempts": attempts}
        if attempts >= self.max_attempts:
            # The counter stays at its value; a later password match clears it
            changes["lockout_until"] = now + self.lock_duration
            logger.warning("lockout_triggered", user_id=user.id, attempts=attempts)
            return True, changes
        return False, changes

    @staticmethod
    def reset() -> dict:
        return {"failed_login_attempts": 0, "lockout_until": None}
