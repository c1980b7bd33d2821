from datetime import datetime, timedelta, timezone

from brewstore.service.lockout import LockoutGuard
from brewstore.storage.models import User


def _user(**fields) -> User:
    return User(id="u1", name="Jane Doe", email="jane@x.com", password_hash="h", **fields)


def test_failures_below_threshold_only_count():
    guard = LockoutGuard(max_attempts=10, lock_duration=timedelta(minutes=15))
    now = datetime.now(timezone.utc)
    locked, changes = guard.record_failure(_user(failed_login_attempts=8), now)
    assert not locked
    assert changes == {"failed_login_attempts": 9}


def test_tenth_failure_locks_for_fifteen_minutes():
    guard = LockoutGuard(max_attempts=10, lock_duration=timedelta(minutes=15))
    now = datetime.now(timezone.utc)
    locked, changes = guard.record_failure(_user(failed_login_attempts=9), now)
    assert locked
    assert changes["failed_login_attempts"] == 10
    assert changes["lockout_until"] == now + timedelta(minutes=15)
    assert guard.lock_minutes == 15


def test_remaining_minutes_rounds_up():
    guard = LockoutGuard()
    now = datetime.now(timezone.utc)
    user = _user(lockout_until=now + timedelta(minutes=14, seconds=1))
    assert guard.remaining_minutes(user, now) == 15
    user = _user(lockout_until=now + timedelta(seconds=5))
    assert guard.remaining_minutes(user, now) == 1


def test_expired_or_missing_lock_is_inactive():
    guard = LockoutGuard()
    now = datetime.now(timezone.utc)
    assert guard.remaining_minutes(_user(), now) is None
    assert guard.remaining_minutes(_user(lockout_until=now), now) is None
    assert guard.remaining_minutes(_user(lockout_until=now - timedelta(minutes=1)), now) is None


def test_naive_lockout_timestamp_is_utc():
    guard = LockoutGuard()
    now = datetime.now(timezone.utc)
    naive = (now + timedelta(minutes=3)).replace(tzinfo=None)
    assert guard.remaining_minutes(_user(lockout_until=naive), now) == 3


def test_reset_clears_counter_and_lock():
    assert LockoutGuard.reset() == {"failed_login_attempts": 0, "lockout_until": None}
