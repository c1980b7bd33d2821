from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from brewstore.logging import get_logger
from brewstore.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    validate_update_fields,
)
from brewstore.storage.errors import ConstraintViolation
from brewstore.storage.models import ActivityLogEntry, EmailAddress, User, utcnow


class MemoryStore:
    """In-process credential store used for development and the test suite.

    Records are copied on the way in and out so every request performs a
    real read-modify-write, the same as against postgres.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.activity: List[ActivityLogEntry] = []
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    def _export(self, stored: Optional[User]) -> Optional[User]:
        if stored is None:
            return None
        user = copy.deepcopy(stored)
        user.two_factor_secret = self._cipher.decrypt(user.two_factor_secret)
        user.pending_two_factor_secret = self._cipher.decrypt(
            user.pending_two_factor_secret
        )
        return user

    def _email_taken(self, address: str, *, verified_only: bool = False) -> bool:
        return any(
            existing.email == address
            or existing.has_email(address, verified_only=verified_only)
            for existing in self.users.values()
        )

    # user / auth
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        is_admin: bool = False,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            # Pending secondary addresses do not block a signup
            if self._email_taken(email, verified_only=True):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=generate_uuid(),
                name=name,
                email=email,
                password_hash=password_hash,
                emails=[EmailAddress(address=email, verified=True)],
                password_history=[password_hash],
                password_last_changed=now,
                is_admin=is_admin,
                created_at=now,
            )
            self.users[user.id] = user
            return self._export(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._export(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email or user.has_email(email, verified_only=True):
                    return self._export(user)
        return None

    def email_in_use(self, email: str) -> bool:
        with self._data_lock:
            return self._email_taken(normalize_email(email))

    def get_user_by_refresh_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.refresh_token == token:
                    return self._export(user)
        return None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.reset_password_token_hash == token_hash:
                    return self._export(user)
        return None

    def get_user_by_email_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if any(e.verify_token_hash == token_hash for e in user.emails):
                    return self._export(user)
        return None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        validate_update_fields(fields)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            updated = replace(current, **self._cipher.encrypt_fields(copy.deepcopy(fields)))
            self.users[user_id] = updated
            return self._export(updated)

    def swap_refresh_token(
        self, user_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool:
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None or current.refresh_token != expected:
                return False
            self.users[user_id] = replace(current, refresh_token=new)
            return True

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._export(user) for user in ordered[:limit]]

    # activity log
    def record_activity(
        self, user_id: Optional[str], action: str, info: Optional[str] = None
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=generate_uuid(), user_id=user_id, action=action, info=info
        )
        with self._data_lock:
            self.activity.append(entry)
        return copy.copy(entry)

    def list_activity(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        """Newest first, optionally restricted to one account."""
        with self._data_lock:
            matching = [
                entry
                for entry in reversed(self.activity)
                if user_id is None or entry.user_id == user_id
            ]
            return [copy.copy(entry) for entry in matching[:limit]]
