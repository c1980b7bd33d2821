from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EmailAddress:
    address: str
    verified: bool = False
    verify_token_hash: Optional[str] = None
    verify_expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "verified": self.verified,
            "verify_token_hash": self.verify_token_hash,
            "verify_expires_at": (
                self.verify_expires_at.isoformat() if self.verify_expires_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EmailAddress":
        expires = data.get("verify_expires_at")
        if isinstance(expires, str):
            expires = datetime.fromisoformat(expires)
        return cls(
            address=data["address"],
            verified=bool(data.get("verified", False)),
            verify_token_hash=data.get("verify_token_hash"),
            verify_expires_at=expires,
        )


@dataclass
class User:
    """Credential record for one shop account."""

    id: str
    name: str
    email: str
    password_hash: str
    emails: List[EmailAddress] = field(default_factory=list)
    password_history: List[str] = field(default_factory=list)
    password_last_changed: datetime = field(default_factory=utcnow)
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    pending_two_factor_secret: Optional[str] = None
    two_factor_pending_until: Optional[datetime] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_verified: bool = False
    refresh_token: Optional[str] = None
    reset_password_token_hash: Optional[str] = None
    reset_password_expires_at: Optional[datetime] = None
    is_blocked: bool = False
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "isAdmin": self.is_admin,
        }

    def has_email(self, address: str, *, verified_only: bool = False) -> bool:
        address = address.lower()
        for entry in self.emails:
            if entry.address == address and (entry.verified or not verified_only):
                return True
        return False


@dataclass
class ActivityLogEntry:
    """One account event shown on the activity log screen."""

    id: str
    user_id: Optional[str]
    action: str
    info: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


# Fields callers may change through update_user; id and created_at are fixed.
MUTABLE_USER_FIELDS = frozenset(
    {
        "name",
        "email",
        "password_hash",
        "emails",
        "password_history",
        "password_last_changed",
        "failed_login_attempts",
        "lockout_until",
        "two_factor_enabled",
        "two_factor_secret",
        "pending_two_factor_secret",
        "two_factor_pending_until",
        "backup_code_hashes",
        "otp_code",
        "otp_expires_at",
        "otp_verified",
        "refresh_token",
        "reset_password_token_hash",
        "reset_password_expires_at",
        "is_blocked",
        "is_admin",
    }
)
