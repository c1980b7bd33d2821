from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from brewstore.config import Settings
from brewstore.logging import get_logger
from brewstore.service import otp
from brewstore.service.email import (
    Mailer,
    email_verification_message,
    login_otp_message,
    password_reset_message,
)
from brewstore.service.errors import (
    AuthenticationError,
    AuthFailure,
    AuthorizationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from brewstore.service.lockout import LockoutGuard
from brewstore.service.passwords import PasswordPolicy
from brewstore.service.recaptcha import CaptchaVerifier
from brewstore.service.tokens import JwtCodec, TokenIssuer, TokenPair
from brewstore.service.validation import normalize_email_address, normalize_name
from brewstore.storage.errors import ConstraintViolation
from brewstore.storage.models import ActivityLogEntry, EmailAddress, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self, name: str, email: str, password_hash: str, *, is_admin: bool = False
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def email_in_use(self, email: str) -> bool: ...

    def get_user_by_refresh_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def get_user_by_email_token(self, token_hash: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def swap_refresh_token(
        self, user_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def record_activity(
        self, user_id: Optional[str], action: str, info: Optional[str] = None
    ) -> ActivityLogEntry: ...

    def list_activity(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLogEntry]: ...


class LoginState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    PASSWORD_VERIFIED = "password_verified"
    TWO_FACTOR_PENDING = "two_factor_pending"
    OTP_PENDING = "otp_pending"
    AUTHENTICATED = "authenticated"
    LOCKED = "locked"
    REJECTED = "rejected"


@dataclass
class LoginResult:
    state: LoginState
    user: User
    tokens: Optional[TokenPair] = None


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthService:
    """Registration, the multi-step login protocol and account self-service.

    Collaborators are injected so tests can swap in a recording mailer and a
    stub captcha verifier. Every method is one read-modify-write against the
    store; failures raise ServiceError subclasses tagged with an AuthFailure.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        mailer: Mailer,
        captcha: CaptchaVerifier,
        tokens: Optional[TokenIssuer] = None,
        policy: Optional[PasswordPolicy] = None,
        lockout: Optional[LockoutGuard] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.mailer = mailer
        self.captcha = captcha
        self.logger = logger
        self.policy = policy or PasswordPolicy(
            history_size=settings.password_history_size,
            max_age=timedelta(days=settings.password_max_age_days),
        )
        self.lockout = lockout or LockoutGuard(
            max_attempts=settings.max_failed_logins,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
        )
        self.tokens = tokens or TokenIssuer(
            store,
            access_codec=JwtCodec(
                settings.jwt_secret, issuer=settings.jwt_issuer, token_type="access"
            ),
            refresh_codec=JwtCodec(
                settings.jwt_refresh_secret, issuer=settings.jwt_issuer, token_type="refresh"
            ),
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )
        self.otp_ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.two_factor_window = timedelta(minutes=settings.two_factor_challenge_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _save(self, user_id: str, **changes) -> User:
        updated = self.store.update_user(user_id, **changes)
        if updated is None:
            raise NotFoundError(AuthFailure.USER_NOT_FOUND)
        return updated

    def _audit(
        self, user_id: Optional[str], action: str, info: Optional[str] = None
    ) -> None:
        self.store.record_activity(user_id, action, info)

    # registration
    async def register(
        self,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        recaptcha_token: Optional[str],
        *,
        remote_ip: Optional[str] = None,
    ) -> User:
        clean_name = normalize_name(name)
        if not clean_name:
            raise ValidationError(AuthFailure.INVALID_NAME)
        clean_email = normalize_email_address(email)
        if not clean_email:
            raise ValidationError(AuthFailure.INVALID_EMAIL)
        if not self.policy.validate_strength(password or ""):
            raise ValidationError(AuthFailure.WEAK_PASSWORD)
        if self.store.get_user_by_email(clean_email) is not None:
            raise ValidationError(AuthFailure.USER_EXISTS)
        await self.captcha.verify(recaptcha_token, remote_ip)
        try:
            user = self.store.create_user(
                clean_name, clean_email, self.policy.hash(password)
            )
        except ConstraintViolation:
            # Lost a race with a concurrent signup for the same address
            raise ValidationError(AuthFailure.USER_EXISTS)
        self.logger.info("user_registered", user_id=user.id)
        self._audit(user.id, "register")
        return user

    # login
    async def login(
        self,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        two_factor_code: Optional[str] = None,
        user_id: Optional[str] = None,
        otp_code: Optional[str] = None,
    ) -> LoginResult:
        if user_id and otp_code:
            return self._complete_otp(user_id, otp_code)

        now = self._now()
        user = self.store.get_user_by_email(email) if email else None
        if not user or not password:
            self.logger.info("login_rejected", reason="unknown_account")
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)

        minutes = self.lockout.remaining_minutes(user, now)
        if minutes is not None:
            self.logger.warning("login_locked", user_id=user.id, minutes=minutes)
            raise AuthorizationError(AuthFailure.ACCOUNT_LOCKED, minutes=minutes)

        if user.is_blocked:
            self.logger.warning("login_blocked_user", user_id=user.id)
            raise AuthorizationError(AuthFailure.USER_BLOCKED)

        if self.policy.is_expired(user.password_last_changed, now):
            self.logger.info("login_password_expired", user_id=user.id)
            raise AuthorizationError(AuthFailure.PASSWORD_EXPIRED)

        if not self.policy.verify(user.password_hash, password):
            locked, changes = self.lockout.record_failure(user, now)
            self._save(user.id, **changes)
            if locked:
                self._audit(
                    user.id, "account_locked", f"{self.lockout.lock_minutes} minutes"
                )
                raise AuthorizationError(
                    AuthFailure.LOCKOUT_TRIGGERED, minutes=self.lockout.lock_minutes
                )
            self.logger.info(
                "login_rejected",
                reason="password_mismatch",
                user_id=user.id,
                attempts=changes["failed_login_attempts"],
            )
            self._audit(
                user.id,
                "login_failed",
                f"attempt {changes['failed_login_attempts']}",
            )
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)

        # Cleared on password match, before any second factor runs
        user = self._save(user.id, **self.lockout.reset())

        if user.two_factor_enabled:
            if not two_factor_code:
                user = self._save(
                    user.id, two_factor_pending_until=now + self.two_factor_window
                )
                self.logger.info("login_two_factor_required", user_id=user.id)
                return LoginResult(LoginState.TWO_FACTOR_PENDING, user)
            if not otp.verify_totp(user.two_factor_secret, two_factor_code, now=now):
                self.logger.info("login_two_factor_rejected", user_id=user.id)
                self._audit(user.id, "two_factor_failed")
                raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)

        user = await self._dispatch_login_otp(user)
        return LoginResult(LoginState.OTP_PENDING, user)

    def _complete_otp(self, user_id: str, code: str) -> LoginResult:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError(AuthFailure.INVALID_USER)
        if not otp.verify_email_otp(user, code, self._now()):
            self.logger.info("login_otp_rejected", user_id=user.id)
            raise AuthenticationError(AuthFailure.INVALID_OTP)
        user = self._save(user.id, **otp.consume_email_otp())
        pair = self.tokens.issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        self._audit(user.id, "login")
        return LoginResult(LoginState.AUTHENTICATED, user, pair)

    async def _dispatch_login_otp(self, user: User) -> User:
        # Persist before sending so a failed send leaves a code a resend can replace
        user = self._save(user.id, **otp.issue_email_otp(self._now(), self.otp_ttl))
        message = login_otp_message(user.otp_code, self.settings.otp_ttl_minutes)
        sent = await self.mailer.send_mail(
            user.email, message.subject, message.html_body, message.text_body
        )
        if not sent:
            self.logger.error("login_otp_delivery_failed", user_id=user.id)
            raise DependencyError(AuthFailure.OTP_DELIVERY_FAILED)
        self.logger.info("login_otp_dispatched", user_id=user.id)
        return user

    async def resend_otp(self, user_id: Optional[str]) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if not user:
            raise NotFoundError(AuthFailure.USER_NOT_FOUND)
        return await self._dispatch_login_otp(user)

    # sessions
    def refresh(self, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
        return self.tokens.rotate(refresh_token)

    def logout(self, refresh_token: Optional[str]) -> None:
        user = self.tokens.revoke(refresh_token)
        if user:
            self.logger.info("logout", user_id=user.id)
            self._audit(user.id, "logout")

    def authenticate_access_token(self, token: Optional[str]) -> User:
        return self.tokens.authenticate_access(token)

    # password reset
    async def forgot_password(self, email: Optional[str]) -> None:
        address = normalize_email_address(email)
        user = self.store.get_user_by_email(address) if address else None
        if not user:
            raise NotFoundError(AuthFailure.USER_NOT_FOUND)
        token = secrets.token_hex(32)
        user = self._save(
            user.id,
            reset_password_token_hash=_hash_token(token),
            reset_password_expires_at=self._now()
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        reset_url = f"{self.settings.frontend_url.rstrip('/')}/reset-password/{token}"
        message = password_reset_message(reset_url, self.settings.reset_token_ttl_minutes)
        sent = await self.mailer.send_mail(
            user.email, message.subject, message.html_body, message.text_body
        )
        if not sent:
            raise DependencyError(AuthFailure.EMAIL_DELIVERY_FAILED)
        self.logger.info("password_reset_requested", user_id=user.id)
        self._audit(user.id, "password_reset_requested")

    def reset_password(self, token: Optional[str], password: Optional[str]) -> User:
        user = self.store.get_user_by_reset_token(_hash_token(token)) if token else None
        expires_at = _aware(user.reset_password_expires_at) if user else None
        if not user or not expires_at or expires_at <= self._now():
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError(AuthFailure.INVALID_RESET_TOKEN)
        self._check_new_password(user, password)
        user = self._save(
            user.id,
            reset_password_token_hash=None,
            reset_password_expires_at=None,
            **self.policy.apply_change(
                user.password_history, self.policy.hash(password), self._now()
            ),
        )
        self.logger.info("password_reset_completed", user_id=user.id)
        self._audit(user.id, "password_reset")
        return user

    def _check_new_password(self, user: User, password: Optional[str]) -> None:
        if not self.policy.validate_strength(password or ""):
            raise ValidationError(AuthFailure.WEAK_PASSWORD)
        if not self.policy.check_not_reused(password, user.password_history):
            raise ValidationError(
                AuthFailure.PASSWORD_REUSED, count=self.policy.history_size
            )

    # profile
    def update_profile(
        self,
        user: User,
        *,
        name: Optional[str] = None,
        password: Optional[str] = None,
        current_password: Optional[str] = None,
    ) -> User:
        changes: dict = {}
        if name is not None:
            clean_name = normalize_name(name)
            if not clean_name:
                raise ValidationError(AuthFailure.INVALID_NAME)
            changes["name"] = clean_name
        if password:
            if not current_password or not self.policy.verify(
                user.password_hash, current_password
            ):
                raise ValidationError(AuthFailure.CURRENT_PASSWORD_INCORRECT)
            self._check_new_password(user, password)
            changes.update(
                self.policy.apply_change(
                    user.password_history, self.policy.hash(password), self._now()
                )
            )
        if not changes:
            return user
        updated = self._save(user.id, **changes)
        self.logger.info(
            "profile_updated", user_id=user.id, password_changed="password_hash" in changes
        )
        if "password_hash" in changes:
            self._audit(user.id, "password_changed")
        return updated

    # admin
    @staticmethod
    def require_admin(actor: User) -> None:
        if not actor.is_admin:
            raise AuthorizationError(AuthFailure.ADMIN_REQUIRED)

    def list_users(self, actor: User, limit: int = 100) -> List[User]:
        self.require_admin(actor)
        return self.store.list_users(limit=limit)

    def set_blocked(self, actor: User, user_id: str, blocked: bool) -> User:
        self.require_admin(actor)
        if not self.store.get_user(user_id):
            raise NotFoundError(AuthFailure.USER_NOT_FOUND)
        user = self._save(user_id, is_blocked=blocked)
        self.logger.info(
            "user_block_changed", user_id=user_id, actor_id=actor.id, blocked=blocked
        )
        self._audit(
            user_id, "user_blocked" if blocked else "user_unblocked", f"by {actor.name}"
        )
        return user

    def activity_logs(
        self, actor: User, limit: int = 100
    ) -> List[Tuple[ActivityLogEntry, Optional[User]]]:
        """Admins see every account's events, everyone else only their own."""
        entries = self.store.list_activity(
            None if actor.is_admin else actor.id, limit=limit
        )
        owners: dict = {}
        logs = []
        for entry in entries:
            if entry.user_id and entry.user_id not in owners:
                owners[entry.user_id] = self.store.get_user(entry.user_id)
            logs.append((entry, owners.get(entry.user_id)))
        return logs

    # two-factor management
    def generate_two_factor(self, user: User) -> dict:
        secret = otp.generate_totp_secret()
        self._save(user.id, pending_two_factor_secret=secret)
        uri = otp.provisioning_uri(secret, user.email, self.settings.totp_issuer)
        self.logger.info("two_factor_setup_started", user_id=user.id)
        return {"qr": otp.qr_data_url(uri), "secret": secret}

    def confirm_two_factor(self, user: User, code: Optional[str]) -> User:
        if not user.pending_two_factor_secret:
            raise ValidationError(AuthFailure.TWO_FACTOR_NOT_STARTED)
        if not otp.verify_totp(user.pending_two_factor_secret, code, now=self._now()):
            raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)
        updated = self._save(
            user.id,
            two_factor_secret=user.pending_two_factor_secret,
            pending_two_factor_secret=None,
            two_factor_enabled=True,
        )
        self.logger.info("two_factor_enabled", user_id=user.id)
        self._audit(user.id, "two_factor_enabled")
        return updated

    def disable_two_factor(self, user: User) -> User:
        # A valid session is enough; no fresh code is requested
        updated = self._save(
            user.id,
            two_factor_enabled=False,
            two_factor_secret=None,
            pending_two_factor_secret=None,
            two_factor_pending_until=None,
            backup_code_hashes=[],
        )
        self.logger.info("two_factor_disabled", user_id=user.id)
        self._audit(user.id, "two_factor_disabled")
        return updated

    def _pending_challenge(self, user_id: Optional[str]) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if not user or not user.two_factor_enabled:
            raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)
        pending_until = _aware(user.two_factor_pending_until)
        if not pending_until or pending_until <= self._now():
            raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)
        return user

    async def verify_two_factor(self, user_id: Optional[str], code: Optional[str]) -> User:
        """Finish a pending 2FA challenge and move the login on to the email OTP."""
        user = self._pending_challenge(user_id)
        if not otp.verify_totp(user.two_factor_secret, code, now=self._now()):
            self.logger.info("two_factor_verify_rejected", user_id=user.id)
            self._audit(user.id, "two_factor_failed")
            raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)
        user = self._save(user.id, two_factor_pending_until=None)
        self._audit(user.id, "two_factor_verified")
        return await self._dispatch_login_otp(user)

    def generate_backup_codes(self, user: User) -> List[str]:
        if not user.two_factor_enabled:
            raise ValidationError(AuthFailure.TWO_FACTOR_NOT_ENABLED)
        codes, hashes = otp.generate_backup_codes(self.settings.backup_code_count)
        self._save(user.id, backup_code_hashes=hashes)
        self.logger.info("backup_codes_generated", user_id=user.id, count=len(codes))
        self._audit(user.id, "backup_codes_generated")
        return codes

    @staticmethod
    def backup_code_count(user: User) -> int:
        return len(user.backup_code_hashes or [])

    async def use_backup_code(self, user_id: Optional[str], code: Optional[str]) -> User:
        user = self._pending_challenge(user_id)
        remaining = otp.consume_backup_code(user.backup_code_hashes, code)
        if remaining is None:
            self.logger.info("backup_code_rejected", user_id=user.id)
            raise AuthenticationError(AuthFailure.INVALID_TWO_FACTOR)
        user = self._save(
            user.id, backup_code_hashes=remaining, two_factor_pending_until=None
        )
        self.logger.info("backup_code_used", user_id=user.id, remaining=len(remaining))
        self._audit(user.id, "backup_code_used", f"{len(remaining)} remaining")
        return await self._dispatch_login_otp(user)

    # secondary emails
    async def add_email(self, user: User, email: Optional[str]) -> User:
        address = normalize_email_address(email)
        if not address:
            raise ValidationError(AuthFailure.INVALID_EMAIL)
        own = next((entry for entry in user.emails if entry.address == address), None)
        if own is not None and own.verified:
            raise ValidationError(AuthFailure.EMAIL_IN_USE)
        if own is None and self.store.email_in_use(address):
            raise ValidationError(AuthFailure.EMAIL_IN_USE)
        # Re-adding a pending address replaces its link
        kept = [entry for entry in user.emails if entry.address != address]
        token = secrets.token_hex(32)
        entry = EmailAddress(
            address=address,
            verified=False,
            verify_token_hash=_hash_token(token),
            verify_expires_at=self._now()
            + timedelta(hours=self.settings.email_verify_ttl_hours),
        )
        updated = self._save(user.id, emails=kept + [entry])
        verify_url = f"{self.settings.app_base_url.rstrip('/')}/users/emails/verify/{token}"
        message = email_verification_message(verify_url, self.settings.email_verify_ttl_hours)
        sent = await self.mailer.send_mail(
            address, message.subject, message.html_body, message.text_body
        )
        if not sent:
            self._save(user.id, emails=user.emails)
            raise DependencyError(AuthFailure.EMAIL_DELIVERY_FAILED)
        self.logger.info("secondary_email_added", user_id=user.id)
        self._audit(user.id, "email_added", address)
        return updated

    def verify_email(self, token: Optional[str]) -> User:
        token_hash = _hash_token(token) if token else None
        user = self.store.get_user_by_email_token(token_hash) if token_hash else None
        if not user:
            raise ValidationError(AuthFailure.INVALID_EMAIL_TOKEN)
        now = self._now()
        emails: List[EmailAddress] = []
        verified_address: Optional[str] = None
        for entry in user.emails:
            if entry.verify_token_hash and hmac.compare_digest(
                entry.verify_token_hash, token_hash
            ):
                expires_at = _aware(entry.verify_expires_at)
                if not expires_at or expires_at <= now:
                    raise ValidationError(AuthFailure.INVALID_EMAIL_TOKEN)
                owner = self.store.get_user_by_email(entry.address)
                if owner is not None and owner.id != user.id:
                    # Claimed by another account while this link was pending
                    self._save(
                        user.id,
                        emails=[e for e in user.emails if e.address != entry.address],
                    )
                    raise ValidationError(AuthFailure.EMAIL_IN_USE)
                entry = EmailAddress(address=entry.address, verified=True)
                verified_address = entry.address
            emails.append(entry)
        if verified_address is None:
            raise ValidationError(AuthFailure.INVALID_EMAIL_TOKEN)
        updated = self._save(user.id, emails=emails)
        self.logger.info("secondary_email_verified", user_id=user.id)
        self._audit(user.id, "email_verified", verified_address)
        return updated

    def remove_email(self, user: User, email: Optional[str]) -> User:
        address = normalize_email_address(email)
        if address and address == user.email:
            raise ValidationError(AuthFailure.PRIMARY_EMAIL_REMOVAL)
        if not address or not user.has_email(address):
            raise ValidationError(AuthFailure.EMAIL_NOT_FOUND)
        remaining = [entry for entry in user.emails if entry.address != address]
        updated = self._save(user.id, emails=remaining)
        self.logger.info("secondary_email_removed", user_id=user.id)
        self._audit(user.id, "email_removed", address)
        return updated
