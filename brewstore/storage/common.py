"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import json
import os
import uuid
from typing import Any, Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from brewstore.logging import get_logger
from brewstore.storage.errors import UnknownField
from brewstore.storage.models import MUTABLE_USER_FIELDS, EmailAddress

logger = get_logger(__name__)

# TOTP seeds are stored encrypted; every other field is stored as-is.
ENCRYPTED_USER_FIELDS = ("two_factor_secret", "pending_two_factor_secret")


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_update_fields(fields: Iterable[str]) -> None:
    unknown = sorted(set(fields) - MUTABLE_USER_FIELDS)
    if unknown:
        raise UnknownField(f"unknown user fields: {', '.join(unknown)}")


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP seeds at rest."""

    def __init__(self, key_material: str | None) -> None:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to store 2FA secrets")
        try:
            self._fernet = Fernet(derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None

    def encrypt_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        encrypted = dict(fields)
        for key in ENCRYPTED_USER_FIELDS:
            if key in encrypted:
                encrypted[key] = self.encrypt(encrypted[key])
        return encrypted


def dump_emails(emails: List[EmailAddress]) -> str:
    return json.dumps([entry.to_dict() for entry in emails])


def load_emails(raw: Any) -> List[EmailAddress]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("user_emails_decode_failed")
            return []
    return [EmailAddress.from_dict(entry) for entry in raw if isinstance(entry, dict)]


def load_string_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return [str(item) for item in raw]
