from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from brewstore.logging import get_logger
from brewstore.service.errors import AuthFailure, UnauthorizedError
from brewstore.storage.models import User

logger = get_logger(__name__)

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refreshToken"


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_refresh_token(self, token: str) -> Optional[User]: ...

    def swap_refresh_token(
        self, user_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool: ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class JwtCodec:
    """HS256 signer/verifier bound to one secret and token type."""

    def __init__(self, secret: str, *, issuer: str, token_type: str) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.token_type = token_type

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, subject: str, ttl: timedelta, *, now: datetime) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "token_type": self.token_type,
            # jti keeps two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 so "none" or RS/HS confusion cannot slip through
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        if payload.get("token_type") != self.token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (now if now is not None else time.time()):
            return None
        if not payload.get("sub"):
            return None
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


class TokenIssuer:
    """Mints access/refresh pairs and enforces single-use refresh rotation.

    The refresh token stored on the user record is the only valid one; a
    rotation replaces it with compare-and-swap so two concurrent refreshes
    with the same token cannot both win.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        access_codec: JwtCodec,
        refresh_codec: JwtCodec,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.access_codec = access_codec
        self.refresh_codec = refresh_codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _mint(self, user_id: str) -> TokenPair:
        now = self._now()
        return TokenPair(
            access_token=self.access_codec.encode(user_id, self.access_ttl, now=now),
            refresh_token=self.refresh_codec.encode(user_id, self.refresh_ttl, now=now),
        )

    def issue(self, user: User) -> TokenPair:
        """Mint a pair and make its refresh token the account's only valid one."""
        pair = self._mint(user.id)
        current = self.store.get_user(user.id)
        expected = current.refresh_token if current else None
        if not self.store.swap_refresh_token(user.id, expected, pair.refresh_token):
            # Another login replaced the token in between; retry once against it
            latest = self.store.get_user(user.id)
            if not latest or not self.store.swap_refresh_token(
                user.id, latest.refresh_token, pair.refresh_token
            ):
                raise UnauthorizedError(AuthFailure.INVALID_REFRESH_TOKEN)
        logger.info("tokens_issued", user_id=user.id)
        return pair

    def rotate(self, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
        if not refresh_token:
            raise UnauthorizedError(AuthFailure.NO_REFRESH_TOKEN)
        payload = self.refresh_codec.decode(refresh_token)
        if not payload:
            raise UnauthorizedError(AuthFailure.INVALID_REFRESH_TOKEN)
        user = self.store.get_user(payload["sub"])
        if not user or not user.refresh_token or not hmac.compare_digest(
            user.refresh_token, refresh_token
        ):
            logger.warning("refresh_token_mismatch", user_id=payload.get("sub"))
            raise UnauthorizedError(AuthFailure.INVALID_REFRESH_TOKEN)
        pair = self._mint(user.id)
        if not self.store.swap_refresh_token(user.id, refresh_token, pair.refresh_token):
            logger.warning("refresh_rotation_race_lost", user_id=user.id)
            raise UnauthorizedError(AuthFailure.INVALID_REFRESH_TOKEN)
        logger.info("refresh_token_rotated", user_id=user.id)
        return user, pair

    def revoke(self, refresh_token: Optional[str]) -> Optional[User]:
        """Clear the stored refresh token if it matches; no access token needed."""
        if not refresh_token:
            return None
        user = self.store.get_user_by_refresh_token(refresh_token)
        if not user:
            return None
        if self.store.swap_refresh_token(user.id, refresh_token, None):
            logger.info("refresh_token_revoked", user_id=user.id)
            return user
        return None

    def authenticate_access(self, token: Optional[str]) -> User:
        if not token:
            raise UnauthorizedError(AuthFailure.NO_ACCESS_TOKEN)
        payload = self.access_codec.decode(token)
        if not payload:
            raise UnauthorizedError(AuthFailure.INVALID_ACCESS_TOKEN)
        user = self.store.get_user(payload["sub"])
        if not user:
            raise UnauthorizedError(AuthFailure.INVALID_ACCESS_TOKEN)
        return user
