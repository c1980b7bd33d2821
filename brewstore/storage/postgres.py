from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from brewstore.logging import get_logger
from brewstore.storage.common import (
    SecretCipher,
    dump_emails,
    generate_uuid,
    load_emails,
    load_string_list,
    normalize_email,
    validate_update_fields,
)
from brewstore.storage.errors import ConstraintViolation
from brewstore.storage.models import ActivityLogEntry, EmailAddress, User, utcnow

_JSON_FIELDS = {"password_history", "backup_code_hashes"}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS shop_user (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    emails JSONB NOT NULL DEFAULT '[]'::jsonb,
    password_hash TEXT NOT NULL,
    password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    password_last_changed TIMESTAMPTZ NOT NULL,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
    lockout_until TIMESTAMPTZ,
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret TEXT,
    pending_two_factor_secret TEXT,
    two_factor_pending_until TIMESTAMPTZ,
    backup_code_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
    otp_code TEXT,
    otp_expires_at TIMESTAMPTZ,
    otp_verified BOOLEAN NOT NULL DEFAULT FALSE,
    refresh_token TEXT,
    reset_password_token_hash TEXT,
    reset_password_expires_at TIMESTAMPTZ,
    is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS shop_user_refresh_token_idx ON shop_user (refresh_token);
CREATE INDEX IF NOT EXISTS shop_user_reset_token_idx ON shop_user (reset_password_token_hash);
CREATE INDEX IF NOT EXISTS shop_user_emails_idx ON shop_user USING GIN (emails);
CREATE TABLE IF NOT EXISTS shop_activity_log (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES shop_user(id) ON DELETE SET NULL,
    action TEXT NOT NULL,
    info TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS shop_activity_log_user_idx ON shop_activity_log (user_id, created_at DESC);
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the ``shop_user`` and ``shop_activity_log`` tables if missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def _user_from_row(self, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            emails=load_emails(row.get("emails")),
            password_history=load_string_list(row.get("password_history")),
            password_last_changed=row["password_last_changed"],
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            lockout_until=row.get("lockout_until"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            pending_two_factor_secret=self._cipher.decrypt(
                row.get("pending_two_factor_secret")
            ),
            two_factor_pending_until=row.get("two_factor_pending_until"),
            backup_code_hashes=load_string_list(row.get("backup_code_hashes")),
            otp_code=row.get("otp_code"),
            otp_expires_at=row.get("otp_expires_at"),
            otp_verified=bool(row.get("otp_verified")),
            refresh_token=row.get("refresh_token"),
            reset_password_token_hash=row.get("reset_password_token_hash"),
            reset_password_expires_at=row.get("reset_password_expires_at"),
            is_blocked=bool(row.get("is_blocked")),
            is_admin=bool(row.get("is_admin")),
            created_at=row["created_at"],
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._user_from_row(row)

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
        if self.get_user_by_email(email) is not None:
            raise ConstraintViolation("email already exists", {"field": "email"})
        user_id = generate_uuid()
        now = utcnow()
        emails = [EmailAddress(address=email, verified=True)]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO shop_user (
                        id, name, email, emails, password_hash, password_history,
                        password_last_changed, is_admin, created_at
                    )
                    VALUES (%s, %s, %s, %s::jsonb, %s, %s::jsonb, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        name,
                        email,
                        dump_emails(emails),
                        password_hash,
                        json.dumps([password_hash]),
                        now,
                        is_admin,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM shop_user WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        return self._fetch_one(
            """
            SELECT * FROM shop_user
            WHERE email = %s OR emails @> %s::jsonb
            LIMIT 1
            """,
            (email, json.dumps([{"address": email, "verified": True}])),
        )

    def email_in_use(self, email: str) -> bool:
        email = normalize_email(email)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS taken FROM shop_user WHERE email = %s OR emails @> %s::jsonb LIMIT 1",
                (email, json.dumps([{"address": email}])),
            ).fetchone()
        return bool(row)

    def get_user_by_refresh_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_one(
            "SELECT * FROM shop_user WHERE refresh_token = %s", (token,)
        )

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM shop_user WHERE reset_password_token_hash = %s",
            (token_hash,),
        )

    def get_user_by_email_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM shop_user WHERE emails @> %s::jsonb LIMIT 1",
            (json.dumps([{"verify_token_hash": token_hash}]),),
        )

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        validate_update_fields(fields)
        if not fields:
            return self.get_user(user_id)
        values = self._cipher.encrypt_fields(fields)
        assignments: List[str] = []
        params: List[Any] = []
        # Column names come from the MUTABLE_USER_FIELDS allow-list
        for column, value in values.items():
            if column == "emails":
                assignments.append(f"{column} = %s::jsonb")
                params.append(dump_emails(value))
            elif column in _JSON_FIELDS:
                assignments.append(f"{column} = %s::jsonb")
                params.append(json.dumps(list(value)))
            elif column == "email":
                assignments.append(f"{column} = %s")
                params.append(normalize_email(value))
            else:
                assignments.append(f"{column} = %s")
                params.append(value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE shop_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    tuple(params),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def swap_refresh_token(
        self, user_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE shop_user SET refresh_token = %s
                WHERE id = %s AND refresh_token IS NOT DISTINCT FROM %s
                """,
                (new, user_id, expected),
            )
            swapped = cursor.rowcount == 1
        if not swapped:
            self.logger.info("refresh_token_swap_lost", user_id=user_id)
        return swapped

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM shop_user ORDER BY created_at ASC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # activity log
    @staticmethod
    def _activity_from_row(row: Dict[str, Any]) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            action=row["action"],
            info=row.get("info"),
            created_at=row["created_at"],
        )

    def record_activity(
        self, user_id: Optional[str], action: str, info: Optional[str] = None
    ) -> ActivityLogEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO shop_activity_log (id, user_id, action, info, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (generate_uuid(), user_id, action, info, utcnow()),
            ).fetchone()
        return self._activity_from_row(row)

    def list_activity(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM shop_activity_log ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM shop_activity_log WHERE user_id = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (user_id, limit),
                ).fetchall()
        return [self._activity_from_row(row) for row in rows]
