from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from keyward.logging import get_logger
from keyward.storage.common import (
    SecretCipher,
    clamp_page,
    normalize_email,
    validate_user_changes,
)
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import DeviceInfo, RefreshToken, User, utcnow


def _is_uuid(value: Optional[str]) -> bool:
    """True when ``value`` parses as a UUID, the type of every id column."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user',
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    profile_picture TEXT,
    email_verification_otp TEXT,
    email_verification_expires TIMESTAMPTZ,
    password_reset_otp TEXT,
    password_reset_token TEXT,
    password_reset_expires TIMESTAMPTZ,
    two_factor_secret TEXT,
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    last_login TIMESTAMPTZ,
    last_login_device TEXT,
    login_attempts INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    is_suspended BOOLEAN NOT NULL DEFAULT FALSE,
    suspended_at TIMESTAMPTZ,
    suspended_by UUID,
    suspension_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email));
CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (password_reset_token);

CREATE TABLE IF NOT EXISTS refresh_token (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    token TEXT NOT NULL UNIQUE,
    device_info JSONB,
    ip_address TEXT,
    expires_at TIMESTAMPTZ NOT NULL,
    is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
    revoked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id);
CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at);
"""

_USER_COLUMNS = (
    "id, email, name, password_hash, role, is_email_verified, profile_picture, "
    "email_verification_otp, email_verification_expires, password_reset_otp, "
    "password_reset_token, password_reset_expires, two_factor_secret, "
    "two_factor_enabled, last_login, last_login_device, login_attempts, lock_until, "
    "is_suspended, suspended_at, suspended_by, suspension_reason, created_at, updated_at"
)


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool."""

    def __init__(
        self, dsn: str, fs_root: str, *, encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key, Path(fs_root))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------------

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            is_email_verified=row.get("is_email_verified", False),
            profile_picture=row.get("profile_picture"),
            email_verification_otp=row.get("email_verification_otp"),
            email_verification_expires=row.get("email_verification_expires"),
            password_reset_otp=row.get("password_reset_otp"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_enabled=row.get("two_factor_enabled", False),
            last_login=row.get("last_login"),
            last_login_device=row.get("last_login_device"),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            is_suspended=row.get("is_suspended", False),
            suspended_at=row.get("suspended_at"),
            suspended_by=str(row["suspended_by"]) if row.get("suspended_by") else None,
            suspension_reason=row.get("suspension_reason"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            device_info=DeviceInfo.from_dict(row.get("device_info")),
            ip_address=row.get("ip_address"),
            expires_at=row["expires_at"],
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._row_to_user(row) if row else None

    # -- users -----------------------------------------------------------------

    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, name, password_hash, role, is_email_verified,
                        profile_picture, email_verification_otp, email_verification_expires,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        user.name,
                        user.password_hash,
                        user.role,
                        user.is_email_verified,
                        user.profile_picture,
                        user.email_verification_otp,
                        user.email_verification_expires,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        created = self.get_user(user.id)
        if created is None:
            raise ConstraintViolation("user insert was not visible", {"user_id": user.id})
        return created

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = %s", (normalize_email(email),))

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_user("password_reset_token = %s", (token,))

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        changes = validate_user_changes(changes)
        if not _is_uuid(user_id):
            return None
        if "two_factor_secret" in changes:
            changes["two_factor_secret"] = self._cipher.encrypt(changes["two_factor_secret"])
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = %s" for column in changes)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (*changes.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    @staticmethod
    def _filters(
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        two_factor_enabled: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if role:
            clauses.append("role = %s")
            params.append(role)
        if suspended is not None:
            clauses.append("is_suspended = %s")
            params.append(suspended)
        if verified is not None:
            clauses.append("is_email_verified = %s")
            params.append(verified)
        if two_factor_enabled is not None:
            clauses.append("two_factor_enabled = %s")
            params.append(two_factor_enabled)
        if created_since is not None:
            clauses.append("created_at >= %s")
            params.append(created_since)
        if search:
            clauses.append("(email ILIKE %s OR name ILIKE %s)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        where = " AND ".join(clauses) if clauses else "TRUE"
        return where, params

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        offset, limit = clamp_page(offset, limit)
        where, params = self._filters(
            search=search, role=role, suspended=suspended, verified=verified
        )
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} "
                "ORDER BY created_at DESC OFFSET %s LIMIT %s",
                (*params, offset, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT count(*) AS total FROM app_user WHERE {where}", params
            ).fetchone()["total"]
        return [self._row_to_user(row) for row in rows], int(total)

    def count_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        two_factor_enabled: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> int:
        where, params = self._filters(
            role=role,
            suspended=suspended,
            verified=verified,
            two_factor_enabled=two_factor_enabled,
            created_since=created_since,
        )
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS total FROM app_user WHERE {where}", params
            ).fetchone()
        return int(row["total"])

    # -- refresh tokens ----------------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, user_id, token, device_info, ip_address, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token,
                        Jsonb(record.device_info.to_dict()),
                        record.ip_address,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": record.user_id}
            )
        return record

    def get_refresh_token(
        self, token: str, user_id: Optional[str] = None
    ) -> Optional[RefreshToken]:
        if user_id and not _is_uuid(user_id):
            return None
        query = "SELECT * FROM refresh_token WHERE token = %s"
        params: List[Any] = [token]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_token(row) if row else None

    def revoke_refresh_token(self, token: str, user_id: Optional[str] = None) -> bool:
        if user_id and not _is_uuid(user_id):
            return False
        query = (
            "UPDATE refresh_token SET is_revoked = TRUE, revoked_at = now() "
            "WHERE token = %s AND NOT is_revoked"
        )
        params: List[Any] = [token]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE, revoked_at = now() "
                "WHERE user_id = %s AND NOT is_revoked",
                (user_id,),
            )
            return cur.rowcount

    def count_active_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> int:
        if user_id and not _is_uuid(user_id):
            return 0
        query = (
            "SELECT count(*) AS total FROM refresh_token "
            "WHERE NOT is_revoked AND expires_at > %s"
        )
        params: List[Any] = [now]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["total"])

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            purged = cur.rowcount
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged
