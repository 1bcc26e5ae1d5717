from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from keyward.logging import get_logger
from keyward.storage.common import (
    SecretCipher,
    clamp_page,
    normalize_email,
    user_matches,
    validate_user_changes,
)
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import DeviceInfo, RefreshToken, User, utcnow


class MemoryStore:
    """Dict-backed credential store persisted to a JSON file under ``fs_root``.

    Every read returns a copy, so callers never hold a live reference into the
    store; all mutations go through ``update_user`` and the token helpers.
    """

    def __init__(
        self, fs_root: str = "/tmp/keyward", *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(encryption_key, self.fs_root)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # -- users -----------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == needle), None)
            return replace(user) if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token),
                None,
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        changes = validate_user_changes(changes)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = changes.get("email")
            if new_email and new_email != user.email:
                if any(
                    other.email == new_email
                    for other in self.users.values()
                    if other.id != user_id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token_id, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            self._persist_state()
            return True

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
        with self._data_lock:
            matched = [
                u
                for u in self.users.values()
                if user_matches(
                    u, search=search, role=role, suspended=suspended, verified=verified
                )
            ]
            matched.sort(key=lambda u: u.created_at, reverse=True)
            page = [replace(u) for u in matched[offset : offset + limit]]
            return page, len(matched)

    def count_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        two_factor_enabled: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if user_matches(
                    u,
                    role=role,
                    suspended=suspended,
                    verified=verified,
                    two_factor_enabled=two_factor_enabled,
                    created_since=created_since,
                )
            )

    # -- refresh tokens ----------------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for refresh token", {"user_id": record.user_id}
                )
            if any(existing.token == record.token for existing in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def _find_token(self, token: str, user_id: Optional[str]) -> Optional[RefreshToken]:
        for record in self.refresh_tokens.values():
            if record.token == token and (user_id is None or record.user_id == user_id):
                return record
        return None

    def get_refresh_token(
        self, token: str, user_id: Optional[str] = None
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self._find_token(token, user_id)
            return replace(record) if record else None

    def revoke_refresh_token(self, token: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            record = self._find_token(token, user_id)
            if not record or record.is_revoked:
                return False
            self.refresh_tokens[record.id] = replace(
                record, is_revoked=True, revoked_at=utcnow()
            )
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for token_id, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id and not record.is_revoked:
                    self.refresh_tokens[token_id] = replace(
                        record, is_revoked=True, revoked_at=now
                    )
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def count_active_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for record in self.refresh_tokens.values()
                if record.is_valid(now) and (user_id is None or record.user_id == user_id)
            )

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.expires_at <= now
            ]
            for token_id in expired:
                self.refresh_tokens.pop(token_id, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- persistence -----------------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "credential_store_loaded",
            users=len(self.users),
            refresh_records=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_email_verified": user.is_email_verified,
            "profile_picture": user.profile_picture,
            "email_verification_otp": user.email_verification_otp,
            "email_verification_expires": self._serialize_datetime(
                user.email_verification_expires
            ),
            "password_reset_otp": user.password_reset_otp,
            "password_reset_token": user.password_reset_token,
            "password_reset_expires": self._serialize_datetime(user.password_reset_expires),
            "two_factor_secret": self._cipher.encrypt(user.two_factor_secret),
            "two_factor_enabled": user.two_factor_enabled,
            "last_login": self._serialize_datetime(user.last_login),
            "last_login_device": user.last_login_device,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "is_suspended": user.is_suspended,
            "suspended_at": self._serialize_datetime(user.suspended_at),
            "suspended_by": user.suspended_by,
            "suspension_reason": user.suspension_reason,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name", ""),
            role=data.get("role", "user"),
            is_email_verified=data.get("is_email_verified", False),
            profile_picture=data.get("profile_picture"),
            email_verification_otp=data.get("email_verification_otp"),
            email_verification_expires=self._deserialize_datetime(
                data.get("email_verification_expires")
            ),
            password_reset_otp=data.get("password_reset_otp"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=self._deserialize_datetime(
                data.get("password_reset_expires")
            ),
            two_factor_secret=self._cipher.decrypt(data.get("two_factor_secret")),
            two_factor_enabled=data.get("two_factor_enabled", False),
            last_login=self._deserialize_datetime(data.get("last_login")),
            last_login_device=data.get("last_login_device"),
            login_attempts=data.get("login_attempts", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            is_suspended=data.get("is_suspended", False),
            suspended_at=self._deserialize_datetime(data.get("suspended_at")),
            suspended_by=data.get("suspended_by"),
            suspension_reason=data.get("suspension_reason"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "device_info": record.device_info.to_dict(),
            "ip_address": record.ip_address,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            ip_address=data.get("ip_address"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
