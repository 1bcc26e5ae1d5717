"""Storage contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from keyward.storage.models import RefreshToken, User

USER_FIELDS = frozenset(f.name for f in fields(User)) - {"id", "created_at", "updated_at"}

MAX_PAGE_SIZE = 100


class CredentialStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[User], int]: ...

    def count_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        two_factor_enabled: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> int: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(
        self, token: str, user_id: Optional[str] = None
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, user_id: Optional[str] = None) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def count_active_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> int: ...

    def purge_expired_refresh_tokens(self, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_user_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown columns and normalise the email if it is being changed."""
    unknown = set(changes) - USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {sorted(unknown)}")
    if "email" in changes and changes["email"]:
        changes = {**changes, "email": normalize_email(changes["email"])}
    return changes


def user_matches(
    user: User,
    *,
    search: Optional[str] = None,
    role: Optional[str] = None,
    suspended: Optional[bool] = None,
    verified: Optional[bool] = None,
    two_factor_enabled: Optional[bool] = None,
    created_since: Optional[datetime] = None,
) -> bool:
    if role and user.role != role:
        return False
    if suspended is not None and user.is_suspended != suspended:
        return False
    if verified is not None and user.is_email_verified != verified:
        return False
    if two_factor_enabled is not None and user.two_factor_enabled != two_factor_enabled:
        return False
    if created_since is not None and user.created_at < created_since:
        return False
    if search:
        needle = search.lower()
        if needle not in user.email.lower() and needle not in (user.name or "").lower():
            return False
    return True


def clamp_page(offset: int, limit: int) -> Tuple[int, int]:
    return max(0, offset), max(1, min(limit, MAX_PAGE_SIZE))


class SecretCipher:
    """Fernet wrapper for column values that must be encrypted at rest."""

    def __init__(self, key_material: Optional[str], fs_root: Path) -> None:
        material = key_material
        if not material:
            key_path = fs_root / ".store_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = secrets.token_urlsafe(64)
                fs_root.mkdir(parents=True, exist_ok=True)
                key_path.write_text(material)
                os.chmod(key_path, 0o600)
        digest = hashlib.sha256(material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("unable to decrypt stored two-factor secret") from exc
