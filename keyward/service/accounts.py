from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from keyward.logging import get_logger
from keyward.service.errors import (
    ConflictError,
    DuplicateEmail,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from keyward.storage.common import MAX_PAGE_SIZE, CredentialStore, normalize_email
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import ROLE_ADMIN, ROLES, User

logger = get_logger(__name__)

NEW_USER_WINDOW = timedelta(days=30)


@dataclass
class UserPage:
    users: List[User]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass
class UserDetail:
    user: User
    active_sessions: int


@dataclass
class AccountStats:
    total_users: int
    verified_users: int
    suspended_users: int
    admin_users: int
    two_factor_users: int
    active_sessions: int
    new_users_last_30_days: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "total_users": self.total_users,
            "verified_users": self.verified_users,
            "unverified_users": self.total_users - self.verified_users,
            "suspended_users": self.suspended_users,
            "admin_users": self.admin_users,
            "regular_users": self.total_users - self.admin_users,
            "two_factor_users": self.two_factor_users,
            "active_sessions": self.active_sessions,
            "new_users_last_30_days": self.new_users_last_30_days,
        }


class AccountService:
    """Self-service profile edits and the admin account-management operations."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound()
        return user

    # -- profile -----------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        profile_picture: Optional[str] = None,
    ) -> User:
        """Apply profile edits. A new email address must be verified again."""
        user = self._require_user(user_id)
        changes: Dict[str, Any] = {}
        if name:
            changes["name"] = name
        if profile_picture is not None:
            changes["profile_picture"] = profile_picture
        if email and normalize_email(email) != user.email:
            if self.store.get_user_by_email(email):
                raise DuplicateEmail("Email already in use")
            changes["email"] = email
            changes["is_email_verified"] = False
            changes["email_verification_otp"] = None
            changes["email_verification_expires"] = None
        if not changes:
            return user
        try:
            updated = self.store.update_user(user.id, **changes)
        except ConstraintViolation:
            raise DuplicateEmail("Email already in use")
        self.logger.info(
            "profile_updated", user_id=user.id, fields=sorted(changes.keys())
        )
        return updated or user

    # -- admin ----------------------------------------------------------------------------

    async def list_users(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        verified: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
    ) -> UserPage:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        users, total = self.store.list_users(
            search=search,
            role=role,
            suspended=suspended,
            verified=verified,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return UserPage(users=users, total=total, page=page, limit=limit)

    async def get_user(self, user_id: str) -> UserDetail:
        user = self._require_user(user_id)
        active = self.store.count_active_refresh_tokens(self._clock(), user_id=user.id)
        return UserDetail(user=user, active_sessions=active)

    async def suspend_user(
        self, actor_id: str, user_id: str, reason: Optional[str] = None
    ) -> User:
        """Suspend an account and revoke all of its refresh tokens."""
        user = self._require_user(user_id)
        if user.is_admin:
            raise PermissionDenied("Cannot suspend admin users")
        if user.is_suspended:
            raise ConflictError("User is already suspended")
        updated = self.store.update_user(
            user.id,
            is_suspended=True,
            suspended_at=self._clock(),
            suspended_by=actor_id,
            suspension_reason=reason or "No reason provided",
        )
        revoked = self.store.revoke_user_refresh_tokens(user.id)
        self.logger.warning(
            "user_suspended", user_id=user.id, actor_id=actor_id, sessions_revoked=revoked
        )
        return updated or user

    async def unsuspend_user(self, actor_id: str, user_id: str) -> User:
        user = self._require_user(user_id)
        updated = self.store.update_user(
            user.id,
            is_suspended=False,
            suspended_at=None,
            suspended_by=None,
            suspension_reason=None,
        )
        self.logger.info("user_unsuspended", user_id=user.id, actor_id=actor_id)
        return updated or user

    async def delete_user(self, actor_id: str, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.is_admin:
            raise PermissionDenied("Cannot delete admin users")
        self.store.delete_user(user.id)
        self.logger.warning("user_deleted", user_id=user.id, actor_id=actor_id)

    async def update_role(self, actor_id: str, user_id: str, role: str) -> User:
        """Change a role and end the account's sessions so it signs in again under it."""
        if role not in ROLES:
            raise ValidationError("Invalid role", detail={"allowed": list(ROLES)})
        user = self._require_user(user_id)
        updated = self.store.update_user(user.id, role=role)
        if user.role != role:
            self.store.revoke_user_refresh_tokens(user.id)
        self.logger.info(
            "user_role_updated", user_id=user.id, actor_id=actor_id, role=role
        )
        return updated or user

    async def stats(self) -> AccountStats:
        now = self._clock()
        return AccountStats(
            total_users=self.store.count_users(),
            verified_users=self.store.count_users(verified=True),
            suspended_users=self.store.count_users(suspended=True),
            admin_users=self.store.count_users(role=ROLE_ADMIN),
            two_factor_users=self.store.count_users(two_factor_enabled=True),
            active_sessions=self.store.count_active_refresh_tokens(now),
            new_users_last_30_days=self.store.count_users(
                created_since=now - NEW_USER_WINDOW
            ),
        )
