"""
RBAC Entities - Immutable value types exchanged with the assignment store.

These are plain frozen dataclasses, decoupled from the ORM tables in
``core.rbac.models``. The resolver and graph only ever see these types, so
a snapshot handed to a reader can never change underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .matcher import PermissionMatcher


def utcnow() -> datetime:
    """Timezone-aware current time used for expiry checks."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive timestamps coming back from SQLite are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# ROLE
# =============================================================================

@dataclass(frozen=True)
class Role:
    """
    A role in the hierarchy.

    ``level`` is the authority rank (higher = more authority). ``parent_id``
    points at the role whose permissions this role inherits.
    """
    id: str
    slug: str
    name: str
    level: int = 0
    parent_id: Optional[str] = None
    is_active: bool = True
    description: Optional[str] = None

    def with_parent(self, parent_id: Optional[str]) -> "Role":
        return replace(self, parent_id=parent_id)

    def with_active(self, is_active: bool) -> "Role":
        return replace(self, is_active=is_active)


# =============================================================================
# PERMISSION
# =============================================================================

@dataclass(frozen=True)
class Permission:
    """A permission slug in ``service_action`` form, possibly wildcarded."""
    id: str
    slug: str
    is_active: bool = True
    name: Optional[str] = None
    description: Optional[str] = None

    @property
    def category(self) -> str:
        return self.slug.split("_", 1)[0]


# =============================================================================
# GRANTS AND ASSIGNMENTS
# =============================================================================

@dataclass(frozen=True)
class RolePermissionGrant:
    """Links a role to a permission. Historical rows stay with is_active=False."""
    role_id: str
    permission_id: str
    permission_slug: str
    is_active: bool = True
    permission_active: bool = True
    granted_at: datetime = field(default_factory=utcnow)
    granted_by: Optional[str] = None
    note: Optional[str] = None

    def counts(self) -> bool:
        """True when both the grant and the permission itself are live."""
        return self.is_active and self.permission_active


@dataclass(frozen=True)
class UserRoleAssignment:
    """Links an opaque user id to a role, optionally until ``expires_at``."""
    user_id: str
    role_id: str
    is_active: bool = True
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    note: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return as_utc(self.expires_at) <= as_utc(now)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


# =============================================================================
# RESOLUTION RESULT
# =============================================================================

@dataclass(frozen=True)
class PermissionSet:
    """
    Effective permission set of one user.

    ``slugs`` holds held patterns exactly as granted; wildcards are expanded
    lazily by ``covers``. ``role_ids`` lists every role that was consulted
    (ancestors included), which feeds the cache's reverse index.
    ``valid_until`` is the earliest expiry among the assignments used; past
    that instant the set no longer describes the user.
    """
    user_id: str
    slugs: frozenset = frozenset()
    role_ids: frozenset = frozenset()
    assigned_role_ids: frozenset = frozenset()
    highest_level: Optional[int] = None
    valid_until: Optional[datetime] = None
    resolved_at: datetime = field(default_factory=utcnow)

    @classmethod
    def empty(cls, user_id: str, role_ids: frozenset = frozenset()) -> "PermissionSet":
        return cls(user_id=user_id, role_ids=role_ids)

    @property
    def has_roles(self) -> bool:
        return self.highest_level is not None

    def is_current(self, now: Optional[datetime] = None) -> bool:
        if self.valid_until is None:
            return True
        return as_utc(now or utcnow()) < as_utc(self.valid_until)

    def __len__(self) -> int:
        return len(self.slugs)

    def __contains__(self, slug: object) -> bool:
        return slug in self.slugs

    def covers(self, requested: str, matcher: "PermissionMatcher") -> bool:
        return matcher.covers_any(self.slugs, requested)
