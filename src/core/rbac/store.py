"""
Assignment Store - The narrow read/write interface the engine needs from persistence.

The engine never talks to a database directly. Implementations raise
``TransientStoreError`` for infrastructure failures (connection lost,
timeout); the resolver converts those into ``StoreUnavailableError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .entities import Permission, Role, RolePermissionGrant, UserRoleAssignment


class TransientStoreError(Exception):
    """Infrastructure failure that may succeed on retry."""


class AssignmentStore(ABC):
    """Async persistence interface consumed by the resolver."""

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @abstractmethod
    async def load_roles(self) -> List[Role]:
        """All roles, active or not."""

    @abstractmethod
    async def load_active_user_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        """Assignments for ``user_id`` with is_active=True (expiry not yet applied)."""

    @abstractmethod
    async def load_active_role_grants(self, role_id: str) -> List[RolePermissionGrant]:
        """Grants for ``role_id`` with is_active=True, annotated with permission activity."""

    @abstractmethod
    async def load_permission(self, slug: str) -> Optional[Permission]:
        """Permission by slug, or None."""

    @abstractmethod
    async def count_active_role_holders(self, role_id: str) -> int:
        """Number of valid (active, unexpired) assignments of ``role_id``."""

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_role(self, role: Role) -> None:
        """Insert or update a role."""

    @abstractmethod
    async def delete_role(self, role_id: str) -> None:
        """Hard delete a role and its grant/assignment rows."""

    @abstractmethod
    async def save_permission(self, permission: Permission) -> None:
        """Insert or update a permission."""

    @abstractmethod
    async def save_role_assignment(self, assignment: UserRoleAssignment) -> None:
        """Insert or refresh the assignment for (user, role)."""

    @abstractmethod
    async def deactivate_role_assignments(self, user_id: str, role_id: str) -> int:
        """Soft-revoke active assignments for (user, role); returns rows touched."""

    @abstractmethod
    async def save_grant(self, grant: RolePermissionGrant) -> None:
        """Append a grant row."""

    @abstractmethod
    async def deactivate_grants(self, role_id: str, permission_id: str) -> int:
        """Soft-revoke active grants for (role, permission); returns rows touched."""

    @abstractmethod
    async def supersede_grant(self, grant: RolePermissionGrant) -> int:
        """
        Deactivate the active grants for (grant.role_id, grant.permission_id) and
        append ``grant``, as one unit of work. Returns rows deactivated.
        """

    @abstractmethod
    async def replace_role_grants(self, role_id: str, grants: List[RolePermissionGrant]) -> int:
        """
        Make ``grants`` the complete active grant set of ``role_id``, as one unit
        of work. Active grants of other permissions are deactivated, already
        active ones are kept, the rest are appended. Returns rows changed.
        """

    async def close(self) -> None:
        """Release connections. No-op by default."""


class InMemoryAssignmentStore(AssignmentStore):
    """
    Dictionary-backed store.

    Used by tests and embedded deployments. Keeps historical grant rows so the
    "most recent active grant wins" rule is exercised the same way as with SQL.
    """

    def __init__(self):
        self._roles: Dict[str, Role] = {}
        self._permissions: Dict[str, Permission] = {}
        self._assignments: Dict[Tuple[str, str], UserRoleAssignment] = {}
        self._grants: Dict[str, List[RolePermissionGrant]] = {}

    # Reads

    async def load_roles(self) -> List[Role]:
        return list(self._roles.values())

    async def load_active_user_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        return [
            assignment
            for (uid, _), assignment in self._assignments.items()
            if uid == user_id and assignment.is_active
        ]

    async def load_active_role_grants(self, role_id: str) -> List[RolePermissionGrant]:
        grants = []
        for grant in self._grants.get(role_id, []):
            if not grant.is_active:
                continue
            permission = self._permissions.get(grant.permission_id)
            active = permission.is_active if permission is not None else False
            grants.append(replace(grant, permission_active=active))
        return grants

    async def load_permission(self, slug: str) -> Optional[Permission]:
        for permission in self._permissions.values():
            if permission.slug == slug:
                return permission
        return None

    async def count_active_role_holders(self, role_id: str) -> int:
        return sum(
            1
            for (_, rid), assignment in self._assignments.items()
            if rid == role_id and assignment.is_valid()
        )

    # Writes

    async def save_role(self, role: Role) -> None:
        self._roles[role.id] = role

    async def delete_role(self, role_id: str) -> None:
        self._roles.pop(role_id, None)
        self._grants.pop(role_id, None)
        for key in [k for k in self._assignments if k[1] == role_id]:
            del self._assignments[key]

    async def save_permission(self, permission: Permission) -> None:
        self._permissions[permission.id] = permission

    async def save_role_assignment(self, assignment: UserRoleAssignment) -> None:
        self._assignments[(assignment.user_id, assignment.role_id)] = assignment

    async def deactivate_role_assignments(self, user_id: str, role_id: str) -> int:
        assignment = self._assignments.get((user_id, role_id))
        if assignment is None or not assignment.is_active:
            return 0
        self._assignments[(user_id, role_id)] = replace(assignment, is_active=False)
        return 1

    async def save_grant(self, grant: RolePermissionGrant) -> None:
        self._grants.setdefault(grant.role_id, []).append(grant)

    async def deactivate_grants(self, role_id: str, permission_id: str) -> int:
        touched = 0
        rows = self._grants.get(role_id, [])
        for index, grant in enumerate(rows):
            if grant.permission_id == permission_id and grant.is_active:
                rows[index] = replace(grant, is_active=False)
                touched += 1
        return touched

    async def supersede_grant(self, grant: RolePermissionGrant) -> int:
        touched = await self.deactivate_grants(grant.role_id, grant.permission_id)
        await self.save_grant(grant)
        return touched

    async def replace_role_grants(self, role_id: str, grants: List[RolePermissionGrant]) -> int:
        wanted = {grant.permission_id: grant for grant in grants}
        rows = self._grants.setdefault(role_id, [])
        kept = set()
        changed = 0
        for index, grant in enumerate(rows):
            if not grant.is_active:
                continue
            if grant.permission_id in wanted:
                kept.add(grant.permission_id)
            else:
                rows[index] = replace(grant, is_active=False)
                changed += 1
        for permission_id, grant in wanted.items():
            if permission_id not in kept:
                rows.append(grant)
                changed += 1
        return changed
