"""
RBAC Exceptions - Error taxonomy for the permission resolution engine.

Topology errors (cycles, dangling parents) are raised when a mutation would
corrupt the role hierarchy and are never tolerated silently. Store errors are
transient infrastructure failures and make authorization fail closed.
Permission denials are an expected, user-facing outcome.
"""

from typing import Optional


class RBACError(Exception):
    """Base class for all RBAC engine errors."""


# =============================================================================
# TOPOLOGY ERRORS
# =============================================================================

class CyclicHierarchyError(RBACError):
    """A role would become its own ancestor."""

    def __init__(self, role_id: str, chain: Optional[list[str]] = None):
        self.role_id = role_id
        self.chain = list(chain or [])
        detail = f" (chain: {' -> '.join(self.chain)})" if self.chain else ""
        super().__init__(f"Cyclic role hierarchy at role {role_id}{detail}")


class DanglingParentError(RBACError):
    """A role references a parent that does not exist."""

    def __init__(self, role_id: str, parent_id: str):
        self.role_id = role_id
        self.parent_id = parent_id
        super().__init__(f"Role {role_id} references missing parent {parent_id}")


# =============================================================================
# STORE ERRORS
# =============================================================================

class StoreUnavailableError(RBACError):
    """The assignment store could not answer; the outcome is unknown."""

    def __init__(self, operation: str, subject: Optional[str] = None):
        self.operation = operation
        self.subject = subject
        target = f" for {subject}" if subject else ""
        super().__init__(f"Assignment store unavailable during {operation}{target}")


# =============================================================================
# AUTHORIZATION OUTCOMES
# =============================================================================

class PermissionDeniedError(RBACError):
    """The user does not hold the requested permission."""

    def __init__(self, user_id: str, permission: str):
        self.user_id = user_id
        self.permission = permission
        super().__init__(f"Permission denied: user {user_id} lacks {permission}")


# =============================================================================
# MUTATION ERRORS
# =============================================================================

class RoleNotFoundError(RBACError):
    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__(f"Role not found: {role_id}")


class PermissionNotFoundError(RBACError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Permission not found: {slug}")


class RoleInUseError(RBACError):
    """Hard delete refused because active users still hold the role."""

    def __init__(self, role_id: str, holders: int):
        self.role_id = role_id
        self.holders = holders
        super().__init__(f"Role {role_id} is held by {holders} active assignment(s)")


class RoleExistsError(RBACError):
    """A role id is already taken by a role with a different slug."""

    def __init__(self, role_id: str, slug: str, existing_slug: str):
        self.role_id = role_id
        self.slug = slug
        self.existing_slug = existing_slug
        super().__init__(f"Role id {role_id} already belongs to {existing_slug!r}, cannot create {slug!r}")


class InvalidPermissionSlugError(RBACError, ValueError):
    """A new permission's slug is not in ``service_action`` form."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Invalid permission slug {slug!r}: expected service_action")
