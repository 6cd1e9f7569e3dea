"""
Permission Resolver - Computes a user's effective permission set.

Resolution:
    valid assignments -> active assigned roles -> ancestor chains (inactive
    roles skipped, not chain-breaking) -> deduplicated role set -> latest
    active grant per permission -> held slugs

Wildcards are kept as held patterns and expanded lazily at check time.

The resolver also owns the administrative mutation API. Every mutation writes
through the AssignmentStore and notifies listeners with an ``InvalidationEvent``
once the write has finished, including when it failed part way. Topology
mutations are serialized by one lock and publish a new immutable
``RoleGraph``; readers keep using whatever snapshot they started with.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .cache import InvalidationEvent, InvalidationScope
from .entities import (
    Permission,
    PermissionSet,
    Role,
    RolePermissionGrant,
    UserRoleAssignment,
    as_utc,
    utcnow,
)
from .exceptions import (
    InvalidPermissionSlugError,
    PermissionNotFoundError,
    RBACError,
    RoleExistsError,
    RoleInUseError,
    StoreUnavailableError,
)
from .graph import RoleGraph
from .matcher import PermissionMatcher, get_permission_matcher, split_slug
from .store import AssignmentStore, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[InvalidationEvent], Any]


class Resolver:
    """Effective permission resolution plus the mutation API."""

    def __init__(
        self,
        store: AssignmentStore,
        graph: Optional[RoleGraph] = None,
        matcher: Optional[PermissionMatcher] = None,
    ):
        self._store = store
        self._graph = graph if graph is not None else RoleGraph.empty()
        self._matcher = matcher or get_permission_matcher()
        self._topology_lock = asyncio.Lock()
        self._listeners: List[Listener] = []

    @property
    def graph(self) -> RoleGraph:
        """Current graph snapshot."""
        return self._graph

    @property
    def store(self) -> AssignmentStore:
        return self._store

    @property
    def matcher(self) -> PermissionMatcher:
        return self._matcher

    # =========================================================================
    # STORE ACCESS
    # =========================================================================

    async def _call(self, operation: str, subject: Optional[str], awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except TransientStoreError as exc:
            target = f" for {subject}" if subject else ""
            logger.warning(f"Assignment store unavailable during {operation}{target}: {exc}")
            raise StoreUnavailableError(operation, subject) from exc

    async def load_graph(self) -> RoleGraph:
        """
        Rebuild the graph from the store and swap it in.

        Raises:
            StoreUnavailableError: roles could not be loaded
            CyclicHierarchyError / DanglingParentError: stored topology is corrupt;
                the previous graph stays in place
        """
        async with self._topology_lock:
            roles = await self._call("load_roles", None, self._store.load_roles())
            self._graph = RoleGraph.build(roles)

        logger.info(f"Loaded role graph with {len(self._graph)} roles")
        await self._emit(InvalidationEvent(InvalidationScope.ALL, reason="graph_reload"))
        return self._graph

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve(self, user_id: str) -> PermissionSet:
        """
        Compute the effective permission set for ``user_id``.

        A user without valid roles gets an empty set, never an error.

        Raises:
            StoreUnavailableError: the store failed; the caller must not treat
                this as "no permissions"
        """
        graph = self._graph
        now = utcnow()

        assignments = await self._call(
            "load_active_user_role_assignments",
            user_id,
            self._store.load_active_user_role_assignments(user_id),
        )

        assigned: Dict[str, Role] = {}
        consulted: Dict[str, Role] = {}
        valid_until: Optional[datetime] = None

        for assignment in assignments:
            if not assignment.is_valid(now):
                continue
            chain = graph.ancestor_chain(assignment.role_id)
            if not chain:
                logger.debug(f"User {user_id} holds unknown role {assignment.role_id}")
                continue
            for role in chain:
                consulted.setdefault(role.id, role)

            role = chain[0]
            if not role.is_active:
                continue
            assigned[role.id] = role
            if assignment.expires_at is not None:
                expires_at = as_utc(assignment.expires_at)
                if valid_until is None or expires_at < valid_until:
                    valid_until = expires_at

        if not assigned:
            return PermissionSet.empty(user_id, role_ids=frozenset(consulted))

        contributing: Dict[str, Role] = {}
        for role in assigned.values():
            for ancestor in graph.ancestor_chain(role.id):
                if ancestor.is_active:
                    contributing.setdefault(ancestor.id, ancestor)

        slugs: set = set()
        for role_id in contributing:
            grants = await self._call(
                "load_active_role_grants",
                role_id,
                self._store.load_active_role_grants(role_id),
            )
            slugs.update(self._effective_slugs(grants))

        return PermissionSet(
            user_id=user_id,
            slugs=frozenset(slugs),
            role_ids=frozenset(consulted),
            assigned_role_ids=frozenset(assigned),
            highest_level=max(role.level for role in assigned.values()),
            valid_until=valid_until,
            resolved_at=now,
        )

    def _effective_slugs(self, grants: Iterable[RolePermissionGrant]) -> List[str]:
        """Latest active grant per permission; dead permissions and bad slugs dropped."""
        latest: Dict[str, RolePermissionGrant] = {}
        for grant in grants:
            if not grant.is_active:
                continue
            current = latest.get(grant.permission_id)
            if current is None or as_utc(grant.granted_at) > as_utc(current.granted_at):
                latest[grant.permission_id] = grant

        slugs = []
        for grant in latest.values():
            if not grant.counts():
                continue
            if split_slug(grant.permission_slug) is None:
                self._matcher.report_malformed(grant.permission_slug)
                continue
            slugs.append(grant.permission_slug)
        return slugs

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an invalidation listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: InvalidationEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # A failed listener must not turn the store write into a
                # reported failure.
                logger.exception(f"Invalidation listener failed for {event.scope.value} {event.target_id}")

    @asynccontextmanager
    async def _invalidating(self, event: InvalidationEvent) -> AsyncIterator[None]:
        """
        Emit ``event`` when the enclosed store writes finish, failed or not.

        A write that raised may still have committed part of its work, so
        cached sets are dropped either way.
        """
        try:
            yield
        finally:
            await self._emit(event)

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    async def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> UserRoleAssignment:
        """Assign (or refresh) ``role_id`` for ``user_id``."""
        self._graph.require(role_id)
        assignment = UserRoleAssignment(
            user_id=user_id,
            role_id=role_id,
            expires_at=expires_at,
            assigned_by=assigned_by,
            note=note,
        )
        async with self._invalidating(InvalidationEvent(InvalidationScope.USER, user_id, reason="role_assigned")):
            await self._call("save_role_assignment", user_id, self._store.save_role_assignment(assignment))
        logger.info(f"Assigned role {role_id} to user {user_id}")
        return assignment

    async def revoke_role(self, user_id: str, role_id: str) -> bool:
        """Soft-revoke; returns True if an active assignment was deactivated."""
        async with self._invalidating(InvalidationEvent(InvalidationScope.USER, user_id, reason="role_revoked")):
            touched = await self._call(
                "deactivate_role_assignments",
                user_id,
                self._store.deactivate_role_assignments(user_id, role_id),
            )
        if touched:
            logger.info(f"Revoked role {role_id} from user {user_id}")
        return touched > 0

    # =========================================================================
    # GRANTS
    # =========================================================================

    async def _require_permission(self, slug: str) -> Permission:
        permission = await self._call("load_permission", slug, self._store.load_permission(slug))
        if permission is None:
            raise PermissionNotFoundError(slug)
        return permission

    def _new_grant(
        self,
        role_id: str,
        permission: Permission,
        granted_by: Optional[str],
        note: Optional[str],
    ) -> RolePermissionGrant:
        return RolePermissionGrant(
            role_id=role_id,
            permission_id=permission.id,
            permission_slug=permission.slug,
            permission_active=permission.is_active,
            granted_by=granted_by,
            note=note,
        )

    async def grant_permission(
        self,
        role_id: str,
        permission_slug: str,
        *,
        granted_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RolePermissionGrant:
        """Grant a permission to a role. An existing active grant is superseded, not duplicated."""
        self._graph.require(role_id)
        permission = await self._require_permission(permission_slug)
        grant = self._new_grant(role_id, permission, granted_by, note)

        async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="permission_granted")):
            await self._call("supersede_grant", role_id, self._store.supersede_grant(grant))
        logger.info(f"Granted {permission.slug} to role {role_id}")
        return grant

    async def revoke_permission(self, role_id: str, permission_slug: str) -> bool:
        """Soft-revoke every active grant of ``permission_slug`` on ``role_id``."""
        permission = await self._require_permission(permission_slug)
        async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="permission_revoked")):
            touched = await self._call(
                "deactivate_grants", role_id, self._store.deactivate_grants(role_id, permission.id)
            )
        if touched:
            logger.info(f"Revoked {permission.slug} from role {role_id}")
        return touched > 0

    async def sync_role_permissions(
        self,
        role_id: str,
        permission_slugs: Iterable[str],
        *,
        granted_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> int:
        """
        Replace the role's direct grants with exactly ``permission_slugs``.

        Grants already in place are kept with their history; the rest of the
        role's grants are revoked. Returns the number of grant rows changed.

        Raises:
            RoleNotFoundError: unknown role
            PermissionNotFoundError: a slug has no permission; nothing is written
        """
        self._graph.require(role_id)
        grants = []
        for slug in dict.fromkeys(permission_slugs):
            permission = await self._require_permission(slug)
            grants.append(self._new_grant(role_id, permission, granted_by, note))

        async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="permissions_synced")):
            changed = await self._call(
                "replace_role_grants", role_id, self._store.replace_role_grants(role_id, grants)
            )
        logger.info(f"Synced role {role_id} to {len(grants)} permission(s), {changed} grant row(s) changed")
        return changed

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    async def create_permission(
        self,
        slug: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permission_id: Optional[str] = None,
    ) -> Permission:
        """Create a permission; an existing slug is returned unchanged."""
        if split_slug(slug) is None:
            raise InvalidPermissionSlugError(slug)

        existing = await self._call("load_permission", slug, self._store.load_permission(slug))
        if existing is not None:
            return existing

        permission = Permission(
            id=permission_id or str(uuid.uuid4()),
            slug=slug,
            name=name,
            description=description,
        )
        await self._call("save_permission", slug, self._store.save_permission(permission))
        logger.info(f"Created permission {slug}")
        return permission

    async def set_permission_active(self, slug: str, is_active: bool) -> Permission:
        """Toggle a permission everywhere it is granted."""
        permission = await self._require_permission(slug)
        if permission.is_active == is_active:
            return permission
        updated = Permission(
            id=permission.id,
            slug=permission.slug,
            is_active=is_active,
            name=permission.name,
            description=permission.description,
        )
        # Grants of this permission may sit on any role.
        async with self._invalidating(InvalidationEvent(InvalidationScope.ALL, reason="permission_toggled")):
            await self._call("save_permission", slug, self._store.save_permission(updated))
        logger.info(f"Permission {slug} {'enabled' if is_active else 'disabled'}")
        return updated

    # =========================================================================
    # TOPOLOGY
    # =========================================================================

    async def create_role(
        self,
        slug: str,
        name: str,
        *,
        level: int = 0,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        role_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Role:
        """
        Add a role to the hierarchy.

        A role with the same slug is returned as-is.

        Raises:
            DanglingParentError: ``parent_id`` does not exist
            RoleExistsError: ``role_id`` is taken by a role with another slug
        """
        async with self._topology_lock:
            existing = self._graph.find_by_slug(slug)
            if existing is not None:
                return existing
            if role_id is not None and role_id in self._graph:
                raise RoleExistsError(role_id, slug, self._graph.require(role_id).slug)

            role = Role(
                id=role_id or str(uuid.uuid4()),
                slug=slug,
                name=name,
                level=level,
                parent_id=parent_id,
                is_active=is_active,
                description=description,
            )
            graph = self._validated(lambda: self._graph.with_role(role), role.id)
            async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role.id, reason="role_created")):
                await self._call("save_role", role.id, self._store.save_role(role))
                self._graph = graph

        logger.info(f"Created role {slug} (level {level})")
        return role

    async def set_role_active(self, role_id: str, is_active: bool) -> Role:
        """Soft-enable or soft-disable a role."""
        async with self._topology_lock:
            role = self._graph.require(role_id)
            if role.is_active == is_active:
                return role
            updated = role.with_active(is_active)
            graph = self._graph.with_role(updated)
            async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="role_toggled")):
                await self._call("save_role", role_id, self._store.save_role(updated))
                self._graph = graph

        logger.info(f"Role {role.slug} {'activated' if is_active else 'deactivated'}")
        return updated

    async def reparent_role(self, role_id: str, new_parent_id: Optional[str]) -> RoleGraph:
        """
        Move ``role_id`` under ``new_parent_id`` (None makes it a root).

        Raises:
            CyclicHierarchyError: the move would make the role its own ancestor
            DanglingParentError: the new parent does not exist
        """
        async with self._topology_lock:
            graph = self._graph.reparent(role_id, new_parent_id)
            async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="role_reparented")):
                await self._call("save_role", role_id, self._store.save_role(graph.require(role_id)))
                self._graph = graph

        logger.info(f"Reparented role {role_id} under {new_parent_id}")
        return graph

    async def delete_role(self, role_id: str) -> None:
        """
        Hard-delete a role. Its children become roots.

        Raises:
            RoleInUseError: a valid assignment still holds the role
        """
        async with self._topology_lock:
            self._graph.require(role_id)
            holders = await self._call(
                "count_active_role_holders", role_id, self._store.count_active_role_holders(role_id)
            )
            if holders:
                raise RoleInUseError(role_id, holders)

            graph = self._graph.without_role(role_id)
            async with self._invalidating(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="role_deleted")):
                await self._call("delete_role", role_id, self._store.delete_role(role_id))
                self._graph = graph

        logger.info(f"Deleted role {role_id}")

    def _validated(self, build: Callable[[], RoleGraph], role_id: str) -> RoleGraph:
        try:
            return build()
        except RBACError as exc:
            logger.warning(f"Rejected topology change for role {role_id}: {exc}")
            raise
