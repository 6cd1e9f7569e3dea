"""
Authorization Facade - The single entry point for permission checks.

Usage:
    facade = build_authorization_facade(store)
    await facade.start()

    if await facade.authorize(user_id, "books_create"):
        ...

    await facade.require_permission(user_id, "books_delete")  # raises PermissionDeniedError

Checks are cache-first and fail closed: a store outage, a timeout or any
unexpected error denies instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from redis.asyncio import Redis

from config.settings import RBACSettings, get_settings
from core.logging_config import decision_extra

from .broadcast import RedisInvalidationBroadcaster
from .cache import CacheConfig, InvalidationEvent, InvalidationScope, PermissionCache
from .entities import PermissionSet, Role, RolePermissionGrant, UserRoleAssignment
from .exceptions import PermissionDeniedError
from .graph import RoleGraph
from .permissions import PermissionAction, Service, build_permission_slug
from .resolver import Resolver
from .sql_store import create_sql_store
from .store import AssignmentStore

logger = logging.getLogger(__name__)


# UI projection keys -> action of the requested service
_PERMISSION_MAP_ACTIONS = {
    "canView": PermissionAction.READ,
    "canCreate": PermissionAction.CREATE,
    "canEdit": PermissionAction.UPDATE,
    "canDelete": PermissionAction.DELETE,
    "canManage": PermissionAction.MANAGE,
    "canExport": PermissionAction.EXPORT,
    "canBulkUpdate": PermissionAction.BULK_UPDATE,
    "canBulkDelete": PermissionAction.BULK_DELETE,
}

_REPORTS_VIEW = build_permission_slug(Service.REPORTS, PermissionAction.VIEW)


class AuthorizationFacade:
    """Cache-first, fail-closed authorization."""

    def __init__(
        self,
        resolver: Resolver,
        cache: Optional[PermissionCache] = None,
        *,
        timeout_seconds: Optional[float] = None,
        cache_enabled: bool = True,
        broadcaster: Optional[RedisInvalidationBroadcaster] = None,
    ):
        self.resolver = resolver
        self.cache = cache or PermissionCache()
        self.timeout_seconds = timeout_seconds
        self.cache_enabled = cache_enabled
        self.broadcaster = broadcaster
        self._started = False
        self._start_lock = asyncio.Lock()

        resolver.subscribe(self.cache.handle_event)
        if broadcaster is not None:
            resolver.subscribe(broadcaster.publish)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Load the role graph and start listening for remote invalidations. Idempotent."""
        async with self._start_lock:
            if self._started:
                return
            await self.resolver.load_graph()
            if self.broadcaster is not None:
                self.broadcaster.start()
            self._started = True

    async def close(self) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.stop()
        await self.resolver.store.close()
        self._started = False

    # =========================================================================
    # CHECKS
    # =========================================================================

    async def effective_permissions(self, user_id: str) -> PermissionSet:
        """
        Resolve (through the cache) the user's permission set.

        Unlike ``authorize`` this raises: StoreUnavailableError on store
        failure, asyncio.TimeoutError when the resolution budget is exceeded.
        """
        if self.cache_enabled:
            pending = self.cache.get_or_resolve(user_id, self.resolver.resolve)
        else:
            pending = self.resolver.resolve(user_id)

        if self.timeout_seconds is None:
            return await pending
        return await asyncio.wait_for(pending, self.timeout_seconds)

    async def _permissions_or_none(self, user_id: str, purpose: str) -> Optional[PermissionSet]:
        try:
            return await self.effective_permissions(user_id)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Permission resolution for user {user_id} timed out; denying {purpose}")
        except Exception as e:
            # StoreUnavailableError is already logged by the resolver.
            logger.warning(f"Could not resolve permissions for user {user_id}; denying {purpose}: {e}")
        return None

    async def authorize(self, user_id: str, permission: str) -> bool:
        """True iff the user holds a pattern covering ``permission``. Never raises."""
        permissions = await self._permissions_or_none(user_id, permission)
        if permissions is None:
            return False

        allowed = permissions.covers(permission, self.resolver.matcher)
        if not allowed:
            logger.debug(
                f"Permission denied: user {user_id} lacks {permission}",
                extra=decision_extra(user_id, permission, False, roles=sorted(permissions.assigned_role_ids)),
            )
        return allowed

    async def require_permission(self, user_id: str, permission: str) -> None:
        """
        Raises:
            PermissionDeniedError: the user is not authorized (or it could not be determined)
        """
        if not await self.authorize(user_id, permission):
            raise PermissionDeniedError(user_id, permission)

    async def can_manage(self, actor_id: str, target_id: str) -> bool:
        """
        Whether ``actor_id`` outranks ``target_id``.

        Compares the highest directly-assigned role level of each. A target
        without roles is manageable by any actor holding at least one role.
        """
        actor = await self._permissions_or_none(actor_id, f"management of {target_id}")
        if actor is None or actor.highest_level is None:
            return False

        target = await self._permissions_or_none(target_id, f"management of {target_id}")
        if target is None:
            return False
        if target.highest_level is None:
            return True
        return actor.highest_level > target.highest_level

    async def has_role(self, user_id: str, role_slug: str) -> bool:
        """True iff the user directly holds the active role ``role_slug``. Never raises."""
        role = self.resolver.graph.find_by_slug(role_slug)
        if role is None:
            return False
        permissions = await self._permissions_or_none(user_id, f"role {role_slug}")
        return permissions is not None and role.id in permissions.assigned_role_ids

    async def user_roles(self, user_id: str) -> List[Role]:
        """
        The user's valid, active, directly-assigned roles, highest level first.

        Raises like ``effective_permissions``.
        """
        permissions = await self.effective_permissions(user_id)
        graph = self.resolver.graph
        roles = [graph.get(role_id) for role_id in permissions.assigned_role_ids]
        return sorted((r for r in roles if r is not None), key=lambda r: (-r.level, r.slug))

    async def permission_map(self, user_id: str, service: Union[Service, str]) -> Dict[str, bool]:
        """UI projection: one ``authorize`` call per known action."""
        result = {
            key: await self.authorize(user_id, build_permission_slug(service, action))
            for key, action in _PERMISSION_MAP_ACTIONS.items()
        }
        result["canViewReports"] = await self.authorize(user_id, _REPORTS_VIEW)
        return result

    # =========================================================================
    # INVALIDATION SEAM
    # =========================================================================

    async def invalidate(self, user_id: str) -> bool:
        """Drop one user's cached set here and, when broadcasting, everywhere."""
        removed = self.cache.invalidate(user_id)
        await self._broadcast(InvalidationEvent(InvalidationScope.USER, user_id, reason="external"))
        return removed

    async def invalidate_role(self, role_id: str) -> int:
        count = self.cache.invalidate_role(role_id)
        await self._broadcast(InvalidationEvent(InvalidationScope.ROLE, role_id, reason="external"))
        return count

    async def _broadcast(self, event: InvalidationEvent) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.publish(event)

    # =========================================================================
    # ADMINISTRATION
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
        return await self.resolver.assign_role(
            user_id, role_id, expires_at=expires_at, assigned_by=assigned_by, note=note
        )

    async def revoke_role(self, user_id: str, role_id: str) -> bool:
        return await self.resolver.revoke_role(user_id, role_id)

    async def grant_permission(
        self,
        role_id: str,
        permission: str,
        *,
        granted_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RolePermissionGrant:
        return await self.resolver.grant_permission(
            role_id, permission, granted_by=granted_by, note=note
        )

    async def revoke_permission(self, role_id: str, permission: str) -> bool:
        return await self.resolver.revoke_permission(role_id, permission)

    async def sync_role_permissions(
        self,
        role_id: str,
        permissions: Iterable[str],
        *,
        granted_by: Optional[str] = None,
    ) -> int:
        return await self.resolver.sync_role_permissions(role_id, permissions, granted_by=granted_by)

    async def reparent_role(self, role_id: str, new_parent_id: Optional[str]) -> RoleGraph:
        return await self.resolver.reparent_role(role_id, new_parent_id)

    async def set_role_active(self, role_id: str, is_active: bool) -> Role:
        return await self.resolver.set_role_active(role_id, is_active)


# =============================================================================
# CONSTRUCTION
# =============================================================================

def build_authorization_facade(
    store: AssignmentStore,
    settings: Optional[RBACSettings] = None,
    redis_client: Optional[Redis] = None,
) -> AuthorizationFacade:
    """Wire store, resolver, cache and (optionally) broadcast from settings."""
    settings = settings or get_settings().rbac
    cache = PermissionCache(CacheConfig(max_entries=settings.cache_max_entries))

    broadcaster = None
    if settings.broadcast_enabled:
        if redis_client is None:
            redis_client = Redis.from_url(get_settings().redis.url)
        broadcaster = RedisInvalidationBroadcaster(
            redis_client, cache, channel=settings.invalidation_channel
        )

    return AuthorizationFacade(
        Resolver(store),
        cache,
        timeout_seconds=settings.resolve_timeout_seconds,
        cache_enabled=settings.cache_enabled,
        broadcaster=broadcaster,
    )


_authorization_facade: Optional[AuthorizationFacade] = None


def get_authorization_facade() -> AuthorizationFacade:
    """Get the process-wide facade, building an SQL-backed one on first use."""
    global _authorization_facade
    if _authorization_facade is None:
        settings = get_settings().rbac
        store = create_sql_store(settings.database_url, echo=settings.echo_sql)
        _authorization_facade = build_authorization_facade(store, settings)
    return _authorization_facade


def set_authorization_facade(facade: Optional[AuthorizationFacade]) -> None:
    """Install a facade (or clear it with None)."""
    global _authorization_facade
    _authorization_facade = facade


def reset_authorization_facade() -> None:
    """Reset singleton (for testing)."""
    set_authorization_facade(None)
