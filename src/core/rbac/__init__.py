"""
RBAC (Role-Based Access Control) permission resolution engine.

Given a user, determines the effective set of permissions by combining
direct role grants, hierarchical role inheritance, expiring assignments and
wildcard permission patterns. Results are cached per user and invalidated
explicitly when the underlying data changes.

Features:
- Immutable role graph with cycle and dangling-parent detection
- ``service_action`` slugs with ``*`` wildcards in either segment
- Single-flight, explicitly invalidated permission cache
- Fail-closed authorization facade
- Optional cross-process invalidation over Redis pub/sub

Usage:
    from core.rbac import RequirePermission, get_rbac_context

    @router.post("/books", dependencies=[Depends(RequirePermission("books_create"))])
    async def create_book(...):
        ...

    @router.get("/books")
    async def list_books(ctx: RBACContext = Depends(get_rbac_context)):
        permissions = await ctx.permission_map("books")
        ...
"""

from .exceptions import (
    RBACError,
    CyclicHierarchyError,
    DanglingParentError,
    StoreUnavailableError,
    PermissionDeniedError,
    RoleNotFoundError,
    PermissionNotFoundError,
    RoleInUseError,
    RoleExistsError,
    InvalidPermissionSlugError,
)

from .entities import (
    Role,
    Permission,
    RolePermissionGrant,
    UserRoleAssignment,
    PermissionSet,
)

from .matcher import (
    PermissionMatcher,
    get_permission_matcher,
    split_slug,
)

from .permissions import (
    PermissionAction,
    Service,
    build_permission_slug,
    wildcard_slug,
    service_actions,
    SYSTEM_PERMISSIONS,
    PermissionCatalog,
    get_permission_catalog,
)

from .graph import RoleGraph

from .store import (
    AssignmentStore,
    InMemoryAssignmentStore,
    TransientStoreError,
)

from .sql_store import (
    SQLAlchemyAssignmentStore,
    create_sql_store,
)

from .cache import (
    PermissionCache,
    CacheConfig,
    InvalidationEvent,
    InvalidationScope,
)

from .resolver import Resolver

from .facade import (
    AuthorizationFacade,
    build_authorization_facade,
    get_authorization_facade,
    set_authorization_facade,
    reset_authorization_facade,
)

from .broadcast import RedisInvalidationBroadcaster

from .seed import seed_rbac, SYSTEM_ROLES, ROLE_HIERARCHY, DEFAULT_GRANTS

from .middleware import RBACMiddleware

from .dependencies import (
    get_rbac_context,
    get_current_user_id,
    RBACContext,
    require_permissions,
    require_any_permission,
    require_role,
    RequirePermission,
)

__all__ = [
    # Errors
    "RBACError",
    "CyclicHierarchyError",
    "DanglingParentError",
    "StoreUnavailableError",
    "PermissionDeniedError",
    "RoleNotFoundError",
    "PermissionNotFoundError",
    "RoleInUseError",
    "RoleExistsError",
    "InvalidPermissionSlugError",
    # Entities
    "Role",
    "Permission",
    "RolePermissionGrant",
    "UserRoleAssignment",
    "PermissionSet",
    # Matching and catalog
    "PermissionMatcher",
    "get_permission_matcher",
    "split_slug",
    "PermissionAction",
    "Service",
    "build_permission_slug",
    "wildcard_slug",
    "service_actions",
    "SYSTEM_PERMISSIONS",
    "PermissionCatalog",
    "get_permission_catalog",
    # Graph and storage
    "RoleGraph",
    "AssignmentStore",
    "InMemoryAssignmentStore",
    "TransientStoreError",
    "SQLAlchemyAssignmentStore",
    "create_sql_store",
    # Cache
    "PermissionCache",
    "CacheConfig",
    "InvalidationEvent",
    "InvalidationScope",
    # Resolution and facade
    "Resolver",
    "AuthorizationFacade",
    "build_authorization_facade",
    "get_authorization_facade",
    "set_authorization_facade",
    "reset_authorization_facade",
    "RedisInvalidationBroadcaster",
    # Seed
    "seed_rbac",
    "SYSTEM_ROLES",
    "ROLE_HIERARCHY",
    "DEFAULT_GRANTS",
    # FastAPI
    "RBACMiddleware",
    "get_rbac_context",
    "get_current_user_id",
    "RBACContext",
    "require_permissions",
    "require_any_permission",
    "require_role",
    "RequirePermission",
]
