"""
Permission Catalog - Services, actions and the ``service_action`` slug format.

Provides:
- The registry of services and core actions
- Slug construction (``build_permission_slug``)
- Per-service action lists used for seeding and UI projections
- An in-memory catalog of permission definitions
"""

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Dict, List, Optional, Union

from .matcher import SEPARATOR, WILDCARD


# =============================================================================
# ENUMERATIONS
# =============================================================================

class PermissionAction(str, PyEnum):
    """Standard permission actions used across all services."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    BULK_UPDATE = "bulk_update"
    BULK_DELETE = "bulk_delete"
    MANAGE = "manage"
    VIEW = "view"


class Service(str, PyEnum):
    """Registered services (the first slug segment)."""
    BOOKS = "books"
    USERS = "users"
    ROLES = "roles"
    PERMISSIONS = "permissions"
    REPORTS = "reports"
    SYSTEM = "system"
    BUNDLES = "bundles"


_SERVICE_DISPLAY_NAMES = {
    Service.BOOKS: "Books Management",
    Service.USERS: "User Management",
    Service.ROLES: "Role Management",
    Service.PERMISSIONS: "Permission Management",
    Service.REPORTS: "Reports & Analytics",
    Service.SYSTEM: "System Administration",
    Service.BUNDLES: "SME Management",
}

_ACTION_DISPLAY_NAMES = {
    PermissionAction.CREATE: "Create",
    PermissionAction.READ: "Read/List",
    PermissionAction.UPDATE: "Update/Edit",
    PermissionAction.DELETE: "Delete",
    PermissionAction.EXPORT: "Export",
    PermissionAction.BULK_UPDATE: "Bulk Update",
    PermissionAction.BULK_DELETE: "Bulk Delete",
    PermissionAction.MANAGE: "Full Management",
    PermissionAction.VIEW: "View",
}

_CRUD = [
    PermissionAction.CREATE,
    PermissionAction.READ,
    PermissionAction.UPDATE,
    PermissionAction.DELETE,
]

SERVICE_ACTIONS: Dict[Service, List[PermissionAction]] = {
    Service.BOOKS: _CRUD + [
        PermissionAction.EXPORT,
        PermissionAction.BULK_UPDATE,
        PermissionAction.BULK_DELETE,
        PermissionAction.VIEW,
    ],
    Service.BUNDLES: _CRUD + [
        PermissionAction.EXPORT,
        PermissionAction.BULK_UPDATE,
        PermissionAction.BULK_DELETE,
        PermissionAction.VIEW,
    ],
    Service.USERS: _CRUD + [
        PermissionAction.EXPORT,
        PermissionAction.VIEW,
        PermissionAction.MANAGE,
    ],
    Service.ROLES: _CRUD + [
        PermissionAction.VIEW,
        PermissionAction.MANAGE,
    ],
    Service.PERMISSIONS: [
        PermissionAction.READ,
        PermissionAction.UPDATE,
        PermissionAction.VIEW,
        PermissionAction.MANAGE,
    ],
    Service.REPORTS: [
        PermissionAction.VIEW,
        PermissionAction.EXPORT,
    ],
    Service.SYSTEM: [
        PermissionAction.VIEW,
        PermissionAction.MANAGE,
    ],
}


def _value(item: Union[str, PyEnum]) -> str:
    return item.value if isinstance(item, PyEnum) else str(item)


def build_permission_slug(
    service: Union[Service, str],
    action: Union[PermissionAction, str],
) -> str:
    """Create a permission slug in the format ``service_action``."""
    return f"{_value(service)}{SEPARATOR}{_value(action)}"


def wildcard_slug(
    service: Union[Service, str, None] = None,
    action: Union[PermissionAction, str, None] = None,
) -> str:
    """``books_*``, ``*_read`` or ``*_*`` depending on which segments are given."""
    return build_permission_slug(service or WILDCARD, action or WILDCARD)


def service_actions(service: Union[Service, str]) -> List[PermissionAction]:
    """Valid actions for a service; unknown services accept every action."""
    try:
        return list(SERVICE_ACTIONS[Service(_value(service))])
    except ValueError:
        return list(PermissionAction)


def service_display_name(service: Union[Service, str]) -> str:
    try:
        return _SERVICE_DISPLAY_NAMES[Service(_value(service))]
    except ValueError:
        return _value(service)


def action_display_name(action: Union[PermissionAction, str]) -> str:
    try:
        return _ACTION_DISPLAY_NAMES[PermissionAction(_value(action))]
    except ValueError:
        return _value(action)


# =============================================================================
# PERMISSION CATALOG
# =============================================================================

@dataclass(frozen=True)
class PermissionDefinition:
    """Definition of a system permission."""
    slug: str
    name: str
    description: str
    service: str
    action: str


def _definition(service: Service, action: PermissionAction) -> PermissionDefinition:
    action_name = action_display_name(action)
    service_name = service.value.capitalize()
    return PermissionDefinition(
        slug=build_permission_slug(service, action),
        name=f"{action_name} {service_name}",
        description=f"{action_name} access to {service_display_name(service)}",
        service=service.value,
        action=action.value,
    )


SYSTEM_PERMISSIONS: List[PermissionDefinition] = [
    _definition(service, action)
    for service, actions in SERVICE_ACTIONS.items()
    for action in actions
]


class PermissionCatalog:
    """
    In-memory catalog of permission definitions.

    Used for quick lookups without store queries.
    """

    def __init__(self, definitions: Optional[List[PermissionDefinition]] = None):
        definitions = SYSTEM_PERMISSIONS if definitions is None else definitions
        self._permissions: Dict[str, PermissionDefinition] = {d.slug: d for d in definitions}
        self._by_service: Dict[str, List[PermissionDefinition]] = {}
        for definition in definitions:
            self._by_service.setdefault(definition.service, []).append(definition)

    def get(self, slug: str) -> Optional[PermissionDefinition]:
        return self._permissions.get(slug)

    def get_by_service(self, service: Union[Service, str]) -> List[PermissionDefinition]:
        return list(self._by_service.get(_value(service), []))

    def get_all(self) -> List[PermissionDefinition]:
        return list(self._permissions.values())

    def exists(self, slug: str) -> bool:
        return slug in self._permissions


_permission_catalog: Optional[PermissionCatalog] = None


def get_permission_catalog() -> PermissionCatalog:
    """Get singleton permission catalog."""
    global _permission_catalog
    if _permission_catalog is None:
        _permission_catalog = PermissionCatalog()
    return _permission_catalog
