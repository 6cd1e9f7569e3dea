"""
RBAC Seed Data - Default role ladder, permission catalog and grants.

Roles (level):
    super-admin (100), admin (80), librarian (60), moderator (40),
    member (20), guest (10)

Hierarchy (child -> parent):
    admin -> librarian -> moderator -> member -> guest

super-admin is a standalone root holding ``*_*``. Everyone else inherits
down the chain, so e.g. a librarian also holds everything a guest holds.

``seed_rbac`` is idempotent: running it twice leaves one role per slug, one
permission per slug and one active grant per (role, permission).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .permissions import SYSTEM_PERMISSIONS, wildcard_slug
from .resolver import Resolver
from .store import AssignmentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemRole:
    slug: str
    name: str
    level: int
    description: str


SYSTEM_ROLES: List[SystemRole] = [
    SystemRole("super-admin", "Super Administrator", 100, "Full system access with all permissions"),
    SystemRole("admin", "Administrator", 80, "Administrative access to most features"),
    SystemRole("librarian", "Librarian", 60, "Full book management access"),
    SystemRole("moderator", "Moderator", 40, "Limited administrative access"),
    SystemRole("member", "Member", 20, "Regular user with borrowing privileges"),
    SystemRole("guest", "Guest", 10, "Basic read-only access"),
]

# child slug -> parent slug
ROLE_HIERARCHY: Dict[str, str] = {
    "admin": "librarian",
    "librarian": "moderator",
    "moderator": "member",
    "member": "guest",
}

DEFAULT_GRANTS: Dict[str, List[str]] = {
    "super-admin": [wildcard_slug()],
    "admin": [
        "books_read", "books_view", "books_create", "books_update", "books_delete",
        "books_manage", "books_export",
        "users_read", "users_view", "users_create", "users_update", "users_manage",
        "roles_read", "roles_view", "roles_manage",
        "reports_view", "reports_export", "reports_create",
    ],
    "librarian": [
        "books_read", "books_view", "books_create", "books_update", "books_delete",
        "books_manage", "books_export",
        "users_read", "users_view",
        "reports_view", "reports_export",
    ],
    "moderator": [
        "books_read", "books_view", "books_create", "books_update",
        "users_view",
        "reports_view",
    ],
    "member": ["books_read", "books_view"],
    "guest": ["books_read", "books_view"],
}


@dataclass
class SeedSummary:
    roles_created: int = 0
    permissions_created: int = 0
    grants_created: int = 0


async def seed_rbac(store: AssignmentStore, resolver: Optional[Resolver] = None) -> SeedSummary:
    """Create the default roles, permissions and grants when missing."""
    if resolver is None:
        resolver = Resolver(store)
    await resolver.load_graph()
    summary = SeedSummary()

    # Permissions: the catalog plus anything a default grant references
    definitions = {d.slug: d for d in SYSTEM_PERMISSIONS}
    slugs = list(definitions)
    for granted in DEFAULT_GRANTS.values():
        for slug in granted:
            if slug not in slugs:
                slugs.append(slug)

    for slug in slugs:
        if await resolver._call("load_permission", slug, store.load_permission(slug)) is not None:
            continue
        definition = definitions.get(slug)
        await resolver.create_permission(
            slug,
            name=definition.name if definition else slug,
            description=definition.description if definition else None,
        )
        summary.permissions_created += 1

    # Roles, using the slug as a stable id
    for role in SYSTEM_ROLES:
        if resolver.graph.find_by_slug(role.slug) is not None:
            continue
        await resolver.create_role(
            role.slug,
            role.name,
            level=role.level,
            description=role.description,
            role_id=role.slug,
        )
        summary.roles_created += 1

    for child_slug, parent_slug in ROLE_HIERARCHY.items():
        child = resolver.graph.find_by_slug(child_slug)
        parent = resolver.graph.find_by_slug(parent_slug)
        if child is None or parent is None or child.parent_id == parent.id:
            continue
        await resolver.reparent_role(child.id, parent.id)

    # Grants
    for role_slug, granted in DEFAULT_GRANTS.items():
        role = resolver.graph.find_by_slug(role_slug)
        if role is None:
            continue
        grants = await resolver._call("load_active_role_grants", role.id, store.load_active_role_grants(role.id))
        existing = {g.permission_slug for g in grants}
        for slug in granted:
            if slug in existing:
                continue
            await resolver.grant_permission(role.id, slug, note="seed")
            summary.grants_created += 1

    logger.info(
        f"RBAC seed complete: {summary.roles_created} roles, "
        f"{summary.permissions_created} permissions, {summary.grants_created} grants created"
    )
    return summary
