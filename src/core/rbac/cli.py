"""
RBAC administration CLI.

Usage:
    rbac setup                                  # create tables, seed roles/permissions/grants
    rbac roles                                  # list the role hierarchy
    rbac assign <user_id> <role> [--expires-in-days N] [--by ADMIN]
    rbac revoke <user_id> <role>
    rbac show <user_id>                         # effective permissions
    rbac check <user_id> <permission>           # exit code 0 = allowed, 3 = denied

The database defaults to RBAC_DATABASE_URL; ``--database-url`` overrides it.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from config.settings import get_settings
from core.logging_config import configure_logging_from_settings

from .entities import Role, utcnow
from .exceptions import RBACError
from .facade import AuthorizationFacade
from .resolver import Resolver
from .seed import seed_rbac
from .sql_store import SQLAlchemyAssignmentStore, create_sql_store
from .store import TransientStoreError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DENIED = 3

Command = Callable[[argparse.Namespace, Resolver], Awaitable[int]]


# =============================================================================
# HELPERS
# =============================================================================

def _role_or_report(resolver: Resolver, slug: str) -> Optional[Role]:
    role = resolver.graph.find_by_slug(slug)
    if role is not None and role.is_active:
        return role
    print(f"Role '{slug}' not found or not active", file=sys.stderr)
    available = sorted(r.slug for r in resolver.graph.roles.values() if r.is_active)
    print(f"Available roles: {', '.join(available) or '(none - run setup)'}", file=sys.stderr)
    return None


def _hierarchy_lines(resolver: Resolver) -> List[str]:
    graph = resolver.graph
    roles = sorted(graph.roles.values(), key=lambda r: (-r.level, r.slug))
    lines = []
    for role in roles:
        chain = " -> ".join(r.slug for r in graph.ancestor_chain(role.id))
        status = "" if role.is_active else " (inactive)"
        lines.append(f"{role.level:>4}  {role.slug:<14} {chain}{status}")
    return lines


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_setup(args: argparse.Namespace, resolver: Resolver) -> int:
    summary = await seed_rbac(resolver.store, resolver)
    print(
        f"Permission setup complete! Created: {summary.roles_created} roles, "
        f"{summary.permissions_created} permissions, {summary.grants_created} grants"
    )
    return EXIT_OK


async def cmd_roles(args: argparse.Namespace, resolver: Resolver) -> int:
    lines = _hierarchy_lines(resolver)
    if not lines:
        print("No roles defined - run setup first")
        return EXIT_OK
    print("Level  Role           Inherits")
    for line in lines:
        print(line)
    return EXIT_OK


async def cmd_assign(args: argparse.Namespace, resolver: Resolver) -> int:
    role = _role_or_report(resolver, args.role)
    if role is None:
        return EXIT_ERROR

    expires_at = None
    if args.expires_in_days is not None:
        expires_at = utcnow() + timedelta(days=args.expires_in_days)

    await resolver.assign_role(args.user_id, role.id, expires_at=expires_at, assigned_by=args.by)
    until = f" until {expires_at.isoformat()}" if expires_at else ""
    print(f"Assigned '{role.name}' to {args.user_id}{until}")
    return EXIT_OK


async def cmd_revoke(args: argparse.Namespace, resolver: Resolver) -> int:
    role = resolver.graph.find_by_slug(args.role)
    if role is None:
        print(f"Role '{args.role}' not found", file=sys.stderr)
        return EXIT_ERROR

    if await resolver.revoke_role(args.user_id, role.id):
        print(f"Revoked '{role.slug}' from {args.user_id}")
    else:
        print(f"{args.user_id} does not hold '{role.slug}'")
    return EXIT_OK


async def cmd_show(args: argparse.Namespace, resolver: Resolver) -> int:
    permissions = await resolver.resolve(args.user_id)
    if not permissions.has_roles:
        print(f"{args.user_id} has no active roles")
        return EXIT_OK

    print(f"User:    {args.user_id}")
    print(f"Roles:   {', '.join(sorted(permissions.assigned_role_ids))} (level {permissions.highest_level})")
    if permissions.valid_until is not None:
        print(f"Until:   {permissions.valid_until.isoformat()}")
    print("Permissions:")
    for slug in sorted(permissions.slugs):
        print(f"  {slug}")
    return EXIT_OK


async def cmd_check(args: argparse.Namespace, resolver: Resolver) -> int:
    facade = AuthorizationFacade(resolver, cache_enabled=False)
    allowed = await facade.authorize(args.user_id, args.permission)
    print("allowed" if allowed else "denied")
    return EXIT_OK if allowed else EXIT_DENIED


COMMANDS: Dict[str, Command] = {
    "setup": cmd_setup,
    "roles": cmd_roles,
    "assign": cmd_assign,
    "revoke": cmd_revoke,
    "show": cmd_show,
    "check": cmd_check,
}


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rbac", description="Manage roles and permissions")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Async SQLAlchemy URL (default: RBAC_DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("setup", help="Create tables and seed default roles, permissions and grants")
    sub.add_parser("roles", help="List roles and their inheritance chains")

    assign = sub.add_parser("assign", help="Assign a role to a user")
    assign.add_argument("user_id")
    assign.add_argument("role", help="Role slug, e.g. librarian")
    assign.add_argument("--expires-in-days", type=int, default=None)
    assign.add_argument("--by", default=None, help="Recorded as assigned_by")

    revoke = sub.add_parser("revoke", help="Revoke a role from a user")
    revoke.add_argument("user_id")
    revoke.add_argument("role")

    show = sub.add_parser("show", help="Show a user's effective permissions")
    show.add_argument("user_id")

    check = sub.add_parser("check", help="Check one permission for a user")
    check.add_argument("user_id")
    check.add_argument("permission", help="service_action slug, e.g. books_create")

    return parser


async def run(args: argparse.Namespace, store: SQLAlchemyAssignmentStore) -> int:
    try:
        await store.create_schema()
        resolver = Resolver(store)
        await resolver.load_graph()
        return await COMMANDS[args.command](args, resolver)
    except (RBACError, TransientStoreError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging_from_settings()

    settings = get_settings().rbac
    store = create_sql_store(args.database_url or settings.database_url, echo=settings.echo_sql)
    logger.debug(f"Running rbac {args.command}")
    return asyncio.run(run(args, store))


if __name__ == "__main__":
    raise SystemExit(main())
