"""
SQLAlchemy Assignment Store Tests

Runs the store against a file-backed SQLite database through aiosqlite, and
drives a resolver on top of it to check timestamps survive the round trip.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from core.rbac.entities import Permission, Role, RolePermissionGrant, UserRoleAssignment, utcnow
from core.rbac.resolver import Resolver
from core.rbac.sql_store import SQLAlchemyAssignmentStore, create_sql_store
from core.rbac.store import TransientStoreError


@pytest.fixture
def sql_store(tmp_path):
    return create_sql_store(f"sqlite+aiosqlite:///{tmp_path / 'rbac.db'}")


class TestRoles:
    """Role persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="guest", slug="guest", name="Guest", level=10))
        await sql_store.save_role(
            Role(id="member", slug="member", name="Member", level=20, parent_id="guest")
        )

        roles = {role.id: role for role in await sql_store.load_roles()}

        assert roles["member"].parent_id == "guest"
        assert roles["member"].level == 20
        assert roles["guest"].is_active is True
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_save_updates_existing(self, sql_store):
        await sql_store.create_schema()
        role = Role(id="guest", slug="guest", name="Guest", level=10)
        await sql_store.save_role(role)
        await sql_store.save_role(role.with_active(False))

        roles = await sql_store.load_roles()

        assert len(roles) == 1
        assert roles[0].is_active is False
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_delete_promotes_children(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="root", slug="root", name="Root"))
        await sql_store.save_role(Role(id="child", slug="child", name="Child", parent_id="root"))

        await sql_store.delete_role("root")

        roles = await sql_store.load_roles()
        assert [(r.id, r.parent_id) for r in roles] == [("child", None)]
        await sql_store.close()


class TestAssignments:
    """User-role assignment persistence."""

    @pytest.mark.asyncio
    async def test_upsert_and_deactivate(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="member", slug="member", name="Member"))
        await sql_store.save_role_assignment(UserRoleAssignment(user_id="u1", role_id="member"))
        await sql_store.save_role_assignment(
            UserRoleAssignment(user_id="u1", role_id="member", note="refreshed")
        )

        rows = await sql_store.load_active_user_role_assignments("u1")
        assert len(rows) == 1
        assert rows[0].note == "refreshed"

        assert await sql_store.deactivate_role_assignments("u1", "member") == 1
        assert await sql_store.deactivate_role_assignments("u1", "member") == 0
        assert await sql_store.load_active_user_role_assignments("u1") == []
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_count_holders_ignores_expired(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="member", slug="member", name="Member"))
        await sql_store.save_role_assignment(UserRoleAssignment(user_id="u1", role_id="member"))
        await sql_store.save_role_assignment(
            UserRoleAssignment(
                user_id="u2", role_id="member", expires_at=utcnow() - timedelta(days=1)
            )
        )

        assert await sql_store.count_active_role_holders("member") == 1
        await sql_store.close()


class TestGrants:
    """Grant persistence and history."""

    @pytest.mark.asyncio
    async def test_grants_carry_permission_state(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="member", slug="member", name="Member"))
        permission = Permission(id="p1", slug="books_read")
        await sql_store.save_permission(permission)
        await sql_store.save_grant(RolePermissionGrant("member", "p1", "books_read"))
        await sql_store.save_permission(Permission(id="p1", slug="books_read", is_active=False))

        grants = await sql_store.load_active_role_grants("member")

        assert len(grants) == 1
        assert grants[0].permission_slug == "books_read"
        assert grants[0].permission_active is False
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_deactivate_keeps_history(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_role(Role(id="member", slug="member", name="Member"))
        await sql_store.save_permission(Permission(id="p1", slug="books_read"))
        await sql_store.save_grant(RolePermissionGrant("member", "p1", "books_read"))
        await sql_store.save_grant(RolePermissionGrant("member", "p1", "books_read"))

        assert await sql_store.deactivate_grants("member", "p1") == 2
        assert await sql_store.load_active_role_grants("member") == []
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_load_permission(self, sql_store):
        await sql_store.create_schema()
        await sql_store.save_permission(Permission(id="p1", slug="books_read", name="Read Books"))

        permission = await sql_store.load_permission("books_read")

        assert permission.id == "p1"
        assert permission.name == "Read Books"
        assert await sql_store.load_permission("books_write") is None
        await sql_store.close()


class TestResolverOverSQL:
    """The resolver works unchanged on top of the SQL store."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, sql_store):
        await sql_store.create_schema()
        resolver = Resolver(sql_store)
        guest = await resolver.create_role("guest", "Guest", level=10, role_id="guest")
        member = await resolver.create_role("member", "Member", level=20, parent_id=guest.id, role_id="member")
        await resolver.create_permission("books_view")
        await resolver.create_permission("books_read")
        await resolver.grant_permission(guest.id, "books_view")
        await resolver.grant_permission(member.id, "books_read")
        await resolver.grant_permission(member.id, "books_read")
        await resolver.assign_role("u1", member.id, expires_at=utcnow() + timedelta(hours=1))

        fresh = Resolver(sql_store)
        await fresh.load_graph()
        result = await fresh.resolve("u1")

        assert result.slugs == frozenset({"books_view", "books_read"})
        assert result.highest_level == 20
        assert result.valid_until is not None
        await sql_store.close()


class TestFailures:
    """Driver errors surface as TransientStoreError."""

    @pytest.mark.asyncio
    async def test_missing_schema(self, sql_store):
        with pytest.raises(TransientStoreError):
            await sql_store.load_roles()
        await sql_store.close()

    @pytest.mark.asyncio
    async def test_session_factory_failure(self):
        factory = MagicMock(side_effect=OperationalError("connect", {}, Exception("refused")))
        store = SQLAlchemyAssignmentStore(factory)

        with pytest.raises(TransientStoreError) as exc_info:
            await store.load_permission("books_read")

        assert isinstance(exc_info.value.__cause__, OperationalError)
