"""
SQLAlchemy Assignment Store - Async database implementation of AssignmentStore.

Each call runs in its own short-lived session from an ``async_sessionmaker``.
Driver and connection failures surface as ``TransientStoreError``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .entities import Permission, Role, RolePermissionGrant, UserRoleAssignment, utcnow
from .models import (
    Base,
    PermissionRecord,
    RBAC_TABLES,
    RolePermissionRecord,
    RoleRecord,
    UserRoleRecord,
)
from .store import AssignmentStore, TransientStoreError

logger = logging.getLogger(__name__)


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _role_from_record(record: RoleRecord) -> Role:
    return Role(
        id=record.role_id,
        slug=record.slug,
        name=record.name,
        level=record.level or 0,
        parent_id=record.parent_role_id,
        is_active=bool(record.is_active),
        description=record.description,
    )


def _permission_from_record(record: PermissionRecord) -> Permission:
    return Permission(
        id=record.permission_id,
        slug=record.slug,
        is_active=bool(record.is_active),
        name=record.name,
        description=record.description,
    )


def _assignment_from_record(record: UserRoleRecord) -> UserRoleAssignment:
    return UserRoleAssignment(
        user_id=record.user_id,
        role_id=record.role_id,
        is_active=bool(record.is_active),
        assigned_at=record.assigned_at,
        expires_at=record.expires_at,
        assigned_by=record.assigned_by,
        note=record.note,
    )


def _grant_record(grant: RolePermissionGrant) -> RolePermissionRecord:
    return RolePermissionRecord(
        role_id=grant.role_id,
        permission_id=grant.permission_id,
        is_active=grant.is_active,
        granted_at=grant.granted_at,
        granted_by=grant.granted_by,
        note=grant.note,
    )


def _deactivate_grants(role_id: str, permission_ids: List[str]):
    return (
        update(RolePermissionRecord)
        .where(
            and_(
                RolePermissionRecord.role_id == role_id,
                RolePermissionRecord.permission_id.in_(permission_ids),
                RolePermissionRecord.is_active.is_(True),
            )
        )
        .values(is_active=False)
    )


# =============================================================================
# STORE
# =============================================================================

class SQLAlchemyAssignmentStore(AssignmentStore):
    """AssignmentStore backed by the rbac_* tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self._engine = engine

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.debug(f"RBAC store {operation} failed: {exc}")
            raise TransientStoreError(f"{operation}: {exc}") from exc

    async def create_schema(self) -> None:
        """Create RBAC tables when missing."""
        async with self._session("create_schema") as session:
            conn = await session.connection()
            await conn.run_sync(
                lambda sync_conn: Base.metadata.create_all(
                    sync_conn, tables=RBAC_TABLES, checkfirst=True
                )
            )
            await session.commit()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def load_roles(self) -> List[Role]:
        async with self._session("load_roles") as session:
            result = await session.execute(select(RoleRecord))
            return [_role_from_record(r) for r in result.scalars().all()]

    async def load_active_user_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        stmt = select(UserRoleRecord).where(
            and_(UserRoleRecord.user_id == user_id, UserRoleRecord.is_active.is_(True))
        )
        async with self._session("load_active_user_role_assignments") as session:
            result = await session.execute(stmt)
            return [_assignment_from_record(r) for r in result.scalars().all()]

    async def load_active_role_grants(self, role_id: str) -> List[RolePermissionGrant]:
        stmt = (
            select(RolePermissionRecord, PermissionRecord)
            .join(PermissionRecord, RolePermissionRecord.permission_id == PermissionRecord.permission_id)
            .where(
                and_(
                    RolePermissionRecord.role_id == role_id,
                    RolePermissionRecord.is_active.is_(True),
                )
            )
        )
        async with self._session("load_active_role_grants") as session:
            result = await session.execute(stmt)
            return [
                RolePermissionGrant(
                    role_id=grant.role_id,
                    permission_id=grant.permission_id,
                    permission_slug=permission.slug,
                    is_active=bool(grant.is_active),
                    permission_active=bool(permission.is_active),
                    granted_at=grant.granted_at,
                    granted_by=grant.granted_by,
                    note=grant.note,
                )
                for grant, permission in result.all()
            ]

    async def load_permission(self, slug: str) -> Optional[Permission]:
        stmt = select(PermissionRecord).where(PermissionRecord.slug == slug)
        async with self._session("load_permission") as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _permission_from_record(record) if record is not None else None

    async def count_active_role_holders(self, role_id: str) -> int:
        now = utcnow()
        stmt = (
            select(func.count())
            .select_from(UserRoleRecord)
            .where(
                and_(
                    UserRoleRecord.role_id == role_id,
                    UserRoleRecord.is_active.is_(True),
                )
            )
            .where((UserRoleRecord.expires_at.is_(None)) | (UserRoleRecord.expires_at > now))
        )
        async with self._session("count_active_role_holders") as session:
            return (await session.execute(stmt)).scalar() or 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def save_role(self, role: Role) -> None:
        async with self._session("save_role") as session:
            await session.merge(
                RoleRecord(
                    role_id=role.id,
                    slug=role.slug,
                    name=role.name,
                    description=role.description,
                    level=role.level,
                    parent_role_id=role.parent_id,
                    is_active=role.is_active,
                )
            )
            await session.commit()

    async def delete_role(self, role_id: str) -> None:
        async with self._session("delete_role") as session:
            await session.execute(
                update(RoleRecord)
                .where(RoleRecord.parent_role_id == role_id)
                .values(parent_role_id=None)
            )
            await session.execute(delete(RolePermissionRecord).where(RolePermissionRecord.role_id == role_id))
            await session.execute(delete(UserRoleRecord).where(UserRoleRecord.role_id == role_id))
            await session.execute(delete(RoleRecord).where(RoleRecord.role_id == role_id))
            await session.commit()

    async def save_permission(self, permission: Permission) -> None:
        async with self._session("save_permission") as session:
            await session.merge(
                PermissionRecord(
                    permission_id=permission.id,
                    slug=permission.slug,
                    name=permission.name,
                    description=permission.description,
                    is_active=permission.is_active,
                )
            )
            await session.commit()

    async def save_role_assignment(self, assignment: UserRoleAssignment) -> None:
        stmt = select(UserRoleRecord).where(
            and_(
                UserRoleRecord.user_id == assignment.user_id,
                UserRoleRecord.role_id == assignment.role_id,
            )
        )
        async with self._session("save_role_assignment") as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                record = UserRoleRecord(user_id=assignment.user_id, role_id=assignment.role_id)
                session.add(record)
            record.is_active = assignment.is_active
            record.assigned_at = assignment.assigned_at
            record.expires_at = assignment.expires_at
            record.assigned_by = assignment.assigned_by
            record.note = assignment.note
            await session.commit()

    async def deactivate_role_assignments(self, user_id: str, role_id: str) -> int:
        stmt = (
            update(UserRoleRecord)
            .where(
                and_(
                    UserRoleRecord.user_id == user_id,
                    UserRoleRecord.role_id == role_id,
                    UserRoleRecord.is_active.is_(True),
                )
            )
            .values(is_active=False)
        )
        async with self._session("deactivate_role_assignments") as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def save_grant(self, grant: RolePermissionGrant) -> None:
        async with self._session("save_grant") as session:
            session.add(_grant_record(grant))
            await session.commit()

    async def deactivate_grants(self, role_id: str, permission_id: str) -> int:
        async with self._session("deactivate_grants") as session:
            result = await session.execute(_deactivate_grants(role_id, [permission_id]))
            await session.commit()
            return result.rowcount or 0

    async def supersede_grant(self, grant: RolePermissionGrant) -> int:
        async with self._session("supersede_grant") as session:
            result = await session.execute(_deactivate_grants(grant.role_id, [grant.permission_id]))
            session.add(_grant_record(grant))
            await session.commit()
            return result.rowcount or 0

    async def replace_role_grants(self, role_id: str, grants: List[RolePermissionGrant]) -> int:
        wanted = {grant.permission_id: grant for grant in grants}
        active_stmt = select(RolePermissionRecord.permission_id).where(
            and_(
                RolePermissionRecord.role_id == role_id,
                RolePermissionRecord.is_active.is_(True),
            )
        )
        async with self._session("replace_role_grants") as session:
            active = set((await session.execute(active_stmt)).scalars().all())
            changed = 0

            stale = sorted(active - set(wanted))
            if stale:
                result = await session.execute(_deactivate_grants(role_id, stale))
                changed += result.rowcount or 0

            for permission_id, grant in wanted.items():
                if permission_id not in active:
                    session.add(_grant_record(grant))
                    changed += 1

            await session.commit()
            return changed


def create_sql_store(database_url: str, echo: bool = False) -> SQLAlchemyAssignmentStore:
    """Build a store with its own engine and session factory."""
    engine = create_async_engine(database_url, echo=echo)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return SQLAlchemyAssignmentStore(session_factory, engine)
