"""
RBAC Database Models - SQLAlchemy ORM models for the permission engine.

Tables:
- rbac_roles: Role definitions and the parent link forming the hierarchy
- rbac_permissions: Permission slugs (``service_action``, wildcards allowed)
- rbac_role_permissions: Role-to-permission grants (historical rows kept)
- rbac_user_roles: User-to-role assignments with optional expiry

The engine never reads these classes directly; ``core.rbac.sql_store``
converts rows into the frozen entities of ``core.rbac.entities``.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ROLES
# =============================================================================

class RoleRecord(Base):
    """
    Role definition.

    parent_role_id links to the role whose permissions are inherited.
    Hierarchy validity (no cycles) is enforced by the engine, not the schema.
    """
    __tablename__ = "rbac_roles"

    role_id = Column(String(64), primary_key=True)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Authority rank: higher = more authority
    level = Column(Integer, nullable=False, default=0)

    parent_role_id = Column(
        String(64),
        ForeignKey("rbac_roles.role_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    parent_role = relationship("RoleRecord", remote_side=[role_id])
    role_permissions = relationship(
        "RolePermissionRecord",
        back_populates="role",
        cascade="all, delete-orphan",
    )
    user_assignments = relationship(
        "UserRoleRecord",
        back_populates="role",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<RoleRecord(slug={self.slug}, level={self.level})>"


# =============================================================================
# PERMISSIONS
# =============================================================================

class PermissionRecord(Base):
    """Permission slug catalog."""
    __tablename__ = "rbac_permissions"

    permission_id = Column(String(64), primary_key=True)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    role_permissions = relationship("RolePermissionRecord", back_populates="permission")

    def __repr__(self):
        return f"<PermissionRecord(slug={self.slug})>"


# =============================================================================
# GRANTS
# =============================================================================

class RolePermissionRecord(Base):
    """
    Role-to-permission grant.

    Revocation flips is_active instead of deleting, so several rows may exist
    for one (role, permission) pair; the most recent active one applies.
    """
    __tablename__ = "rbac_role_permissions"

    grant_id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(
        String(64),
        ForeignKey("rbac_roles.role_id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_id = Column(
        String(64),
        ForeignKey("rbac_permissions.permission_id", ondelete="CASCADE"),
        nullable=False,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    granted_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    granted_by = Column(String(64), nullable=True)
    note = Column(Text, nullable=True)

    role = relationship("RoleRecord", back_populates="role_permissions")
    permission = relationship("PermissionRecord", back_populates="role_permissions")

    __table_args__ = (
        Index("ix_rbac_grant_role_active", "role_id", "is_active"),
        Index("ix_rbac_grant_permission", "permission_id"),
    )


# =============================================================================
# ASSIGNMENTS
# =============================================================================

class UserRoleRecord(Base):
    """User-to-role assignment. One row per (user, role)."""
    __tablename__ = "rbac_user_roles"

    assignment_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    role_id = Column(
        String(64),
        ForeignKey("rbac_roles.role_id", ondelete="CASCADE"),
        nullable=False,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    assigned_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    assigned_by = Column(String(64), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="Optional role expiration")
    note = Column(Text, nullable=True)

    role = relationship("RoleRecord", back_populates="user_assignments")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_rbac_user_role"),
        Index("ix_rbac_user_role_user_active", "user_id", "is_active"),
        Index("ix_rbac_user_role_role", "role_id"),
    )


RBAC_TABLES = [
    RoleRecord.__table__,
    PermissionRecord.__table__,
    RolePermissionRecord.__table__,
    UserRoleRecord.__table__,
]
