"""Pytest configuration and fixtures for the RBAC engine test suite."""

import asyncio
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("RBAC_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.settings import get_settings
from core.rbac.cache import PermissionCache
from core.rbac.entities import Role, RolePermissionGrant, UserRoleAssignment
from core.rbac.facade import AuthorizationFacade, reset_authorization_facade
from core.rbac.matcher import PermissionMatcher
from core.rbac.resolver import Resolver
from core.rbac.store import InMemoryAssignmentStore, TransientStoreError


@pytest.fixture(autouse=True)
def reset_rbac_globals():
    """Reset cached settings and the process-wide facade around each test."""
    get_settings.cache_clear()
    reset_authorization_facade()
    yield
    get_settings.cache_clear()
    reset_authorization_facade()


# =============================================================================
# STORES
# =============================================================================

class CountingStore(InMemoryAssignmentStore):
    """
    In-memory store that counts reads and can be paused or broken.

    ``gate`` (when set) must be opened before assignment reads return, which
    lets a test hold a resolution in flight.
    """

    def __init__(self):
        super().__init__()
        self.assignment_reads = 0
        self.grant_reads: Dict[str, int] = {}
        self.gate: Optional[asyncio.Event] = None
        self.fail_reads = False

    async def load_active_user_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        self.assignment_reads += 1
        if self.fail_reads:
            raise TransientStoreError("connection reset")
        rows = await super().load_active_user_role_assignments(user_id)
        if self.gate is not None:
            await self.gate.wait()
        return rows

    async def load_active_role_grants(self, role_id: str) -> List[RolePermissionGrant]:
        self.grant_reads[role_id] = self.grant_reads.get(role_id, 0) + 1
        if self.fail_reads:
            raise TransientStoreError("connection reset")
        return await super().load_active_role_grants(role_id)


# =============================================================================
# HARNESS
# =============================================================================

class RBACHarness:
    """Store + resolver + cache + facade wired together, with setup shortcuts."""

    def __init__(self, store: Optional[CountingStore] = None, timeout_seconds: Optional[float] = None):
        self.store = store or CountingStore()
        self.matcher = PermissionMatcher()
        self.resolver = Resolver(self.store, matcher=self.matcher)
        self.cache = PermissionCache()
        self.facade = AuthorizationFacade(self.resolver, self.cache, timeout_seconds=timeout_seconds)

    async def role(self, slug: str, level: int = 0, parent: Optional[Role] = None, **kwargs) -> Role:
        return await self.resolver.create_role(
            slug,
            slug.title(),
            level=level,
            parent_id=parent.id if parent else None,
            role_id=slug,
            **kwargs,
        )

    async def grant(self, role: Role, *slugs: str) -> None:
        for slug in slugs:
            await self.resolver.create_permission(slug)
            await self.resolver.grant_permission(role.id, slug)

    async def assign(self, user_id: str, role: Role, expires_at: Optional[datetime] = None) -> None:
        await self.resolver.assign_role(user_id, role.id, expires_at=expires_at)


@pytest.fixture
def counting_store():
    return CountingStore()


@pytest.fixture
def rbac(counting_store):
    """Fresh engine over an in-memory store."""
    return RBACHarness(counting_store)


@pytest.fixture
def make_rbac(counting_store):
    """Factory for engines with non-default facade options."""
    def factory(**kwargs) -> RBACHarness:
        return RBACHarness(counting_store, **kwargs)
    return factory
