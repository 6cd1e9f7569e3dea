"""
Role Graph - Immutable topology of the role hierarchy.

The graph is a pure topology: it does not filter inactive roles, that is the
resolver's job. Every "mutation" returns a new graph and leaves the original
untouched, so readers holding a reference keep a consistent snapshot while a
writer prepares the next one.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .entities import Role
from .exceptions import CyclicHierarchyError, DanglingParentError, RoleNotFoundError

logger = logging.getLogger(__name__)


class RoleGraph:
    """Role nodes keyed by id, linked child -> parent."""

    __slots__ = ("_roles", "_children")

    def __init__(self, roles: Mapping[str, Role]):
        # Use RoleGraph.build(); the constructor trusts its input.
        self._roles: Mapping[str, Role] = MappingProxyType(dict(roles))
        children: Dict[str, set] = {}
        for role in self._roles.values():
            if role.parent_id is not None:
                children.setdefault(role.parent_id, set()).add(role.id)
        self._children: Mapping[str, frozenset] = MappingProxyType(
            {parent: frozenset(kids) for parent, kids in children.items()}
        )

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def build(cls, roles: Iterable[Role]) -> "RoleGraph":
        """
        Build a validated graph.

        Raises:
            DanglingParentError: a parent_id references a missing role
            CyclicHierarchyError: a role is its own ancestor
        """
        by_id: Dict[str, Role] = {}
        for role in roles:
            by_id[role.id] = role

        for role in by_id.values():
            if role.parent_id is not None and role.parent_id not in by_id:
                raise DanglingParentError(role.id, role.parent_id)

        _check_acyclic(by_id)
        return cls(by_id)

    @classmethod
    def empty(cls) -> "RoleGraph":
        return cls({})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def __contains__(self, role_id: object) -> bool:
        return role_id in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    @property
    def roles(self) -> Mapping[str, Role]:
        return self._roles

    def get(self, role_id: str) -> Optional[Role]:
        return self._roles.get(role_id)

    def require(self, role_id: str) -> Role:
        role = self._roles.get(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    def find_by_slug(self, slug: str) -> Optional[Role]:
        for role in self._roles.values():
            if role.slug == slug:
                return role
        return None

    def ancestor_chain(self, role_id: str) -> List[Role]:
        """
        The role itself followed by its parents, closest first.

        Unknown ids yield an empty chain. Inactive roles are included.
        """
        chain: List[Role] = []
        current = self._roles.get(role_id)
        while current is not None:
            chain.append(current)
            if current.parent_id is None:
                break
            current = self._roles.get(current.parent_id)
        return chain

    def descendants(self, role_id: str) -> List[Role]:
        """Every role that inherits from ``role_id`` (excluding itself)."""
        found: List[Role] = []
        stack = list(self._children.get(role_id, ()))
        while stack:
            child_id = stack.pop()
            found.append(self._roles[child_id])
            stack.extend(self._children.get(child_id, ()))
        return found

    # -------------------------------------------------------------------------
    # Copy-on-write updates
    # -------------------------------------------------------------------------

    def reparent(self, role_id: str, new_parent_id: Optional[str]) -> "RoleGraph":
        """
        Return a new graph with ``role_id`` moved under ``new_parent_id``.

        The current graph is never modified. Raises on a missing role or
        parent, or when the move would create a cycle.
        """
        role = self.require(role_id)
        if new_parent_id is not None:
            if new_parent_id not in self._roles:
                raise DanglingParentError(role_id, new_parent_id)
            chain_ids = [r.id for r in self.ancestor_chain(new_parent_id)]
            if role_id in chain_ids:
                cycle = [role_id] + chain_ids[: chain_ids.index(role_id) + 1]
                logger.warning(f"Rejected reparent of role {role_id} under {new_parent_id}: cycle")
                raise CyclicHierarchyError(role_id, cycle)

        roles = dict(self._roles)
        roles[role_id] = role.with_parent(new_parent_id)
        return RoleGraph(roles)

    def with_role(self, role: Role) -> "RoleGraph":
        """Return a new graph with ``role`` added or replaced (validated)."""
        roles = dict(self._roles)
        roles[role.id] = role
        return RoleGraph.build(roles.values())

    def without_role(self, role_id: str) -> "RoleGraph":
        """Return a new graph without ``role_id``; its children become roots."""
        self.require(role_id)
        roles = {
            rid: (r.with_parent(None) if r.parent_id == role_id else r)
            for rid, r in self._roles.items()
            if rid != role_id
        }
        return RoleGraph(roles)


def _check_acyclic(roles: Mapping[str, Role]) -> None:
    """Walk every parent chain once; raise on the first revisit."""
    settled: set = set()
    for start in roles:
        if start in settled:
            continue
        path: List[str] = []
        on_path: set = set()
        current: Optional[str] = start
        while current is not None and current not in settled:
            if current in on_path:
                cycle = path[path.index(current):] + [current]
                raise CyclicHierarchyError(current, cycle)
            path.append(current)
            on_path.add(current)
            current = roles[current].parent_id
        settled.update(path)
