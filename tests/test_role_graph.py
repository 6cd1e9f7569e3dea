"""
Role Graph Tests

Covers construction-time validation, ancestor walks, and the copy-on-write
update methods of the immutable role hierarchy.
"""

import pytest

from core.rbac.entities import Role
from core.rbac.exceptions import CyclicHierarchyError, DanglingParentError, RoleNotFoundError
from core.rbac.graph import RoleGraph


def _role(role_id, parent_id=None, level=0, is_active=True):
    return Role(
        id=role_id,
        slug=role_id,
        name=role_id.title(),
        level=level,
        parent_id=parent_id,
        is_active=is_active,
    )


@pytest.fixture
def ladder():
    """admin -> librarian -> member -> guest"""
    return RoleGraph.build([
        _role("guest", level=10),
        _role("member", "guest", level=20),
        _role("librarian", "member", level=60),
        _role("admin", "librarian", level=80),
    ])


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestBuild:
    """Tests for RoleGraph.build validation."""

    def test_empty_graph(self):
        """An empty graph has no roles and empty chains."""
        graph = RoleGraph.empty()

        assert len(graph) == 0
        assert graph.ancestor_chain("anything") == []

    def test_dangling_parent_rejected(self):
        """A parent id that names no role is rejected."""
        with pytest.raises(DanglingParentError) as exc_info:
            RoleGraph.build([_role("member", "ghost")])

        assert exc_info.value.role_id == "member"
        assert exc_info.value.parent_id == "ghost"

    def test_self_parent_rejected(self):
        """A role cannot be its own parent."""
        with pytest.raises(CyclicHierarchyError):
            RoleGraph.build([_role("loop", "loop")])

    def test_two_role_cycle_rejected(self):
        """A -> B -> A is detected."""
        with pytest.raises(CyclicHierarchyError) as exc_info:
            RoleGraph.build([_role("a", "b"), _role("b", "a")])

        assert exc_info.value.chain[0] == exc_info.value.chain[-1]

    def test_cycle_below_valid_root_rejected(self):
        """A cycle not reachable from any root is still found."""
        with pytest.raises(CyclicHierarchyError):
            RoleGraph.build([
                _role("root"),
                _role("child", "root"),
                _role("x", "z"),
                _role("y", "x"),
                _role("z", "y"),
            ])

    def test_forest_is_valid(self):
        """Multiple roots are allowed."""
        graph = RoleGraph.build([_role("a"), _role("b"), _role("c", "a")])

        assert len(graph) == 3


# =============================================================================
# QUERIES
# =============================================================================

class TestQueries:
    """Tests for lookups and ancestor walks."""

    def test_ancestor_chain_closest_first(self, ladder):
        """The chain starts with the role itself and ends at the root."""
        chain = [role.id for role in ladder.ancestor_chain("admin")]

        assert chain == ["admin", "librarian", "member", "guest"]

    def test_ancestor_chain_of_root(self, ladder):
        assert [r.id for r in ladder.ancestor_chain("guest")] == ["guest"]

    def test_ancestor_chain_unknown_role(self, ladder):
        """Unknown ids yield an empty chain rather than an error."""
        assert ladder.ancestor_chain("nobody") == []

    def test_ancestor_chain_keeps_inactive_roles(self):
        """The graph is pure topology; filtering is left to the resolver."""
        graph = RoleGraph.build([
            _role("root"),
            _role("middle", "root", is_active=False),
            _role("leaf", "middle"),
        ])

        assert [r.id for r in graph.ancestor_chain("leaf")] == ["leaf", "middle", "root"]

    def test_descendants(self, ladder):
        descendants = {role.id for role in ladder.descendants("member")}

        assert descendants == {"librarian", "admin"}

    def test_require_missing_role(self, ladder):
        with pytest.raises(RoleNotFoundError):
            ladder.require("nobody")

    def test_find_by_slug(self, ladder):
        assert ladder.find_by_slug("librarian").id == "librarian"
        assert ladder.find_by_slug("nobody") is None

    def test_roles_mapping_is_read_only(self, ladder):
        with pytest.raises(TypeError):
            ladder.roles["intruder"] = _role("intruder")


# =============================================================================
# COPY-ON-WRITE UPDATES
# =============================================================================

class TestUpdates:
    """Every update returns a new graph and leaves the original untouched."""

    def test_reparent_returns_new_graph(self, ladder):
        updated = ladder.reparent("admin", "member")

        assert [r.id for r in updated.ancestor_chain("admin")] == ["admin", "member", "guest"]
        assert [r.id for r in ladder.ancestor_chain("admin")] == [
            "admin", "librarian", "member", "guest",
        ]

    def test_reparent_to_root(self, ladder):
        updated = ladder.reparent("librarian", None)

        assert updated.require("librarian").parent_id is None
        assert [r.id for r in updated.ancestor_chain("admin")] == ["admin", "librarian"]

    def test_reparent_under_descendant_rejected(self, ladder):
        """Moving a role beneath its own descendant would create a cycle."""
        with pytest.raises(CyclicHierarchyError) as exc_info:
            ladder.reparent("member", "admin")

        assert exc_info.value.role_id == "member"
        assert ladder.require("member").parent_id == "guest"

    def test_reparent_under_self_rejected(self, ladder):
        with pytest.raises(CyclicHierarchyError):
            ladder.reparent("member", "member")

    def test_reparent_to_missing_parent_rejected(self, ladder):
        with pytest.raises(DanglingParentError):
            ladder.reparent("member", "ghost")

    def test_reparent_missing_role_rejected(self, ladder):
        with pytest.raises(RoleNotFoundError):
            ladder.reparent("ghost", "member")

    def test_with_role_adds(self, ladder):
        updated = ladder.with_role(_role("intern", "guest", level=5))

        assert "intern" in updated
        assert "intern" not in ladder

    def test_with_role_validates_parent(self, ladder):
        with pytest.raises(DanglingParentError):
            ladder.with_role(_role("intern", "ghost"))

    def test_without_role_promotes_children(self, ladder):
        """Children of a removed role become roots."""
        updated = ladder.without_role("member")

        assert "member" not in updated
        assert updated.require("librarian").parent_id is None
        assert ladder.require("librarian").parent_id == "member"
