"""Tests for dependency graph construction and ordering."""

import pytest

from iacengine.graph import (
    CyclicDependencyError,
    DependencyGraph,
    DuplicateResourceError,
    GraphError,
    UnknownReferenceError,
    build_graph,
)
from iacengine.models import ResourceSpec, StateEntity, StateSnapshot


def ref(target: str) -> dict[str, str]:
    return {"$ref": target}


def spec(name: str, /, **attributes) -> ResourceSpec:
    return ResourceSpec.declare("null_resource", name, attributes)


def order_of(graph: DependencyGraph) -> list[str]:
    return [graph.nodes[i].key for i in graph.topological_order()]


class TestBuildGraph:
    """Tests for build_graph."""

    def test_references_order_dependencies_first(self) -> None:
        """Test that a referencing resource comes after what it references."""
        graph = build_graph(
            [
                spec("c", x=ref("null_resource.b.id")),
                spec("b", x=ref("null_resource.a.id")),
                spec("a"),
            ]
        )

        assert order_of(graph) == ["null_resource.a", "null_resource.b", "null_resource.c"]

    def test_depends_on_adds_edge(self) -> None:
        """Test explicit ordering hints."""
        graph = build_graph(
            [
                ResourceSpec.declare("null_resource", "a", depends_on=("null_resource.z",)),
                spec("z"),
            ]
        )

        assert order_of(graph) == ["null_resource.z", "null_resource.a"]

    def test_independent_nodes_ordered_by_key(self) -> None:
        """Test the stable tie-break among ready nodes."""
        graph = build_graph([spec("zeta"), spec("alpha"), spec("mid")])

        assert order_of(graph) == ["null_resource.alpha", "null_resource.mid", "null_resource.zeta"]

    def test_order_is_deterministic(self) -> None:
        """Test that input order never changes the result."""
        specs = [spec("d", x=ref("null_resource.a.id")), spec("a"), spec("c"), spec("b", x=ref("null_resource.c.id"))]

        first = order_of(build_graph(specs))
        second = order_of(build_graph(list(reversed(specs))))

        assert first == second

    def test_cycle_reports_minimal_cycle(self) -> None:
        """Test that a cycle is rejected and reported."""
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(
                [
                    spec("a", x=ref("null_resource.b.id")),
                    spec("b", x=ref("null_resource.a.id")),
                    spec("c", x=ref("null_resource.a.id")),
                ]
            )

        assert sorted(exc_info.value.cycle) == ["null_resource.a", "null_resource.b"]
        assert "Circular dependency detected" in str(exc_info.value)

    def test_self_reference_is_a_cycle(self) -> None:
        """Test a resource referencing itself."""
        with pytest.raises(GraphError) as exc_info:
            build_graph([spec("a", x=ref("null_resource.a.id"))])

        assert exc_info.value.cycle == ["null_resource.a"]

    def test_unknown_reference(self) -> None:
        """Test referencing an undeclared resource."""
        with pytest.raises(UnknownReferenceError, match="null_resource.ghost"):
            build_graph([spec("a", x=ref("null_resource.ghost.id"))])

    def test_reference_to_resource_being_deleted(self) -> None:
        """Test that a reference to a state-only resource is still unknown."""
        snapshot = StateSnapshot(lineage="l", entities=(StateEntity(address="null_resource.old"),))

        with pytest.raises(UnknownReferenceError):
            build_graph([spec("a", x=ref("null_resource.old.id"))], snapshot)

    def test_duplicate_address(self) -> None:
        """Test two specs with the same address."""
        with pytest.raises(DuplicateResourceError):
            build_graph([spec("a"), spec("a")])

    def test_state_only_resources_become_delete_nodes(self) -> None:
        """Test that undeclared recorded resources are scheduled for deletion."""
        snapshot = StateSnapshot(
            lineage="l",
            entities=(StateEntity(address="null_resource.a"), StateEntity(address="null_resource.gone")),
        )

        graph = build_graph([spec("a")], snapshot)

        assert graph.node("null_resource.a").entity is not None
        assert not graph.node("null_resource.a").delete
        assert graph.node("null_resource.gone").delete

    def test_deposed_instances_become_delete_nodes(self) -> None:
        """Test that an old instance left by a replacement is cleaned up."""
        snapshot = StateSnapshot(
            lineage="l",
            entities=(
                StateEntity(address="null_resource.a"),
                StateEntity(address="null_resource.a", deposed="0badf00d"),
            ),
        )

        graph = build_graph([spec("a")], snapshot)

        assert graph.node("null_resource.a~0badf00d").delete

    def test_destroy_order_is_reversed(self) -> None:
        """Test that a dependent being deleted is destroyed before its dependency."""
        snapshot = StateSnapshot(
            lineage="l",
            entities=(
                StateEntity(address="null_resource.db"),
                StateEntity(address="null_resource.app", dependencies=("null_resource.db",)),
            ),
        )

        graph = build_graph([], snapshot)

        assert order_of(graph) == ["null_resource.app", "null_resource.db"]

    def test_declared_resource_moves_off_deleted_dependency_first(self) -> None:
        """Test that a kept resource is updated before its old dependency is deleted."""
        snapshot = StateSnapshot(
            lineage="l",
            entities=(
                StateEntity(address="null_resource.old"),
                StateEntity(address="null_resource.app", dependencies=("null_resource.old",)),
            ),
        )

        graph = build_graph([spec("app")], snapshot)

        assert order_of(graph) == ["null_resource.app", "null_resource.old"]


class TestDependencyGraph:
    """Tests for DependencyGraph helpers."""

    def test_descendants(self) -> None:
        """Test transitive reachability."""
        graph = build_graph(
            [
                spec("a"),
                spec("b", x=ref("null_resource.a.id")),
                spec("c", x=ref("null_resource.b.id")),
                spec("d"),
            ]
        )
        a = graph.index_of("null_resource.a")

        names = {graph.nodes[i].key for i in graph.descendants(a)}

        assert names == {"null_resource.b", "null_resource.c"}

    def test_copy_is_independent(self) -> None:
        """Test that edges added to a copy do not leak into the original."""
        graph = build_graph([spec("a"), spec("b")])
        copied = graph.copy()

        copied.add_edge(graph.index_of("null_resource.b"), graph.index_of("null_resource.a"))

        assert order_of(graph) == ["null_resource.a", "null_resource.b"]
        assert order_of(copied) == ["null_resource.b", "null_resource.a"]
