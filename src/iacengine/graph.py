"""Dependency graph construction, ordering and cycle detection.

This module builds the graph every later stage works on:
1. One node per declared resource, plus one delete node per resource that is
   recorded in state but no longer declared (including deposed instances)
2. Edges meaning "must come before", derived from attribute references,
   explicit depends_on hints, and recorded dependencies of deleted resources
3. Stable topological ordering (Kahn's algorithm, ties broken by key)
4. Mandatory cycle detection that reports the minimal cycle

REPRESENTATION:
Nodes live in an arena (a list) and are referenced by integer index; edges
are adjacency lists of indices. This keeps ownership trivial and makes
copying a graph for a dry run a matter of copying a few lists.

DESTROY ORDERING:
Edges of resources being destroyed are reversed relative to their recorded
dependencies. If X (being deleted) depended on Y (also being deleted), X is
destroyed first. If a declared resource K used to depend on X, K is updated
off X before X is destroyed.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from .models import ResourceSpec, StateEntity, StateSnapshot

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when a dependency graph cannot be built.

    Attributes:
        cycle: Addresses forming the offending cycle, if any.
    """

    def __init__(self, message: str, cycle: list[str] | None = None) -> None:
        super().__init__(message)
        self.cycle: list[str] = cycle or []


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownReferenceError(GraphError):
    """Raised when a resource references an address that is not declared."""

    pass


class DuplicateResourceError(GraphError):
    """Raised when two declared resources share an address."""

    pass


@dataclass(frozen=True)
class GraphNode:
    """A node in the dependency graph.

    Attributes:
        index: Position in the graph's node arena.
        key: Unique key (address, or ``address~deposed`` for old instances).
        address: Resource address (``type.name``).
        spec: Desired resource, None when the node is scheduled for deletion.
        entity: Recorded resource, None when the resource does not exist yet.
    """

    index: int
    key: str
    address: str
    spec: ResourceSpec | None = None
    entity: StateEntity | None = None

    @property
    def delete(self) -> bool:
        """True if the node exists only in state and is scheduled for deletion."""
        return self.spec is None


@dataclass
class DependencyGraph:
    """Directed graph of resources; an edge a -> b means a must come before b."""

    nodes: list[GraphNode] = field(default_factory=list)
    successors: list[list[int]] = field(default_factory=list)
    predecessors: list[list[int]] = field(default_factory=list)
    _index: dict[str, int] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(
        self,
        key: str,
        address: str,
        spec: ResourceSpec | None = None,
        entity: StateEntity | None = None,
    ) -> int:
        """Add a node to the arena.

        Returns:
            Index of the new node.

        Raises:
            DuplicateResourceError: If a node with the same key exists.
        """
        if key in self._index:
            raise DuplicateResourceError(f"Duplicate resource address: {key}")
        index = len(self.nodes)
        self.nodes.append(GraphNode(index=index, key=key, address=address, spec=spec, entity=entity))
        self.successors.append([])
        self.predecessors.append([])
        self._index[key] = index
        return index

    def add_edge(self, before: int, after: int) -> None:
        """Record that node ``before`` must complete before node ``after``."""
        if after not in self.successors[before]:
            self.successors[before].append(after)
            self.predecessors[after].append(before)

    def index_of(self, key: str) -> int | None:
        return self._index.get(key)

    def node(self, key: str) -> GraphNode:
        """Get a node by key.

        Raises:
            KeyError: If no such node exists.
        """
        return self.nodes[self._index[key]]

    def copy(self) -> DependencyGraph:
        """Cheap structural copy (nodes are immutable and shared)."""
        return DependencyGraph(
            nodes=list(self.nodes),
            successors=[list(s) for s in self.successors],
            predecessors=[list(p) for p in self.predecessors],
            _index=dict(self._index),
        )

    def descendants(self, index: int) -> set[int]:
        """All nodes transitively reachable from index."""
        seen: set[int] = set()
        stack = list(self.successors[index])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.successors[current])
        return seen

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.topological_order()

    def topological_order(self) -> list[int]:
        """Return node indices in dependency order (dependencies first).

        Ties among ready nodes are broken by key, so an unchanged graph always
        yields the same order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        in_degree = [len(p) for p in self.predecessors]
        ready = [(node.key, node.index) for node in self.nodes if in_degree[node.index] == 0]
        heapq.heapify(ready)

        order: list[int] = []
        while ready:
            _, current = heapq.heappop(ready)
            order.append(current)
            for successor in self.successors[current]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, (self.nodes[successor].key, successor))

        if len(order) != len(self.nodes):
            residual = {i for i, degree in enumerate(in_degree) if degree > 0}
            cycle = self._find_minimal_cycle(residual)
            raise CyclicDependencyError(
                f"Circular dependency detected: {' -> '.join([*cycle, cycle[0]])}",
                cycle=cycle,
            )
        return order

    def _find_minimal_cycle(self, residual: set[int]) -> list[str]:
        """Find the shortest cycle among nodes Kahn's algorithm could not order.

        Runs a breadth-first search from every residual node back to itself,
        restricted to residual nodes, and keeps the shortest loop found.
        """
        best: list[int] | None = None
        for start in sorted(residual, key=lambda i: self.nodes[i].key):
            parents: dict[int, int] = {}
            queue: deque[int] = deque([start])
            found: int | None = None
            while queue and found is None:
                current = queue.popleft()
                for successor in self.successors[current]:
                    if successor not in residual:
                        continue
                    if successor == start:
                        found = current
                        break
                    if successor not in parents:
                        parents[successor] = current
                        queue.append(successor)
            if found is None:
                continue
            path = [found]
            while path[-1] != start:
                path.append(parents[path[-1]])
            path.reverse()
            if best is None or len(path) < len(best):
                best = path
        # Residual nodes of a failed Kahn pass always contain a cycle
        assert best is not None, "Residual nodes without a cycle"
        return [self.nodes[i].key for i in best]


def build_graph(
    specs: Iterable[ResourceSpec],
    snapshot: StateSnapshot | None = None,
) -> DependencyGraph:
    """Build and validate the dependency graph for one planning cycle.

    Args:
        specs: Every declared resource of the desired configuration.
        snapshot: Current state; resources recorded here but not declared
            become delete nodes.

    Returns:
        A validated, acyclic DependencyGraph.

    Raises:
        DuplicateResourceError: If two specs share an address.
        UnknownReferenceError: If a spec references an undeclared address.
        CyclicDependencyError: If the graph contains a cycle. No partial
            graph is returned.
    """
    graph = DependencyGraph()
    ordered_specs = sorted(specs, key=lambda s: s.address)

    for spec in ordered_specs:
        entity = snapshot.get(spec.address) if snapshot else None
        graph.add_node(spec.address, spec.address, spec=spec, entity=entity)

    # State-only resources (and every deposed instance) are scheduled for deletion
    if snapshot is not None:
        for entity in snapshot.entities:
            if graph.index_of(entity.key) is None:
                graph.add_node(entity.key, entity.address, entity=entity)

    # Declared ordering: referenced before referencing
    for spec in ordered_specs:
        target = graph.index_of(spec.address)
        assert target is not None
        wanted = [ref.address for ref in spec.references()] + list(spec.depends_on)
        for address in wanted:
            dependency = graph.index_of(address)
            if dependency is None or graph.nodes[dependency].delete:
                raise UnknownReferenceError(
                    f"{spec.address} references undeclared resource '{address}'"
                )
            graph.add_edge(dependency, target)

    # Destroy ordering: reversed relative to recorded dependencies
    for node in list(graph.nodes):
        if node.entity is None:
            continue
        for address in node.entity.dependencies:
            dependency = graph.index_of(address)
            if dependency is None or dependency == node.index:
                continue
            if graph.nodes[dependency].delete:
                graph.add_edge(node.index, dependency)

    graph.validate()

    logger.debug(
        "Built dependency graph",
        extra={
            "node_count": len(graph),
            "edge_count": sum(len(s) for s in graph.successors),
            "delete_count": sum(1 for n in graph.nodes if n.delete),
        },
    )
    return graph
