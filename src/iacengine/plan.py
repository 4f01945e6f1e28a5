"""Plan builder: turns diffed graph nodes into an ordered list of steps.

Each graph node contributes one or two steps:

- no-op, create, update          -> a single "apply" step
- delete                         -> a single "destroy" step
- replace                        -> a destroy step and an apply (create) step

Replacements are ordered by ``before_destroy``. Destroy-before-create runs
destroy -> create; create-before-destroy runs create -> destroy, and the old
instance's destroy additionally waits for every dependent's apply step so
nothing is left pointing at a destroyed instance.

DETERMINISM:
Steps are sorted with Kahn's algorithm, ties broken by node key and phase.
The plan carries no timestamps, so the same configuration against the same
snapshot always serializes to byte-identical JSON.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .diff import ResourceDiff
from .graph import DependencyGraph, GraphError
from .models import (
    ActionKind,
    AttributeValue,
    ChangeAction,
    ResourceSpec,
    StateEntity,
    StateSnapshot,
)

logger = logging.getLogger(__name__)

# Wire format version of saved plan files
PLAN_FORMAT_VERSION = 1


class PreventDestroyError(Exception):
    """Raised when a plan would destroy a resource with prevent_destroy set."""

    def __init__(self, addresses: list[str]) -> None:
        super().__init__(
            "Plan would destroy resources protected by lifecycle.prevent_destroy: "
            + ", ".join(addresses)
        )
        self.addresses = addresses


class StalePlanError(Exception):
    """Raised when a plan no longer matches the state it was computed from."""

    pass


class PlanFileError(Exception):
    """Raised when a saved plan file cannot be read."""

    pass


class StepOperation(str, Enum):
    """Provider-level operation of a single plan step."""

    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class StepPhase(str, Enum):
    """Which half of a node a step belongs to."""

    APPLY = "apply"
    DESTROY = "destroy"


class PlanStep(BaseModel):
    """A single step of a plan.

    Attributes:
        index: Position of the step in the plan.
        key: Graph node key (address, or ``address~deposed``).
        address: Resource address.
        phase: Apply or destroy half of the node.
        operation: Provider operation the step performs.
        action: The node's change action (replace steps share it).
        depends_on: Indices of steps that must succeed first.
        diff: Attribute-level changes of the node.
        spec: Desired resource, None for destroy steps of undeclared resources.
        prior: Recorded entity at plan time.
        forget: Remove from state without calling the provider (the resource
            is already gone).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: int
    key: str
    address: str
    phase: StepPhase
    operation: StepOperation
    action: ChangeAction
    depends_on: tuple[int, ...] = ()
    diff: ResourceDiff
    spec: ResourceSpec | None = None
    prior: StateEntity | None = None
    forget: bool = False

    @property
    def is_change(self) -> bool:
        return self.operation != StepOperation.NOOP

    def describe(self) -> str:
        return f"{self.address} ({self.operation.value})"


class PlanSummary(BaseModel):
    """Counts per kind of change, one per resource."""

    model_config = ConfigDict(frozen=True)

    add: int = 0
    change: int = 0
    destroy: int = 0
    replace: int = 0

    @property
    def total(self) -> int:
        return self.add + self.change + self.destroy - self.replace

    def __str__(self) -> str:
        return f"Plan: {self.add} to add, {self.change} to change, {self.destroy} to destroy."


class Plan(BaseModel):
    """An immutable, ordered set of steps stamped with the state it came from."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    format_version: int = PLAN_FORMAT_VERSION
    workspace: str
    lineage: str
    serial: int
    destroy: bool = False
    steps: tuple[PlanStep, ...] = ()
    # Declared outputs, written once every step has been applied
    outputs: dict[str, AttributeValue] = Field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(step.is_change for step in self.steps)

    @property
    def changes(self) -> list[PlanStep]:
        return [step for step in self.steps if step.is_change]

    def summary(self) -> PlanSummary:
        """Count resources per kind of change (a replacement counts once as add and destroy)."""
        seen: dict[str, ActionKind] = {}
        for step in self.steps:
            seen[step.key] = step.action.kind
        kinds = list(seen.values())
        replace = kinds.count(ActionKind.REPLACE)
        return PlanSummary(
            add=kinds.count(ActionKind.CREATE) + replace,
            change=kinds.count(ActionKind.UPDATE),
            destroy=kinds.count(ActionKind.DELETE) + replace,
            replace=replace,
        )

    def check_current(self, workspace: str, snapshot: StateSnapshot) -> None:
        """Ensure the plan still applies to the current state.

        Raises:
            StalePlanError: If workspace, lineage or serial differ.
        """
        if workspace != self.workspace:
            raise StalePlanError(
                f"Plan was created for workspace '{self.workspace}', not '{workspace}'"
            )
        if snapshot.lineage != self.lineage:
            raise StalePlanError(
                f"State lineage changed since the plan was created "
                f"(plan: {self.lineage}, state: {snapshot.lineage})"
            )
        if snapshot.serial != self.serial:
            raise StalePlanError(
                f"State changed since the plan was created "
                f"(plan serial: {self.serial}, state serial: {snapshot.serial})"
            )

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> Plan:
        return cls.model_validate_json(data)

    def save(self, path: Path) -> None:
        """Write the plan file."""
        path.write_text(self.to_json() + "\n", encoding="utf-8")
        logger.info(
            "Saved plan",
            extra={"path": str(path), "workspace": self.workspace, "steps": len(self.steps)},
        )

    @classmethod
    def load(cls, path: Path) -> Plan:
        """Read a plan file.

        Raises:
            PlanFileError: If the file is missing, too large or invalid.
        """
        try:
            size = path.stat().st_size
        except OSError as e:
            raise PlanFileError(f"Cannot read plan file {path}: {e}") from e
        if size > MAX_PLAN_FILE_SIZE_BYTES:
            raise PlanFileError(
                f"Plan file {path} exceeds {MAX_PLAN_FILE_SIZE_BYTES} bytes"
            )
        try:
            plan = cls.from_json(path.read_bytes())
        except ValueError as e:
            raise PlanFileError(f"Invalid plan file {path}: {e}") from e
        if plan.format_version != PLAN_FORMAT_VERSION:
            raise PlanFileError(
                f"Unsupported plan format version {plan.format_version} in {path}"
            )
        return plan


class PlanBuilder:
    """Builds deterministic plans from a diffed dependency graph."""

    def build(
        self,
        graph: DependencyGraph,
        diffs: dict[int, ResourceDiff],
        workspace: str,
        snapshot: StateSnapshot,
        outputs: dict[str, AttributeValue] | None = None,
        destroy: bool = False,
        protected: Iterable[str] = (),
    ) -> Plan:
        """Build a plan.

        Args:
            graph: Validated dependency graph.
            diffs: ResourceDiff per node index.
            workspace: Workspace the plan targets.
            snapshot: Snapshot the diff was computed against.
            outputs: Declared outputs to write after apply.
            destroy: Whether this is a destroy plan.
            protected: Extra addresses with prevent_destroy set (declared
                resources that a destroy plan does not carry specs for).

        Raises:
            PreventDestroyError: If a protected resource would be destroyed.
            GraphError: If the expanded steps cannot be ordered.
        """
        self._check_prevent_destroy(graph, diffs, set(protected))

        # Step ids are (node index, phase); edges between them
        step_ids: list[tuple[int, StepPhase]] = []
        apply_of: dict[int, tuple[int, StepPhase]] = {}
        destroy_of: dict[int, tuple[int, StepPhase]] = {}
        for node in graph.nodes:
            kind = diffs[node.index].action.kind
            if kind != ActionKind.DELETE:
                apply_of[node.index] = (node.index, StepPhase.APPLY)
                step_ids.append(apply_of[node.index])
            if kind in (ActionKind.DELETE, ActionKind.REPLACE):
                destroy_of[node.index] = (node.index, StepPhase.DESTROY)
                step_ids.append(destroy_of[node.index])

        edges: dict[tuple[int, StepPhase], set[tuple[int, StepPhase]]] = {s: set() for s in step_ids}

        def cbd(index: int) -> bool:
            return bool(diffs[index].action.before_destroy)

        for node in graph.nodes:
            u = node.index
            if u in apply_of and u in destroy_of:
                if cbd(u):
                    edges[apply_of[u]].add(destroy_of[u])
                else:
                    edges[destroy_of[u]].add(apply_of[u])

            for v in graph.successors[u]:
                if graph.nodes[v].delete:
                    for step in (apply_of.get(u), destroy_of.get(u)):
                        if step is not None:
                            edges[step].add(destroy_of[v])
                    continue
                edges[apply_of[u]].add(apply_of[v])
                if u in destroy_of and cbd(u):
                    edges[apply_of[v]].add(destroy_of[u])
                if u in destroy_of and v in destroy_of and not cbd(v):
                    edges[destroy_of[v]].add(destroy_of[u])

        ordered = self._order(graph, step_ids, edges)
        position = {step_id: i for i, step_id in enumerate(ordered)}
        predecessors: dict[tuple[int, StepPhase], list[int]] = {s: [] for s in step_ids}
        for before, afters in edges.items():
            for after in afters:
                predecessors[after].append(position[before])

        steps = tuple(
            self._make_step(graph, diffs, i, step_id, tuple(sorted(predecessors[step_id])))
            for i, step_id in enumerate(ordered)
        )
        plan = Plan(
            workspace=workspace,
            lineage=snapshot.lineage,
            serial=snapshot.serial,
            destroy=destroy,
            steps=steps,
            outputs=dict(sorted((outputs or {}).items())),
        )
        logger.info(
            "Built plan",
            extra={
                "workspace": workspace,
                "serial": snapshot.serial,
                "steps": len(steps),
                "changes": len(plan.changes),
                "destroy": destroy,
            },
        )
        return plan

    def _check_prevent_destroy(
        self,
        graph: DependencyGraph,
        diffs: dict[int, ResourceDiff],
        protected: set[str],
    ) -> None:
        blocked: list[str] = []
        for node in graph.nodes:
            if not diffs[node.index].action.destroys:
                continue
            # Deposed instances are leftovers of a replacement, never protected
            if node.entity is not None and node.entity.deposed:
                continue
            guarded = node.spec is not None and node.spec.lifecycle.prevent_destroy
            if guarded or node.address in protected:
                blocked.append(node.address)
        if blocked:
            raise PreventDestroyError(sorted(blocked))

    def _order(
        self,
        graph: DependencyGraph,
        step_ids: list[tuple[int, StepPhase]],
        edges: dict[tuple[int, StepPhase], set[tuple[int, StepPhase]]],
    ) -> list[tuple[int, StepPhase]]:
        """Kahn's algorithm over steps, ties broken by (node key, phase)."""

        def sort_key(step_id: tuple[int, StepPhase]) -> tuple[str, str, int]:
            return (graph.nodes[step_id[0]].key, step_id[1].value, step_id[0])

        in_degree = {s: 0 for s in step_ids}
        for afters in edges.values():
            for after in afters:
                in_degree[after] += 1

        ready = [(sort_key(s), s) for s in step_ids if in_degree[s] == 0]
        heapq.heapify(ready)
        ordered: list[tuple[int, StepPhase]] = []
        while ready:
            _, current = heapq.heappop(ready)
            ordered.append(current)
            for after in edges[current]:
                in_degree[after] -= 1
                if in_degree[after] == 0:
                    heapq.heappush(ready, (sort_key(after), after))

        if len(ordered) != len(step_ids):
            stuck = sorted(
                f"{graph.nodes[s[0]].key} ({s[1].value})" for s in step_ids if in_degree[s] > 0
            )
            raise GraphError(f"Replacement ordering conflict between steps: {', '.join(stuck)}")
        return ordered

    def _make_step(
        self,
        graph: DependencyGraph,
        diffs: dict[int, ResourceDiff],
        index: int,
        step_id: tuple[int, StepPhase],
        depends_on: tuple[int, ...],
    ) -> PlanStep:
        node = graph.nodes[step_id[0]]
        diff = diffs[node.index]
        kind = diff.action.kind
        phase = step_id[1]

        if phase == StepPhase.DESTROY:
            operation = StepOperation.DELETE
        elif kind == ActionKind.NOOP:
            operation = StepOperation.NOOP
        elif kind == ActionKind.UPDATE:
            operation = StepOperation.UPDATE
        else:
            operation = StepOperation.CREATE

        return PlanStep(
            index=index,
            key=node.key,
            address=node.address,
            phase=phase,
            operation=operation,
            action=diff.action,
            depends_on=depends_on,
            diff=diff,
            spec=node.spec if phase == StepPhase.APPLY else None,
            prior=node.entity,
            forget=diff.gone and operation == StepOperation.DELETE,
        )
