"""Diff engine: desired configuration vs recorded (or refreshed) state.

For every graph node the engine decides one change action:

- declared, not recorded              -> create
- recorded, not declared              -> delete
- all comparable attributes equal     -> no-op
- only updatable attributes differ    -> update
- any force-new attribute differs     -> replace

COMPARISON RULES:
- Attributes recorded in state but removed from configuration are reset to
  the provider default, which is an update (never a no-op)
- Computed attributes (set by the provider) are only compared when the
  configuration sets them
- Names listed in ``lifecycle.ignore_changes`` are never compared
- Per-attribute comparison modes absorb representational noise: case
  differences for case-insensitive strings, ordering for unordered lists

REFERENCES:
Nodes are diffed in dependency order. A reference to a node that is only
being updated or left alone resolves to that node's desired or recorded
value. A reference to a node being created or replaced stays deferred
("known after apply"); a deferred value always counts as a difference, which
is how a replacement propagates to dependents whose force-new attributes
reference the replaced resource.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .graph import DependencyGraph, GraphNode
from .models import (
    ActionKind,
    AttributeMode,
    AttributeSchema,
    AttributeValue,
    ChangeAction,
    Comparison,
    ListValue,
    MapValue,
    Reference,
    ResourceSchema,
    StateEntity,
    StringValue,
    contains_reference,
)
from .provider import ProviderRegistry

logger = logging.getLogger(__name__)


class AttributeChange(BaseModel):
    """A single attribute difference.

    Attributes:
        name: Attribute name.
        before: Recorded value, None if the attribute was not recorded.
        after: Desired value, None if it is reset to the provider default.
        requires_replace: The attribute is force-new.
        known_after_apply: The desired value depends on a resource that has
            not been created yet.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    before: AttributeValue | None = None
    after: AttributeValue | None = None
    requires_replace: bool = False
    known_after_apply: bool = False


class ResourceDiff(BaseModel):
    """The computed change for one graph node."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    address: str
    action: ChangeAction
    changes: tuple[AttributeChange, ...] = ()
    # Desired attributes with every resolvable reference substituted
    planned: dict[str, AttributeValue] = Field(default_factory=dict)
    # The recorded resource no longer exists (found during refresh)
    gone: bool = False

    @property
    def replace_reasons(self) -> list[str]:
        return [c.name for c in self.changes if c.requires_replace]


def values_equal(desired: AttributeValue, recorded: AttributeValue, schema: AttributeSchema) -> bool:
    """Compare two concrete values under an attribute's comparison mode."""
    if schema.comparison == Comparison.CASE_INSENSITIVE:
        if isinstance(desired, StringValue) and isinstance(recorded, StringValue):
            return desired.value.casefold() == recorded.value.casefold()
    elif schema.comparison == Comparison.UNORDERED:
        if isinstance(desired, ListValue) and isinstance(recorded, ListValue):
            return sorted(i.model_dump_json() for i in desired.items) == sorted(
                i.model_dump_json() for i in recorded.items
            )
    return desired == recorded


class DiffEngine:
    """Computes a ResourceDiff for every node of a dependency graph.

    Pure and single-threaded: reads the graph and schemas, returns new values.
    """

    def __init__(self, providers: ProviderRegistry) -> None:
        self._providers = providers

    def diff(
        self,
        graph: DependencyGraph,
        refreshed: Mapping[str, StateEntity | None] | None = None,
    ) -> dict[int, ResourceDiff]:
        """Diff every node of the graph.

        Args:
            graph: Validated dependency graph.
            refreshed: Optional map of entity key to freshly read entity (None
                when the resource no longer exists). Keys present here take
                precedence over the recorded entity.

        Returns:
            ResourceDiff per node index.

        Raises:
            ProviderConfigurationError: If a resource's schema is unavailable.
        """
        refreshed = refreshed or {}
        diffs: dict[int, ResourceDiff] = {}
        priors: dict[int, StateEntity | None] = {}

        for index in graph.topological_order():
            node = graph.nodes[index]
            prior = refreshed[node.key] if node.key in refreshed else node.entity
            priors[index] = prior
            gone = node.entity is not None and prior is None

            if node.delete:
                diffs[index] = ResourceDiff(
                    key=node.key,
                    address=node.address,
                    action=ChangeAction.delete(),
                    gone=gone,
                )
                continue

            assert node.spec is not None
            schema = self._providers.schema_for(node.spec.provider_id, node.spec.type)
            planned = {
                name: self._resolve(value, graph, diffs, priors)
                for name, value in node.spec.attributes.items()
            }

            if prior is None:
                changes = tuple(
                    AttributeChange(
                        name=name,
                        after=value,
                        known_after_apply=contains_reference(value),
                    )
                    for name, value in planned.items()
                )
                diffs[index] = ResourceDiff(
                    key=node.key,
                    address=node.address,
                    action=ChangeAction.create(),
                    changes=changes,
                    planned=planned,
                    gone=gone,
                )
                continue

            diffs[index] = self._diff_existing(node, schema, planned, prior)

        logger.debug(
            "Computed resource diffs",
            extra={"summary": summarize(diffs.values())},
        )
        return diffs

    def _diff_existing(
        self,
        node: GraphNode,
        schema: ResourceSchema,
        planned: dict[str, AttributeValue],
        prior: StateEntity,
    ) -> ResourceDiff:
        """Attribute-by-attribute comparison for a declared, recorded resource."""
        assert node.spec is not None
        ignored = set(node.spec.lifecycle.ignore_changes)
        changes: list[AttributeChange] = []

        # Ignored attributes keep their recorded value
        for name in ignored:
            if name in prior.attributes:
                planned[name] = prior.attributes[name]
            else:
                planned.pop(name, None)

        names = list(planned) + [n for n in prior.attributes if n not in planned]
        for name in names:
            if name in ignored:
                continue
            attr_schema = schema.attribute(name)
            desired = planned.get(name)
            recorded = prior.attributes.get(name)

            if desired is None:
                if attr_schema.computed:
                    continue
                # Removed from configuration: reset to provider default
                changes.append(AttributeChange(name=name, before=recorded, after=None))
                continue

            unknown = contains_reference(desired)
            if not unknown and recorded is not None and values_equal(desired, recorded, attr_schema):
                continue

            changes.append(
                AttributeChange(
                    name=name,
                    before=recorded,
                    after=desired,
                    requires_replace=attr_schema.mode == AttributeMode.FORCE_NEW,
                    known_after_apply=unknown,
                )
            )

        if not changes:
            action = ChangeAction.noop()
        elif any(c.requires_replace for c in changes):
            cbd = node.spec.lifecycle.create_before_destroy
            action = ChangeAction.replace(
                before_destroy=schema.create_before_destroy if cbd is None else cbd
            )
        else:
            action = ChangeAction.update()

        return ResourceDiff(
            key=node.key,
            address=node.address,
            action=action,
            changes=tuple(changes),
            planned=planned,
        )

    def _resolve(
        self,
        value: AttributeValue,
        graph: DependencyGraph,
        diffs: dict[int, ResourceDiff],
        priors: dict[int, StateEntity | None],
    ) -> AttributeValue:
        """Substitute references whose value is already known at plan time."""
        match value:
            case Reference():
                target = graph.index_of(value.address)
                assert target is not None, f"Unvalidated reference {value.target}"
                target_diff = diffs[target]
                if target_diff.action.kind in (ActionKind.CREATE, ActionKind.REPLACE):
                    return value
                planned = target_diff.planned.get(value.attribute)
                if planned is not None and not contains_reference(planned):
                    return planned
                prior = priors.get(target)
                if prior is not None and value.attribute in prior.attributes:
                    return prior.attributes[value.attribute]
                return value
            case ListValue():
                return ListValue(items=tuple(self._resolve(i, graph, diffs, priors) for i in value.items))
            case MapValue():
                return MapValue(
                    entries={k: self._resolve(v, graph, diffs, priors) for k, v in value.entries.items()}
                )
        return value


def summarize(diffs: Iterable[ResourceDiff]) -> dict[str, int]:
    """Count diffs per action kind."""
    counts = {kind.value: 0 for kind in ActionKind}
    for diff in diffs:
        counts[diff.action.kind.value] += 1
    return counts
