"""Pydantic models for the reconciliation data model.

These models provide:
1. Tagged attribute values so every comparison is exhaustive and type-checked
2. Desired resources (ResourceSpec) and recorded resources (StateEntity)
3. Versioned snapshots carrying the wire format every backend persists
4. Resource schemas describing how each attribute is allowed to change

All models are frozen. Successor snapshots are produced by copy, never by
mutation, so a snapshot handed to one component can never change underneath
another.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Wire format version of persisted snapshots
STATE_FORMAT_VERSION = 1

# Mapping key that marks a reference in plain (YAML/JSON) configuration data
REFERENCE_KEY = "$ref"

# Input validation patterns
VALID_TYPE_PATTERN = r"^[a-z][a-z0-9_]{0,63}$"
VALID_NAME_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_-]{0,127}$"
VALID_ATTRIBUTE_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"


def make_address(resource_type: str, name: str) -> str:
    """Build a resource address (``type.name``)."""
    return f"{resource_type}.{name}"


def validate_address(address: str) -> str:
    """Validate a ``type.name`` address.

    Raises:
        ValueError: If the address is malformed.
    """
    parts = address.split(".")
    if (
        len(parts) != 2
        or not re.match(VALID_TYPE_PATTERN, parts[0])
        or not re.match(VALID_NAME_PATTERN, parts[1])
    ):
        raise ValueError(f"Invalid resource address '{address}', expected 'type.name'")
    return address


# =============================================================================
# Attribute Values
# =============================================================================


class StringValue(BaseModel):
    """A string attribute value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["string"] = "string"
    value: str


class NumberValue(BaseModel):
    """A numeric attribute value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["number"] = "number"
    value: int | float


class BoolValue(BaseModel):
    """A boolean attribute value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["bool"] = "bool"
    value: bool


class NullValue(BaseModel):
    """An explicit null."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["null"] = "null"


class ListValue(BaseModel):
    """An ordered list of attribute values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["list"] = "list"
    items: tuple[AttributeValue, ...] = ()


class MapValue(BaseModel):
    """A string-keyed mapping of attribute values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["map"] = "map"
    entries: dict[str, AttributeValue] = Field(default_factory=dict)


class Reference(BaseModel):
    """An unresolved reference to another resource's attribute.

    References only ever appear in desired configuration. They are resolved
    to concrete values by the apply executor once the referenced resource
    has completed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["ref"] = "ref"
    address: str
    attribute: str

    @field_validator("address")
    @classmethod
    def check_address(cls, v: str) -> str:
        return validate_address(v)

    @property
    def target(self) -> str:
        """Full ``type.name.attribute`` target."""
        return f"{self.address}.{self.attribute}"


AttributeValue = Annotated[
    Union[StringValue, NumberValue, BoolValue, NullValue, ListValue, MapValue, Reference],
    Field(discriminator="kind"),
]

ListValue.model_rebuild()
MapValue.model_rebuild()

_VALUE_TYPES = (StringValue, NumberValue, BoolValue, NullValue, ListValue, MapValue, Reference)


def is_value(obj: Any) -> bool:
    """Check whether obj is already a tagged attribute value."""
    return isinstance(obj, _VALUE_TYPES)


def parse_reference(target: str) -> Reference:
    """Parse a ``type.name.attribute`` reference target.

    Raises:
        ValueError: If the target is malformed.
    """
    parts = target.split(".")
    if len(parts) != 3 or not re.match(VALID_ATTRIBUTE_PATTERN, parts[2]):
        raise ValueError(f"Invalid reference '{target}', expected 'type.name.attribute'")
    return Reference(address=f"{parts[0]}.{parts[1]}", attribute=parts[2])


def to_value(obj: Any) -> AttributeValue:
    """Convert plain Python data into a tagged attribute value.

    A mapping whose only key is ``$ref`` becomes a Reference.

    Raises:
        TypeError: If obj contains an unsupported type.
        ValueError: If a reference target is malformed.
    """
    if is_value(obj):
        return obj
    if obj is None:
        return NullValue()
    # bool is a subclass of int, check it first
    if isinstance(obj, bool):
        return BoolValue(value=obj)
    if isinstance(obj, (int, float)):
        return NumberValue(value=obj)
    if isinstance(obj, str):
        return StringValue(value=obj)
    if isinstance(obj, Mapping):
        if set(obj) == {REFERENCE_KEY}:
            return parse_reference(str(obj[REFERENCE_KEY]))
        return MapValue(entries={str(k): to_value(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return ListValue(items=tuple(to_value(v) for v in obj))
    raise TypeError(f"Unsupported attribute value type: {type(obj).__name__}")


def to_values(mapping: Mapping[str, Any] | None) -> dict[str, AttributeValue]:
    """Convert a plain mapping into tagged attribute values, keeping order."""
    return {str(k): to_value(v) for k, v in (mapping or {}).items()}


def to_python(value: AttributeValue) -> Any:
    """Convert a concrete attribute value back into plain Python data.

    Raises:
        ValueError: If the value still contains a reference.
    """
    match value:
        case StringValue() | NumberValue() | BoolValue():
            return value.value
        case NullValue():
            return None
        case ListValue():
            return [to_python(item) for item in value.items]
        case MapValue():
            return {k: to_python(v) for k, v in value.entries.items()}
        case Reference():
            raise ValueError(f"Unresolved reference to {value.target}")
    raise TypeError(f"Not an attribute value: {value!r}")


def iter_references(value: AttributeValue) -> Iterator[Reference]:
    """Yield every reference nested anywhere inside value."""
    match value:
        case Reference():
            yield value
        case ListValue():
            for item in value.items:
                yield from iter_references(item)
        case MapValue():
            for entry in value.entries.values():
                yield from iter_references(entry)


def contains_reference(value: AttributeValue) -> bool:
    """Check whether value still contains an unresolved reference."""
    return next(iter_references(value), None) is not None


def _reject_references(values: dict[str, AttributeValue], what: str) -> dict[str, AttributeValue]:
    for name, value in values.items():
        if contains_reference(value):
            raise ValueError(f"{what} '{name}' must be concrete, found a reference")
    return values


# =============================================================================
# Resource Schemas (supplied by providers)
# =============================================================================


class AttributeMode(str, Enum):
    """How an attribute may change on an existing resource."""

    UPDATABLE = "updatable"  # Changed in place
    FORCE_NEW = "force_new"  # Changing it requires replacement


class Comparison(str, Enum):
    """How desired and recorded values of an attribute are compared."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    UNORDERED = "unordered"  # Lists compared as multisets


class AttributeSchema(BaseModel):
    """Schema of a single attribute."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: AttributeMode = AttributeMode.UPDATABLE
    # Provider-set attributes are only compared when configuration sets them
    computed: bool = False
    comparison: Comparison = Comparison.EXACT


DEFAULT_ATTRIBUTE_SCHEMA = AttributeSchema()


class ResourceSchema(BaseModel):
    """Schema of a resource kind, as reported by its provider."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: str
    attributes: dict[str, AttributeSchema] = Field(default_factory=dict)
    create_before_destroy: bool = False
    schema_version: int = 0

    def attribute(self, name: str) -> AttributeSchema:
        """Get the schema for an attribute, defaulting to updatable in place."""
        return self.attributes.get(name, DEFAULT_ATTRIBUTE_SCHEMA)


# =============================================================================
# Desired and Recorded Resources
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle options."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    # None defers to the resource schema
    create_before_destroy: bool | None = Field(None, alias="createBeforeDestroy")
    prevent_destroy: bool = Field(False, alias="preventDestroy")
    ignore_changes: tuple[str, ...] = Field((), alias="ignoreChanges")


class ResourceSpec(BaseModel):
    """A declared resource, as handed over by the configuration evaluator."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    type: str
    name: str
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    provider_id: str = Field("builtin", alias="provider")

    # Explicit ordering hints - addresses that must complete first
    depends_on: tuple[str, ...] = Field((), alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not re.match(VALID_TYPE_PATTERN, v):
            raise ValueError(f"type must match pattern {VALID_TYPE_PATTERN}: {v}")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_NAME_PATTERN}: {v}")
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for address in v:
            validate_address(address)
        return v

    @classmethod
    def declare(
        cls,
        resource_type: str,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> ResourceSpec:
        """Build a spec from plain attribute data (``{"$ref": ...}`` for references)."""
        return cls(type=resource_type, name=name, attributes=to_values(attributes), **kwargs)

    @property
    def address(self) -> str:
        """The ``type.name`` address."""
        return make_address(self.type, self.name)

    def references(self) -> list[Reference]:
        """All references in this spec's attributes, in attribute order."""
        refs: list[Reference] = []
        for value in self.attributes.values():
            refs.extend(iter_references(value))
        return refs


class StateEntity(BaseModel):
    """A recorded resource.

    Only ever replaced by the apply executor, and only after the provider
    confirmed the corresponding operation took effect.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    address: str
    provider_id: str = "builtin"
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    # Addresses this entity referenced at its last apply
    dependencies: tuple[str, ...] = ()
    schema_version: int = 0
    # Opaque provider bookkeeping
    private: str = ""
    # Set on an old instance kept alive during a create-before-destroy replace
    deposed: str | None = None

    @field_validator("address")
    @classmethod
    def validate_entity_address(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("attributes")
    @classmethod
    def validate_concrete(cls, v: dict[str, AttributeValue]) -> dict[str, AttributeValue]:
        return _reject_references(v, "State attribute")

    @field_validator("dependencies")
    @classmethod
    def normalize_dependencies(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(v)))

    @property
    def key(self) -> str:
        """Unique key within a snapshot."""
        if self.deposed:
            return f"{self.address}~{self.deposed}"
        return self.address

    @property
    def type(self) -> str:
        return self.address.split(".", 1)[0]

    @property
    def name(self) -> str:
        return self.address.split(".", 1)[1]


class StateSnapshot(BaseModel):
    """An immutable, versioned record of managed resources.

    Wire format: every backend persists exactly ``model_dump_json()`` of this
    model, so conflicts can be validated from the blob contents alone.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = STATE_FORMAT_VERSION
    serial: int = Field(0, ge=0)
    lineage: str = Field(min_length=1)
    entities: tuple[StateEntity, ...] = ()
    outputs: dict[str, AttributeValue] = Field(default_factory=dict)

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, v: tuple[StateEntity, ...]) -> tuple[StateEntity, ...]:
        ordered = tuple(sorted(v, key=lambda e: e.key))
        seen: set[str] = set()
        for entity in ordered:
            if entity.key in seen:
                raise ValueError(f"Duplicate state entity: {entity.key}")
            seen.add(entity.key)
        return ordered

    @field_validator("outputs")
    @classmethod
    def validate_outputs(cls, v: dict[str, AttributeValue]) -> dict[str, AttributeValue]:
        return _reject_references(dict(sorted(v.items())), "Output")

    @classmethod
    def empty(cls, lineage: str | None = None) -> StateSnapshot:
        """Create the initial snapshot of a new state history."""
        return cls(serial=0, lineage=lineage or str(uuid.uuid4()))

    @classmethod
    def from_json(cls, data: str | bytes) -> StateSnapshot:
        return cls.model_validate_json(data)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.outputs

    def get(self, key: str) -> StateEntity | None:
        """Look up an entity by key (address, or ``address~deposed``)."""
        for entity in self.entities:
            if entity.key == key:
                return entity
        return None

    def addresses(self) -> list[str]:
        return [entity.key for entity in self.entities]

    def with_entity(self, entity: StateEntity) -> StateSnapshot:
        """Successor snapshot with entity added or replaced."""
        others = [e for e in self.entities if e.key != entity.key]
        return self.model_copy(
            update={"serial": self.serial + 1, "entities": tuple(sorted([*others, entity], key=lambda e: e.key))}
        )

    def without_entity(self, key: str) -> StateSnapshot:
        """Successor snapshot with the entity at key removed."""
        return self.model_copy(
            update={
                "serial": self.serial + 1,
                "entities": tuple(e for e in self.entities if e.key != key),
            }
        )

    def with_changes(
        self,
        remove: tuple[str, ...] = (),
        add: tuple[StateEntity, ...] = (),
    ) -> StateSnapshot:
        """Successor snapshot with several entities removed and added in one step."""
        replaced = set(remove) | {e.key for e in add}
        kept = [e for e in self.entities if e.key not in replaced]
        return self.model_copy(
            update={"serial": self.serial + 1, "entities": tuple(sorted([*kept, *add], key=lambda e: e.key))}
        )

    def with_outputs(self, outputs: dict[str, AttributeValue]) -> StateSnapshot:
        """Successor snapshot with outputs replaced."""
        return self.model_copy(
            update={"serial": self.serial + 1, "outputs": dict(sorted(outputs.items()))}
        )


# =============================================================================
# Locks
# =============================================================================


class LockOperation(str, Enum):
    """Operation a lock is held for."""

    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    WORKSPACE = "workspace"


class LockHolder(BaseModel):
    """Who is asking for a lock, and why."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    holder_id: str = Field(min_length=1)
    operation: LockOperation
    info: str = ""


class Lock(BaseModel):
    """An exclusive advisory lock on one workspace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    lock_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace: str
    holder_id: str
    operation: LockOperation
    info: str = ""
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_holder(cls, workspace: str, holder: LockHolder) -> Lock:
        return cls(
            workspace=workspace,
            holder_id=holder.holder_id,
            operation=holder.operation,
            info=holder.info,
        )

    def describe(self) -> str:
        """Human-readable summary used in error messages."""
        return (
            f"ID: {self.lock_id}, holder: {self.holder_id}, "
            f"operation: {self.operation.value}, acquired_at: {self.acquired_at.isoformat()}"
            + (f", info: {self.info}" if self.info else "")
        )


# =============================================================================
# Change Actions
# =============================================================================


class ActionKind(str, Enum):
    """Kinds of change attached to a graph node after diffing."""

    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


class ChangeAction(BaseModel):
    """A tagged change action.

    ``before_destroy`` is only meaningful for REPLACE: True means the new
    instance is created before the old one is destroyed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ActionKind
    before_destroy: bool | None = None

    @model_validator(mode="after")
    def validate_replace_flag(self) -> ChangeAction:
        if self.kind == ActionKind.REPLACE and self.before_destroy is None:
            raise ValueError("replace actions must set before_destroy")
        if self.kind != ActionKind.REPLACE and self.before_destroy is not None:
            raise ValueError("before_destroy is only valid for replace actions")
        return self

    @classmethod
    def noop(cls) -> ChangeAction:
        return cls(kind=ActionKind.NOOP)

    @classmethod
    def create(cls) -> ChangeAction:
        return cls(kind=ActionKind.CREATE)

    @classmethod
    def update(cls) -> ChangeAction:
        return cls(kind=ActionKind.UPDATE)

    @classmethod
    def delete(cls) -> ChangeAction:
        return cls(kind=ActionKind.DELETE)

    @classmethod
    def replace(cls, before_destroy: bool) -> ChangeAction:
        return cls(kind=ActionKind.REPLACE, before_destroy=before_destroy)

    @property
    def is_change(self) -> bool:
        return self.kind != ActionKind.NOOP

    @property
    def destroys(self) -> bool:
        """True if the action removes an existing instance."""
        return self.kind in (ActionKind.DELETE, ActionKind.REPLACE)

    def __str__(self) -> str:
        if self.kind == ActionKind.REPLACE:
            order = "create-before-destroy" if self.before_destroy else "destroy-before-create"
            return f"replace ({order})"
        return self.kind.value
