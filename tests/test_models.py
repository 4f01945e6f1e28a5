"""Tests for attribute values, resources and snapshots."""

import pytest
from pydantic import ValidationError

from iacengine.models import (
    ActionKind,
    BoolValue,
    ChangeAction,
    Lifecycle,
    ListValue,
    Lock,
    LockHolder,
    LockOperation,
    MapValue,
    NullValue,
    NumberValue,
    Reference,
    ResourceSpec,
    StateEntity,
    StateSnapshot,
    StringValue,
    contains_reference,
    parse_reference,
    to_python,
    to_value,
)


class TestAttributeValues:
    """Tests for tagged attribute values."""

    def test_plain_data_becomes_tagged_values(self) -> None:
        """Test that plain Python data converts into the matching value kinds."""
        value = to_value({"name": "web", "count": 2, "enabled": True, "tags": ["a", None]})

        assert isinstance(value, MapValue)
        assert value.entries["name"] == StringValue(value="web")
        assert value.entries["count"] == NumberValue(value=2)
        assert value.entries["enabled"] == BoolValue(value=True)
        assert value.entries["tags"] == ListValue(items=(StringValue(value="a"), NullValue()))

    def test_bool_is_not_a_number(self) -> None:
        """Test that booleans are not mistaken for integers."""
        assert to_value(False) == BoolValue(value=False)

    def test_ref_mapping_becomes_reference(self) -> None:
        """Test that a {$ref: ...} mapping becomes a Reference."""
        value = to_value({"$ref": "local_file.greeting.id"})

        assert value == Reference(address="local_file.greeting", attribute="id")
        assert value.target == "local_file.greeting.id"

    def test_malformed_reference_rejected(self) -> None:
        """Test that references must be type.name.attribute."""
        with pytest.raises(ValueError, match="expected 'type.name.attribute'"):
            parse_reference("local_file.greeting")

    def test_unsupported_type_rejected(self) -> None:
        """Test that arbitrary objects cannot become attribute values."""
        with pytest.raises(TypeError, match="Unsupported attribute value type"):
            to_value(object())

    def test_to_python_round_trips_concrete_values(self) -> None:
        """Test converting concrete values back to plain data."""
        data = {"a": [1, 2.5, "x"], "b": {"c": None, "d": True}}

        assert to_python(to_value(data)) == data

    def test_to_python_rejects_references(self) -> None:
        """Test that unresolved references cannot be converted to plain data."""
        with pytest.raises(ValueError, match="Unresolved reference"):
            to_python(to_value({"$ref": "null_resource.a.id"}))

    def test_contains_reference_finds_nested(self) -> None:
        """Test that references nested in lists and maps are found."""
        value = to_value({"outer": [{"inner": {"$ref": "null_resource.a.id"}}]})

        assert contains_reference(value)
        assert not contains_reference(to_value({"outer": [1, 2]}))

    def test_json_round_trip_keeps_kinds(self) -> None:
        """Test that the discriminated union survives JSON."""
        entity = StateEntity(
            address="null_resource.a",
            attributes={"n": NumberValue(value=1), "s": StringValue(value="1")},
        )

        restored = StateEntity.model_validate_json(entity.model_dump_json())

        assert restored == entity
        assert isinstance(restored.attributes["n"], NumberValue)
        assert isinstance(restored.attributes["s"], StringValue)


class TestResourceSpec:
    """Tests for ResourceSpec."""

    def test_declare_and_address(self) -> None:
        """Test declaring a resource from plain data."""
        spec = ResourceSpec.declare("local_file", "greeting", {"content": "hi"})

        assert spec.address == "local_file.greeting"
        assert spec.provider_id == "builtin"
        assert spec.attributes["content"] == StringValue(value="hi")

    def test_references_in_attribute_order(self) -> None:
        """Test that references() lists every reference."""
        spec = ResourceSpec.declare(
            "null_resource",
            "c",
            {
                "first": {"$ref": "null_resource.a.id"},
                "second": {"nested": [{"$ref": "null_resource.b.id"}]},
            },
        )

        assert [ref.address for ref in spec.references()] == ["null_resource.a", "null_resource.b"]

    def test_invalid_type_rejected(self) -> None:
        """Test type name validation."""
        with pytest.raises(ValidationError, match="type must match pattern"):
            ResourceSpec.declare("Local-File", "x")

    def test_invalid_depends_on_rejected(self) -> None:
        """Test that depends_on entries must be addresses."""
        with pytest.raises(ValidationError, match="Invalid resource address"):
            ResourceSpec.declare("null_resource", "x", depends_on=("not-an-address",))

    def test_lifecycle_aliases(self) -> None:
        """Test camelCase lifecycle keys as written in configuration files."""
        lifecycle = Lifecycle.model_validate(
            {"createBeforeDestroy": True, "preventDestroy": True, "ignoreChanges": ["content"]}
        )

        assert lifecycle.create_before_destroy is True
        assert lifecycle.prevent_destroy is True
        assert lifecycle.ignore_changes == ("content",)


class TestStateEntity:
    """Tests for StateEntity."""

    def test_references_rejected_in_state(self) -> None:
        """Test that recorded attributes must be concrete."""
        with pytest.raises(ValidationError, match="must be concrete"):
            StateEntity(address="null_resource.a", attributes={"x": to_value({"$ref": "null_resource.b.id"})})

    def test_dependencies_sorted_and_unique(self) -> None:
        """Test dependency normalization."""
        entity = StateEntity(address="null_resource.a", dependencies=("null_resource.c", "null_resource.b", "null_resource.c"))

        assert entity.dependencies == ("null_resource.b", "null_resource.c")

    def test_deposed_key(self) -> None:
        """Test that deposed instances get a distinct key."""
        entity = StateEntity(address="local_file.f", deposed="abc123")

        assert entity.key == "local_file.f~abc123"
        assert entity.type == "local_file"
        assert entity.name == "f"


class TestStateSnapshot:
    """Tests for StateSnapshot."""

    def test_empty_snapshot(self) -> None:
        """Test the initial snapshot of a new history."""
        snapshot = StateSnapshot.empty()

        assert snapshot.serial == 0
        assert snapshot.lineage
        assert snapshot.is_empty

    def test_successors_bump_serial_once(self) -> None:
        """Test that every successor is exactly one serial ahead."""
        snapshot = StateSnapshot.empty(lineage="l1")
        entity = StateEntity(address="null_resource.a")

        added = snapshot.with_entity(entity)
        removed = added.without_entity("null_resource.a")
        with_outputs = removed.with_outputs({"x": StringValue(value="y")})
        batched = with_outputs.with_changes(add=(entity, StateEntity(address="null_resource.b")))

        assert [added.serial, removed.serial, with_outputs.serial, batched.serial] == [1, 2, 3, 4]
        assert batched.addresses() == ["null_resource.a", "null_resource.b"]
        assert snapshot.serial == 0
        assert {s.lineage for s in (added, removed, with_outputs, batched)} == {"l1"}

    def test_entities_sorted(self) -> None:
        """Test that entities are kept in key order."""
        snapshot = StateSnapshot(
            lineage="l1",
            entities=(StateEntity(address="null_resource.b"), StateEntity(address="null_resource.a")),
        )

        assert snapshot.addresses() == ["null_resource.a", "null_resource.b"]

    def test_duplicate_entities_rejected(self) -> None:
        """Test that a snapshot cannot record the same key twice."""
        with pytest.raises(ValidationError, match="Duplicate state entity"):
            StateSnapshot(
                lineage="l1",
                entities=(StateEntity(address="null_resource.a"), StateEntity(address="null_resource.a")),
            )

    def test_serialization_is_deterministic(self) -> None:
        """Test that equal snapshots serialize identically."""
        a = StateSnapshot(lineage="l1", outputs={"b": StringValue(value="2"), "a": StringValue(value="1")})
        b = StateSnapshot(lineage="l1", outputs={"a": StringValue(value="1"), "b": StringValue(value="2")})

        assert a.to_json() == b.to_json()
        assert StateSnapshot.from_json(a.to_json()) == a

    def test_lineage_required(self) -> None:
        """Test that a snapshot must carry a lineage."""
        with pytest.raises(ValidationError):
            StateSnapshot(lineage="")


class TestChangeAction:
    """Tests for ChangeAction."""

    def test_replace_requires_order(self) -> None:
        """Test that replace must say which half goes first."""
        with pytest.raises(ValidationError, match="must set before_destroy"):
            ChangeAction(kind=ActionKind.REPLACE)

    def test_order_only_for_replace(self) -> None:
        """Test that before_destroy is rejected on other kinds."""
        with pytest.raises(ValidationError, match="only valid for replace"):
            ChangeAction(kind=ActionKind.UPDATE, before_destroy=True)

    def test_destroys(self) -> None:
        """Test which actions remove an existing instance."""
        assert ChangeAction.delete().destroys
        assert ChangeAction.replace(True).destroys
        assert not ChangeAction.update().destroys
        assert not ChangeAction.noop().is_change

    def test_str(self) -> None:
        """Test the human-readable form."""
        assert str(ChangeAction.replace(True)) == "replace (create-before-destroy)"
        assert str(ChangeAction.create()) == "create"


class TestLock:
    """Tests for Lock."""

    def test_for_holder(self) -> None:
        """Test building a lock from a holder."""
        holder = LockHolder(holder_id="alice@host:1", operation=LockOperation.APPLY, info="ci run 7")

        lock = Lock.for_holder("dev", holder)

        assert lock.workspace == "dev"
        assert lock.holder_id == "alice@host:1"
        assert lock.lock_id
        assert "operation: apply" in lock.describe()
        assert "info: ci run 7" in lock.describe()
