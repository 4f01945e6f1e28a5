"""Tests for concurrent plan execution."""

import asyncio
import time

import pytest
from fake_provider import FAKE_PROVIDER_ID, FakeProvider, fake_spec

from iacengine.diff import DiffEngine
from iacengine.executor import ApplyExecutor, ApplyResult, ResultCode, StepStatus
from iacengine.graph import build_graph
from iacengine.locking import MemoryLockManager
from iacengine.models import (
    LockHolder,
    LockOperation,
    Reference,
    StateEntity,
    StateSnapshot,
    StringValue,
    to_values,
)
from iacengine.plan import PlanBuilder
from iacengine.state import MemoryStateStore


def recorded(name: str, /, **attributes) -> StateEntity:
    return StateEntity(
        address=f"fake_thing.{name}",
        provider_id=FAKE_PROVIDER_ID,
        attributes=to_values(attributes),
    )


class Harness:
    """A memory store seeded with state, plus helpers to plan and apply against it."""

    def __init__(self, provider: FakeProvider, entities=(), parallelism: int = 4, locks=None, store=None) -> None:
        self.provider = provider
        self.store = store or MemoryStateStore()
        self.locks = locks
        snapshot = self.store.initialize("default")
        if entities:
            seeded = snapshot.with_changes(add=tuple(entities))
            self.store.write("default", seeded, snapshot.serial)
        self.executor = ApplyExecutor(provider.registry(), self.store, locks, parallelism=parallelism)

    @property
    def state(self) -> StateSnapshot:
        return self.store.read("default")

    def plan(self, specs, outputs=None, refreshed=None):
        snapshot = self.state
        graph = build_graph(specs, snapshot)
        diffs = DiffEngine(self.provider.registry()).diff(graph, refreshed)
        return PlanBuilder().build(graph, diffs, "default", snapshot, outputs=outputs)

    async def apply(self, specs, outputs=None, refreshed=None, lock=None, cancel=None) -> ApplyResult:
        plan = self.plan(specs, outputs, refreshed)
        return await self.executor.execute(plan, self.state, lock, cancel)


class DiskFullStore(MemoryStateStore):
    """Fails every write that would record the given address."""

    def __init__(self, address: str) -> None:
        super().__init__()
        self.address = address

    def write(self, workspace, snapshot, expected_serial) -> None:
        if snapshot.get(self.address) is not None:
            raise OSError(28, "No space left on device")
        super().write(workspace, snapshot, expected_serial)


class CancellingProvider(FakeProvider):
    """Sets the cancellation event from inside the first operation it runs."""

    def __init__(self, cancel: asyncio.Event, loop: asyncio.AbstractEventLoop, **kwargs) -> None:
        super().__init__(**kwargs)
        self.cancel = cancel
        self.loop = loop

    def apply_operation(self, action, spec, resolved_attributes, prior):
        entity = super().apply_operation(action, spec, resolved_attributes, prior)
        self.loop.call_soon_threadsafe(self.cancel.set)
        return entity


def chain() -> list:
    return [
        fake_spec("a"),
        fake_spec("b", name={"$ref": "fake_thing.a.id"}),
        fake_spec("c", name={"$ref": "fake_thing.b.id"}),
    ]


class TestExecution:
    """Tests for successful applies."""

    @pytest.mark.asyncio
    async def test_creates_chain_in_order(self) -> None:
        """Test that every step runs after its dependencies and is recorded."""
        harness = Harness(FakeProvider())

        result = await harness.apply(chain())

        assert harness.provider.addresses("create") == ["fake_thing.a", "fake_thing.b", "fake_thing.c"]
        assert result.code == ResultCode.CHANGES_APPLIED
        assert result.code.exit_code == 2
        assert result.applied == ("fake_thing.a", "fake_thing.b", "fake_thing.c")
        assert harness.state.addresses() == ["fake_thing.a", "fake_thing.b", "fake_thing.c"]

    @pytest.mark.asyncio
    async def test_references_resolved_against_working_state(self) -> None:
        """Test that a provider receives concrete values for references."""
        harness = Harness(FakeProvider())

        await harness.apply(chain())

        assert harness.provider.resolved["fake_thing.b"]["name"] == StringValue(value="a-1")
        assert harness.state.get("fake_thing.b").dependencies == ("fake_thing.a",)

    @pytest.mark.asyncio
    async def test_one_serial_per_step(self) -> None:
        """Test that each completed operation is its own snapshot."""
        harness = Harness(FakeProvider())
        before = harness.state.serial

        result = await harness.apply(chain())

        assert result.serial_before == before
        assert result.serial_after == before + 3
        assert harness.state.serial == before + 3

    @pytest.mark.asyncio
    async def test_no_changes(self) -> None:
        """Test that no-op steps are skipped without touching state."""
        harness = Harness(FakeProvider(), [recorded("a", name="x", id="a-1")])
        before = harness.state.serial

        result = await harness.apply([fake_spec("a", name="x")])

        assert result.code == ResultCode.NO_CHANGES
        assert result.status_of("fake_thing.a") == [StepStatus.SKIPPED]
        assert result.skipped == ()
        assert harness.provider.calls == []
        assert harness.state.serial == before

    @pytest.mark.asyncio
    async def test_update_keeps_identity(self) -> None:
        """Test an in-place update."""
        harness = Harness(FakeProvider(), [recorded("a", name="x", id="a-7")])

        await harness.apply([fake_spec("a", name="y")])

        entity = harness.state.get("fake_thing.a")
        assert entity.attributes["name"] == StringValue(value="y")
        assert entity.attributes["id"] == StringValue(value="a-7")

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        """Test that an undeclared resource is deleted and removed from state."""
        harness = Harness(FakeProvider(), [recorded("a", id="a-1")])

        result = await harness.apply([])

        assert harness.provider.calls == [("delete", "fake_thing.a")]
        assert result.applied == ("fake_thing.a",)
        assert harness.state.entities == ()

    @pytest.mark.asyncio
    async def test_vanished_resource_is_forgotten(self) -> None:
        """Test that a resource already gone is dropped without a provider call."""
        harness = Harness(FakeProvider(), [recorded("a", id="a-1")])

        await harness.apply([], refreshed={"fake_thing.a": None})

        assert harness.provider.calls == []
        assert harness.state.entities == ()

    @pytest.mark.asyncio
    async def test_create_before_destroy_replacement(self) -> None:
        """Test that the old instance is deposed, then deleted after the new one exists."""
        harness = Harness(FakeProvider(), [recorded("a", size=1, id="a-old")])
        spec = fake_spec("a", size=2, lifecycle={"create_before_destroy": True})

        result = await harness.apply([spec])

        assert harness.provider.calls == [("create", "fake_thing.a"), ("delete", "fake_thing.a")]
        assert result.succeeded
        assert harness.state.addresses() == ["fake_thing.a"]
        entity = harness.state.get("fake_thing.a")
        assert entity.attributes["id"] != StringValue(value="a-old")
        assert entity.deposed is None

    @pytest.mark.asyncio
    async def test_outputs_written_after_steps(self) -> None:
        """Test that outputs are resolved against the final state."""
        harness = Harness(FakeProvider())
        outputs = {"first_id": Reference(address="fake_thing.a", attribute="id")}

        result = await harness.apply([fake_spec("a")], outputs=outputs)

        assert result.outputs_written
        assert harness.state.outputs == {"first_id": StringValue(value="a-1")}


class TestFailures:
    """Tests for partial failure."""

    @pytest.mark.asyncio
    async def test_failure_blocks_dependents(self) -> None:
        """Test A succeeds, B fails, C is blocked, and only A is recorded."""
        harness = Harness(FakeProvider(fail={"fake_thing.b"}))
        before = harness.state.serial

        result = await harness.apply(chain())

        assert result.status_of("fake_thing.a") == [StepStatus.SUCCEEDED]
        assert result.status_of("fake_thing.b") == [StepStatus.FAILED]
        assert result.status_of("fake_thing.c") == [StepStatus.BLOCKED]
        assert result.failed == ("fake_thing.b",)
        assert result.blocked == ("fake_thing.c",)
        assert result.code == ResultCode.FAILURE
        assert result.code.exit_code == 1
        assert harness.state.addresses() == ["fake_thing.a"]
        assert harness.state.serial == before + 1
        assert ("create", "fake_thing.c") not in harness.provider.calls

    @pytest.mark.asyncio
    async def test_failure_reports_provider_message(self) -> None:
        """Test that the provider's error is attached to the step."""
        harness = Harness(FakeProvider(fail={"fake_thing.b"}))

        result = await harness.apply(chain())

        errors = {step.address: step.error for step in result.steps}
        assert errors["fake_thing.b"] == "simulated failure for fake_thing.b"
        assert "Blocked by failure of fake_thing.b (create)" in errors["fake_thing.c"]

    @pytest.mark.asyncio
    async def test_independent_steps_continue(self) -> None:
        """Test that a failure does not stop unrelated work."""
        harness = Harness(FakeProvider(fail={"fake_thing.a"}))

        result = await harness.apply([fake_spec("a"), fake_spec("b")])

        assert result.failed == ("fake_thing.a",)
        assert result.applied == ("fake_thing.b",)
        assert harness.state.addresses() == ["fake_thing.b"]

    @pytest.mark.asyncio
    async def test_state_conflict_stops_apply(self) -> None:
        """Test that a lost compare-and-swap stops dispatching."""
        harness = Harness(FakeProvider())
        plan = harness.plan(chain())
        stale = harness.state
        # Someone else writes in between
        harness.store.write("default", stale.with_outputs({"x": StringValue(value="1")}), stale.serial)

        result = await harness.executor.execute(plan, stale)

        assert result.code == ResultCode.FAILURE
        assert result.error.startswith("State write failed after fake_thing.a (create)")
        assert harness.provider.calls == [("create", "fake_thing.a")]
        assert harness.state.entities == ()

    @pytest.mark.asyncio
    async def test_lost_lock_stops_apply(self) -> None:
        """Test that a force-unlocked session cannot write state."""
        locks = MemoryLockManager()
        harness = Harness(FakeProvider(), locks=locks)
        lock = locks.acquire("default", LockHolder(holder_id="me@host:1", operation=LockOperation.APPLY))
        locks.force_unlock("default", lock.lock_id)

        result = await harness.apply([fake_spec("a")], lock=lock)

        assert result.error is not None
        assert harness.state.entities == ()

    @pytest.mark.asyncio
    async def test_backend_error_returns_report(self) -> None:
        """Test that an I/O failure while writing state still yields a complete result."""
        harness = Harness(FakeProvider(), store=DiskFullStore("fake_thing.b"))

        result = await harness.apply(chain())

        assert result.code == ResultCode.FAILURE
        assert result.error.startswith("State write failed after fake_thing.b (create)")
        assert "No space left on device" in result.error
        assert result.applied == ("fake_thing.a",)
        assert result.failed == ("fake_thing.b",)
        assert result.blocked == ("fake_thing.c",)
        assert harness.provider.addresses("create") == ["fake_thing.a", "fake_thing.b"]
        assert harness.state.addresses() == ["fake_thing.a"]


class TestConcurrency:
    """Tests for parallel dispatch."""

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self) -> None:
        """Test that no more than the configured number of operations overlap."""
        names = ["a", "b", "c", "d", "e"]
        provider = FakeProvider(delays={f"fake_thing.{n}": 0.05 for n in names})
        harness = Harness(provider, parallelism=2)

        result = await harness.apply([fake_spec(n) for n in names])

        assert result.succeeded
        assert 1 <= provider.max_active <= 2
        assert len(harness.state.entities) == 5

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self) -> None:
        """Test that a cancelled apply dispatches nothing new."""
        harness = Harness(FakeProvider())
        cancel = asyncio.Event()
        cancel.set()

        result = await harness.apply(chain(), cancel=cancel)

        assert result.cancelled
        assert result.code == ResultCode.FAILURE
        assert result.skipped == ("fake_thing.a", "fake_thing.b", "fake_thing.c")
        assert harness.provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_operation(self) -> None:
        """Test that a running operation finishes and is recorded, and nothing new starts."""
        cancel = asyncio.Event()
        provider = CancellingProvider(cancel, asyncio.get_running_loop(), delays={"fake_thing.a": 0.05})
        harness = Harness(provider)
        serial_before = harness.state.serial

        result = await harness.apply(chain(), cancel=cancel)

        assert result.cancelled
        assert result.status_of("fake_thing.a") == [StepStatus.SUCCEEDED]
        assert result.status_of("fake_thing.b") == [StepStatus.SKIPPED]
        assert result.status_of("fake_thing.c") == [StepStatus.SKIPPED]
        assert provider.calls == [("create", "fake_thing.a")]
        assert harness.state.addresses() == ["fake_thing.a"]
        assert harness.state.serial == serial_before + 1

    @pytest.mark.asyncio
    async def test_cancelled_apply_does_not_wait_for_provider_threads(self) -> None:
        """Test that cancelling the apply coroutine returns while an operation is still running."""
        harness = Harness(FakeProvider(delays={"fake_thing.a": 0.5}))
        task = asyncio.create_task(harness.apply([fake_spec("a")]))
        await asyncio.sleep(0.05)

        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert time.monotonic() - started < 0.4
