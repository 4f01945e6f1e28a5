"""Concurrent plan execution.

STEP STATES:
    Pending -> Running -> Succeeded | Failed
    Pending -> Blocked      (a predecessor failed or was blocked)
    Pending -> Skipped      (no-op step, or never dispatched after cancellation)

CONCURRENCY:
Steps become ready when their count of unfinished predecessors drops to zero.
Counters are only touched on the event loop when a step completes, which is
the single hand-off point, so a step can never be dispatched twice. Provider
calls are synchronous and run on a dedicated thread pool; a semaphore bounds
how many run at once.

STATE WRITES:
Every successful operation is committed immediately as its own snapshot
(serial + 1) with a compare-and-swap against the serial this session last
wrote. Writes are serialized by an asyncio.Lock. A conflict, or losing the
workspace lock, stops dispatching; work already committed is never undone.

SAFETY: the executor performs no retries. A failed step blocks everything
that depends on it and the session reports exactly what happened.
"""

from __future__ import annotations

import asyncio
import functools
import heapq
import logging
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from pydantic import BaseModel, ConfigDict

from .config import DEFAULT_PARALLELISM
from .locking import LockError, LockManager
from .models import (
    ActionKind,
    AttributeValue,
    ChangeAction,
    ListValue,
    Lock,
    MapValue,
    Reference,
    StateEntity,
    StateSnapshot,
)
from .plan import Plan, PlanStep, StepOperation
from .provider import ProviderError, ProviderRegistry
from .state import StateError, StateStore

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Final (or current) status of one plan step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class ResultCode(str, Enum):
    """Outcome of an engine operation, mapped to process exit codes."""

    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    CHANGES_APPLIED = "changes_applied"
    FAILURE = "failure"

    @property
    def exit_code(self) -> int:
        return {
            ResultCode.SUCCESS: 0,
            ResultCode.NO_CHANGES: 0,
            ResultCode.CHANGES_APPLIED: 2,
            ResultCode.FAILURE: 1,
        }[self]


class UnresolvedReferenceError(Exception):
    """Raised when a reference cannot be resolved against the working state."""

    pass


class StepResult(BaseModel):
    """How one step ended."""

    model_config = ConfigDict(frozen=True)

    index: int
    key: str
    address: str
    operation: StepOperation
    status: StepStatus
    error: str | None = None


class ApplyResult(BaseModel):
    """Complete report of an apply session.

    ``skipped`` only lists steps that had work to do but were never
    dispatched; no-op steps are reported per step but not listed there.
    """

    model_config = ConfigDict(frozen=True)

    workspace: str
    lineage: str
    serial_before: int
    serial_after: int
    steps: tuple[StepResult, ...] = ()
    applied: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    outputs_written: bool = False
    cancelled: bool = False
    # Session-level failure (state conflict, lost lock)
    error: str | None = None

    @property
    def code(self) -> ResultCode:
        if self.error or self.failed or self.blocked or self.skipped:
            return ResultCode.FAILURE
        if self.applied or self.outputs_written:
            return ResultCode.CHANGES_APPLIED
        return ResultCode.NO_CHANGES

    @property
    def succeeded(self) -> bool:
        return self.code != ResultCode.FAILURE

    def status_of(self, address: str) -> list[StepStatus]:
        """Statuses of every step for an address (two for a replacement)."""
        return [s.status for s in self.steps if s.address == address]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts


def resolve_references(value: AttributeValue, snapshot: StateSnapshot) -> AttributeValue:
    """Replace every reference in value with the referenced recorded attribute.

    Raises:
        UnresolvedReferenceError: If the target entity or attribute is missing.
    """
    match value:
        case Reference():
            entity = snapshot.get(value.address)
            if entity is None:
                raise UnresolvedReferenceError(f"{value.address} is not recorded in state")
            if value.attribute not in entity.attributes:
                raise UnresolvedReferenceError(f"{value.target} has no recorded value")
            return entity.attributes[value.attribute]
        case ListValue():
            return ListValue(items=tuple(resolve_references(i, snapshot) for i in value.items))
        case MapValue():
            return MapValue(entries={k: resolve_references(v, snapshot) for k, v in value.entries.items()})
    return value


class _Session:
    """Mutable bookkeeping of one execute() call."""

    def __init__(self, plan: Plan, snapshot: StateSnapshot) -> None:
        self.plan = plan
        self.working = snapshot
        self.status = [StepStatus.PENDING] * len(plan.steps)
        self.errors: dict[int, str] = {}
        self.remaining = [len(step.depends_on) for step in plan.steps]
        self.successors: list[list[int]] = [[] for _ in plan.steps]
        for step in plan.steps:
            for dependency in step.depends_on:
                self.successors[dependency].append(step.index)
        # Deposed keys of old instances kept alive by create-before-destroy
        self.deposed: dict[str, str] = {}
        self.abort_reason: str | None = None


class ApplyExecutor:
    """Executes plans against providers and records every result in state.

    Args:
        providers: Registry used to look up each step's provider.
        store: State store receiving one write per successful step.
        locks: Lock manager used to verify ownership before writes.
        parallelism: Maximum concurrent provider operations.
        verify_lock: Re-check lock ownership before every state write.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        locks: LockManager | None = None,
        parallelism: int = DEFAULT_PARALLELISM,
        verify_lock: bool = True,
    ) -> None:
        self._providers = providers
        self._store = store
        self._locks = locks
        self._parallelism = parallelism
        self._verify_lock = verify_lock

    async def execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        lock: Lock | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Execute a plan.

        Args:
            plan: Plan to execute; must have been checked against snapshot.
            snapshot: Current state, the base of the first write.
            lock: Workspace lock held by the session.
            cancel: Set to stop dispatching new steps.

        Returns:
            ApplyResult describing every step.
        """
        session = _Session(plan, snapshot)
        semaphore = asyncio.Semaphore(self._parallelism)
        write_lock = asyncio.Lock()
        pool = ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="iace-apply")
        cancelled = False

        logger.info(
            "Starting apply",
            extra={
                "workspace": plan.workspace,
                "serial": snapshot.serial,
                "steps": len(plan.steps),
                "changes": len(plan.changes),
                "parallelism": self._parallelism,
            },
        )

        ready = [i for i, count in enumerate(session.remaining) if count == 0]
        heapq.heapify(ready)
        in_flight: dict[asyncio.Task[str | None], int] = {}

        try:
            while ready or in_flight:
                while ready:
                    if cancel is not None and cancel.is_set():
                        cancelled = True
                        break
                    if session.abort_reason is not None:
                        break
                    index = heapq.heappop(ready)
                    step = plan.steps[index]
                    if not step.is_change:
                        session.status[index] = StepStatus.SKIPPED
                        self._release_successors(session, index, ready)
                        continue
                    session.status[index] = StepStatus.RUNNING
                    task = asyncio.create_task(
                        self._run_step(session, step, lock, semaphore, write_lock, pool),
                        name=f"apply-{step.key}-{step.phase.value}",
                    )
                    in_flight[task] = index

                if not in_flight:
                    break
                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    index = in_flight.pop(task)
                    try:
                        error = task.result()
                    except Exception as e:
                        # Whether state recorded this step is unknown; stop dispatching
                        label = plan.steps[index].describe()
                        logger.exception("Unexpected error in apply step", extra={"step": label})
                        if session.abort_reason is None:
                            session.abort_reason = f"Unexpected error in {label}: {e}"
                        error = f"Unexpected error: {e}"
                    if error is None:
                        session.status[index] = StepStatus.SUCCEEDED
                        self._release_successors(session, index, ready)
                    else:
                        session.status[index] = StepStatus.FAILED
                        session.errors[index] = error
                        self._block_descendants(session, index)
        finally:
            # Only reached with tasks in flight when this coroutine is cancelled
            if in_flight:
                for task in in_flight:
                    task.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)
            pool.shutdown(wait=False, cancel_futures=True)

        # Never dispatched: cancellation or abort
        for index, status in enumerate(session.status):
            if status == StepStatus.PENDING:
                session.status[index] = StepStatus.SKIPPED

        outputs_written = False
        if session.abort_reason is None:
            outputs_written = await self._write_outputs(session, lock, write_lock)

        result = self._build_result(session, snapshot, outputs_written, cancelled)
        log = logger.info if result.succeeded else logger.error
        log(
            "Apply finished",
            extra={
                "workspace": plan.workspace,
                "result": result.code.value,
                "serial_before": result.serial_before,
                "serial_after": result.serial_after,
                "counts": result.counts(),
                "error": result.error,
            },
        )
        return result

    def _release_successors(self, session: _Session, index: int, ready: list[int]) -> None:
        for successor in session.successors[index]:
            session.remaining[successor] -= 1
            if session.remaining[successor] == 0 and session.status[successor] == StepStatus.PENDING:
                heapq.heappush(ready, successor)

    @staticmethod
    def _abort(session: _Session, label: str, error: Exception) -> None:
        if session.abort_reason is None:
            session.abort_reason = f"State write failed after {label}: {error}"

    def _block_descendants(self, session: _Session, index: int) -> None:
        stack = list(session.successors[index])
        while stack:
            current = stack.pop()
            if session.status[current] != StepStatus.PENDING:
                continue
            session.status[current] = StepStatus.BLOCKED
            session.errors[current] = f"Blocked by failure of {session.plan.steps[index].describe()}"
            stack.extend(session.successors[current])

    async def _run_step(
        self,
        session: _Session,
        step: PlanStep,
        lock: Lock | None,
        semaphore: asyncio.Semaphore,
        write_lock: asyncio.Lock,
        pool: ThreadPoolExecutor,
    ) -> str | None:
        """Run one step. Returns None on success, otherwise the error message."""
        async with semaphore:
            if step.forget:
                logger.info("Forgetting resource that no longer exists", extra={"address": step.key})
                return await self._commit(
                    session, step.describe(), lock, write_lock, lambda s: s.without_entity(step.key)
                )

            try:
                action, resolved, prior = self._prepare(session, step)
            except UnresolvedReferenceError as e:
                logger.error("Cannot resolve references", extra={"address": step.address, "error": str(e)})
                return f"Unresolved reference: {e}"

            source = step.spec or prior or step.prior
            provider_id = source.provider_id if source else "builtin"
            loop = asyncio.get_running_loop()
            logger.info(
                "Applying step",
                extra={"address": step.address, "operation": step.operation.value, "provider_id": provider_id},
            )
            try:
                provider = self._providers.get(provider_id)
                entity = await loop.run_in_executor(
                    pool,
                    functools.partial(provider.apply_operation, action, step.spec, resolved, prior),
                )
            except ProviderError as e:
                logger.error(
                    "Provider operation failed",
                    extra={"address": step.address, "operation": step.operation.value, "error": str(e)},
                )
                return str(e)
            except Exception as e:
                # Provider bugs fail the step, never the session
                logger.exception(
                    "Unexpected provider error",
                    extra={"address": step.address, "operation": step.operation.value},
                )
                return f"Unexpected provider error: {e}"

            try:
                build = self._state_change(session, step, entity)
            except ProviderError as e:
                logger.error("Invalid provider result", extra={"address": step.address, "error": str(e)})
                return str(e)
            return await self._commit(session, step.describe(), lock, write_lock, build)

    def _prepare(
        self, session: _Session, step: PlanStep
    ) -> tuple[ChangeAction, dict[str, AttributeValue], StateEntity | None]:
        """Provider action, resolved attributes and prior entity of a step."""
        if step.operation == StepOperation.DELETE:
            key = session.deposed.get(step.key, step.key)
            return ChangeAction.delete(), {}, session.working.get(key) or step.prior

        resolved = {
            name: resolve_references(value, session.working) for name, value in step.diff.planned.items()
        }
        if step.operation == StepOperation.UPDATE:
            return ChangeAction.update(), resolved, session.working.get(step.key) or step.prior
        return ChangeAction.create(), resolved, None

    def _state_change(
        self, session: _Session, step: PlanStep, entity: StateEntity | None
    ) -> Callable[[StateSnapshot], StateSnapshot]:
        """Build the snapshot transition recording a completed operation.

        Raises:
            ProviderError: If the provider returned an unusable entity.
        """
        if step.operation == StepOperation.DELETE:
            key = session.deposed.get(step.key, step.key)
            return lambda s: s.without_entity(key)

        if entity is None:
            raise ProviderError(f"Provider returned no entity for {step.operation.value}", step.address)
        if entity.address != step.address:
            raise ProviderError(
                f"Provider returned entity for {entity.address}, expected {step.address}", step.address
            )
        assert step.spec is not None
        recorded = entity.model_copy(
            update={
                "provider_id": step.spec.provider_id,
                "dependencies": tuple(
                    sorted({ref.address for ref in step.spec.references()} | set(step.spec.depends_on))
                ),
                "deposed": None,
            }
        )

        cbd_create = (
            step.operation == StepOperation.CREATE
            and step.action.kind == ActionKind.REPLACE
            and step.action.before_destroy
        )
        if not cbd_create:
            return lambda s: s.with_entity(recorded)

        def depose(s: StateSnapshot) -> StateSnapshot:
            old = s.get(step.key)
            if old is None:
                return s.with_entity(recorded)
            deposed_key = uuid.uuid4().hex[:8]
            session.deposed[step.key] = f"{step.key}~{deposed_key}"
            return s.with_changes(
                remove=(step.key,),
                add=(old.model_copy(update={"deposed": deposed_key}), recorded),
            )

        return depose

    async def _commit(
        self,
        session: _Session,
        label: str,
        lock: Lock | None,
        write_lock: asyncio.Lock,
        build: Callable[[StateSnapshot], StateSnapshot],
    ) -> str | None:
        """CAS-write the successor snapshot. Returns None or an error message."""
        loop = asyncio.get_running_loop()
        async with write_lock:
            try:
                if self._verify_lock and self._locks is not None and lock is not None:
                    await loop.run_in_executor(None, self._locks.verify, lock)
                successor = build(session.working)
                await loop.run_in_executor(
                    None,
                    self._store.write,
                    session.plan.workspace,
                    successor,
                    session.working.serial,
                )
            except (StateError, LockError) as e:
                self._abort(session, label, e)
                # SAFETY: the real operation happened but is not recorded
                logger.error(
                    "Operation completed but state could not be written; stopping apply",
                    extra={
                        "step": label,
                        "serial": session.working.serial,
                        "error": str(e),
                    },
                )
                return str(e)
            except Exception as e:
                # Backend I/O failures end the session like a conflict
                self._abort(session, label, e)
                logger.exception(
                    "Operation completed but state backend failed; stopping apply",
                    extra={"step": label, "serial": session.working.serial},
                )
                return f"State backend error: {e}"
            session.working = successor
        logger.info(
            "Recorded step",
            extra={"step": label, "serial": successor.serial},
        )
        return None

    async def _write_outputs(self, session: _Session, lock: Lock | None, write_lock: asyncio.Lock) -> bool:
        """Resolve declared outputs against the final state; write them if changed."""
        outputs: dict[str, AttributeValue] = {}
        for name, value in session.plan.outputs.items():
            try:
                outputs[name] = resolve_references(value, session.working)
            except UnresolvedReferenceError as e:
                logger.warning("Output not resolvable, keeping previous value", extra={"output": name, "error": str(e)})
                if name in session.working.outputs:
                    outputs[name] = session.working.outputs[name]
        if dict(sorted(outputs.items())) == session.working.outputs:
            return False

        error = await self._commit(session, "outputs", lock, write_lock, lambda s: s.with_outputs(outputs))
        return error is None

    def _build_result(
        self,
        session: _Session,
        snapshot: StateSnapshot,
        outputs_written: bool,
        cancelled: bool,
    ) -> ApplyResult:
        steps = tuple(
            StepResult(
                index=step.index,
                key=step.key,
                address=step.address,
                operation=step.operation,
                status=session.status[step.index],
                error=session.errors.get(step.index),
            )
            for step in session.plan.steps
        )

        def addresses(status: StepStatus) -> tuple[str, ...]:
            return tuple(
                sorted({r.key for r in steps if r.status == status and r.operation != StepOperation.NOOP})
            )

        return ApplyResult(
            workspace=session.plan.workspace,
            lineage=snapshot.lineage,
            serial_before=snapshot.serial,
            serial_after=session.working.serial,
            steps=steps,
            applied=addresses(StepStatus.SUCCEEDED),
            failed=addresses(StepStatus.FAILED),
            blocked=addresses(StepStatus.BLOCKED),
            skipped=addresses(StepStatus.SKIPPED),
            outputs_written=outputs_written,
            cancelled=cancelled,
            error=session.abort_reason,
        )
