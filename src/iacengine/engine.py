"""Plan / Apply / Destroy boundary.

The engine wires the pure planning pipeline (graph -> diff -> plan) to the
stateful parts (state store, lock manager, executor) and enforces the order
of operations for every session:

1. Acquire the workspace lock (held for the whole session)
2. Read (or initialize) state
3. Plan, or check that a saved plan still matches state
4. Run guardrails
5. Execute, committing one snapshot per completed step
6. Log provenance and release the lock

Structural problems (graph errors, stale plans, guardrails) abort before
anything is changed. Provider failures are reported per step.
"""

from __future__ import annotations

import asyncio
import functools
import getpass
import logging
import os
import socket
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from .azure_blob import BlobLockManager, BlobStateStore, create_container_client
from .builtin_provider import BUILTIN_PROVIDER_ID, BuiltinProvider
from .config import EngineConfig, StateBackend
from .diff import DiffEngine
from .executor import ApplyExecutor, ApplyResult
from .graph import UnknownReferenceError, build_graph
from .guardrails import GuardrailEnforcer, GuardrailsConfig
from .locking import LocalLockManager, LockManager, MemoryLockManager
from .models import (
    AttributeValue,
    Lock,
    LockHolder,
    LockOperation,
    ResourceSpec,
    StateEntity,
    StateSnapshot,
    iter_references,
)
from .plan import Plan, PlanBuilder, StalePlanError
from .provenance import ProvenanceLogger
from .provider import ProviderRegistry
from .state import LocalStateStore, MemoryStateStore, StateNotFoundError, StateStore
from .workspace import KeyLayout

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    """``user@host:pid`` of the current process."""
    try:
        user = getpass.getuser()
    except OSError:
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


def default_registry(load_entry_points: bool = True) -> ProviderRegistry:
    """Registry with the bundled provider and any installed third-party providers."""
    registry = ProviderRegistry({BUILTIN_PROVIDER_ID: BuiltinProvider()})
    if load_entry_points:
        registry.load_entry_points()
    return registry


def create_backends(config: EngineConfig) -> tuple[StateStore, LockManager]:
    """Create the state store and lock manager for the configured backend."""
    layout = KeyLayout.from_config(config)
    if config.backend == StateBackend.MEMORY:
        return MemoryStateStore(layout), MemoryLockManager(layout)
    if config.backend == StateBackend.AZURE_BLOB:
        container = create_container_client(config)
        return BlobStateStore(container, layout), BlobLockManager(container, layout)
    return LocalStateStore(config.state_dir, layout), LocalLockManager(config.state_dir, layout)


async def _run_sync(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Run blocking backend I/O off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class EngineSession:
    """Plan and apply against one workspace while its lock is held."""

    def __init__(self, engine: Engine, workspace: str, lock: Lock) -> None:
        self.engine = engine
        self.workspace = workspace
        self.lock = lock

    async def read_state(self) -> StateSnapshot:
        """Read the workspace's state, creating an empty one if absent."""
        return await _run_sync(self.engine.store.initialize, self.workspace)

    async def refresh(self, snapshot: StateSnapshot) -> dict[str, StateEntity | None]:
        """Read the real attributes of every recorded resource.

        Raises:
            ProviderError: If a provider cannot read a resource.
        """
        loop = asyncio.get_running_loop()
        registry = self.engine.providers

        async def read(entity: StateEntity) -> tuple[str, StateEntity | None]:
            provider = registry.get(entity.provider_id)
            return entity.key, await loop.run_in_executor(None, provider.read_resource, entity)

        results = await asyncio.gather(*(read(entity) for entity in snapshot.entities))
        refreshed = dict(results)
        gone: list[str] = []
        drifted: list[str] = []
        for entity in snapshot.entities:
            current = refreshed[entity.key]
            if current is None:
                gone.append(entity.key)
            elif current.attributes != entity.attributes:
                drifted.append(entity.key)
        logger.info(
            "Refreshed state",
            extra={"workspace": self.workspace, "entities": len(refreshed), "gone": gone, "drifted": drifted},
        )
        return refreshed

    async def plan(
        self,
        specs: Iterable[ResourceSpec],
        outputs: dict[str, AttributeValue] | None = None,
        refresh: bool | None = None,
        destroy: bool = False,
        protected: Iterable[str] = (),
    ) -> Plan:
        """Compute a plan against the current state.

        Args:
            specs: Declared resources (ignored for destroy plans).
            outputs: Declared outputs (ignored for destroy plans).
            refresh: Read real infrastructure first; None uses the config.
            destroy: Plan the destruction of everything in state.
            protected: Addresses with prevent_destroy set.

        Raises:
            GraphError: If the configuration graph is invalid.
            PreventDestroyError: If a protected resource would be destroyed.
            ProviderConfigurationError: If a resource's provider is unknown.
        """
        specs = [] if destroy else list(specs)
        outputs = {} if destroy else dict(outputs or {})
        declared = {spec.address for spec in specs}
        for name, value in outputs.items():
            for ref in iter_references(value):
                if ref.address not in declared:
                    raise UnknownReferenceError(f"Output '{name}' references undeclared resource '{ref.address}'")

        snapshot = await self.read_state()
        if refresh is None:
            refresh = self.engine.config.refresh_before_plan
        refreshed = await self.refresh(snapshot) if refresh else None

        graph = build_graph(specs, snapshot)
        diffs = DiffEngine(self.engine.providers).diff(graph, refreshed)
        return PlanBuilder().build(
            graph,
            diffs,
            self.workspace,
            snapshot,
            outputs=outputs,
            destroy=destroy,
            protected=protected,
        )

    async def apply(
        self,
        plan: Plan,
        confirmation: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply a plan computed against this workspace.

        Raises:
            StalePlanError: If state changed since the plan was computed.
            GuardrailViolation: If a guardrail blocks the plan.
        """
        try:
            snapshot = await _run_sync(self.engine.store.read, self.workspace)
        except StateNotFoundError as e:
            raise StalePlanError(f"State for workspace '{self.workspace}' no longer exists") from e
        plan.check_current(self.workspace, snapshot)
        self.engine.guardrails.check_plan(plan, confirmation)

        provenance_logger = self.engine.provenance
        provenance = provenance_logger.create_provenance(plan, self.lock.holder_id)
        start = time.monotonic()
        try:
            result = await self.engine.executor.execute(plan, snapshot, self.lock, cancel)
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        else:
            provenance_logger.record_result(provenance, result)
        finally:
            provenance.duration_seconds = round(time.monotonic() - start, 3)
            provenance_logger.log_provenance(provenance)
        return result


class Engine:
    """Entry point for planning and applying configurations.

    Args:
        config: Engine configuration.
        providers: Provider registry.
        store: State store.
        locks: Lock manager.
        guardrails: Guardrail enforcer (defaults to environment configuration).
        holder_id: Identity recorded on locks.
    """

    def __init__(
        self,
        config: EngineConfig,
        providers: ProviderRegistry,
        store: StateStore,
        locks: LockManager,
        guardrails: GuardrailEnforcer | None = None,
        holder_id: str | None = None,
    ) -> None:
        self.config = config
        self.providers = providers
        self.store = store
        self.locks = locks
        self.guardrails = guardrails or GuardrailEnforcer(GuardrailsConfig.from_env())
        self.holder_id = holder_id or default_holder_id()
        self.provenance = ProvenanceLogger()
        self.executor = ApplyExecutor(
            providers,
            store,
            locks,
            parallelism=config.parallelism,
            verify_lock=config.verify_lock_on_write,
        )

    @classmethod
    def from_config(cls, config: EngineConfig, providers: ProviderRegistry | None = None) -> Engine:
        store, locks = create_backends(config)
        return cls(config, providers or default_registry(), store, locks)

    @asynccontextmanager
    async def session(
        self,
        workspace: str,
        operation: LockOperation,
        info: str = "",
    ) -> AsyncIterator[EngineSession]:
        """Hold the workspace lock for a plan-then-apply session.

        Raises:
            LockHeldError: If the lock is held by someone else.
        """
        holder = LockHolder(holder_id=self.holder_id, operation=operation, info=info)
        timeout = self.config.lock_timeout_seconds or None
        lock: Lock = await _run_sync(self.locks.acquire, workspace, holder, timeout)
        try:
            yield EngineSession(self, workspace, lock)
        finally:
            await _run_sync(self.locks.release, lock)

    async def plan(
        self,
        workspace: str,
        specs: Iterable[ResourceSpec],
        outputs: dict[str, AttributeValue] | None = None,
        refresh: bool | None = None,
        destroy: bool = False,
    ) -> Plan:
        """Compute a plan under a short-lived lock."""
        specs = list(specs)
        async with self.session(workspace, LockOperation.PLAN) as session:
            return await session.plan(
                specs,
                outputs,
                refresh=refresh,
                destroy=destroy,
                protected=protected_addresses(specs) if destroy else (),
            )

    async def apply(
        self,
        workspace: str,
        plan: Plan,
        confirmation: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply a previously computed (possibly saved) plan."""
        async with self.session(workspace, LockOperation.APPLY) as session:
            return await session.apply(plan, confirmation, cancel)

    async def destroy(
        self,
        workspace: str,
        specs: Iterable[ResourceSpec] = (),
        confirmation: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Destroy every resource recorded in the workspace.

        Args:
            specs: Current configuration, used only to honor prevent_destroy.
        """
        async with self.session(workspace, LockOperation.DESTROY) as session:
            plan = await session.plan((), destroy=True, protected=protected_addresses(specs))
            return await session.apply(plan, confirmation, cancel)

    async def read_state(self, workspace: str) -> StateSnapshot | None:
        """Read state without locking; None if the workspace has none."""
        try:
            return await _run_sync(self.store.read, workspace)
        except StateNotFoundError:
            return None


def protected_addresses(specs: Iterable[ResourceSpec]) -> list[str]:
    return sorted(spec.address for spec in specs if spec.lifecycle.prevent_destroy)
