"""Infrastructure engine CLI (iace).

Usage:
    iace validate                 # Check configuration files
    iace plan -o tfplan-dev       # Show (and save) the changes to make
    iace apply tfplan-dev         # Apply a saved plan
    iace apply                    # Plan, confirm, apply in one locked session
    iace destroy                  # Destroy everything in the workspace
    iace output                   # Show recorded outputs
    iace state list               # List recorded resources
    iace workspace new staging    # Create and select a workspace
    iace force-unlock LOCK_ID     # Break a stale lock

Exit codes:
    0  success, no changes
    1  error
    2  plan has changes / apply changed something
"""

from __future__ import annotations

import asyncio
import functools
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import ConfigurationError, EngineConfig
from .credentials import SecretlessViolationError
from .engine import Engine, protected_addresses
from .executor import ApplyResult, ResultCode, StepStatus
from .graph import GraphError, build_graph
from .guardrails import ConfirmationRequired, GuardrailViolation, confirmation_token
from .locking import LockError
from .main import run_cancellable, setup_logging
from .models import ActionKind, LockOperation, StateSnapshot, iter_references, to_python
from .plan import Plan, PlanFileError, PlanStep, PreventDestroyError, StalePlanError, StepOperation
from .provider import ProviderConfigurationError, ProviderError
from .spec_loader import Configuration, SpecLoadError, config_files, load_configuration
from .state import StateError
from .workspace import WorkspaceError, WorkspaceManager, validate_workspace_name

T = TypeVar("T")

# Errors reported as a one-line message with exit code 1
ENGINE_ERRORS: tuple[type[Exception], ...] = (
    ConfigurationError,
    SpecLoadError,
    GraphError,
    ProviderConfigurationError,
    ProviderError,
    LockError,
    StateError,
    StalePlanError,
    PlanFileError,
    PreventDestroyError,
    GuardrailViolation,
    WorkspaceError,
    SecretlessViolationError,
)

DEFAULT_CONFIG_DIR = "."

ACTION_SYMBOLS = {
    ActionKind.CREATE: "+",
    ActionKind.UPDATE: "~",
    ActionKind.DELETE: "-",
    ActionKind.REPLACE: "-/+",
}


class CliContext:
    """Lazily built engine objects shared by the commands of one invocation."""

    def __init__(self, workspace: str | None, config_dir: Path) -> None:
        self._workspace = workspace
        self.config_dir = config_dir
        self._config: EngineConfig | None = None
        self._engine: Engine | None = None

    @property
    def config(self) -> EngineConfig:
        if self._config is None:
            self._config = EngineConfig.from_env()
            setup_logging(self._config.log_level, self._config.json_logging)
        return self._config

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = Engine.from_config(self.config)
        return self._engine

    @property
    def workspaces(self) -> WorkspaceManager:
        return WorkspaceManager(
            self.engine.store,
            self.engine.locks,
            self.config.state_dir,
            self.engine.holder_id,
        )

    @property
    def workspace(self) -> str:
        """Workspace from --workspace, else the selected one."""
        if self._workspace:
            return validate_workspace_name(self._workspace)
        return self.workspaces.current()

    def configuration(self, required: bool = True) -> Configuration:
        """Load the configuration directory.

        Args:
            required: When False, a missing or empty directory yields an
                empty configuration.
        """
        if not required and (not self.config_dir.exists() or not config_files(self.config_dir)):
            return Configuration()
        return load_configuration(self.config_dir)


pass_cli_context = click.make_pass_decorator(CliContext)


def handle_errors(func: Callable[..., T]) -> Callable[..., T]:
    """Report engine errors as click errors (exit code 1)."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except ENGINE_ERRORS as e:
            raise click.ClickException(str(e)) from e

    return wrapper


def run_async(func: Callable[[asyncio.Event], Any]) -> Any:
    return asyncio.run(run_cancellable(func))


# =============================================================================
# Rendering
# =============================================================================


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    return json.dumps(to_python(value), sort_keys=True)


def render_step(step: PlanStep) -> list[str]:
    """Lines describing one changed resource."""
    action = step.action
    symbol = ACTION_SYMBOLS[action.kind]
    if action.kind == ActionKind.REPLACE:
        order = "create before destroy" if action.before_destroy else "destroy before create"
        header = f"{symbol} {step.key} will be replaced ({order})"
    elif step.forget:
        header = f"{symbol} {step.key} is gone and will be removed from state"
    else:
        verb = {ActionKind.CREATE: "created", ActionKind.UPDATE: "updated in place", ActionKind.DELETE: "destroyed"}
        header = f"{symbol} {step.key} will be {verb[action.kind]}"

    lines = [header]
    for change in step.diff.changes:
        after = "(known after apply)" if change.known_after_apply else _format_value(change.after)
        before = _format_value(change.before)
        marker = "  # forces replacement" if change.requires_replace else ""
        if action.kind == ActionKind.CREATE:
            lines.append(f"    {change.name} = {after}")
        elif action.kind == ActionKind.DELETE:
            lines.append(f"    {change.name} = {before}")
        else:
            lines.append(f"    {change.name}: {before} -> {after}{marker}")
    return lines


def render_plan(plan: Plan) -> None:
    if not plan.has_changes:
        click.echo(f"No changes. Workspace '{plan.workspace}' matches the configuration.")
        return

    click.echo(f"Workspace: {plan.workspace} (serial {plan.serial})")
    click.echo("")
    seen: set[str] = set()
    for step in plan.changes:
        # A replacement has two steps; describe the resource once
        if step.key in seen:
            continue
        seen.add(step.key)
        for line in render_step(step):
            click.echo(line)
        click.echo("")
    click.echo(str(plan.summary()))


def render_result(result: ApplyResult) -> None:
    counts = {StepOperation.CREATE: 0, StepOperation.UPDATE: 0, StepOperation.DELETE: 0}
    for step in result.steps:
        if step.status == StepStatus.SUCCEEDED and step.operation in counts:
            counts[step.operation] += 1
        if step.status == StepStatus.FAILED:
            click.echo(f"Error: {step.address} ({step.operation.value}): {step.error}", err=True)

    for label, addresses in (("Blocked", result.blocked), ("Not started", result.skipped)):
        for address in addresses:
            click.echo(f"{label}: {address}", err=True)
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
    if result.cancelled:
        click.echo("Apply was interrupted; running operations were allowed to finish.", err=True)

    summary = (
        f"Resources: {counts[StepOperation.CREATE]} added, "
        f"{counts[StepOperation.UPDATE]} changed, {counts[StepOperation.DELETE]} destroyed."
    )
    if result.code == ResultCode.FAILURE:
        click.echo(f"Apply failed! {summary}")
    else:
        click.echo(f"Apply complete! {summary}")


def render_outputs(snapshot: StateSnapshot) -> None:
    for name, value in sorted(snapshot.outputs.items()):
        click.echo(f"{name} = {_format_value(value)}")


def approve(plan: Plan, cli_ctx: CliContext, auto_approve: bool, confirm: str | None) -> str | None:
    """Ask the operator to approve a plan.

    Returns:
        The confirmation token for destructive plans on protected workspaces.

    Raises:
        click.ClickException: If the operator declines.
    """
    if not plan.has_changes:
        return confirm
    if not auto_approve:
        answer = click.prompt(
            "Do you want to perform these actions? Only 'yes' will be accepted",
            default="",
            show_default=False,
        )
        if answer.strip() != "yes":
            raise click.ClickException("Apply cancelled.")

    guardrails = cli_ctx.engine.guardrails
    if plan.summary().destroy and guardrails.is_protected(plan.workspace) and confirm is None:
        expected = confirmation_token(plan.workspace)
        if auto_approve:
            raise ConfirmationRequired(
                f"Workspace '{plan.workspace}' is protected. Pass --confirm {expected} to destroy resources.",
                expected,
            )
        confirm = click.prompt(f"Workspace '{plan.workspace}' is protected. Type {expected} to confirm")
    return confirm


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="iace")
@click.option("--workspace", "-w", help="Workspace to operate on (default: selected workspace)")
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(file_okay=True, dir_okay=True, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Configuration file or directory of *.yaml files",
)
@click.pass_context
def cli(ctx: click.Context, workspace: str | None, config_dir: Path) -> None:
    """Infrastructure engine CLI (iace).

    Plans and applies declared resources against versioned, locked state.

    \b
    Quick Start:
        iace workspace new dev
        iace plan -o tfplan-dev
        iace apply tfplan-dev
    """
    ctx.obj = CliContext(workspace, config_dir)


@cli.command()
@pass_cli_context
@handle_errors
def validate(cli_ctx: CliContext) -> None:
    """Check configuration files without touching state."""
    configuration = cli_ctx.configuration()
    build_graph(configuration.specs)

    declared = set(configuration.addresses)
    for name, value in configuration.outputs.items():
        for ref in iter_references(value):
            if ref.address not in declared:
                raise SpecLoadError(f"Output '{name}' references undeclared resource '{ref.address}'")

    registry = cli_ctx.engine.providers
    for spec in configuration.specs:
        registry.schema_for(spec.provider_id, spec.type)

    click.secho(
        f"Configuration is valid: {len(configuration.specs)} resource(s), "
        f"{len(configuration.outputs)} output(s).",
        fg="green",
    )


# =============================================================================
# Plan / Apply / Destroy
# =============================================================================


@cli.command()
@click.option("--out", "-o", "out", type=click.Path(dir_okay=False, path_type=Path), help="Save the plan to a file")
@click.option("--destroy", is_flag=True, help="Plan the destruction of every managed resource")
@click.option("--refresh/--no-refresh", default=None, help="Read real infrastructure before planning")
@pass_cli_context
@handle_errors
def plan(cli_ctx: CliContext, out: Path | None, destroy: bool, refresh: bool | None) -> None:
    """Show the changes needed to reach the configuration.

    Exits with 0 when there is nothing to do and 2 when the plan has changes.
    """
    configuration = cli_ctx.configuration(required=not destroy)
    workspace = cli_ctx.workspace

    async def compute(cancel: asyncio.Event) -> Plan:
        return await cli_ctx.engine.plan(
            workspace,
            configuration.specs,
            configuration.outputs,
            refresh=refresh,
            destroy=destroy,
        )

    result = run_async(compute)
    render_plan(result)
    if out is not None:
        result.save(out)
        click.echo(f"\nSaved the plan to: {out}")
        click.echo(f"To perform exactly these actions, run: iace apply {out}")
    sys.exit(2 if result.has_changes else 0)


@cli.command()
@click.argument("plan_file", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.option("--confirm", "confirm", help="Confirmation token for protected workspaces (DESTROY-<WORKSPACE>)")
@click.option("--refresh/--no-refresh", default=None, help="Read real infrastructure before planning")
@pass_cli_context
@handle_errors
def apply(
    cli_ctx: CliContext,
    plan_file: Path | None,
    auto_approve: bool,
    confirm: str | None,
    refresh: bool | None,
) -> None:
    """Apply a saved plan, or plan and apply in one locked session.

    A saved plan is applied as-is and is rejected if state changed since it
    was created.
    """
    workspace = cli_ctx.workspace

    if plan_file is not None:
        saved = Plan.load(plan_file)

        async def apply_saved(cancel: asyncio.Event) -> ApplyResult:
            return await cli_ctx.engine.apply(workspace, saved, confirm, cancel)

        result = run_async(apply_saved)
    else:
        configuration = cli_ctx.configuration()

        async def plan_and_apply(cancel: asyncio.Event) -> ApplyResult:
            async with cli_ctx.engine.session(workspace, LockOperation.APPLY) as session:
                computed = await session.plan(
                    configuration.specs,
                    configuration.outputs,
                    refresh=refresh,
                )
                render_plan(computed)
                token = approve(computed, cli_ctx, auto_approve, confirm)
                return await session.apply(computed, token, cancel)

        result = run_async(plan_and_apply)

    render_result(result)
    sys.exit(result.code.exit_code)


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.option("--confirm", "confirm", help="Confirmation token for protected workspaces (DESTROY-<WORKSPACE>)")
@pass_cli_context
@handle_errors
def destroy(cli_ctx: CliContext, auto_approve: bool, confirm: str | None) -> None:
    """Destroy every resource recorded in the workspace.

    Resources marked prevent_destroy in the configuration block the destroy.
    """
    workspace = cli_ctx.workspace
    configuration = cli_ctx.configuration(required=False)

    async def plan_and_destroy(cancel: asyncio.Event) -> ApplyResult:
        async with cli_ctx.engine.session(workspace, LockOperation.DESTROY) as session:
            computed = await session.plan(
                (),
                destroy=True,
                protected=protected_addresses(configuration.specs),
            )
            render_plan(computed)
            token = approve(computed, cli_ctx, auto_approve, confirm)
            return await session.apply(computed, token, cancel)

    result = run_async(plan_and_destroy)
    render_result(result)
    sys.exit(result.code.exit_code)


# =============================================================================
# Outputs and State
# =============================================================================


def _read_state(cli_ctx: CliContext, workspace: str) -> StateSnapshot:
    async def read(cancel: asyncio.Event) -> StateSnapshot | None:
        return await cli_ctx.engine.read_state(workspace)

    snapshot = run_async(read)
    if snapshot is None:
        raise click.ClickException(f"Workspace '{workspace}' has no state")
    return snapshot


@cli.command()
@click.argument("name", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print outputs as a JSON object")
@pass_cli_context
@handle_errors
def output(cli_ctx: CliContext, name: str | None, as_json: bool) -> None:
    """Show recorded outputs."""
    snapshot = _read_state(cli_ctx, cli_ctx.workspace)
    if name is not None:
        if name not in snapshot.outputs:
            raise click.ClickException(f"Output '{name}' not found")
        value = to_python(snapshot.outputs[name])
        click.echo(json.dumps(value, sort_keys=True) if as_json or not isinstance(value, str) else value)
        return
    if as_json:
        click.echo(json.dumps({k: to_python(v) for k, v in snapshot.outputs.items()}, indent=2, sort_keys=True))
        return
    if not snapshot.outputs:
        click.echo("No outputs recorded.")
        return
    render_outputs(snapshot)


@cli.group()
def state() -> None:
    """Inspect recorded state."""
    pass


@state.command("list")
@pass_cli_context
@handle_errors
def state_list(cli_ctx: CliContext) -> None:
    """List recorded resources (deposed instances include their key)."""
    snapshot = _read_state(cli_ctx, cli_ctx.workspace)
    for entity in snapshot.entities:
        click.echo(entity.key)


@state.command("show")
@click.argument("address")
@pass_cli_context
@handle_errors
def state_show(cli_ctx: CliContext, address: str) -> None:
    """Show the recorded attributes of one resource."""
    snapshot = _read_state(cli_ctx, cli_ctx.workspace)
    entity = snapshot.get(address)
    if entity is None:
        raise click.ClickException(f"Resource '{address}' is not in the state")
    click.echo(f"# {entity.key}")
    click.echo(f"provider = {json.dumps(entity.provider_id)}")
    for name, value in sorted(entity.attributes.items()):
        click.echo(f"{name} = {_format_value(value)}")
    if entity.dependencies:
        click.echo(f"dependencies = {json.dumps(list(entity.dependencies))}")


@cli.command("force-unlock")
@click.argument("lock_id")
@click.option("--force", "-f", is_flag=True, help="Do not ask for confirmation")
@pass_cli_context
@handle_errors
def force_unlock(cli_ctx: CliContext, lock_id: str, force: bool) -> None:
    """Remove a stale lock. The lock ID must match exactly.

    Only use this when the holder is known to be dead: a live holder loses
    its lock and its next state write fails.
    """
    workspace = cli_ctx.workspace
    if not force:
        answer = click.prompt(
            f"Do you really want to force-unlock workspace '{workspace}'? Only 'yes' will be accepted",
            default="",
            show_default=False,
        )
        if answer.strip() != "yes":
            raise click.ClickException("Force-unlock cancelled.")
    lock = cli_ctx.engine.locks.force_unlock(workspace, lock_id)
    click.secho(f"Lock {lock.lock_id} held by {lock.holder_id} was removed.", fg="green")


# =============================================================================
# Workspace Commands
# =============================================================================


@cli.group()
def workspace() -> None:
    """Manage workspaces: list, new, select, delete, show."""
    pass


@workspace.command("list")
@pass_cli_context
@handle_errors
def workspace_list(cli_ctx: CliContext) -> None:
    """List workspaces; the current one is marked with *."""
    manager = cli_ctx.workspaces
    current = cli_ctx.workspace
    for name in manager.list():
        click.echo(f"{'*' if name == current else ' '} {name}")


@workspace.command("show")
@pass_cli_context
@handle_errors
def workspace_show(cli_ctx: CliContext) -> None:
    """Print the current workspace."""
    click.echo(cli_ctx.workspace)


@workspace.command("new")
@click.argument("name")
@pass_cli_context
@handle_errors
def workspace_new(cli_ctx: CliContext, name: str) -> None:
    """Create a workspace and select it."""
    manager = cli_ctx.workspaces
    manager.create(name)
    manager.select(name)
    click.secho(f"Created and switched to workspace '{name}'.", fg="green")


@workspace.command("select")
@click.argument("name")
@pass_cli_context
@handle_errors
def workspace_select(cli_ctx: CliContext, name: str) -> None:
    """Switch to an existing workspace."""
    cli_ctx.workspaces.select(name)
    click.echo(f"Switched to workspace '{name}'.")


@workspace.command("delete")
@click.argument("name")
@click.option("--force", is_flag=True, help="Delete even if the workspace still manages resources")
@pass_cli_context
@handle_errors
def workspace_delete(cli_ctx: CliContext, name: str, force: bool) -> None:
    """Delete a workspace and its state."""
    cli_ctx.workspaces.delete(name, force=force)
    click.echo(f"Deleted workspace '{name}'.")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
