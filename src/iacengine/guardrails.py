"""Blast radius guardrails checked before any apply.

DESIGN PHILOSOPHY:
- Fail closed: when in doubt, block the apply
- Kill switch: central control to halt every apply
- Change budget: cap how much one apply may change or destroy
- Protected workspaces: destroying anything there needs explicit,
  workspace-specific confirmation (``DESTROY-PROD`` for ``prod``)

Guardrails run after planning and before the first provider call, so a
violation never leaves a partially applied plan behind.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

from .plan import Plan

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_WORKSPACES = ["prod"]


class GuardrailViolation(Exception):
    """Raised when a guardrail check fails."""

    pass


class KillSwitchActive(GuardrailViolation):
    """Raised when the kill switch is enabled."""

    pass


class WorkspaceNotAllowed(GuardrailViolation):
    """Raised when the target workspace is denied or not allowlisted."""

    pass


class ChangeLimitViolation(GuardrailViolation):
    """Raised when a plan exceeds the per-apply change budget."""

    pass


class ConfirmationRequired(GuardrailViolation):
    """Raised when a destructive plan on a protected workspace is not confirmed."""

    def __init__(self, message: str, expected: str) -> None:
        super().__init__(message)
        self.expected = expected


def confirmation_token(workspace: str) -> str:
    """Token an operator must type to destroy resources in a protected workspace."""
    return f"DESTROY-{workspace.upper()}"


@dataclass(frozen=True)
class GuardrailsConfig:
    """Configuration for apply guardrails.

    SECURITY: these limits come from the environment of the process running
    the apply; configuration files cannot relax them.
    """

    kill_switch_enabled: bool = False

    # Workspace allow/deny lists; patterns may use * wildcards
    allowed_workspaces: list[str] = field(default_factory=list)
    denied_workspaces: list[str] = field(default_factory=list)
    protected_workspaces: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_WORKSPACES))

    # 0 means unlimited
    max_changes_per_apply: int = 0
    max_destroys_per_apply: int = 0

    @classmethod
    def from_env(cls) -> GuardrailsConfig:
        """Load guardrails configuration from environment.

        Environment Variables:
            KILL_SWITCH: If "true", blocks all apply operations
            ALLOWED_WORKSPACES: Comma-separated workspace patterns (empty = all)
            DENIED_WORKSPACES: Comma-separated workspace patterns
            PROTECTED_WORKSPACES: Comma-separated patterns needing destroy
                confirmation (default: prod)
            MAX_CHANGES_PER_APPLY: Max resources changed by one apply (default: 0, unlimited)
            MAX_DESTROYS_PER_APPLY: Max resources destroyed by one apply (default: 0, unlimited)
        """

        def get_list(key: str, default: list[str] | None = None) -> list[str]:
            value = os.environ.get(key)
            if value is None:
                return list(default or [])
            return [item.strip() for item in value.split(",") if item.strip()]

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            kill_switch_enabled=get_bool("KILL_SWITCH", False),
            allowed_workspaces=get_list("ALLOWED_WORKSPACES"),
            denied_workspaces=get_list("DENIED_WORKSPACES"),
            protected_workspaces=get_list("PROTECTED_WORKSPACES", DEFAULT_PROTECTED_WORKSPACES),
            max_changes_per_apply=get_int("MAX_CHANGES_PER_APPLY", 0),
            max_destroys_per_apply=get_int("MAX_DESTROYS_PER_APPLY", 0),
        )


class GuardrailEnforcer:
    """Enforces guardrails before any apply.

    SECURITY: every apply MUST pass check_plan() before its first provider call.

    Usage:
        enforcer = GuardrailEnforcer(GuardrailsConfig.from_env())
        enforcer.check_plan(plan, confirmation=None)
    """

    def __init__(self, config: GuardrailsConfig) -> None:
        self._config = config

    @property
    def config(self) -> GuardrailsConfig:
        return self._config

    def check_kill_switch(self) -> None:
        """Check if kill switch is active.

        Raises:
            KillSwitchActive: If kill switch is enabled.
        """
        # Environment is re-read so an operator can flip it without a restart
        env_kill_switch = os.environ.get("KILL_SWITCH", "").lower() in ("true", "1", "yes")

        if self._config.kill_switch_enabled or env_kill_switch:
            logger.warning(
                "KILL_SWITCH: Apply operations blocked",
                extra={
                    "config_enabled": self._config.kill_switch_enabled,
                    "env_enabled": env_kill_switch,
                },
            )
            raise KillSwitchActive(
                "Kill switch is active. All apply operations are blocked. "
                "Set KILL_SWITCH=false to resume."
            )

    def check_workspace(self, workspace: str) -> None:
        """Check the workspace against the allow and deny lists.

        Raises:
            WorkspaceNotAllowed: If the workspace is denied or not allowlisted.
        """
        for pattern in self._config.denied_workspaces:
            if self._matches(workspace, pattern):
                logger.error(
                    "GUARDRAIL: Denied workspace",
                    extra={"workspace": workspace, "pattern": pattern},
                )
                raise WorkspaceNotAllowed(f"Workspace '{workspace}' is denied by pattern '{pattern}'")

        allowed = self._config.allowed_workspaces
        if allowed and not any(self._matches(workspace, p) for p in allowed):
            logger.error(
                "GUARDRAIL: Workspace not in allowlist",
                extra={"workspace": workspace, "allowed": allowed},
            )
            raise WorkspaceNotAllowed(f"Workspace '{workspace}' is not in the allowed list")

    def is_protected(self, workspace: str) -> bool:
        return any(self._matches(workspace, p) for p in self._config.protected_workspaces)

    def check_plan(self, plan: Plan, confirmation: str | None = None) -> None:
        """Run every guardrail against a plan.

        Args:
            plan: Plan about to be applied.
            confirmation: Operator confirmation for destructive plans on
                protected workspaces.

        Raises:
            GuardrailViolation: If any guardrail fails.
        """
        self.check_kill_switch()
        self.check_workspace(plan.workspace)

        summary = plan.summary()
        changed = summary.total
        violations: list[str] = []
        limit = self._config.max_changes_per_apply
        if limit and changed > limit:
            violations.append(f"{changed} resource changes exceed limit ({limit})")
        limit = self._config.max_destroys_per_apply
        if limit and summary.destroy > limit:
            violations.append(f"{summary.destroy} resource destructions exceed limit ({limit})")
        if violations:
            logger.error(
                "GUARDRAIL: Change budget exceeded",
                extra={"workspace": plan.workspace, "violations": violations},
            )
            raise ChangeLimitViolation(f"Change budget exceeded: {'; '.join(violations)}")

        if summary.destroy and self.is_protected(plan.workspace):
            expected = confirmation_token(plan.workspace)
            if confirmation != expected:
                logger.warning(
                    "GUARDRAIL: Destructive plan on protected workspace needs confirmation",
                    extra={"workspace": plan.workspace, "destroy": summary.destroy},
                )
                raise ConfirmationRequired(
                    f"Plan destroys {summary.destroy} resource(s) in protected workspace "
                    f"'{plan.workspace}'. Confirm with '{expected}'.",
                    expected,
                )
            logger.warning(
                "Destructive plan on protected workspace confirmed",
                extra={"workspace": plan.workspace, "destroy": summary.destroy},
            )

    def _matches(self, value: str, pattern: str) -> bool:
        """Case-insensitive match where * matches any run of characters."""
        if "*" in pattern:
            regex = ".*".join(re.escape(part) for part in pattern.split("*"))
            return bool(re.match(f"^{regex}$", value, re.IGNORECASE))
        return value.lower() == pattern.lower()
