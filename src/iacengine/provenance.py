"""Apply provenance for audit and compliance.

Every apply session is stamped with a record that answers:
- "Which state serials did this apply move between?"
- "Who ran it, from which commit, with which engine version?"
- "What was changed, what failed, what was blocked?"

Records are emitted as one structured log line so they can be queried from
whatever collects the JSON logs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .executor import ApplyResult, StepStatus
from .plan import Plan

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("IACE_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Planned changes, counted per resource."""

    add_count: int = 0
    change_count: int = 0
    destroy_count: int = 0
    replace_count: int = 0

    @property
    def total_significant(self) -> int:
        """Resources touched (a replacement counts once)."""
        return self.add_count + self.change_count + self.destroy_count - self.replace_count


@dataclass
class ApplyProvenance:
    """Complete provenance record of one apply session."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    workspace: str = ""
    holder_id: str = ""
    engine_version: str = ENGINE_VERSION

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    # State history
    lineage: str = ""
    serial_before: int = 0
    serial_after: int = 0
    destroy: bool = False

    # Outcome
    result: str = ""
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    status_counts: dict[str, int] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Builds and logs provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")

    def create_provenance(self, plan: Plan, holder_id: str) -> ApplyProvenance:
        """Start a provenance record for applying plan."""
        summary = plan.summary()
        return ApplyProvenance(
            workspace=plan.workspace,
            holder_id=holder_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            lineage=plan.lineage,
            serial_before=plan.serial,
            serial_after=plan.serial,
            destroy=plan.destroy,
            change_summary=ChangeProvenanceSummary(
                add_count=summary.add,
                change_count=summary.change,
                destroy_count=summary.destroy,
                replace_count=summary.replace,
            ),
        )

    def record_result(self, provenance: ApplyProvenance, result: ApplyResult) -> None:
        """Copy the outcome of an apply into the record."""
        provenance.serial_after = result.serial_after
        provenance.result = result.code.value
        provenance.status_counts = result.counts()
        provenance.failed = list(result.failed)
        provenance.blocked = list(result.blocked)
        if result.error:
            provenance.error = result.error
            provenance.error_type = "StateWriteError"

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record.

        This is the primary audit log of an apply.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.failed or provenance.blocked:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flattened for easier querying
                "workspace": provenance.workspace,
                "result": provenance.result,
                "serial_before": provenance.serial_before,
                "serial_after": provenance.serial_after,
                "changes_applied": provenance.status_counts.get(StepStatus.SUCCEEDED.value, 0),
                "git_commit": provenance.git_commit_sha,
                "engine_version": provenance.engine_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )
