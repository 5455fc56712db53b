"""Pipeline Pydantic models — phase definitions, gate results and persisted state.

Key exports:
    Definition models: PhaseDefinition
    Result models: PhaseResult, GateResult, GateStatus
    Persisted state: CheckpointState, FleetCheckpointState, FleetIssueRecord
    Enums: IssueRunStatus, FleetIssueStatus, PipelineOutcome
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class GateStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class IssueRunStatus(str, Enum):
    """Per-issue checkpoint lifecycle states."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed-with-failures"
    FAILED = "failed"


class FleetIssueStatus(str, Enum):
    """Fleet-level issue states.

    ``blocked`` marks dependents of a failed issue; on resume it is treated
    like any other non-completed status.
    """

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class PipelineOutcome(str, Enum):
    """How one issue pipeline run ended."""

    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed-with-failures"
    ABORTED_CRITICAL = "aborted-critical"
    BUDGET_EXCEEDED = "budget-exceeded"
    HALTED = "halted"

    @property
    def succeeded(self) -> bool:
        return self in (PipelineOutcome.COMPLETED, PipelineOutcome.COMPLETED_WITH_FAILURES)


# ── Definitions ──────────────────────────────────────────────────────────────


class PhaseDefinition(BaseModel):
    """One ordered stage of an issue pipeline.

    ``id`` is the 1-based ordinal that defines pipeline order.  A failed
    ``critical`` phase aborts the issue; a failed non-critical phase is
    recorded and the pipeline moves on.
    """

    id: int = Field(ge=1)
    name: str
    critical: bool = True
    commit_type: str | None = None
    commit_message_template: str | None = None


# ── Gate results ─────────────────────────────────────────────────────────────


class GateResult(BaseModel):
    """Outcome of a post-phase quality check.

    Build instances with :meth:`from_findings` so ``status`` always agrees
    with the findings: ``fail`` iff there are errors, ``warn`` iff there are
    only warnings, ``pass`` otherwise.
    """

    status: GateStatus
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_findings(
        cls, errors: list[str] | None = None, warnings: list[str] | None = None
    ) -> GateResult:
        errors = list(errors or [])
        warnings = list(warnings or [])
        if errors:
            status = GateStatus.FAIL
        elif warnings:
            status = GateStatus.WARN
        else:
            status = GateStatus.PASS
        return cls(status=status, warnings=warnings, errors=errors)

    @property
    def failed(self) -> bool:
        return self.status == GateStatus.FAIL


def merge_gate_results(*results: GateResult) -> GateResult:
    """Union the findings of several gate results and recompute the status."""
    errors: list[str] = []
    warnings: list[str] = []
    for result in results:
        errors.extend(result.errors)
        warnings.extend(result.warnings)
    return GateResult.from_findings(errors, warnings)


# ── Phase results ────────────────────────────────────────────────────────────


class PhaseResult(BaseModel):
    """Record of one phase execution.

    Immutable once appended to a checkpoint, except that the trailing entry
    may receive its ``gate_result`` after the gate runs.
    """

    phase: int
    phase_name: str
    success: bool
    duration: float = 0.0  # seconds
    token_usage: int | None = None
    output_path: str | None = None
    error: str | None = None
    gate_result: GateResult | None = None
    finished_at: datetime = Field(default_factory=_utcnow)


# ── Per-issue checkpoint ─────────────────────────────────────────────────────


class FailedTask(BaseModel):
    task_id: str
    error: str
    attempts: int = 1


class TokenUsageSummary(BaseModel):
    total: int = 0
    by_phase: dict[int, int] = Field(default_factory=dict)
    by_agent: dict[str, int] = Field(default_factory=dict)


class CheckpointState(BaseModel):
    """Durable progress record of one issue (``checkpoint.json``)."""

    issue_number: int
    status: IssueRunStatus = IssueRunStatus.NOT_STARTED
    current_phase: int = 0
    phases: list[PhaseResult] = Field(default_factory=list)
    completed_phases: list[int] = Field(default_factory=list)
    phase_outputs: dict[int, str] = Field(default_factory=dict)
    completed_tasks: list[str] = Field(default_factory=list)
    blocked_tasks: list[str] = Field(default_factory=list)
    failed_tasks: list[FailedTask] = Field(default_factory=list)
    current_task: str | None = None
    token_usage: TokenUsageSummary = Field(default_factory=TokenUsageSummary)
    worktree_path: str = ""
    branch_name: str = ""
    base_commit: str = ""
    resume_count: int = 0
    budget_exceeded: bool = False
    last_error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def last_phase_result(self) -> PhaseResult | None:
        return self.phases[-1] if self.phases else None


# ── Fleet checkpoint ─────────────────────────────────────────────────────────


class FleetIssueRecord(BaseModel):
    """One issue's entry in the fleet checkpoint.  Always replaced whole."""

    status: FleetIssueStatus = FleetIssueStatus.NOT_STARTED
    worktree_path: str = ""
    branch_name: str = ""
    token_usage: int = 0
    issue_title: str = ""
    error: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


class FleetCheckpointState(BaseModel):
    """Fleet-wide status map (``fleet-checkpoint.json``)."""

    project_name: str
    issues: dict[int, FleetIssueRecord] = Field(default_factory=dict)
    dag: dict[int, list[int]] = Field(default_factory=dict)
    waves: list[list[int]] = Field(default_factory=list)
    resume_count: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
