"""Core data models for Convoy."""

from __future__ import annotations

from pydantic import BaseModel, Field

from convoy.pipeline.models import PhaseResult, PipelineOutcome


# ── Issues ───────────────────────────────────────────────────────────────────


class IssueDetail(BaseModel):
    """A unit of externally tracked work."""

    number: int = Field(ge=1)
    title: str = ""
    body: str = ""
    labels: list[str] = Field(default_factory=list)
    depends_on: list[int] = Field(default_factory=list, description="Issue numbers this issue waits on")


# ── Results ──────────────────────────────────────────────────────────────────


class IssueResult(BaseModel):
    """Outcome of one issue pipeline run."""

    issue_number: int
    issue_title: str = ""
    outcome: PipelineOutcome
    phases: list[PhaseResult] = Field(default_factory=list)
    failed_phases: list[int] = Field(default_factory=list)
    worktree_path: str = ""
    branch_name: str = ""
    total_duration: float = 0.0
    token_usage: int = 0
    error: str | None = None
    budget_exceeded: bool = False

    @property
    def success(self) -> bool:
        return self.outcome.succeeded

    @property
    def clean(self) -> bool:
        """Every phase passed; dependents may build on this issue."""
        return self.outcome == PipelineOutcome.COMPLETED


class FleetResult(BaseModel):
    """Outcome of a whole fleet run."""

    success: bool
    issues: list[IssueResult] = Field(default_factory=list)
    failed_issues: list[int] = Field(default_factory=list)
    blocked_issues: list[int] = Field(default_factory=list)
    skipped_issues: list[int] = Field(default_factory=list)
    total_duration: float = 0.0
    token_usage: int = 0
