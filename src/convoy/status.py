"""Read-side views and resets over persisted run state.

Backs the ``convoy status`` and ``convoy reset`` commands.  Reads go straight
to the JSON documents; inspecting a run never bumps resume counters.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from convoy.pipeline.checkpoint import (
    CHECKPOINT_FILENAME,
    FLEET_CHECKPOINT_FILENAME,
    CheckpointManager,
    FleetCheckpointManager,
    issue_progress_dir,
    read_model,
)
from convoy.pipeline.models import CheckpointState, FleetCheckpointState, FleetIssueStatus

logger = logging.getLogger(__name__)


class RunStateService:
    """Status queries and resets for one state directory."""

    def __init__(self, state_dir: Path, project_name: str) -> None:
        self.state_dir = state_dir
        self.project_name = project_name

    def fleet_state(self) -> FleetCheckpointState | None:
        return read_model(self.state_dir / FLEET_CHECKPOINT_FILENAME, FleetCheckpointState)

    def issue_state(self, issue_number: int) -> CheckpointState | None:
        path = issue_progress_dir(self.state_dir, issue_number) / CHECKPOINT_FILENAME
        return read_model(path, CheckpointState)

    async def reset(self, issue_numbers: Iterable[int] | None = None) -> list[int]:
        """Return issues to ``not-started`` and clear their phase history.

        With no ``issue_numbers`` every issue tracked by the fleet checkpoint
        is reset.  Worktree paths and branch names are kept so the next run
        reuses the same checkout.

        Returns:
            The issue numbers that were reset.
        """
        fleet = FleetCheckpointManager(self.state_dir, self.project_name)
        state = await fleet.load()
        targets = sorted(issue_numbers) if issue_numbers is not None else sorted(state.issues)

        for number in targets:
            record = fleet.get_issue_status(number)
            await fleet.set_issue_status(
                number,
                FleetIssueStatus.NOT_STARTED,
                worktree_path=record.worktree_path if record else "",
                branch_name=record.branch_name if record else "",
                issue_title=record.issue_title if record else "",
            )
            checkpoint = CheckpointManager(issue_progress_dir(self.state_dir, number))
            if checkpoint.path.exists():
                await checkpoint.load(number)
                await checkpoint.reset()
            logger.info("Reset issue #%d", number)
        return targets


# ── Formatting ───────────────────────────────────────────────────────────────


def format_fleet_table(state: FleetCheckpointState) -> str:
    lines = [
        f"Project: {state.project_name} (resumed {state.resume_count} time(s))",
        f"{'ISSUE':<8}{'STATUS':<16}{'TOKENS':>10}  {'BRANCH':<28}TITLE",
    ]
    for number in sorted(state.issues):
        record = state.issues[number]
        lines.append(
            f"#{number:<7}{record.status.value:<16}{record.token_usage:>10}  "
            f"{record.branch_name:<28}{record.issue_title}"
        )
        if record.error:
            lines.append(f"{'':<8}error: {record.error}")
    if state.waves:
        waves = " → ".join("[" + ", ".join(f"#{n}" for n in wave) + "]" for wave in state.waves)
        lines.append(f"Waves: {waves}")
    return "\n".join(lines)


def format_issue_history(state: CheckpointState) -> str:
    lines = [
        f"Issue #{state.issue_number}: {state.status.value}",
        f"  Branch:   {state.branch_name or '-'}",
        f"  Worktree: {state.worktree_path or '-'}",
        f"  Tokens:   {state.token_usage.total}",
        f"  Resumes:  {state.resume_count}",
    ]
    if state.budget_exceeded:
        lines.append("  Token budget exceeded")
    if state.last_error:
        lines.append(f"  Last error: {state.last_error}")
    lines.append("  Phases:")
    if not state.phases:
        lines.append("    (none)")
    for result in state.phases:
        mark = "ok" if result.success else "FAILED"
        gate = f" gate={result.gate_result.status.value}" if result.gate_result else ""
        lines.append(
            f"    {result.phase}. {result.phase_name:<20} {mark:<7}{result.duration:7.1f}s{gate}"
        )
        if result.error:
            lines.append(f"       {result.error}")
    if state.failed_tasks:
        lines.append("  Failed tasks: " + ", ".join(t.task_id for t in state.failed_tasks))
    if state.blocked_tasks:
        lines.append("  Blocked tasks: " + ", ".join(state.blocked_tasks))
    return "\n".join(lines)
