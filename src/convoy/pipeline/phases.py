"""Phase executors and the phase manifest.

A phase executor does the work of one phase and returns the path of its
primary output artifact, or raises with a descriptive error.  It does no gate
logic; the engine gates the output after ``execute`` returns.

Every executor receives a :class:`PhaseContext` built once per issue
pipeline.  The engine swaps in the phase's isolation session before each
phase.

Key exports:
    PhaseExecutor — executor protocol
    PhaseContext, PhaseServices, PhaseIO, PhaseCallbacks — executor context
    AgentPhaseExecutor — runs one or more agents in sequence
    TaskPlanExecutor — runs the implementation plan's tasks in dependency order
    PhaseManifest, ISSUE_PHASES — the ordered phase list
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from convoy.budget import TokenTracker
from convoy.config import OptionsConfig
from convoy.errors import ConvoyError
from convoy.launcher import (
    AgentInvocation,
    AgentLauncher,
    RetrySettings,
    SessionHandle,
    launch_with_retry,
)
from convoy.models import IssueDetail
from convoy.pipeline.checkpoint import CheckpointManager, atomic_write_text
from convoy.pipeline.models import PhaseDefinition
from convoy.pipeline.plan import PLAN_FILENAME, PlanTask, build_task_graph, parse_implementation_plan
from convoy.progress import IssueProgressWriter
from convoy.retry import RetryExecutor
from convoy.scheduler import NodeStatus
from convoy.worktree import WorktreeInfo

logger = logging.getLogger(__name__)


# ── Phase definitions ────────────────────────────────────────────────────────

ISSUE_PHASES: tuple[PhaseDefinition, ...] = (
    PhaseDefinition(
        id=1,
        name="Analysis & Scouting",
        critical=True,
        commit_type="chore",
        commit_message_template="analyze issue #{issue_number}",
    ),
    PhaseDefinition(
        id=2,
        name="Planning",
        critical=True,
        commit_type="chore",
        commit_message_template="plan implementation for #{issue_number}",
    ),
    PhaseDefinition(
        id=3,
        name="Implementation",
        critical=True,
        commit_type="feat",
        commit_message_template="implement #{issue_number}: {issue_title}",
    ),
    PhaseDefinition(
        id=4,
        name="Integration Verification",
        critical=False,
        commit_type="fix",
        commit_message_template="address integration issues for #{issue_number}",
    ),
    PhaseDefinition(id=5, name="PR Composition", critical=False),
)

# Phases re-run when responding to review feedback on an existing branch
REVIEW_RESPONSE_PHASE_IDS = (3, 4, 5)


# ── Phase context ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PhaseServices:
    launcher: AgentLauncher
    retry_executor: RetryExecutor
    retry: RetrySettings
    token_tracker: TokenTracker


@dataclass(frozen=True)
class PhaseIO:
    progress_dir: Path
    progress: IssueProgressWriter
    checkpoint: CheckpointManager


@dataclass(frozen=True)
class PhaseCallbacks:
    """Hooks back into the owning pipeline.

    ``check_budget`` raises :class:`~convoy.errors.BudgetExceededError` once
    the issue's token budget is spent.
    """

    record_tokens: Callable[[str, int | None], Awaitable[None]]
    check_budget: Callable[[], None]
    update_progress: Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class PhaseContext:
    issue: IssueDetail
    worktree: WorktreeInfo
    options: OptionsConfig
    services: PhaseServices
    io: PhaseIO
    callbacks: PhaseCallbacks
    session: SessionHandle | None = None

    def require_session(self) -> SessionHandle:
        if self.session is None:
            raise ConvoyError("Phase executor needs an isolation session but none was started")
        return self.session


@runtime_checkable
class PhaseExecutor(Protocol):
    phase_id: int
    name: str

    async def execute(self, ctx: PhaseContext) -> str:
        """Run the phase and return the path of its primary output."""
        ...


# ── Agent context files ──────────────────────────────────────────────────────


def write_agent_context(
    ctx: PhaseContext,
    agent: str,
    phase_id: int,
    output_path: Path,
    *,
    suffix: str = "",
    extra: Mapping[str, Any] | None = None,
) -> Path:
    """Write the JSON document an agent reads to learn what to do."""
    state = ctx.io.checkpoint.get_state()
    document = {
        "agent": agent,
        "phase": phase_id,
        "issue": ctx.issue.model_dump(),
        "worktree_path": str(ctx.worktree.path),
        "branch": ctx.worktree.branch,
        "base_commit": ctx.worktree.base_commit,
        "progress_dir": str(ctx.io.progress_dir),
        "input_files": {str(k): v for k, v in sorted(state.phase_outputs.items())},
        "output_path": str(output_path),
    }
    if extra:
        document.update(extra)

    name = f"{agent}-phase{phase_id}{'-' + suffix if suffix else ''}.json"
    path = ctx.io.progress_dir / "contexts" / name
    atomic_write_text(path, json.dumps(document, indent=2))
    return path


async def _run_agent(
    ctx: PhaseContext,
    agent: str,
    phase_id: int,
    output_path: Path,
    *,
    suffix: str = "",
    extra: Mapping[str, Any] | None = None,
) -> tuple[bool, int, str | None]:
    """Launch one agent with retry.  Returns ``(success, attempts, error)``."""
    ctx.callbacks.check_budget()
    context_path = write_agent_context(ctx, agent, phase_id, output_path, suffix=suffix, extra=extra)
    invocation = AgentInvocation(
        agent=agent,
        issue_number=ctx.issue.number,
        phase=phase_id,
        context_path=str(context_path),
        output_path=str(output_path),
    )
    result = await launch_with_retry(
        ctx.services.launcher,
        invocation,
        worktree_path=ctx.worktree.path,
        session=ctx.require_session(),
        retry_executor=ctx.services.retry_executor,
        settings=ctx.services.retry,
    )
    if result.result is not None:
        await ctx.callbacks.record_tokens(agent, result.result.token_usage)
    return result.success, result.attempts, result.error_message


# ── Executors ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentStep:
    agent: str
    output_filename: str


class AgentPhaseExecutor:
    """Runs a phase's agents in order; the first step's output is the phase output."""

    def __init__(self, definition: PhaseDefinition, steps: Iterable[AgentStep]) -> None:
        self.definition = definition
        self.phase_id = definition.id
        self.name = definition.name
        self.steps = list(steps)
        if not self.steps:
            raise ValueError(f"Phase {definition.id} needs at least one agent step")

    async def execute(self, ctx: PhaseContext) -> str:
        outputs: list[Path] = []
        for step in self.steps:
            output_path = ctx.io.progress_dir / step.output_filename
            await ctx.callbacks.update_progress(f"Phase {self.phase_id}: launching {step.agent}")
            success, attempts, error = await _run_agent(ctx, step.agent, self.phase_id, output_path)
            if not success:
                raise ConvoyError(
                    f"Agent {step.agent} failed after {attempts} attempt(s): {error}"
                )
            outputs.append(output_path)
        return str(outputs[0])


@dataclass
class TaskRunSummary:
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)

    def render(self, tasks: list[PlanTask]) -> str:
        lines = ["# Implementation Summary", ""]
        for task in tasks:
            if task.id in self.completed:
                status = "completed"
            elif task.id in self.failed:
                status = f"failed: {self.failed[task.id]}"
            elif task.id in self.blocked:
                status = "blocked"
            else:
                status = "not run"
            lines.append(f"- {task.id} ({task.name}): {status}")
        return "\n".join(lines) + "\n"


class TaskPlanExecutor:
    """Runs the implementation plan's tasks in dependency order.

    Tasks run one at a time in ready order.  A failed task blocks its
    dependents; failures stay inside this issue and fail the phase.  Tasks
    already completed in an earlier run are not repeated.
    """

    SUMMARY_FILENAME = "implementation-summary.md"

    def __init__(self, definition: PhaseDefinition, agent: str = "code-writer") -> None:
        self.definition = definition
        self.phase_id = definition.id
        self.name = definition.name
        self.agent = agent

    async def execute(self, ctx: PhaseContext) -> str:
        plan_path = ctx.io.progress_dir / PLAN_FILENAME
        try:
            content = plan_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConvoyError(f"Cannot read {PLAN_FILENAME}: {exc}") from exc

        tasks = parse_implementation_plan(content)
        if not tasks:
            raise ConvoyError(f"{PLAN_FILENAME} contains no tasks")
        by_id = {task.id: task for task in tasks}
        graph = build_task_graph(tasks)

        checkpoint = ctx.io.checkpoint
        graph.restore(completed=checkpoint.get_state().completed_tasks)
        summary = TaskRunSummary(
            completed=[t for t in checkpoint.get_state().completed_tasks if t in by_id]
        )

        while True:
            ready = graph.ready_nodes()
            if not ready:
                break
            task = by_id[str(ready[0])]
            graph.mark_running(task.id)
            await checkpoint.start_task(task.id)
            await ctx.callbacks.update_progress(f"Task {task.id} started: {task.name}")

            output_path = ctx.io.progress_dir / "tasks" / f"{task.id}.md"
            output_path.parent.mkdir(parents=True, exist_ok=True)
            success, attempts, error = await _run_agent(
                ctx,
                self.agent,
                self.phase_id,
                output_path,
                suffix=task.id,
                extra={
                    "task": {
                        "id": task.id,
                        "name": task.name,
                        "description": task.description,
                        "files": task.files,
                        "acceptance_criteria": task.acceptance_criteria,
                    }
                },
            )

            if success:
                graph.mark_completed(task.id)
                await checkpoint.complete_task(task.id)
                summary.completed.append(task.id)
                await ctx.callbacks.update_progress(f"Task {task.id} completed")
                continue

            message = error or "unknown error"
            summary.failed[task.id] = message
            await checkpoint.fail_task(task.id, message, attempts)
            for blocked_id in graph.mark_failed(task.id):
                summary.blocked.append(str(blocked_id))
                await checkpoint.block_task(str(blocked_id))
            await ctx.callbacks.update_progress(f"Task {task.id} failed: {message}")

        summary_path = ctx.io.progress_dir / self.SUMMARY_FILENAME
        atomic_write_text(summary_path, summary.render(tasks))

        if summary.failed or summary.blocked:
            raise ConvoyError(
                f"{len(summary.failed)} task(s) failed, {len(summary.blocked)} blocked: "
                + ", ".join(list(summary.failed) + summary.blocked)
            )
        unfinished = [n.id for n in graph.nodes() if n.status != NodeStatus.COMPLETED]
        if unfinished:
            raise ConvoyError(f"Tasks left unfinished: {', '.join(map(str, unfinished))}")
        return str(summary_path)


# ── Phase manifest ───────────────────────────────────────────────────────────


class PhaseManifest:
    """Ordered list of phase executors for one pipeline flavour.

    Build one per fleet run and share it across pipelines; executors hold no
    per-issue state.
    """

    def __init__(self, executors: Iterable[PhaseExecutor]) -> None:
        self._executors = sorted(executors, key=lambda e: e.phase_id)
        ids = [e.phase_id for e in self._executors]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate phase ids in manifest: {ids}")
        self._definitions = {d.id: d for d in ISSUE_PHASES}

    @classmethod
    def default(cls, phase_agents: Mapping[int, str] | None = None) -> PhaseManifest:
        """The five-phase issue pipeline.

        ``phase_agents`` overrides the primary agent of a phase by id.
        """
        agents = dict(phase_agents or {})
        p1, p2, p3, p4, p5 = ISSUE_PHASES
        return cls(
            [
                AgentPhaseExecutor(
                    p1,
                    [
                        AgentStep(agents.get(1, "issue-analyst"), "analysis.md"),
                        AgentStep("codebase-scout", "scout-report.md"),
                    ],
                ),
                AgentPhaseExecutor(p2, [AgentStep(agents.get(2, "implementation-planner"), PLAN_FILENAME)]),
                TaskPlanExecutor(p3, agent=agents.get(3, "code-writer")),
                AgentPhaseExecutor(p4, [AgentStep(agents.get(4, "integration-checker"), "integration-report.md")]),
                AgentPhaseExecutor(p5, [AgentStep(agents.get(5, "pr-composer"), "pr-content.md")]),
            ]
        )

    def subset(self, phase_ids: Iterable[int]) -> PhaseManifest:
        wanted = set(phase_ids)
        unknown = wanted - {e.phase_id for e in self._executors}
        if unknown:
            raise ValueError(f"Unknown phase ids: {sorted(unknown)}")
        return PhaseManifest(e for e in self._executors if e.phase_id in wanted)

    def definition(self, phase_id: int) -> PhaseDefinition:
        executor = self.get(phase_id)
        own = getattr(executor, "definition", None)
        if isinstance(own, PhaseDefinition):
            return own
        if phase_id in self._definitions:
            return self._definitions[phase_id]
        return PhaseDefinition(id=phase_id, name=executor.name if executor else f"Phase {phase_id}")

    def get(self, phase_id: int) -> PhaseExecutor | None:
        for executor in self._executors:
            if executor.phase_id == phase_id:
                return executor
        return None

    @property
    def phase_ids(self) -> list[int]:
        return [e.phase_id for e in self._executors]

    def __iter__(self) -> Iterator[PhaseExecutor]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)
