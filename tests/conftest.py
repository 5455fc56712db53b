"""Shared fakes for pipeline and fleet tests.

Provides:
- FakeLauncher — stands in for the agent CLI; writes each agent's output file
- FakeExecutor — scripted phase executor
- SequenceGate — gate returning queued results
- FakeWorktrees — worktree provider backed by plain directories
- Builders for phase services, contexts and pipelines
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from convoy.budget import IssueBudgetGuard, TokenTracker
from convoy.config import OptionsConfig
from convoy.launcher import AgentResult, RetrySettings, SessionHandle
from convoy.models import IssueDetail
from convoy.pipeline.checkpoint import CheckpointManager
from convoy.pipeline.engine import IsolationSettings, IssuePipeline
from convoy.pipeline.gates import GateRegistry
from convoy.pipeline.models import GateResult
from convoy.pipeline.phases import (
    PhaseCallbacks,
    PhaseContext,
    PhaseIO,
    PhaseManifest,
    PhaseServices,
)
from convoy.progress import IssueProgressWriter
from convoy.retry import RetryExecutor
from convoy.sandbox import HostProvider, IsolationPolicy
from convoy.worktree import WorktreeInfo


async def no_sleep(_seconds: float) -> None:
    return None


# ── Agent launcher ───────────────────────────────────────────────────────────


class FakeLauncher:
    """Agents whose name (or output file stem) is in ``fail`` exit non-zero."""

    timeout_seconds = 60

    def __init__(
        self,
        *,
        fail: set[str] | None = None,
        tokens: int = 10,
        outputs: dict[str, str] | None = None,
    ):
        self.fail = set(fail or ())
        self.tokens = tokens
        self.outputs = outputs or {}
        self.calls: list = []

    async def launch(self, invocation, worktree_path, session) -> AgentResult:
        self.calls.append(invocation)
        output = Path(invocation.output_path)
        failed = invocation.agent in self.fail or output.stem in self.fail
        if not failed:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(self.outputs.get(output.name, f"{invocation.agent} output\n"))
        return AgentResult(
            agent=invocation.agent,
            success=not failed,
            exit_code=1 if failed else 0,
            timed_out=False,
            duration=0.0,
            stdout=f"tokens_used: {self.tokens}",
            stderr="agent crashed" if failed else "",
            token_usage=self.tokens,
            output_path=str(output),
            output_exists=not failed,
            error=f"Agent {invocation.agent} exited with code 1: agent crashed" if failed else None,
        )


def make_services(launcher=None, *, max_attempts: int = 1, tracker: TokenTracker | None = None) -> PhaseServices:
    return PhaseServices(
        launcher=launcher or FakeLauncher(),
        retry_executor=RetryExecutor(sleep=no_sleep),
        retry=RetrySettings(max_attempts=max_attempts, base_delay_ms=0, max_delay_ms=0),
        token_tracker=tracker or TokenTracker(),
    )


# ── Executors & gates ────────────────────────────────────────────────────────


class FakeExecutor:
    """Phase executor that fails its first ``fail_times`` runs."""

    def __init__(
        self,
        phase_id: int,
        *,
        fail_times: int = 0,
        fail_for: set[int] | None = None,
        tokens: int = 0,
        content: str = "done\n",
        block: asyncio.Event | None = None,
    ):
        self.phase_id = phase_id
        self.name = f"fake-{phase_id}"
        self.fail_times = fail_times
        self.fail_for = fail_for
        self.tokens = tokens
        self.content = content
        self.block = block
        self.started = asyncio.Event()
        self.calls = 0
        self.sessions: list[SessionHandle | None] = []

    async def execute(self, ctx: PhaseContext) -> str:
        self.calls += 1
        self.sessions.append(ctx.session)
        ctx.require_session()
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if self.tokens:
            await ctx.callbacks.record_tokens(f"agent-{self.phase_id}", self.tokens)
        if self.fail_for is not None and ctx.issue.number in self.fail_for:
            raise RuntimeError(f"phase {self.phase_id} broke for #{ctx.issue.number}")
        if self.calls <= self.fail_times:
            raise RuntimeError(f"phase {self.phase_id} broke")
        path = ctx.io.progress_dir / f"phase{self.phase_id}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.content)
        return str(path)


def fake_manifest(**per_phase) -> PhaseManifest:
    """Five fake executors; ``p3=FakeExecutor(3, ...)`` replaces one."""
    return PhaseManifest(per_phase.get(f"p{i}", FakeExecutor(i)) for i in range(1, 6))


class SequenceGate:
    """Returns queued results in order, then repeats the last one."""

    def __init__(self, *results: GateResult):
        self.results = list(results)
        self.calls = 0

    async def validate(self, ctx) -> GateResult:
        self.calls += 1
        return self.results[min(self.calls, len(self.results)) - 1]


def passing() -> GateResult:
    return GateResult.from_findings()


def failing(message: str = "bad output") -> GateResult:
    return GateResult.from_findings([message])


# ── Worktrees ────────────────────────────────────────────────────────────────


class FakeWorktrees:
    def __init__(self, root: Path, *, fail_for: set[int] | None = None):
        self.root = root
        self.fail_for = fail_for or set()
        self.provisioned: list[int] = []

    async def provision(self, issue_number: int) -> WorktreeInfo:
        if issue_number in self.fail_for:
            raise RuntimeError(f"cannot create worktree for #{issue_number}")
        self.provisioned.append(issue_number)
        path = self.root / f"issue-{issue_number}"
        path.mkdir(parents=True, exist_ok=True)
        return WorktreeInfo(path=path, branch=f"convoy/issue-{issue_number}", base_commit="")


# ── Builders ─────────────────────────────────────────────────────────────────


async def make_phase_context(
    tmp_path: Path,
    *,
    issue: IssueDetail | None = None,
    launcher=None,
    max_attempts: int = 1,
) -> PhaseContext:
    """Phase context with a loaded checkpoint and a live host session."""
    issue = issue or IssueDetail(number=1, title="Add config loader")
    progress_dir = tmp_path / "state" / "issues" / str(issue.number)
    checkpoint = CheckpointManager(progress_dir)
    await checkpoint.load(issue.number)
    await checkpoint.start_phase(1)
    progress = IssueProgressWriter(progress_dir, issue.number, issue.title)
    services = make_services(launcher, max_attempts=max_attempts)
    worktree_path = tmp_path / "worktree"
    worktree_path.mkdir(exist_ok=True)

    async def record_tokens(agent: str, tokens: int | None) -> None:
        if tokens:
            await checkpoint.record_token_usage(agent, checkpoint.get_state().current_phase, tokens)

    host = HostProvider()
    session = SessionHandle(host, await host.start(IsolationPolicy()))
    return PhaseContext(
        issue=issue,
        worktree=WorktreeInfo(path=worktree_path, branch="convoy/issue-1"),
        options=OptionsConfig(),
        services=services,
        io=PhaseIO(progress_dir=progress_dir, progress=progress, checkpoint=checkpoint),
        callbacks=PhaseCallbacks(
            record_tokens=record_tokens,
            check_budget=lambda: None,
            update_progress=progress.append_event,
        ),
        session=session,
    )


async def make_pipeline(
    tmp_path: Path,
    *,
    manifest: PhaseManifest,
    gates: GateRegistry | None = None,
    issue: IssueDetail | None = None,
    options: OptionsConfig | None = None,
    isolation: IsolationSettings | None = None,
    token_budget: int | None = None,
    tracker: TokenTracker | None = None,
) -> IssuePipeline:
    """An issue pipeline over a fresh (or resumed) checkpoint in ``tmp_path``."""
    issue = issue or IssueDetail(number=1, title="Add config loader")
    progress_dir = tmp_path / "state" / "issues" / str(issue.number)
    checkpoint = CheckpointManager(progress_dir)
    await checkpoint.load(issue.number)
    worktree_path = tmp_path / "worktree"
    worktree_path.mkdir(exist_ok=True)
    tracker = tracker or TokenTracker()
    host = HostProvider()
    return IssuePipeline(
        issue=issue,
        worktree=WorktreeInfo(path=worktree_path, branch=f"convoy/issue-{issue.number}"),
        manifest=manifest,
        gates=gates or GateRegistry(),
        checkpoint=checkpoint,
        progress=IssueProgressWriter(progress_dir, issue.number, issue.title),
        services=make_services(tracker=tracker),
        options=options or OptionsConfig(),
        isolation=isolation or IsolationSettings(provider=host, host_provider=host),
        budget_guard=IssueBudgetGuard(tracker, checkpoint, issue.number, token_budget),
    )
