"""Fleet orchestrator — runs many issue pipelines with bounded parallelism.

A single control loop owns the issue dependency graph.  It dispatches ready
issues (in graph insertion order) while slots are free, waits for the first
pipeline to finish, and feeds the outcome back into the graph so dependents
unlock or become blocked.  Pipelines never touch the graph themselves.

Interrupts (SIGINT/SIGTERM via :meth:`FleetOrchestrator.request_stop`) cancel
in-flight pipelines, leave their fleet status ``running`` and flush the
fleet checkpoint, so a ``--resume`` run picks them up at their last persisted
phase.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

from convoy.budget import BudgetStatus, IssueBudgetGuard, TokenTracker
from convoy.config import ConvoyConfig
from convoy.errors import FleetInterrupted
from convoy.launcher import AgentLauncher, RetrySettings
from convoy.models import FleetResult, IssueDetail, IssueResult
from convoy.pipeline.checkpoint import CheckpointManager, FleetCheckpointManager, issue_progress_dir
from convoy.pipeline.engine import IsolationSettings, IssuePipeline
from convoy.pipeline.gates import GateRegistry
from convoy.pipeline.models import FleetIssueStatus, PipelineOutcome
from convoy.pipeline.phases import PhaseManifest, PhaseServices
from convoy.progress import IssueProgressWriter
from convoy.retry import RetryExecutor
from convoy.sandbox.registry import ProviderRegistry
from convoy.scheduler import DependencyGraph
from convoy.worktree import GitWorktreeManager, WorktreeInfo, WorktreeProvider

logger = logging.getLogger(__name__)


class IssueRunner(Protocol):
    async def run(self) -> IssueResult: ...


PipelineFactory = Callable[
    [IssueDetail, WorktreeInfo, CheckpointManager, IssueProgressWriter], IssueRunner
]


class FleetOrchestrator:
    """Composition root for a fleet run.

    Usage::

        orchestrator = FleetOrchestrator(config, base_dir=Path.cwd())
        result = await orchestrator.run()

    Every collaborator can be injected; defaults are built from ``config``.
    A gate registry and phase manifest are built once here and shared by all
    pipelines of the run.
    """

    def __init__(
        self,
        config: ConvoyConfig,
        *,
        base_dir: Path,
        issue_numbers: Iterable[int] | None = None,
        provider_override: str | None = None,
        provider_registry: ProviderRegistry | None = None,
        worktrees: WorktreeProvider | None = None,
        launcher: AgentLauncher | None = None,
        manifest: PhaseManifest | None = None,
        gates: GateRegistry | None = None,
        retry_executor: RetryExecutor | None = None,
        token_tracker: TokenTracker | None = None,
        pipeline_factory: PipelineFactory | None = None,
    ) -> None:
        self.config = config
        self.options = config.options
        self.state_dir = config.state_path(base_dir)
        self.issue_numbers = set(issue_numbers) if issue_numbers else None
        self.token_tracker = token_tracker or TokenTracker()

        self.providers = provider_registry or ProviderRegistry()
        self._provider_override = provider_override
        self.worktrees = worktrees or GitWorktreeManager(
            repo_path=config.repo_root(base_dir),
            worktree_root=self.state_dir / "worktrees",
            base_branch=config.project.base_branch,
        )
        self.manifest = manifest or PhaseManifest.default(config.agent.phase_agents)
        self.gates = gates or GateRegistry.default(
            ambiguity_threshold=self.options.ambiguity_threshold,
            halt_on_ambiguity=self.options.halt_on_ambiguity,
        )
        self.services = PhaseServices(
            launcher=launcher or AgentLauncher(config.agent.command, config.agent.timeout_seconds),
            retry_executor=retry_executor or RetryExecutor(),
            retry=RetrySettings(
                max_attempts=config.retry.max_attempts,
                base_delay_ms=config.retry.base_delay_ms,
                max_delay_ms=config.retry.max_delay_ms,
            ),
            token_tracker=self.token_tracker,
        )
        self._pipeline_factory = pipeline_factory or self._build_pipeline

        self.fleet_checkpoint = FleetCheckpointManager(self.state_dir, config.project.name)
        self._slots = asyncio.Semaphore(self.options.max_parallel_issues)
        self._stop_event = asyncio.Event()
        self._stop_signal: str | None = None
        self._isolation: IsolationSettings | None = None

    # ── Public API ───────────────────────────────────────────────────────────

    def request_stop(self, signal_name: str = "SIGINT") -> None:
        """Stop dispatching and interrupt in-flight pipelines."""
        if self._stop_signal is None:
            logger.warning("Received %s; interrupting fleet run", signal_name)
            self._stop_signal = signal_name
        self._stop_event.set()

    async def run(self) -> FleetResult:
        """Run every selected issue to completion, failure or blockage.

        Raises:
            DependencyResolutionError, CyclicDependencyError: the issue graph
                is invalid; nothing has been started.
            CapabilityMismatchError: never here; negotiation failures are
                reported per phase.
            FleetInterrupted: :meth:`request_stop` was called.
        """
        start = time.monotonic()
        issues = self._select_issues()
        by_number = {issue.number: issue for issue in issues}

        graph = DependencyGraph.from_mapping(self._dependency_map(issues))
        self._isolation = self._resolve_isolation()

        await self.fleet_checkpoint.load()
        await self.fleet_checkpoint.set_dag(
            {n: [int(d) for d in graph.dependencies(n)] for n in by_number},
            [[int(n) for n in wave] for wave in graph.waves()],
        )

        skipped: list[int] = []
        if self.options.resume:
            completed = [n for n in by_number if self.fleet_checkpoint.is_issue_completed(n)]
            graph.restore(completed=completed)
            skipped.extend(completed)
            if completed:
                logger.info("Resume: skipping completed issues %s", completed)
            unfinished = [n for n in self.fleet_checkpoint.issues_to_resume() if n in by_number]
            if unfinished:
                logger.info("Resume: picking up unfinished issues %s", unfinished)
        for issue in issues:
            if issue.number not in skipped:
                await self.fleet_checkpoint.set_issue_status(
                    issue.number, FleetIssueStatus.NOT_STARTED, issue_title=issue.title
                )

        logger.info(
            "Fleet run: %d issues, %d waves, max %d in parallel",
            len(issues),
            len(graph.waves()),
            self.options.max_parallel_issues,
        )

        results: dict[int, IssueResult] = {}
        blocked: list[int] = []
        running: dict[asyncio.Task[IssueResult], int] = {}
        budget_stopped = False
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())

        try:
            while True:
                if self._stop_event.is_set():
                    await self._interrupt(running)

                if not budget_stopped:
                    for number in graph.ready_nodes():
                        if len(running) >= self.options.max_parallel_issues:
                            break
                        if (
                            self.token_tracker.check_fleet_budget(self.options.fleet_token_budget)
                            == BudgetStatus.EXCEEDED
                        ):
                            budget_stopped = True
                            logger.warning(
                                "Fleet token budget exceeded (%d/%d); no new issues will start",
                                self.token_tracker.total(),
                                self.options.fleet_token_budget,
                            )
                            break
                        graph.mark_running(number)
                        task = asyncio.create_task(
                            self._run_issue(by_number[int(number)]),
                            name=f"convoy-issue-{number}",
                        )
                        running[task] = int(number)

                if not running:
                    break

                done, _ = await asyncio.wait(
                    [*running, stop_waiter], return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is stop_waiter:
                        continue
                    number = running.pop(task)
                    result = task.result()
                    results[number] = result
                    if result.clean:
                        graph.mark_completed(number)
                        continue
                    for blocked_number in graph.mark_failed(number):
                        blocked.append(int(blocked_number))
                        await self.fleet_checkpoint.set_issue_status(
                            int(blocked_number),
                            FleetIssueStatus.BLOCKED,
                            issue_title=by_number[int(blocked_number)].title,
                            error=f"Blocked by failed dependency #{number}",
                        )
        finally:
            stop_waiter.cancel()
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        never_started = [
            n for n in by_number
            if n not in results and n not in blocked and n not in skipped
        ]
        failed = sorted(n for n, r in results.items() if not r.clean)
        ordered = [results[n] for n in by_number if n in results]
        fleet_result = FleetResult(
            success=not failed and not blocked and not never_started,
            issues=ordered,
            failed_issues=failed,
            blocked_issues=blocked,
            skipped_issues=sorted(skipped + never_started),
            total_duration=time.monotonic() - start,
            token_usage=sum(r.token_usage for r in ordered),
        )
        await self.fleet_checkpoint.flush()
        logger.info(
            "Fleet run finished: %d completed, %d failed, %d blocked, %d skipped",
            len(ordered) - len(failed),
            len(failed),
            len(blocked),
            len(fleet_result.skipped_issues),
        )
        return fleet_result

    # ── Issue execution ──────────────────────────────────────────────────────

    async def _run_issue(self, issue: IssueDetail) -> IssueResult:
        async with self._slots:
            await self.fleet_checkpoint.set_issue_status(
                issue.number, FleetIssueStatus.RUNNING, issue_title=issue.title
            )
            worktree: WorktreeInfo | None = None
            try:
                worktree = await self.worktrees.provision(issue.number)
                progress_dir = issue_progress_dir(self.state_dir, issue.number)
                checkpoint = CheckpointManager(progress_dir)
                await checkpoint.load(issue.number)
                if not self.options.resume and checkpoint.get_state().phases:
                    logger.info("Fresh run: discarding earlier progress for issue #%d", issue.number)
                    await checkpoint.reset()
                progress = IssueProgressWriter(progress_dir, issue.number, issue.title)
                pipeline = self._pipeline_factory(issue, worktree, checkpoint, progress)
                result = await pipeline.run()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Issue #%d could not run", issue.number, extra={"issue_number": issue.number})
                result = IssueResult(
                    issue_number=issue.number,
                    issue_title=issue.title,
                    outcome=PipelineOutcome.ABORTED_CRITICAL,
                    worktree_path=str(worktree.path) if worktree else "",
                    branch_name=worktree.branch if worktree else "",
                    error=str(exc) or type(exc).__name__,
                )

            await self.fleet_checkpoint.set_issue_status(
                issue.number,
                FleetIssueStatus.COMPLETED if result.clean else FleetIssueStatus.FAILED,
                worktree_path=result.worktree_path,
                branch_name=result.branch_name,
                token_usage=result.token_usage,
                issue_title=issue.title,
                error=result.error,
            )
            return result

    def _build_pipeline(
        self,
        issue: IssueDetail,
        worktree: WorktreeInfo,
        checkpoint: CheckpointManager,
        progress: IssueProgressWriter,
    ) -> IssuePipeline:
        if self._isolation is None:
            raise RuntimeError("Isolation settings are resolved by run(); build pipelines from there")
        return IssuePipeline(
            issue=issue,
            worktree=worktree,
            manifest=self.manifest,
            gates=self.gates,
            checkpoint=checkpoint,
            progress=progress,
            services=self.services,
            options=self.options,
            isolation=self._isolation,
            budget_guard=IssueBudgetGuard(
                self.token_tracker, checkpoint, issue.number, self.options.token_budget
            ),
        )

    async def _interrupt(self, running: dict[asyncio.Task[IssueResult], int]) -> None:
        """Cancel in-flight pipelines, keep them resumable and raise."""
        interrupted = sorted(running.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        for number in interrupted:
            record = self.fleet_checkpoint.get_issue_status(number)
            await self.fleet_checkpoint.set_issue_status(
                number,
                FleetIssueStatus.RUNNING,
                worktree_path=record.worktree_path if record else "",
                branch_name=record.branch_name if record else "",
                token_usage=record.token_usage if record else 0,
                issue_title=record.issue_title if record else "",
            )
        await self.fleet_checkpoint.flush()
        raise FleetInterrupted(self._stop_signal or "interrupt", interrupted)

    # ── Setup helpers ────────────────────────────────────────────────────────

    def _select_issues(self) -> list[IssueDetail]:
        issues = list(self.config.issues)
        if self.issue_numbers is not None:
            unknown = self.issue_numbers - {i.number for i in issues}
            if unknown:
                raise ValueError(f"Issues not in config: {sorted(unknown)}")
            issues = [i for i in issues if i.number in self.issue_numbers]
        return issues

    @staticmethod
    def _dependency_map(issues: list[IssueDetail]) -> dict[int, list[int]]:
        """Issue → dependencies, dropping dependencies outside this run."""
        numbers = {issue.number for issue in issues}
        mapping: dict[int, list[int]] = {}
        for issue in issues:
            outside = [d for d in issue.depends_on if d not in numbers]
            if outside:
                logger.warning(
                    "Issue #%d depends on issues outside this run (%s); ignoring them",
                    issue.number,
                    ", ".join(f"#{d}" for d in outside),
                )
            mapping[issue.number] = [d for d in issue.depends_on if d in numbers]
        return mapping

    def _resolve_isolation(self) -> IsolationSettings:
        iso = self.config.isolation
        provider = self.providers.resolve(self._provider_override, iso.provider)
        return IsolationSettings(
            provider=provider,
            host_provider=self.providers.host,
            policy=iso.policy,
            allow_fallback_to_host=iso.allow_fallback_to_host,
            phases=frozenset(iso.phases),
        )
