"""Issue pipeline engine — drives one issue through its ordered phases.

States per issue::

    not-started → running(phase=k) → running(phase=k+1)
                                   ↘ aborted-critical | halted | budget-exceeded
                                   ↘ completed | completed-with-failures

Per phase: open an isolation session (negotiated for sandboxed phases), run
the executor, append its :class:`PhaseResult`, run the phase's gate, attach
the gate result.  A ``fail`` gate counts as a phase failure; the phase is
re-run once before the failure becomes final.  A failed critical phase ends
the issue; a failed non-critical phase is remembered and the pipeline moves
on.  Failures are values here, not exceptions; only budget exhaustion and
cancellation leave :meth:`IssuePipeline.run` early.

Key exports:
    IssuePipeline — the per-issue state machine
    IsolationSettings — where each phase's session comes from
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field

from convoy.budget import IssueBudgetGuard
from convoy.config import OptionsConfig
from convoy.errors import BudgetExceededError, CapabilityMismatchError
from convoy.launcher import SessionHandle
from convoy.models import IssueDetail, IssueResult
from convoy.pipeline.checkpoint import CheckpointManager
from convoy.pipeline.gates import AMBIGUITY_PHASE, GateContext, GateRegistry
from convoy.pipeline.models import (
    GateResult,
    GateStatus,
    IssueRunStatus,
    PhaseDefinition,
    PhaseResult,
    PipelineOutcome,
)
from convoy.pipeline.phases import (
    PhaseCallbacks,
    PhaseContext,
    PhaseExecutor,
    PhaseIO,
    PhaseManifest,
    PhaseServices,
)
from convoy.progress import IssueProgressWriter
from convoy.retry import RetryOptions
from convoy.sandbox.models import IsolationPolicy
from convoy.sandbox.negotiation import IsolationProvider, negotiate_policy
from convoy.worktree import WorktreeInfo

logger = logging.getLogger(__name__)

# Dry runs stop once planning is done
DRY_RUN_LAST_PHASE = 2


@dataclass(frozen=True)
class IsolationSettings:
    """Session sources for a pipeline.

    Phases listed in ``phases`` get a session from ``provider`` negotiated
    against ``policy``; every other phase runs on ``host_provider`` with an
    empty policy.
    """

    provider: IsolationProvider
    host_provider: IsolationProvider | None = None
    policy: IsolationPolicy = field(default_factory=IsolationPolicy)
    allow_fallback_to_host: bool = False
    phases: frozenset[int] = frozenset({3, 4})


class IssuePipeline:
    """Runs one issue's phases in order, resuming from its checkpoint.

    The checkpoint must already be loaded.  The pipeline owns every session
    it opens and destroys it when the phase ends, whatever the outcome.
    """

    def __init__(
        self,
        *,
        issue: IssueDetail,
        worktree: WorktreeInfo,
        manifest: PhaseManifest,
        gates: GateRegistry,
        checkpoint: CheckpointManager,
        progress: IssueProgressWriter,
        services: PhaseServices,
        options: OptionsConfig,
        isolation: IsolationSettings,
        budget_guard: IssueBudgetGuard | None = None,
    ) -> None:
        self.issue = issue
        self.worktree = worktree
        self.manifest = manifest
        self.gates = gates
        self.checkpoint = checkpoint
        self.progress = progress
        self.services = services
        self.options = options
        self.isolation = isolation
        self.budget_guard = budget_guard
        self._log_extra = {"issue_number": issue.number}

    # ── Public API ───────────────────────────────────────────────────────────

    async def run(self) -> IssueResult:
        start = time.monotonic()
        await self.checkpoint.set_worktree_info(
            str(self.worktree.path), self.worktree.branch, self.worktree.base_commit
        )
        resume_from = self.checkpoint.resume_point()
        failed_phases = self._prior_noncritical_failures(resume_from)
        ctx = self._build_context()

        logger.info(
            "Starting pipeline for issue #%d: %s (resume from phase %d)",
            self.issue.number,
            self.issue.title,
            resume_from,
            extra=self._log_extra,
        )
        await self.progress.append_event(f"Pipeline started (resume from phase {resume_from})")

        outcome = PipelineOutcome.COMPLETED
        error: str | None = None
        try:
            for executor in self.manifest:
                phase = self.manifest.definition(executor.phase_id)
                if phase.id < resume_from:
                    logger.info(
                        "Skipping completed phase %d: %s",
                        phase.id,
                        phase.name,
                        extra={**self._log_extra, "phase": phase.id},
                    )
                    continue
                if self.options.dry_run and phase.id > DRY_RUN_LAST_PHASE:
                    logger.info("Dry run: stopping before phase %d", phase.id, extra=self._log_extra)
                    await self.progress.append_event(f"Dry run: stopped before phase {phase.id}")
                    break

                ctx.callbacks.check_budget()
                result, halted = await self._run_phase(executor, phase, ctx)

                if halted:
                    outcome = PipelineOutcome.HALTED
                    error = result.error
                    break
                if result.success:
                    continue
                if phase.critical:
                    outcome = PipelineOutcome.ABORTED_CRITICAL
                    error = f"Phase {phase.id} ({phase.name}) failed: {result.error}"
                    break
                failed_phases.append(phase.id)
                logger.warning(
                    "Non-critical phase %d (%s) failed; continuing: %s",
                    phase.id,
                    phase.name,
                    result.error,
                    extra={**self._log_extra, "phase": phase.id},
                )
        except BudgetExceededError as exc:
            outcome = PipelineOutcome.BUDGET_EXCEEDED
            error = str(exc)
            logger.warning(
                "Issue #%d exceeded its token budget (%d/%d); raise options.token_budget "
                "and resume to continue",
                self.issue.number,
                exc.current,
                exc.budget,
                extra=self._log_extra,
            )
        except asyncio.CancelledError:
            logger.info("Pipeline for issue #%d cancelled", self.issue.number, extra=self._log_extra)
            await asyncio.shield(self.progress.append_event("Pipeline interrupted"))
            raise

        if outcome == PipelineOutcome.COMPLETED and failed_phases:
            outcome = PipelineOutcome.COMPLETED_WITH_FAILURES
        return await self._finish(outcome, error, failed_phases, start)

    # ── Phase execution ──────────────────────────────────────────────────────

    async def _run_phase(
        self,
        executor: PhaseExecutor,
        phase: PhaseDefinition,
        ctx: PhaseContext,
    ) -> tuple[PhaseResult, bool]:
        """Execute, gate and (once) retry a phase.  Returns ``(result, halted)``."""
        result = await self._execute(executor, phase, ctx)
        if not result.success:
            return result, False

        gate_ctx = GateContext(
            progress_dir=self.checkpoint.progress_dir,
            worktree_path=self.worktree.path,
            base_commit=self.worktree.base_commit or None,
        )
        gate_result = await self._run_gate(phase, gate_ctx)
        if gate_result is None:
            await self.checkpoint.complete_phase(phase.id, result.output_path or "")
            return result, False

        if phase.id == AMBIGUITY_PHASE and self.gates.should_halt(gate_ctx):
            halted = result.model_copy(
                update={
                    "success": False,
                    "error": "Halted: ambiguities in analysis exceed the configured threshold",
                    "gate_result": gate_result,
                }
            )
            await self.checkpoint.record_phase_result(halted, replace_last=True)
            await self.progress.append_event("Pipeline halted: too many ambiguities")
            return halted, True

        if not gate_result.failed:
            await self.checkpoint.complete_phase(phase.id, result.output_path or "")
            return result.model_copy(update={"gate_result": gate_result}), False

        logger.warning(
            "Gate failed for phase %d; retrying",
            phase.id,
            extra={**self._log_extra, "phase": phase.id},
        )
        await self.progress.append_event(f"Phase {phase.id} gate failed; retrying phase")

        retry = await self._execute(executor, phase, ctx, replace_last=True)
        if not retry.success:
            return retry, False

        gate_result = await self._run_gate(phase, gate_ctx)
        if gate_result is not None and gate_result.failed:
            failed = retry.model_copy(
                update={
                    "success": False,
                    "error": f"Gate validation failed for phase {phase.id} after retry",
                    "gate_result": gate_result,
                }
            )
            await self.checkpoint.record_phase_result(failed, replace_last=True)
            logger.error(
                "Gate still failing for phase %d after retry",
                phase.id,
                extra={**self._log_extra, "phase": phase.id},
            )
            return failed, False

        await self.checkpoint.complete_phase(phase.id, retry.output_path or "")
        return retry.model_copy(update={"gate_result": gate_result}), False

    async def _execute(
        self,
        executor: PhaseExecutor,
        phase: PhaseDefinition,
        ctx: PhaseContext,
        *,
        replace_last: bool = False,
    ) -> PhaseResult:
        """Run the executor in a fresh session and record the result."""
        await self.checkpoint.start_phase(phase.id)
        await self.progress.append_event(f"Phase {phase.id} started: {phase.name}")
        logger.info("Phase %d: %s", phase.id, phase.name, extra={**self._log_extra, "phase": phase.id})

        tokens_before = self.checkpoint.get_state().token_usage.by_phase.get(phase.id, 0)
        start = time.monotonic()
        output_path: str | None = None
        error: str | None = None
        session: SessionHandle | None = None
        try:
            session = await self._open_session(phase.id)
            output_path = await executor.execute(dataclasses.replace(ctx, session=session))
        except (BudgetExceededError, asyncio.CancelledError):
            raise
        except CapabilityMismatchError as exc:
            error = str(exc)
        except Exception as exc:
            logger.exception(
                "Phase %d (%s) raised",
                phase.id,
                phase.name,
                extra={**self._log_extra, "phase": phase.id},
            )
            error = str(exc) or type(exc).__name__
        finally:
            if session is not None:
                await self._close_session(session)

        duration = time.monotonic() - start
        tokens = self.checkpoint.get_state().token_usage.by_phase.get(phase.id, 0) - tokens_before
        result = PhaseResult(
            phase=phase.id,
            phase_name=phase.name,
            success=error is None,
            duration=duration,
            token_usage=tokens,
            output_path=output_path,
            error=error,
        )
        await self.checkpoint.record_phase_result(result, replace_last=replace_last)

        if error is None:
            await self.progress.append_event(f"Phase {phase.id} completed in {duration:.1f}s")
        else:
            await self.progress.append_event(f"Phase {phase.id} failed: {error}")
        return result

    async def _run_gate(self, phase: PhaseDefinition, gate_ctx: GateContext) -> GateResult | None:
        result = await self.gates.evaluate(phase.id, gate_ctx)
        if result is None:
            return None

        await self.checkpoint.record_gate_result(phase.id, result)
        extra = {**self._log_extra, "phase": phase.id}
        if result.status == GateStatus.FAIL:
            for message in result.errors:
                logger.error("Gate phase %d: %s", phase.id, message, extra=extra)
            await self.progress.append_event(f"Gate phase {phase.id} failed: {'; '.join(result.errors)}")
        elif result.status == GateStatus.WARN:
            for message in result.warnings:
                logger.warning("Gate phase %d: %s", phase.id, message, extra=extra)
            await self.progress.append_event(
                f"Gate phase {phase.id}: passed with {len(result.warnings)} warning(s)"
            )
        else:
            await self.progress.append_event(f"Gate phase {phase.id}: passed")
        return result

    # ── Isolation sessions ───────────────────────────────────────────────────

    async def _open_session(self, phase_id: int) -> SessionHandle:
        """Start the phase's session.

        Raises:
            CapabilityMismatchError: a sandboxed phase's policy cannot be met.
        """
        iso = self.isolation
        if phase_id in iso.phases:
            provider = negotiate_policy(
                iso.provider,
                iso.policy,
                allow_fallback_to_host=iso.allow_fallback_to_host,
                host_provider=iso.host_provider,
            )
            policy = iso.policy
        else:
            provider = iso.host_provider or iso.provider
            policy = IsolationPolicy()

        retry = self.services.retry
        started = await self.services.retry_executor.execute(
            RetryOptions(
                fn=lambda _attempt: provider.start(policy),
                max_attempts=retry.max_attempts,
                base_delay_ms=retry.base_delay_ms,
                max_delay_ms=retry.max_delay_ms,
                description=f"{provider.name} session for issue #{self.issue.number}",
            )
        )
        if not started.success or started.result is None:
            raise RuntimeError(f"Could not start {provider.name} session: {started.error_message}")
        return SessionHandle(provider=provider, session_id=started.result)

    async def _close_session(self, session: SessionHandle) -> None:
        try:
            await asyncio.shield(session.provider.destroy(session.session_id))
        except Exception:
            logger.exception(
                "Failed to destroy session %s", session.session_id, extra=self._log_extra
            )

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _build_context(self) -> PhaseContext:
        guard = self.budget_guard

        async def record_tokens(agent: str, tokens: int | None) -> None:
            if guard is not None:
                await guard.record_tokens(agent, tokens)
            elif tokens:
                phase = self.checkpoint.get_state().current_phase
                self.services.token_tracker.record(self.issue.number, agent, phase, tokens)
                await self.checkpoint.record_token_usage(agent, phase, tokens)

        def check_budget() -> None:
            if guard is not None:
                guard.check_budget()

        return PhaseContext(
            issue=self.issue,
            worktree=self.worktree,
            options=self.options,
            services=self.services,
            io=PhaseIO(
                progress_dir=self.checkpoint.progress_dir,
                progress=self.progress,
                checkpoint=self.checkpoint,
            ),
            callbacks=PhaseCallbacks(
                record_tokens=record_tokens,
                check_budget=check_budget,
                update_progress=self.progress.append_event,
            ),
        )

    def _prior_noncritical_failures(self, resume_from: int) -> list[int]:
        """Non-critical phases that failed in an earlier run and will be skipped."""
        latest: dict[int, PhaseResult] = {}
        for result in self.checkpoint.get_state().phases:
            latest[result.phase] = result
        return [
            phase_id
            for phase_id, result in sorted(latest.items())
            if phase_id < resume_from
            and not result.success
            and not self.manifest.definition(phase_id).critical
        ]

    async def _finish(
        self,
        outcome: PipelineOutcome,
        error: str | None,
        failed_phases: list[int],
        start: float,
    ) -> IssueResult:
        status = {
            PipelineOutcome.COMPLETED: IssueRunStatus.COMPLETED,
            PipelineOutcome.COMPLETED_WITH_FAILURES: IssueRunStatus.COMPLETED_WITH_FAILURES,
        }.get(outcome, IssueRunStatus.FAILED)
        budget_exceeded = outcome == PipelineOutcome.BUDGET_EXCEEDED
        await self.checkpoint.mark_status(status, error=error, budget_exceeded=budget_exceeded)

        if outcome.succeeded:
            logger.info(
                "Issue #%d finished: %s", self.issue.number, outcome.value, extra=self._log_extra
            )
        else:
            logger.error(
                "Issue #%d finished: %s (%s)",
                self.issue.number,
                outcome.value,
                error,
                extra=self._log_extra,
            )
        await self.progress.append_event(f"Pipeline finished: {outcome.value}")

        state = self.checkpoint.get_state()
        return IssueResult(
            issue_number=self.issue.number,
            issue_title=self.issue.title,
            outcome=outcome,
            phases=list(state.phases),
            failed_phases=failed_phases,
            worktree_path=str(self.worktree.path),
            branch_name=self.worktree.branch,
            total_duration=time.monotonic() - start,
            token_usage=state.token_usage.total,
            error=error,
            budget_exceeded=budget_exceeded,
        )
