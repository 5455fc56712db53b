"""Phase gates — post-phase quality checks over a phase's output artifacts.

Gates run strictly after a phase executor returns successfully and score
what it wrote to the progress directory (or the worktree).  They never raise
for bad output; findings are reported through :class:`GateResult`.

Built-in gates:
    - ``AnalysisToPlanningGate``          — phase 1 analysis + scout report
    - ``AnalysisAmbiguityGate``           — phase 1 ambiguity count (merged)
    - ``PlanningToImplementationGate``    — phase 2 task plan
    - ``ImplementationToIntegrationGate`` — phase 3 produced a diff
    - ``IntegrationToPRGate``             — phase 4 integration report

:class:`GateRegistry` maps phase ids to gates.  Build one per fleet run and
pass it to each pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from convoy.errors import CyclicDependencyError, DependencyResolutionError
from convoy.pipeline.models import GateResult, merge_gate_results
from convoy.pipeline.plan import PLAN_FILENAME, build_task_graph, parse_implementation_plan

logger = logging.getLogger(__name__)

DEFAULT_AMBIGUITY_THRESHOLD = 5
AMBIGUITY_PHASE = 1


# ── Gate context & protocol ──────────────────────────────────────────────────


@dataclass(frozen=True)
class GateContext:
    """What a gate may inspect."""

    progress_dir: Path
    worktree_path: Path
    base_commit: str | None = None


@runtime_checkable
class PhaseGate(Protocol):
    async def validate(self, ctx: GateContext) -> GateResult:
        """Score the phase's output."""
        ...


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def _section_body(content: str, heading: str) -> str | None:
    """Body of a ``## heading`` section, or ``None`` if the heading is absent."""
    match = re.search(
        rf"^##\s*{re.escape(heading)}[ \t]*\n(.*?)(?=^##\s|\Z)",
        content,
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    return match.group(1).strip() if match else None


def _has_entries(body: str | None) -> bool:
    return body is not None and body != "" and body.lower() != "_none_"


# ── Phase 1 ──────────────────────────────────────────────────────────────────


class AnalysisToPlanningGate:
    """``analysis.md`` covers requirements, change type and scope;
    ``scout-report.md`` names at least one file path.
    """

    async def validate(self, ctx: GateContext) -> GateResult:
        errors: list[str] = []

        analysis = _read_text(ctx.progress_dir / "analysis.md")
        if analysis is None:
            errors.append("analysis.md is missing from the progress directory")
        else:
            requirements = re.search(
                r"^##\s*requirements?[^\n]*\n(.*?)(?=^##\s|\Z)",
                analysis,
                re.IGNORECASE | re.MULTILINE | re.DOTALL,
            )
            if not re.search(r"requirements?", analysis, re.IGNORECASE):
                errors.append("analysis.md does not contain a requirements section")
            elif requirements is not None and not requirements.group(1).strip():
                errors.append("analysis.md requirements section appears to be empty")
            if not re.search(r"change.?type", analysis, re.IGNORECASE):
                errors.append("analysis.md does not specify a change type")
            if not re.search(r"\bscope\b", analysis, re.IGNORECASE):
                errors.append("analysis.md does not specify a scope")

        scout = _read_text(ctx.progress_dir / "scout-report.md")
        if scout is None:
            errors.append("scout-report.md is missing from the progress directory")
        elif not re.search(r"\S+/\S+", scout):
            errors.append("scout-report.md does not list any relevant files")

        return GateResult.from_findings(errors)


def count_ambiguities(progress_dir: Path) -> int | None:
    """Non-empty lines under ``## Ambiguities`` in ``analysis.md``.

    ``None`` when the file is missing.
    """
    content = _read_text(progress_dir / "analysis.md")
    if content is None:
        return None

    count = 0
    in_section = False
    for line in content.splitlines():
        if re.match(r"^##\s+Ambiguities", line, re.IGNORECASE):
            in_section = True
            continue
        if in_section and re.match(r"^##\s", line):
            break
        if in_section and line.strip():
            count += 1
    return count


class AnalysisAmbiguityGate:
    """Warns on any ambiguity; fails only above the threshold when halting is on."""

    def __init__(
        self,
        threshold: int = DEFAULT_AMBIGUITY_THRESHOLD,
        halt_on_ambiguity: bool = False,
    ) -> None:
        self.threshold = threshold
        self.halt_on_ambiguity = halt_on_ambiguity

    async def validate(self, ctx: GateContext) -> GateResult:
        count = count_ambiguities(ctx.progress_dir)
        if count is None:
            return GateResult.from_findings(warnings=["analysis.md is missing; skipping ambiguity check"])
        if count == 0:
            return GateResult.from_findings()

        noun = "ambiguity" if count == 1 else "ambiguities"
        message = f"{count} {noun} found in analysis.md (threshold: {self.threshold})"
        if self.exceeds_threshold(count) and self.halt_on_ambiguity:
            return GateResult.from_findings(errors=[message])
        return GateResult.from_findings(warnings=[message])

    def exceeds_threshold(self, count: int | None) -> bool:
        return count is not None and count > self.threshold


# ── Phase 2 ──────────────────────────────────────────────────────────────────


class PlanningToImplementationGate:
    """Every plan task is complete and the task graph is a valid DAG.

    Files the plan references but the worktree lacks are warnings, since
    tasks may create them.
    """

    async def validate(self, ctx: GateContext) -> GateResult:
        content = _read_text(ctx.progress_dir / PLAN_FILENAME)
        if content is None:
            return GateResult.from_findings([f"{PLAN_FILENAME} is missing from the progress directory"])

        tasks = parse_implementation_plan(content)
        if not tasks:
            return GateResult.from_findings([f"{PLAN_FILENAME} contains no tasks"])

        errors: list[str] = []
        warnings: list[str] = []
        for task in tasks:
            label = f"Task {task.id} ({task.name})"
            if not task.description:
                errors.append(f"{label} is missing a description")
            if not task.files:
                errors.append(f"{label} does not list any files")
            if not task.acceptance_criteria:
                errors.append(f"{label} has no acceptance criteria")

        duplicates = [task_id for task_id, n in Counter(t.id for t in tasks).items() if n > 1]
        if duplicates:
            errors.append(f"Implementation plan repeats task ids: {', '.join(duplicates)}")
        else:
            try:
                build_task_graph(tasks)
            except CyclicDependencyError as exc:
                errors.append(f"Implementation plan has a dependency cycle: {exc}")
            except DependencyResolutionError as exc:
                errors.append(f"Implementation plan has an invalid dependency: {exc}")

        for task in tasks:
            for file_path in task.files:
                if not (ctx.worktree_path / file_path).exists():
                    warnings.append(f"Task {task.id}: file does not exist: {file_path}")

        return GateResult.from_findings(errors, warnings)


# ── Phase 3 ──────────────────────────────────────────────────────────────────


async def _run_git(cwd: Path, *args: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=60)
    if proc.returncode != 0:
        raise RuntimeError(f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}")
    return stdout.decode(errors="replace")


class ImplementationToIntegrationGate:
    """The implementation produced a non-empty diff (committed or staged).

    Outside a git checkout the check cannot run; that is a warning, not a
    failure.
    """

    async def validate(self, ctx: GateContext) -> GateResult:
        try:
            if ctx.base_commit:
                diff = await _run_git(ctx.worktree_path, "diff", f"{ctx.base_commit}..HEAD")
            else:
                diff = await _run_git(ctx.worktree_path, "diff", "HEAD")
            if not diff.strip():
                staged = await _run_git(ctx.worktree_path, "diff", "--cached")
                if not staged.strip():
                    return GateResult.from_findings(
                        ["No file changes detected; implementation phase produced no diff"]
                    )
        except (OSError, RuntimeError, asyncio.TimeoutError) as exc:
            return GateResult.from_findings(
                warnings=[f"Could not verify git diff (non-git environment): {exc}"]
            )
        return GateResult.from_findings()


# ── Phase 4 ──────────────────────────────────────────────────────────────────


class IntegrationToPRGate:
    """``integration-report.md`` exists and reports no new regressions."""

    async def validate(self, ctx: GateContext) -> GateResult:
        report = _read_text(ctx.progress_dir / "integration-report.md")
        if report is None:
            return GateResult.from_findings(["integration-report.md is missing from the progress directory"])

        errors: list[str] = []
        warnings: list[str] = []
        if not re.search(r"build", report, re.IGNORECASE):
            warnings.append("integration-report.md does not contain a build result section")
        if not re.search(r"test", report, re.IGNORECASE):
            warnings.append("integration-report.md does not contain a test result section")

        if _has_entries(_section_body(report, "New Regressions")):
            errors.append("integration-report.md contains new regression failures")
        if _has_entries(_section_body(report, "Pre-existing Failures")):
            warnings.append(
                "integration-report.md contains pre-existing failures (not caused by these changes)"
            )

        return GateResult.from_findings(errors, warnings)


# ── Gate Registry ────────────────────────────────────────────────────────────


class GateRegistry:
    """Phase id → gate, plus the ambiguity gate merged into phase 1.

    Usage::

        gates = GateRegistry.default(ambiguity_threshold=5)
        result = await gates.evaluate(1, ctx)   # None if no gate for the phase
    """

    def __init__(
        self,
        gates: dict[int, PhaseGate] | None = None,
        ambiguity_gate: AnalysisAmbiguityGate | None = None,
    ) -> None:
        self._gates: dict[int, PhaseGate] = dict(gates or {})
        self.ambiguity_gate = ambiguity_gate

    @classmethod
    def default(
        cls,
        ambiguity_threshold: int = DEFAULT_AMBIGUITY_THRESHOLD,
        halt_on_ambiguity: bool = False,
    ) -> GateRegistry:
        return cls(
            gates={
                1: AnalysisToPlanningGate(),
                2: PlanningToImplementationGate(),
                3: ImplementationToIntegrationGate(),
                4: IntegrationToPRGate(),
            },
            ambiguity_gate=AnalysisAmbiguityGate(ambiguity_threshold, halt_on_ambiguity),
        )

    def register(self, phase_id: int, gate: PhaseGate) -> None:
        self._gates[phase_id] = gate

    def get(self, phase_id: int) -> PhaseGate | None:
        return self._gates.get(phase_id)

    def has_gate(self, phase_id: int) -> bool:
        return phase_id in self._gates

    async def evaluate(self, phase_id: int, ctx: GateContext) -> GateResult | None:
        """Run the phase's gate; for phase 1 merge in the ambiguity gate."""
        gate = self._gates.get(phase_id)
        if gate is None:
            return None

        result = await self._run(gate, ctx)
        if phase_id == AMBIGUITY_PHASE and self.ambiguity_gate is not None:
            result = merge_gate_results(result, await self._run(self.ambiguity_gate, ctx))
        return result

    def should_halt(self, ctx: GateContext) -> bool:
        """True when halting on ambiguity is on and the threshold is exceeded."""
        gate = self.ambiguity_gate
        if gate is None or not gate.halt_on_ambiguity:
            return False
        return gate.exceeds_threshold(count_ambiguities(ctx.progress_dir))

    @staticmethod
    async def _run(gate: PhaseGate, ctx: GateContext) -> GateResult:
        try:
            return await gate.validate(ctx)
        except Exception as exc:
            logger.exception("Gate %s raised an exception", type(gate).__name__)
            return GateResult.from_findings([f"Gate check error: {exc}"])
