"""Tests for phase executors, agent context files and the phase manifest."""

from __future__ import annotations

import dataclasses
import json

import pytest

from conftest import FakeExecutor, FakeLauncher, make_phase_context
from convoy.errors import ConvoyError
from convoy.pipeline.phases import (
    ISSUE_PHASES,
    REVIEW_RESPONSE_PHASE_IDS,
    AgentPhaseExecutor,
    AgentStep,
    PhaseManifest,
    TaskPlanExecutor,
    write_agent_context,
)

PLAN = """\
### Task: task-001 - Loader
**Description:** Load it.
**Files:** src/loader.py
**Dependencies:** none
**Acceptance Criteria:**
- loads

### Task: task-002 - Wire
**Description:** Wire it.
**Files:** src/main.py
**Dependencies:** task-001
**Acceptance Criteria:**
- wired

### Task: task-003 - Docs
**Description:** Document it.
**Files:** README.md
**Dependencies:** none
**Acceptance Criteria:**
- documented
"""


# ── Agent phases ─────────────────────────────────────────────────────────────


class TestAgentPhaseExecutor:
    async def test_runs_steps_in_order(self, tmp_path):
        launcher = FakeLauncher(tokens=7)
        ctx = await make_phase_context(tmp_path, launcher=launcher)
        executor = AgentPhaseExecutor(
            ISSUE_PHASES[0],
            [AgentStep("issue-analyst", "analysis.md"), AgentStep("codebase-scout", "scout-report.md")],
        )

        output = await executor.execute(ctx)

        assert output == str(ctx.io.progress_dir / "analysis.md")
        assert [c.agent for c in launcher.calls] == ["issue-analyst", "codebase-scout"]
        assert (ctx.io.progress_dir / "scout-report.md").exists()
        assert ctx.io.checkpoint.get_state().token_usage.by_agent == {
            "issue-analyst": 7,
            "codebase-scout": 7,
        }

    async def test_failing_agent_raises(self, tmp_path):
        launcher = FakeLauncher(fail={"codebase-scout"})
        ctx = await make_phase_context(tmp_path, launcher=launcher, max_attempts=2)
        executor = AgentPhaseExecutor(
            ISSUE_PHASES[0],
            [AgentStep("issue-analyst", "analysis.md"), AgentStep("codebase-scout", "scout-report.md")],
        )
        with pytest.raises(ConvoyError, match="codebase-scout failed after 2 attempt"):
            await executor.execute(ctx)
        assert [c.agent for c in launcher.calls] == ["issue-analyst", "codebase-scout", "codebase-scout"]

    def test_needs_steps(self):
        with pytest.raises(ValueError):
            AgentPhaseExecutor(ISSUE_PHASES[1], [])

    async def test_requires_session(self, tmp_path):
        ctx = await make_phase_context(tmp_path)
        executor = AgentPhaseExecutor(ISSUE_PHASES[1], [AgentStep("planner", "plan.md")])
        with pytest.raises(ConvoyError, match="isolation session"):
            await executor.execute(dataclasses.replace(ctx, session=None))


class TestAgentContext:
    async def test_context_document(self, tmp_path):
        ctx = await make_phase_context(tmp_path)
        await ctx.io.checkpoint.complete_phase(1, "/p/analysis.md")
        path = write_agent_context(
            ctx, "code-writer", 3, tmp_path / "out.md", suffix="task-001", extra={"task": {"id": "task-001"}}
        )
        assert path.name == "code-writer-phase3-task-001.json"
        document = json.loads(path.read_text())
        assert document["issue"]["number"] == 1
        assert document["input_files"] == {"1": "/p/analysis.md"}
        assert document["task"] == {"id": "task-001"}
        assert document["output_path"] == str(tmp_path / "out.md")


# ── Implementation phase ─────────────────────────────────────────────────────


class TestTaskPlanExecutor:
    async def test_runs_tasks_in_dependency_order(self, tmp_path):
        launcher = FakeLauncher()
        ctx = await make_phase_context(tmp_path, launcher=launcher)
        (ctx.io.progress_dir / "implementation-plan.md").write_text(PLAN)

        output = await TaskPlanExecutor(ISSUE_PHASES[2]).execute(ctx)

        assert output.endswith("implementation-summary.md")
        order = [c.output_path.rsplit("/", 1)[-1] for c in launcher.calls]
        assert order == ["task-001.md", "task-002.md", "task-003.md"]
        assert ctx.io.checkpoint.get_state().completed_tasks == ["task-001", "task-002", "task-003"]

    async def test_failed_task_blocks_dependents_and_fails_phase(self, tmp_path):
        launcher = FakeLauncher(fail={"task-001"})
        ctx = await make_phase_context(tmp_path, launcher=launcher)
        (ctx.io.progress_dir / "implementation-plan.md").write_text(PLAN)

        with pytest.raises(ConvoyError, match="1 task\\(s\\) failed, 1 blocked"):
            await TaskPlanExecutor(ISSUE_PHASES[2]).execute(ctx)

        state = ctx.io.checkpoint.get_state()
        assert state.completed_tasks == ["task-003"]
        assert [f.task_id for f in state.failed_tasks] == ["task-001"]
        assert state.blocked_tasks == ["task-002"]
        summary = (ctx.io.progress_dir / "implementation-summary.md").read_text()
        assert "task-002 (Wire): blocked" in summary

    async def test_completed_tasks_not_repeated(self, tmp_path):
        launcher = FakeLauncher()
        ctx = await make_phase_context(tmp_path, launcher=launcher)
        (ctx.io.progress_dir / "implementation-plan.md").write_text(PLAN)
        await ctx.io.checkpoint.complete_task("task-001")

        await TaskPlanExecutor(ISSUE_PHASES[2]).execute(ctx)
        ran = [c.output_path.rsplit("/", 1)[-1] for c in launcher.calls]
        assert ran == ["task-002.md", "task-003.md"]

    async def test_missing_plan(self, tmp_path):
        ctx = await make_phase_context(tmp_path)
        with pytest.raises(ConvoyError, match="Cannot read"):
            await TaskPlanExecutor(ISSUE_PHASES[2]).execute(ctx)


# ── Manifest ─────────────────────────────────────────────────────────────────


class TestPhaseManifest:
    def test_default_five_phases(self):
        manifest = PhaseManifest.default()
        assert manifest.phase_ids == [1, 2, 3, 4, 5]
        assert [manifest.definition(i).critical for i in manifest.phase_ids] == [True, True, True, False, False]

    def test_phase_agent_override(self):
        manifest = PhaseManifest.default({2: "architect", 3: "coder"})
        assert manifest.get(2).steps[0].agent == "architect"
        assert manifest.get(3).agent == "coder"

    def test_review_response_subset(self):
        manifest = PhaseManifest.default().subset(REVIEW_RESPONSE_PHASE_IDS)
        assert manifest.phase_ids == [3, 4, 5]
        assert len(manifest) == 3

    def test_subset_unknown(self):
        with pytest.raises(ValueError):
            PhaseManifest.default().subset([9])

    def test_duplicate_ids(self):
        with pytest.raises(ValueError):
            PhaseManifest([FakeExecutor(1), FakeExecutor(1)])

    def test_definition_for_custom_executor(self):
        manifest = PhaseManifest([FakeExecutor(2), FakeExecutor(7)])
        assert manifest.definition(2).name == "Planning"
        assert manifest.definition(7).name == "fake-7"
