"""Checkpoint store — crash-safe per-issue and fleet-wide progress records.

Layout under the state directory::

    fleet-checkpoint.json          FleetCheckpointState
    issues/<n>/checkpoint.json     CheckpointState for issue n
    issues/<n>/progress.md         human-readable event log

Every write goes to a temp file in the same directory, is fsynced, then
renamed over the target, so readers only ever see a complete document.
Unreadable documents are logged and treated as absent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from convoy.pipeline.models import (
    CheckpointState,
    FailedTask,
    FleetCheckpointState,
    FleetIssueRecord,
    FleetIssueStatus,
    GateResult,
    IssueRunStatus,
    PhaseResult,
    TokenUsageSummary,
)

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoint.json"
FLEET_CHECKPOINT_FILENAME = "fleet-checkpoint.json"

M = TypeVar("M", bound=BaseModel)


def issue_progress_dir(state_dir: Path, issue_number: int) -> Path:
    return state_dir / "issues" / str(issue_number)


# ── Atomic file I/O ──────────────────────────────────────────────────────────


def atomic_write_text(path: Path, data: str) -> None:
    """Write ``data`` to ``path`` via temp file + fsync + ``os.replace``.

    The temp file lives beside the target so the rename stays on one
    filesystem.  It is removed if anything fails before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, model: BaseModel) -> None:
    atomic_write_text(path, model.model_dump_json(indent=2))


def read_model(path: Path, model_type: type[M]) -> M | None:
    """Parse ``path`` as ``model_type``; ``None`` if missing or unreadable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not read checkpoint %s: %s", path, exc)
        return None
    try:
        return model_type.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning(
            "Ignoring unparsable checkpoint %s (%d validation errors)",
            path,
            exc.error_count(),
        )
        return None


def _remove_stale_temp_files(path: Path) -> None:
    for stale in path.parent.glob(f".{path.name}.*.tmp"):
        logger.debug("Removing stale checkpoint temp file %s", stale)
        with contextlib.suppress(OSError):
            stale.unlink()


# ── Per-issue checkpoint ─────────────────────────────────────────────────────


class CheckpointManager:
    """Owns one issue's ``checkpoint.json``.

    All mutations are serialized by a lock and persisted before they
    return.  Call :meth:`load` before anything else.
    """

    def __init__(self, progress_dir: Path) -> None:
        self.progress_dir = progress_dir
        self.path = progress_dir / CHECKPOINT_FILENAME
        self._lock = asyncio.Lock()
        self._state: CheckpointState | None = None

    async def load(self, issue_number: int) -> CheckpointState:
        """Load the persisted state, or start fresh if absent or unreadable.

        Loading an existing checkpoint counts as a resume.
        """
        async with self._lock:
            await asyncio.to_thread(_remove_stale_temp_files, self.path)
            state = await asyncio.to_thread(read_model, self.path, CheckpointState)
            if state is not None and state.issue_number != issue_number:
                logger.warning(
                    "Checkpoint %s belongs to issue #%d, not #%d; starting fresh",
                    self.path,
                    state.issue_number,
                    issue_number,
                )
                state = None

            if state is None:
                logger.info("No checkpoint for issue #%d; starting fresh", issue_number)
                state = CheckpointState(issue_number=issue_number)
            else:
                state.resume_count += 1
                logger.info(
                    "Resuming issue #%d from checkpoint (resume #%d, %d phase results)",
                    issue_number,
                    state.resume_count,
                    len(state.phases),
                )
            self._state = state
            await self._persist()
            return state

    def get_state(self) -> CheckpointState:
        if self._state is None:
            raise RuntimeError("Checkpoint not loaded; call load() first")
        return self._state

    # ── Phases ───────────────────────────────────────────────────────────────

    async def start_phase(self, phase: int) -> None:
        async with self._lock:
            state = self.get_state()
            state.current_phase = phase
            state.status = IssueRunStatus.RUNNING
            await self._persist()

    async def record_phase_result(self, result: PhaseResult, *, replace_last: bool = False) -> None:
        """Append a phase result, or replace the trailing one (gate retry).

        Raises:
            ValueError: ``replace_last`` with no trailing entry for the same phase.
        """
        async with self._lock:
            state = self.get_state()
            if replace_last:
                last = state.last_phase_result
                if last is None or last.phase != result.phase:
                    raise ValueError(f"No trailing result for phase {result.phase} to replace")
                state.phases[-1] = result
            else:
                state.phases.append(result)
            if not result.success and result.error:
                state.last_error = result.error
            await self._persist()

    async def record_gate_result(self, phase_id: int, gate_result: GateResult) -> None:
        """Attach a gate result to the most recently appended phase result.

        Raises:
            ValueError: the trailing entry is missing or belongs to another phase.
        """
        async with self._lock:
            state = self.get_state()
            last = state.last_phase_result
            if last is None or last.phase != phase_id:
                raise ValueError(
                    f"Cannot attach gate result for phase {phase_id}: "
                    f"last recorded phase is {last.phase if last else None}"
                )
            state.phases[-1] = last.model_copy(update={"gate_result": gate_result})
            await self._persist()

    async def complete_phase(self, phase: int, output_path: str) -> None:
        async with self._lock:
            state = self.get_state()
            if phase not in state.completed_phases:
                state.completed_phases.append(phase)
            state.phase_outputs[phase] = output_path
            await self._persist()

    def is_phase_completed(self, phase: int) -> bool:
        return phase in self.get_state().completed_phases

    def resume_point(self) -> int:
        """Phase id to resume from.

        The phase after the last recorded result if that phase succeeded and
        was marked completed (its gate passed or only warned); the same phase
        otherwise, including a success whose gate failed or never ran; ``1``
        for an empty history.
        """
        last = self.get_state().last_phase_result
        if last is None:
            return 1
        if last.success and self.is_phase_completed(last.phase):
            return last.phase + 1
        return last.phase

    # ── Tasks ────────────────────────────────────────────────────────────────

    async def start_task(self, task_id: str) -> None:
        async with self._lock:
            self.get_state().current_task = task_id
            await self._persist()

    async def complete_task(self, task_id: str) -> None:
        async with self._lock:
            state = self.get_state()
            if task_id not in state.completed_tasks:
                state.completed_tasks.append(task_id)
            state.failed_tasks = [f for f in state.failed_tasks if f.task_id != task_id]
            state.current_task = None
            await self._persist()

    async def block_task(self, task_id: str) -> None:
        async with self._lock:
            state = self.get_state()
            if task_id not in state.blocked_tasks:
                state.blocked_tasks.append(task_id)
            await self._persist()

    async def fail_task(self, task_id: str, error: str, attempts: int = 1) -> None:
        async with self._lock:
            state = self.get_state()
            state.failed_tasks = [f for f in state.failed_tasks if f.task_id != task_id]
            state.failed_tasks.append(FailedTask(task_id=task_id, error=error, attempts=attempts))
            state.current_task = None
            await self._persist()

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    async def record_token_usage(self, agent: str, phase: int, tokens: int) -> None:
        async with self._lock:
            usage = self.get_state().token_usage
            usage.total += tokens
            usage.by_phase[phase] = usage.by_phase.get(phase, 0) + tokens
            usage.by_agent[agent] = usage.by_agent.get(agent, 0) + tokens
            await self._persist()

    async def set_worktree_info(self, worktree_path: str, branch_name: str, base_commit: str = "") -> None:
        async with self._lock:
            state = self.get_state()
            state.worktree_path = worktree_path
            state.branch_name = branch_name
            state.base_commit = base_commit
            await self._persist()

    async def mark_status(
        self,
        status: IssueRunStatus,
        *,
        error: str | None = None,
        budget_exceeded: bool | None = None,
    ) -> None:
        async with self._lock:
            state = self.get_state()
            state.status = status
            if error is not None:
                state.last_error = error
            if budget_exceeded is not None:
                state.budget_exceeded = budget_exceeded
            await self._persist()

    async def reset(self) -> None:
        """Clear phase history and return to ``not-started``.

        The issue number, worktree and branch are kept.
        """
        async with self._lock:
            state = self.get_state()
            self._state = CheckpointState(
                issue_number=state.issue_number,
                worktree_path=state.worktree_path,
                branch_name=state.branch_name,
                base_commit=state.base_commit,
                token_usage=TokenUsageSummary(),
            )
            await self._persist()

    async def _persist(self) -> None:
        state = self.get_state()
        state.updated_at = datetime.now(timezone.utc)
        payload = state.model_dump_json(indent=2)
        await asyncio.to_thread(atomic_write_text, self.path, payload)


# ── Fleet checkpoint ─────────────────────────────────────────────────────────


class FleetCheckpointManager:
    """Owns ``fleet-checkpoint.json``, the source of truth for fleet resume.

    :meth:`set_issue_status` is the only way to change an issue's record.
    Updates for one issue are serialized; different issues may update
    concurrently and every write carries the latest snapshot of all of them.
    """

    def __init__(self, state_dir: Path, project_name: str) -> None:
        self.state_dir = state_dir
        self.path = state_dir / FLEET_CHECKPOINT_FILENAME
        self.project_name = project_name
        self._issue_locks: dict[int, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()
        self._state: FleetCheckpointState | None = None

    async def load(self) -> FleetCheckpointState:
        await asyncio.to_thread(_remove_stale_temp_files, self.path)
        state = await asyncio.to_thread(read_model, self.path, FleetCheckpointState)
        if state is None:
            state = FleetCheckpointState(project_name=self.project_name)
        else:
            state.resume_count += 1
            logger.info(
                "Loaded fleet checkpoint: %d issues tracked (resume #%d)",
                len(state.issues),
                state.resume_count,
            )
        self._state = state
        await self.flush()
        return state

    def get_state(self) -> FleetCheckpointState:
        if self._state is None:
            raise RuntimeError("Fleet checkpoint not loaded; call load() first")
        return self._state

    async def set_issue_status(
        self,
        issue_number: int,
        status: FleetIssueStatus,
        worktree_path: str = "",
        branch_name: str = "",
        token_usage: int = 0,
        issue_title: str = "",
        error: str | None = None,
    ) -> None:
        """Replace an issue's record and persist before returning."""
        lock = self._issue_locks.setdefault(issue_number, asyncio.Lock())
        async with lock:
            self.get_state().issues[issue_number] = FleetIssueRecord(
                status=status,
                worktree_path=worktree_path,
                branch_name=branch_name,
                token_usage=token_usage,
                issue_title=issue_title,
                error=error,
            )
            await self.flush()

    def get_issue_status(self, issue_number: int) -> FleetIssueRecord | None:
        return self.get_state().issues.get(issue_number)

    def is_issue_completed(self, issue_number: int) -> bool:
        record = self.get_issue_status(issue_number)
        return record is not None and record.status == FleetIssueStatus.COMPLETED

    def issues_to_resume(self) -> list[int]:
        """Tracked issues that have not completed, in issue-number order."""
        return sorted(
            n for n, record in self.get_state().issues.items()
            if record.status != FleetIssueStatus.COMPLETED
        )

    async def set_dag(self, dag: dict[int, list[int]], waves: list[list[int]]) -> None:
        state = self.get_state()
        state.dag = {n: list(deps) for n, deps in dag.items()}
        state.waves = [list(w) for w in waves]
        await self.flush()

    async def flush(self) -> None:
        """Persist the current snapshot."""
        async with self._write_lock:
            state = self.get_state()
            state.updated_at = datetime.now(timezone.utc)
            payload = state.model_dump_json(indent=2)
            await asyncio.to_thread(atomic_write_text, self.path, payload)
