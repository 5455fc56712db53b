"""Per-issue git worktrees.

Each issue pipeline works in its own ``git worktree`` on its own branch,
created from the project's base branch.  A worktree that already exists
(from an interrupted run) is reused as-is.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorktreeInfo:
    """Where an issue's work happens."""

    path: Path
    branch: str
    base_commit: str = ""


class WorktreeProvider(Protocol):
    async def provision(self, issue_number: int) -> WorktreeInfo: ...


class GitWorktreeManager:
    """Creates ``<worktree_root>/issue-<n>`` on branch ``<prefix>/issue-<n>``."""

    def __init__(
        self,
        repo_path: Path,
        worktree_root: Path,
        base_branch: str = "main",
        branch_prefix: str = "convoy",
    ) -> None:
        self.repo_path = repo_path
        self.worktree_root = worktree_root
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix

    def branch_for(self, issue_number: int) -> str:
        return f"{self.branch_prefix}/issue-{issue_number}"

    async def provision(self, issue_number: int) -> WorktreeInfo:
        path = self.worktree_root / f"issue-{issue_number}"
        branch = self.branch_for(issue_number)

        if path.exists():
            base_commit = await self._git(path, "merge-base", self.base_branch, "HEAD")
            logger.info("Reusing worktree for issue #%d at %s", issue_number, path)
        else:
            base_commit = await self._git(self.repo_path, "rev-parse", self.base_branch)
            self.worktree_root.mkdir(parents=True, exist_ok=True)
            await self._git(
                self.repo_path, "worktree", "add", "-B", branch, str(path), self.base_branch
            )
            logger.info("Created worktree for issue #%d at %s (%s)", issue_number, path, branch)

        return WorktreeInfo(path=path, branch=branch, base_commit=base_commit)

    @staticmethod
    async def _git(cwd: Path, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=60)
        if proc.returncode != 0:
            raise RuntimeError(
                f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace").strip()
