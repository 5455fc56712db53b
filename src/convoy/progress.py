"""Human-readable per-issue event log (``progress.md``)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

PROGRESS_FILENAME = "progress.md"


class IssueProgressWriter:
    """Appends timestamped events to an issue's ``progress.md``."""

    def __init__(self, progress_dir: Path, issue_number: int, issue_title: str = "") -> None:
        self.path = progress_dir / PROGRESS_FILENAME
        self._issue_number = issue_number
        self._issue_title = issue_title
        self._lock = asyncio.Lock()

    async def append_event(self, message: str) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"- {timestamp} {message}\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists()
        with open(self.path, "a", encoding="utf-8") as fh:
            if new_file:
                title = f": {self._issue_title}" if self._issue_title else ""
                fh.write(f"# Issue #{self._issue_number}{title}\n\n")
            fh.write(line)

    def read_events(self) -> list[str]:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        return [line[2:] for line in lines if line.startswith("- ")]
