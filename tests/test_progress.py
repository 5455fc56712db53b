"""Tests for the per-issue progress log."""

from __future__ import annotations

import asyncio

from convoy.progress import IssueProgressWriter


class TestIssueProgressWriter:
    async def test_header_written_once(self, tmp_path):
        writer = IssueProgressWriter(tmp_path / "issues" / "4", 4, "Fix login")
        await writer.append_event("Pipeline started")
        await writer.append_event("Phase 1 started: Analysis")

        content = writer.path.read_text()
        assert content.startswith("# Issue #4: Fix login\n\n")
        assert content.count("# Issue #4") == 1
        assert writer.read_events()[0].endswith("Pipeline started")
        assert len(writer.read_events()) == 2

    async def test_concurrent_appends_keep_every_line(self, tmp_path):
        writer = IssueProgressWriter(tmp_path, 1)
        await asyncio.gather(*(writer.append_event(f"event {i}") for i in range(25)))
        assert len(writer.read_events()) == 25

    def test_read_events_missing_file(self, tmp_path):
        assert IssueProgressWriter(tmp_path, 1).read_events() == []
