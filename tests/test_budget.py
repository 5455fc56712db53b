"""Tests for token accounting and the per-issue budget guard."""

from __future__ import annotations

import logging

import pytest

from convoy.budget import BudgetStatus, IssueBudgetGuard, TokenTracker
from convoy.errors import BudgetExceededError
from convoy.pipeline.checkpoint import CheckpointManager


@pytest.fixture
async def checkpoint(tmp_path):
    manager = CheckpointManager(tmp_path / "issues" / "1")
    await manager.load(1)
    await manager.start_phase(2)
    return manager


class TestTokenTracker:
    def test_aggregations(self):
        tracker = TokenTracker()
        tracker.record(1, "analyst", 1, 100)
        tracker.record(1, "planner", 2, 50)
        tracker.record(2, "analyst", 1, 25)
        assert tracker.total() == 175
        assert tracker.issue_total(1) == 150
        assert tracker.by_agent() == {"analyst": 125, "planner": 50}
        assert tracker.by_issue() == {1: 150, 2: 25}
        assert tracker.by_phase() == {1: 125, 2: 50}

    def test_non_positive_ignored(self):
        tracker = TokenTracker()
        tracker.record(1, "a", 1, 0)
        tracker.record(1, "a", 1, -5)
        assert tracker.total() == 0

    @pytest.mark.parametrize(
        "used,budget,expected",
        [
            (10, None, BudgetStatus.OK),
            (79, 100, BudgetStatus.OK),
            (80, 100, BudgetStatus.WARNING),
            (100, 100, BudgetStatus.EXCEEDED),
        ],
    )
    def test_fleet_budget(self, used, budget, expected):
        tracker = TokenTracker()
        tracker.record(1, "a", 1, used)
        assert tracker.check_fleet_budget(budget) == expected


class TestIssueBudgetGuard:
    async def test_records_to_tracker_and_checkpoint(self, checkpoint):
        tracker = TokenTracker()
        guard = IssueBudgetGuard(tracker, checkpoint, 1, token_budget=1000)
        await guard.record_tokens("planner", 120)
        assert tracker.issue_total(1) == 120
        usage = checkpoint.get_state().token_usage
        assert usage.by_phase == {2: 120}
        assert usage.by_agent == {"planner": 120}
        guard.check_budget()

    async def test_none_tokens_ignored(self, checkpoint):
        guard = IssueBudgetGuard(TokenTracker(), checkpoint, 1, token_budget=10)
        await guard.record_tokens("planner", None)
        assert checkpoint.get_state().token_usage.total == 0

    async def test_warns_once(self, checkpoint, caplog):
        guard = IssueBudgetGuard(TokenTracker(), checkpoint, 1, token_budget=100)
        with caplog.at_level(logging.WARNING, logger="convoy.budget"):
            await guard.record_tokens("a", 85)
            await guard.record_tokens("a", 5)
        warnings = [r for r in caplog.records if "token budget" in r.getMessage()]
        assert len(warnings) == 1

    async def test_exceeded_raises(self, checkpoint):
        guard = IssueBudgetGuard(TokenTracker(), checkpoint, 1, token_budget=100)
        await guard.record_tokens("a", 150)
        assert guard.budget_exceeded
        with pytest.raises(BudgetExceededError) as exc_info:
            guard.check_budget()
        assert exc_info.value.current == 150
        assert exc_info.value.budget == 100

    async def test_no_budget_never_trips(self, checkpoint):
        guard = IssueBudgetGuard(TokenTracker(), checkpoint, 1)
        await guard.record_tokens("a", 10**9)
        guard.check_budget()
        assert not guard.budget_exceeded
