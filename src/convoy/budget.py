"""Token accounting and budget enforcement."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from convoy.errors import BudgetExceededError

if TYPE_CHECKING:
    from convoy.pipeline.checkpoint import CheckpointManager

logger = logging.getLogger(__name__)

BUDGET_WARNING_RATIO = 0.8


class BudgetStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass
class TokenRecord:
    issue_number: int
    agent: str
    phase: int
    tokens: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _check(total: int, budget: int | None) -> BudgetStatus:
    if not budget:
        return BudgetStatus.OK
    if total >= budget:
        return BudgetStatus.EXCEEDED
    if total >= budget * BUDGET_WARNING_RATIO:
        return BudgetStatus.WARNING
    return BudgetStatus.OK


class TokenTracker:
    """Fleet-wide token ledger, shared by every issue in a run."""

    def __init__(self) -> None:
        self._records: list[TokenRecord] = []

    def record(self, issue_number: int, agent: str, phase: int, tokens: int) -> None:
        if tokens <= 0:
            return
        self._records.append(TokenRecord(issue_number, agent, phase, tokens))

    def total(self) -> int:
        return sum(r.tokens for r in self._records)

    def issue_total(self, issue_number: int) -> int:
        return sum(r.tokens for r in self._records if r.issue_number == issue_number)

    def by_agent(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for r in self._records:
            totals[r.agent] = totals.get(r.agent, 0) + r.tokens
        return totals

    def by_issue(self) -> dict[int, int]:
        totals: dict[int, int] = {}
        for r in self._records:
            totals[r.issue_number] = totals.get(r.issue_number, 0) + r.tokens
        return totals

    def by_phase(self) -> dict[int, int]:
        totals: dict[int, int] = {}
        for r in self._records:
            totals[r.phase] = totals.get(r.phase, 0) + r.tokens
        return totals

    def check_fleet_budget(self, budget: int | None) -> BudgetStatus:
        return _check(self.total(), budget)

    def check_issue_budget(self, issue_number: int, budget: int | None) -> BudgetStatus:
        return _check(self.issue_total(issue_number), budget)


class IssueBudgetGuard:
    """Per-issue budget: records usage and trips once the budget is spent.

    Logs a single warning the first time usage crosses 80% of the budget.
    """

    def __init__(
        self,
        tracker: TokenTracker,
        checkpoint: CheckpointManager,
        issue_number: int,
        token_budget: int | None = None,
    ) -> None:
        self._tracker = tracker
        self._checkpoint = checkpoint
        self._issue_number = issue_number
        self._budget = token_budget
        self._exceeded = False
        self._warned = False

    @property
    def budget_exceeded(self) -> bool:
        return self._exceeded

    async def record_tokens(self, agent: str, tokens: int | None) -> None:
        if tokens:
            phase = self._checkpoint.get_state().current_phase
            self._tracker.record(self._issue_number, agent, phase, tokens)
            await self._checkpoint.record_token_usage(agent, phase, tokens)

        status = self._tracker.check_issue_budget(self._issue_number, self._budget)
        if status == BudgetStatus.EXCEEDED:
            self._exceeded = True
        elif status == BudgetStatus.WARNING and not self._warned:
            self._warned = True
            logger.warning(
                "Issue #%d has used %d of its %d token budget",
                self._issue_number,
                self._tracker.issue_total(self._issue_number),
                self._budget,
                extra={"issue_number": self._issue_number},
            )

    def check_budget(self) -> None:
        """Raise once the budget is exceeded."""
        if self._exceeded:
            raise BudgetExceededError(
                current=self._tracker.issue_total(self._issue_number),
                budget=self._budget or 0,
            )
