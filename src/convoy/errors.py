"""Exception taxonomy for Convoy.

Exceptions are reserved for invalid input (graphs, policies), budget
exhaustion, fleet interrupts and programmer errors.  Phase and gate failures
are reported as values (see ``convoy.pipeline.models``), never raised.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class ConvoyError(Exception):
    """Base class for all Convoy errors."""


# ── Dependency graph ─────────────────────────────────────────────────────────


class CyclicDependencyError(ConvoyError):
    """Adding an edge set would close a cycle in a dependency graph."""

    def __init__(self, message: str, node_ids: Iterable[int | str] = ()):
        super().__init__(message)
        self.node_ids: list[int | str] = list(node_ids)


class DependencyResolutionError(ConvoyError):
    """A dependency references an unknown node, or the graph cannot be built."""


# ── Isolation ────────────────────────────────────────────────────────────────


class CapabilityMismatchError(ConvoyError):
    """A provider does not support every attribute of a requested policy."""

    def __init__(self, provider_name: str, mismatched_attributes: Sequence[str]):
        self.provider_name = provider_name
        self.mismatched_attributes = list(mismatched_attributes)
        super().__init__(
            f'Provider "{provider_name}" does not support the following requested '
            f"policy attributes: {', '.join(self.mismatched_attributes)}."
        )


class SessionError(ConvoyError):
    """An isolation session operation referenced an unknown or stopped session."""


# ── Agent execution ──────────────────────────────────────────────────────────


class AgentTimeoutError(ConvoyError):
    """An agent invocation exceeded its hard timeout and was killed."""

    def __init__(self, message: str, agent: str, timeout_seconds: float):
        super().__init__(message)
        self.agent = agent
        self.timeout_seconds = timeout_seconds


class BudgetExceededError(ConvoyError):
    """A token budget (per issue or fleet-wide) was exceeded."""

    def __init__(self, message: str = "Per-issue token budget exceeded", current: int = 0, budget: int = 0):
        super().__init__(message)
        self.current = current
        self.budget = budget


# ── Fleet ────────────────────────────────────────────────────────────────────


class FleetInterrupted(ConvoyError):
    """The fleet run was paused by an external signal.

    In-flight issues keep fleet status ``running`` so a resumed run restarts
    them from their last persisted phase.
    """

    def __init__(self, signal_name: str, interrupted_issues: Sequence[int] = ()):
        self.signal_name = signal_name
        self.interrupted_issues = list(interrupted_issues)
        super().__init__(
            f"Fleet interrupted by {signal_name}; "
            f"{len(self.interrupted_issues)} issue(s) left resumable"
        )
