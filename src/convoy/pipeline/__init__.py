"""Issue pipeline — phase definitions, gates, checkpoints and the phase/gate engine.

Key exports:
    CheckpointManager, FleetCheckpointManager — crash-safe progress records
    GateRegistry, GateContext — post-phase quality checks
    PhaseResult, GateResult, CheckpointState — result and state models

The engine and phase executors live in ``convoy.pipeline.engine`` and
``convoy.pipeline.phases``.
"""

from convoy.pipeline.checkpoint import CheckpointManager, FleetCheckpointManager
from convoy.pipeline.gates import GateContext, GateRegistry, PhaseGate
from convoy.pipeline.models import (
    CheckpointState,
    FleetCheckpointState,
    FleetIssueRecord,
    FleetIssueStatus,
    GateResult,
    GateStatus,
    IssueRunStatus,
    PhaseDefinition,
    PhaseResult,
    PipelineOutcome,
    merge_gate_results,
)

__all__ = [
    # Checkpoints
    "CheckpointManager",
    "FleetCheckpointManager",
    # Gates
    "GateContext",
    "GateRegistry",
    "PhaseGate",
    "merge_gate_results",
    # Models
    "CheckpointState",
    "FleetCheckpointState",
    "FleetIssueRecord",
    "FleetIssueStatus",
    "GateResult",
    "GateStatus",
    "IssueRunStatus",
    "PhaseDefinition",
    "PhaseResult",
    "PipelineOutcome",
]
