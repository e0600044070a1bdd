"""Orchestration engine: consensus, escalation, supervision and persistence."""

from ultrawork.engine.consensus import (
    ConsensusEngine,
    ConsensusOutcome,
    Proposal,
    ProposalState,
    Resolution,
    Vote,
    WorkerReviewer,
)
from ultrawork.engine.escalation import EscalationResolution, EscalationStep, FailureEscalation
from ultrawork.engine.orchestrator import OrchestrationResult, Orchestrator
from ultrawork.engine.registry import TaskArchive, WorkOrderRecord, WorkOrderRegistry
from ultrawork.engine.supervisor import CycleResult, RetrySupervisor
from ultrawork.engine.workers import CommandWorker, render_prompt

__all__ = [
    "CommandWorker",
    "ConsensusEngine",
    "ConsensusOutcome",
    "CycleResult",
    "EscalationResolution",
    "EscalationStep",
    "FailureEscalation",
    "OrchestrationResult",
    "Orchestrator",
    "Proposal",
    "ProposalState",
    "Resolution",
    "RetrySupervisor",
    "TaskArchive",
    "Vote",
    "WorkOrderRecord",
    "WorkOrderRegistry",
    "WorkerReviewer",
    "render_prompt",
]
