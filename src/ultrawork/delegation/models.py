"""
Orchestration Data Models

Request, Task, WorkOrder and the closed enums that every phase of the
orchestration cycle consumes.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class Intent(StrEnum):
    """Classified purpose of a request."""

    TRIVIAL = "trivial"
    EXPLICIT = "explicit"
    EXPLORATORY = "exploratory"
    OPEN_ENDED = "open_ended"
    AMBIGUOUS = "ambiguous"


class Category(StrEnum):
    """Routing category derived from intent."""

    QUICK = "quick"
    RESEARCH = "research"
    VISUAL = "visual"
    ARCHITECTURAL = "architectural"
    COORDINATION = "coordination"


class TaskStatus(StrEnum):
    """Orchestration phases. COMPLETED and FAILED are terminal."""

    CLASSIFYING = "classifying"
    CLARIFYING = "clarifying"
    EVALUATING = "evaluating"
    MATCHING = "matching"
    CONSENSUS = "consensus"
    DISPATCHING = "dispatching"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class WorkOrderState(StrEnum):
    """Progress of a single dispatched work order."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class WorkerStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Request:
    """Immutable input for one invocation."""

    text: str
    targets: tuple[str, ...] = ()
    force_decompose: bool | None = None
    disable_matching: bool = False
    enable_iteration: bool = False
    max_iterations: int = 100
    completion_signal: str = "DONE"
    require_consensus: bool = False
    allow_partial: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not self.completion_signal:
            raise ValueError("completion_signal cannot be empty")

    @property
    def key(self) -> str:
        """Stable identity of the original request, used for memory lookups."""
        raw = "\x1f".join([self.text.strip().lower(), *sorted(self.targets)])
        return hashlib.sha256(raw.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class Clarification:
    """One answered clarification question."""

    question_id: str
    question: str
    answers: tuple[str, ...]


@dataclass
class SubTask:
    """Candidate unit of work produced by request breakdown."""

    id: str
    description: str
    dependencies: list[str] = field(default_factory=list)
    targets: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def independent(self) -> bool:
        return not self.dependencies


@dataclass
class DecomposeDecision:
    """Outcome of the decomposition evaluator."""

    decompose: bool
    rationale: str
    subtasks: list[SubTask] = field(default_factory=list)


@dataclass(frozen=True)
class WorkOrder:
    """Fully specified, immutable unit of delegated work."""

    id: str
    task_id: str
    objective: str
    expected_outcome: str
    required_actions: tuple[str, ...]
    prohibited_actions: tuple[str, ...]
    context: dict[str, Any]
    model: str = "sonnet"
    capability: str | None = None
    capability_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "objective": self.objective,
            "expected_outcome": self.expected_outcome,
            "required_actions": list(self.required_actions),
            "prohibited_actions": list(self.prohibited_actions),
            "model": self.model,
            "capability": self.capability,
        }


@dataclass
class WorkerResult:
    """What a worker reports back for one work order."""

    status: WorkerStatus
    summary: str = ""
    artifacts: list[Any] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == WorkerStatus.SUCCESS


@dataclass
class MatchResult:
    """Ranked capability match. Content is not loaded at match time."""

    name: str
    confidence: float
    loaded: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "confidence": self.confidence, "loaded": self.loaded}


@dataclass
class AttemptRecord:
    """Summary of one orchestration cycle."""

    attempt: int
    status: TaskStatus
    output: str
    failures: list[dict[str, Any]] = field(default_factory=list)
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "status": self.status.value,
            "output": self.output[:500],
            "failures": self.failures,
            "finished_at": self.finished_at,
        }


@dataclass
class Task:
    """Mutable orchestration record. Exactly one exists per invocation."""

    request: Request
    id: str = field(default_factory=lambda: f"task-{uuid.uuid4().hex[:8]}")
    intent: Intent | None = None
    category: Category | None = None
    routing_profile: str = "implementation"
    decision: DecomposeDecision | None = None
    clarifications: list[Clarification] = field(default_factory=list)
    status: TaskStatus = TaskStatus.CLASSIFYING
    attempt: int = 0
    started_at: float = field(default_factory=time.time)
    reason: str | None = None
    summary: str = ""
    history: list[AttemptRecord] = field(default_factory=list)
    failure_log: list[dict[str, Any]] = field(default_factory=list)
    consensus: list[dict[str, Any]] = field(default_factory=list)
    escalations: list[dict[str, Any]] = field(default_factory=list)
    work_orders: list[WorkOrder] = field(default_factory=list)
    match: MatchResult | None = None
    dispatch_suspended: bool = False

    def transition(self, status: TaskStatus) -> None:
        """Move to a new phase. Terminal statuses are final."""
        if self.status.terminal:
            raise ValueError(f"Task {self.id} is {self.status}; cannot move to {status}")
        if status != self.status:
            logger.debug("Task %s: %s -> %s", self.id, self.status, status)
        self.status = status

    def complete(self, summary: str) -> None:
        self.transition(TaskStatus.COMPLETED)
        self.summary = summary

    def fail(self, reason: str, documentation: list[dict[str, Any]] | None = None) -> None:
        """Terminal failure. Documentation is merged into the failure log."""
        for entry in documentation or []:
            if entry not in self.failure_log:
                self.failure_log.append(entry)
        if not self.failure_log:
            self.failure_log.append({"attempt": self.attempt, "reason": reason, "work_orders": []})
        self.transition(TaskStatus.FAILED)
        self.reason = reason

    def document_failure(self, reason: str, orders: list[dict[str, Any]]) -> dict[str, Any]:
        entry = {"attempt": self.attempt, "reason": reason, "work_orders": orders}
        self.failure_log.append(entry)
        return entry

    @property
    def request_text(self) -> str:
        """Original request text plus merged clarification answers."""
        if not self.clarifications:
            return self.request.text
        lines = [self.request.text]
        for item in self.clarifications:
            lines.append(f"{item.question_id.capitalize()}: {', '.join(item.answers)}")
        return "\n".join(lines)
