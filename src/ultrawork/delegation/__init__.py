"""
Delegation — Request Classification, Planning and Dispatch

Core Components:
- models: Request, Task, WorkOrder and the closed intent/category enums
- taxonomy: Intent classification (keyword heuristics, optional classifier)
- clarification: Structured questions for ambiguous requests
- decomposer: Parallel fan-out decisions with conservative dependency detection
- router: Capability matching against the skill registry
- executor: Work-order construction and concurrent dispatch
"""

from .models import (
    Category,
    Clarification,
    DecomposeDecision,
    Intent,
    MatchResult,
    Request,
    SubTask,
    Task,
    TaskStatus,
    WorkerResult,
    WorkerStatus,
    WorkOrder,
    WorkOrderState,
)
from .taxonomy import Classification, classify_intent, classify_request, needs_consensus
from .clarification import ClarificationChannel, ClarificationGate, DefaultAnswerChannel, Question
from .decomposer import breakdown_request, evaluate_decomposition
from .router import match_capabilities, select_capability
from .executor import Dispatcher, OrderOutcome, aggregate_status

__all__ = [
    # Models
    "Category",
    "Clarification",
    "DecomposeDecision",
    "Intent",
    "MatchResult",
    "Request",
    "SubTask",
    "Task",
    "TaskStatus",
    "WorkOrder",
    "WorkOrderState",
    "WorkerResult",
    "WorkerStatus",
    # Taxonomy
    "Classification",
    "classify_intent",
    "classify_request",
    "needs_consensus",
    # Clarification
    "ClarificationChannel",
    "ClarificationGate",
    "DefaultAnswerChannel",
    "Question",
    # Decomposer
    "breakdown_request",
    "evaluate_decomposition",
    # Router
    "match_capabilities",
    "select_capability",
    # Executor
    "Dispatcher",
    "OrderOutcome",
    "aggregate_status",
]
