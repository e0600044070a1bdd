"""Exception hierarchy for the orchestrator.

Failures below the Task level (a single work order) are contained and
aggregated; only ``TaskFailure`` subclasses reach the caller, and they always
carry the accumulated failure documentation.
"""

from __future__ import annotations

from typing import Any


class UltraworkError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(UltraworkError):
    """Configuration file contains invalid values."""


class ClassificationAmbiguous(UltraworkError):
    """An ambiguous request reached a phase that requires a resolved intent."""


class QuorumTimeout(UltraworkError):
    """A consensus proposal did not reach quorum before its deadline."""

    def __init__(self, proposal_id: str, votes_cast: int, quorum: int) -> None:
        super().__init__(
            f"Proposal {proposal_id} reached {votes_cast}/{quorum} votes before the deadline"
        )
        self.proposal_id = proposal_id
        self.votes_cast = votes_cast
        self.quorum = quorum


class WorkerFailure(UltraworkError):
    """A worker reported failure (or crashed) for one work order."""

    def __init__(self, order_id: str, message: str) -> None:
        super().__init__(f"{order_id}: {message}")
        self.order_id = order_id
        self.message = message


class ProposalResolved(UltraworkError):
    """A vote was cast on a proposal that is already resolved."""


class DispatchSuspended(UltraworkError):
    """Dispatch was attempted while failure escalation suspended the task."""


class TaskFailure(UltraworkError):
    """Terminal task failure surfaced to the caller."""

    reason = "task failed"

    def __init__(
        self,
        reason: str | None = None,
        documentation: list[dict[str, Any]] | None = None,
    ) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)
        self.documentation = documentation or []


class ClarificationCancelled(TaskFailure):
    reason = "clarification cancelled"


class UnresolvedAmbiguity(TaskFailure):
    reason = "unresolved ambiguity"


class IterationBudgetExhausted(TaskFailure):
    reason = "iteration budget exhausted"


class RepeatedFailureEscalation(TaskFailure):
    reason = "repeated failure escalation"


class TaskCancelled(TaskFailure):
    reason = "cancelled"
