"""Failure Escalation - the ladder run after repeated failed cycles.

Steps always run in the same order and every step is recorded on the task:

    STOP -> REVERT -> DOCUMENT -> CONSULT -> ASK

The ladder ends in ``retry`` (dispatch resumes) or ``abort``.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ultrawork.delegation.clarification import ClarificationChannel, Question
from ultrawork.delegation.models import Task, TaskStatus
from ultrawork.engine.consensus import QUORUM_TIMEOUT_REASON, ConsensusEngine, Reviewer

if TYPE_CHECKING:
    from ultrawork.engine.registry import TaskArchive

logger = logging.getLogger(__name__)

# Consecutive failed cycles that trigger the ladder
ESCALATION_THRESHOLD = 3

CONSULT_OPTIONS = ("retry with a narrower scope", "stop and report")
ASK_OPTIONS = ("Retry", "Abort")

Reverter = Callable[[Task], Any]


class EscalationStep(StrEnum):
    STOP = "stop"
    REVERT = "revert"
    DOCUMENT = "document"
    CONSULT = "consult"
    ASK = "ask"


class EscalationResolution(StrEnum):
    RETRY = "retry"
    ABORT = "abort"


class FailureEscalation:
    """
    Runs the escalation ladder for a task.

    Collaborators are optional: without a rollback hook REVERT is a no-op,
    without a panel CONSULT is skipped, and without a channel ASK aborts.
    """

    THRESHOLD = ESCALATION_THRESHOLD

    def __init__(
        self,
        consensus: ConsensusEngine | None = None,
        reviewers: Sequence[Reviewer] = (),
        channel: ClarificationChannel | None = None,
        reverter: Reverter | None = None,
        archive: TaskArchive | None = None,
        deadline: float = 120.0,
    ) -> None:
        self.consensus = consensus
        self.reviewers = list(reviewers)
        self.channel = channel
        self.reverter = reverter
        self.archive = archive
        self.deadline = deadline

    async def escalate(self, task: Task, mutated: bool = True) -> EscalationResolution:
        """Run every step in order and return the resolution."""
        steps: list[dict[str, Any]] = []

        def record(step: EscalationStep, outcome: str) -> None:
            steps.append({"step": step.value, "outcome": outcome, "at": time.time()})
            logger.info("Task %s escalation %s: %s", task.id, step.value, outcome)

        # STOP
        task.dispatch_suspended = True
        record(EscalationStep.STOP, "dispatch suspended")

        # REVERT
        record(EscalationStep.REVERT, await self._revert(task, mutated))

        # DOCUMENT
        documentation = task.document_failure(
            f"{self.THRESHOLD} consecutive failed cycles", self._attempted_orders(task)
        )
        if self.archive is not None:
            self.archive.document(task.id, task.attempt, documentation)
            record(EscalationStep.DOCUMENT, "failure documentation persisted")
        else:
            record(EscalationStep.DOCUMENT, "failure documentation recorded on task")

        # CONSULT
        resolution, outcome = await self._consult(task)
        record(EscalationStep.CONSULT, outcome)

        # ASK
        if resolution is None:
            resolution, outcome = await self._ask(task)
            record(EscalationStep.ASK, outcome)
        else:
            record(EscalationStep.ASK, "skipped; resolved by consultation")

        if resolution == EscalationResolution.RETRY:
            task.dispatch_suspended = False

        task.escalations.append(
            {"attempt": task.attempt, "steps": steps, "resolution": resolution.value}
        )
        return resolution

    async def _revert(self, task: Task, mutated: bool) -> str:
        if not mutated:
            return "nothing to revert"
        if self.reverter is None:
            return "no rollback hook configured"
        try:
            result = self.reverter(task)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Rollback hook failed for task %s: %s", task.id, exc)
            return f"rollback failed: {type(exc).__name__}: {exc}"
        return "rolled back"

    @staticmethod
    def _attempted_orders(task: Task) -> list[dict[str, Any]]:
        attempted = []
        for record in task.history[-ESCALATION_THRESHOLD:]:
            for failure in record.failures:
                attempted.append({"attempt": record.attempt, **failure})
        return attempted

    async def _consult(self, task: Task) -> tuple[EscalationResolution | None, str]:
        if self.consensus is None or not self.reviewers:
            return None, "no review panel available"

        # the proposal lives only while the task sits in CONSENSUS
        previous = task.status
        task.transition(TaskStatus.CONSENSUS)
        try:
            outcome = await self.consensus.decide(
                f"How should we proceed after {self.THRESHOLD} failed attempts at: {task.request.text}?",
                self.reviewers[: self.consensus.panel_size],
                deadline=self.deadline,
                options=CONSULT_OPTIONS,
                context={"task_id": task.id, "failures": task.failure_log[-1:]},
            )
        finally:
            task.transition(previous)
        task.consensus.append({**outcome.to_dict(), "purpose": "escalation"})
        if outcome.reason == QUORUM_TIMEOUT_REASON:
            return None, "panel did not reach quorum"
        if outcome.accepted:
            return EscalationResolution.RETRY, f"panel chose '{CONSULT_OPTIONS[0]}'"
        return EscalationResolution.ABORT, f"panel chose '{CONSULT_OPTIONS[1]}'"

    async def _ask(self, task: Task) -> tuple[EscalationResolution, str]:
        if self.channel is None:
            return EscalationResolution.ABORT, "no clarification channel; aborting"

        question = Question(
            id="escalation",
            prompt=(
                f"'{task.request.text}' failed {self.THRESHOLD} times in a row. "
                "Retry or abort?"
            ),
            options=ASK_OPTIONS,
        )
        answers = await self.channel.ask([question])
        if answers is None:
            return EscalationResolution.ABORT, "requester cancelled; aborting"
        chosen = list(answers.get(question.id, ()))
        if chosen and chosen[0].strip().lower() == "retry":
            return EscalationResolution.RETRY, "requester chose retry"
        return EscalationResolution.ABORT, "requester chose abort"
