"""Retry Supervisor - bounded re-invocation of the orchestration cycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ultrawork.delegation.models import AttemptRecord, Task, TaskStatus
from ultrawork.engine.escalation import ESCALATION_THRESHOLD, EscalationResolution, FailureEscalation
from ultrawork.errors import (
    IterationBudgetExhausted,
    RepeatedFailureEscalation,
    TaskCancelled,
    TaskFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CycleResult:
    """Aggregate outcome of one orchestration cycle."""

    status: TaskStatus
    output: str = ""
    failures: list[dict[str, Any]] = field(default_factory=list)


Cycle = Callable[[Task], Awaitable[CycleResult]]


def _retrieve(future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug("Detached work finished with %s: %s", type(exc).__name__, exc)


class RetrySupervisor:
    """
    Drives a task to a terminal outcome.

    With iteration enabled the cycle repeats until its output contains the
    completion signal or the attempt budget runs out. Consecutive failed
    cycles trigger the escalation ladder. Cancellation is observed between
    and during cycles; in-flight work is detached, not aborted.
    """

    def __init__(self, escalation: FailureEscalation | None = None, threshold: int = ESCALATION_THRESHOLD) -> None:
        self.escalation = escalation or FailureEscalation()
        self.threshold = threshold
        self._detached: set[asyncio.Future[Any]] = set()

    async def until_cancelled(self, coro: Coroutine[Any, Any, T], cancel: asyncio.Event) -> T:
        """
        Await coro unless cancel fires first.

        Raises:
            TaskCancelled: cancel was set; coro keeps running detached
        """
        if cancel.is_set():
            coro.close()
            raise TaskCancelled()

        work = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()

        if work.done():
            return work.result()

        self._detached.add(work)
        work.add_done_callback(self._detached.discard)
        work.add_done_callback(_retrieve)
        raise TaskCancelled()

    async def supervise(self, task: Task, cycle: Cycle, cancel: asyncio.Event) -> CycleResult:
        """
        Run cycles until the task has an outcome.

        Returns:
            The successful CycleResult

        Raises:
            TaskFailure subclass describing why the task failed
        """
        request = task.request
        budget = request.max_iterations if request.enable_iteration else 1
        consecutive_failures = 0

        while True:
            task.attempt += 1
            logger.info("Task %s attempt %d/%d", task.id, task.attempt, budget)

            result = await self.until_cancelled(cycle(task), cancel)
            task.history.append(
                AttemptRecord(
                    attempt=task.attempt,
                    status=result.status,
                    output=result.output,
                    failures=list(result.failures),
                )
            )

            if not request.enable_iteration:
                if result.status == TaskStatus.COMPLETED:
                    return result
                documentation = [
                    {"attempt": task.attempt, "reason": "work orders failed", "work_orders": result.failures}
                ]
                raise TaskFailure("work orders failed", documentation)

            if request.completion_signal in result.output:
                logger.info("Task %s produced completion signal on attempt %d", task.id, task.attempt)
                return result

            if result.status == TaskStatus.FAILED:
                consecutive_failures += 1
            else:
                consecutive_failures = 0

            if consecutive_failures >= self.threshold:
                resolution = await self.until_cancelled(
                    self.escalation.escalate(task, mutated=bool(task.work_orders)), cancel
                )
                if resolution == EscalationResolution.ABORT:
                    raise RepeatedFailureEscalation(documentation=list(task.failure_log))
                consecutive_failures = 0

            if task.attempt >= budget:
                raise IterationBudgetExhausted(documentation=self._failure_documentation(task))

            if cancel.is_set():
                raise TaskCancelled()
            task.transition(TaskStatus.IN_PROGRESS)

    @staticmethod
    def _failure_documentation(task: Task) -> list[dict[str, Any]]:
        documentation = [
            {"attempt": record.attempt, "reason": f"cycle {record.status}", "work_orders": record.failures}
            for record in task.history
            if record.failures
        ]
        if not documentation:
            documentation.append(
                {"attempt": task.attempt, "reason": "completion signal never produced", "work_orders": []}
            )
        return documentation
