"""
Delegation Dispatcher — Work Orders to Opaque Workers

Builds fully specified work orders for a task and runs them concurrently
through a pluggable async worker. Worker failures and timeouts are recorded
per order and never propagate to the caller.

Usage:
    from ultrawork.delegation.executor import Dispatcher

    dispatcher = Dispatcher(worker=my_worker, registry=registry)
    orders = dispatcher.build_work_orders(task, model="sonnet")
    outcomes = await dispatcher.dispatch(task, orders)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, assert_never

from ultrawork.errors import DispatchSuspended

from .models import (
    Intent,
    MatchResult,
    SubTask,
    Task,
    TaskStatus,
    WorkerResult,
    WorkerStatus,
    WorkOrder,
    WorkOrderState,
)

if TYPE_CHECKING:
    from ultrawork.engine.registry import WorkOrderRegistry
    from ultrawork.skills.registry import CapabilityDescriptor

logger = logging.getLogger(__name__)

DEFAULT_WORKER_TIMEOUT = 600.0

# Previous attempts carried into a work order's context
MAX_HISTORY_IN_CONTEXT = 3

Worker = Callable[[WorkOrder], Awaitable[Any]]


@dataclass
class OrderOutcome:
    """Observed result of one dispatched work order."""

    order_id: str
    state: WorkOrderState
    summary: str = ""
    error: str = ""
    artifacts: list[Any] | None = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "state": self.state.value,
            "summary": self.summary[:500],
            "error": self.error,
            "duration": self.duration,
        }


def expected_outcome(intent: Intent) -> str:
    if intent is Intent.TRIVIAL:
        return "The single requested edit is applied and nothing else changes"
    elif intent is Intent.EXPLICIT:
        return "The named target is changed as requested and still works"
    elif intent is Intent.EXPLORATORY:
        return "A clear answer backed by file and symbol references"
    elif intent is Intent.OPEN_ENDED:
        return "The change is implemented end to end and verified"
    elif intent is Intent.AMBIGUOUS:
        return "A plan that resolves the open questions before any change"
    else:
        assert_never(intent)


def required_actions(task: Task, subtask: SubTask | None) -> list[str]:
    """MUST DO list for a work order."""
    intent = task.intent or Intent.AMBIGUOUS
    actions = ["Stay within the stated objective", "Report what was done and why"]
    targets = list(subtask.targets) if subtask and subtask.targets else list(task.request.targets)
    if targets:
        actions.append(f"Limit changes to: {', '.join(targets)}")
    if intent is Intent.EXPLORATORY:
        actions.append("Cite the files and symbols that support each finding")
    elif intent is Intent.OPEN_ENDED:
        actions.append("Follow the patterns already used in the codebase")
        actions.append("Verify the result with tests or checks before reporting")
    elif intent is Intent.EXPLICIT or intent is Intent.TRIVIAL:
        actions.append("Keep the change as small as possible")
    if task.request.enable_iteration:
        actions.append(
            f"End your output with {task.request.completion_signal} only when the objective is fully met"
        )
    return actions


def prohibited_actions(task: Task) -> list[str]:
    """MUST NOT DO list for a work order."""
    intent = task.intent or Intent.AMBIGUOUS
    actions = [
        "Do not leave placeholder or stub implementations",
        "Do not change code unrelated to the objective",
    ]
    if intent is Intent.EXPLORATORY:
        actions.append("Do not modify any files")
    if intent is Intent.TRIVIAL:
        actions.append("Do not refactor surrounding code")
    if task.request.targets:
        actions.append("Do not modify files outside the stated targets")
    if any(entry.get("resolution") == "rejected" for entry in task.consensus):
        actions.append("Do not make architectural changes; the proposed plan was rejected in review")
    if task.request.enable_iteration:
        actions.append(f"Do not output {task.request.completion_signal} while work remains")
    return actions


def build_context(
    task: Task,
    subtask: SubTask | None,
    sibling_count: int,
    prior_attempts: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    context: dict[str, Any] = {
        "request": task.request.text,
        "targets": list(subtask.targets) if subtask and subtask.targets else list(task.request.targets),
        "clarifications": {c.question: list(c.answers) for c in task.clarifications},
        "routing_profile": task.routing_profile,
        "attempt": task.attempt,
        "previous_attempts": [r.to_dict() for r in task.history[-MAX_HISTORY_IN_CONTEXT:]],
        "sibling_count": sibling_count,
    }
    if subtask is not None:
        context["subtask_id"] = subtask.id
        context["dependencies"] = list(subtask.dependencies)
    if prior_attempts:
        context["prior_attempts"] = prior_attempts[-MAX_HISTORY_IN_CONTEXT:]
    return context


def aggregate_status(states: Iterable[WorkOrderState], allow_partial: bool = False) -> TaskStatus:
    """
    Least advanced status across a task's work orders.

    Any pending or in-progress order keeps the task IN_PROGRESS. Otherwise the
    task is COMPLETED when every order completed; a failed or abandoned order
    makes it FAILED unless partial success is allowed and one order completed.
    """
    states = list(states)
    if not states:
        return TaskStatus.FAILED
    if any(s in (WorkOrderState.PENDING, WorkOrderState.IN_PROGRESS) for s in states):
        return TaskStatus.IN_PROGRESS
    if all(s == WorkOrderState.COMPLETED for s in states):
        return TaskStatus.COMPLETED
    if allow_partial and any(s == WorkOrderState.COMPLETED for s in states):
        return TaskStatus.COMPLETED
    return TaskStatus.FAILED


class Dispatcher:
    """
    Dispatches work orders to an async worker callable.

    Every order is tracked PENDING -> IN_PROGRESS -> COMPLETED | FAILED in the
    registry (when one is supplied). Orders abandoned by a cancelled task keep
    ABANDONED even if their worker reports back later.
    """

    def __init__(
        self,
        worker: Worker,
        registry: WorkOrderRegistry | None = None,
        timeout: float = DEFAULT_WORKER_TIMEOUT,
    ) -> None:
        self.worker = worker
        self.registry = registry
        self.timeout = timeout
        self._states: dict[str, WorkOrderState] = {}
        self._in_flight: dict[str, set[str]] = {}

    def build_work_orders(
        self,
        task: Task,
        model: str = "sonnet",
        capability: CapabilityDescriptor | None = None,
        prior_attempts: list[dict[str, Any]] | None = None,
        match: MatchResult | None = None,
    ) -> list[WorkOrder]:
        """
        Build one work order per sub-task, or one for the whole request.

        The selected capability's content is read here and embedded verbatim;
        trivial tasks never receive capability content. A capability that
        fails to load is left out and the orders go out without it. When
        given, match.loaded records whether the content was embedded.
        """
        intent = task.intent or Intent.AMBIGUOUS
        content: str | None = None
        capability_name: str | None = None
        if capability is not None and intent is not Intent.TRIVIAL:
            try:
                content = capability.load_content()
            except Exception as exc:
                logger.warning(
                    "Capability %s could not be loaded for task %s: %s", capability.name, task.id, exc
                )
            else:
                capability_name = capability.name
        if match is not None:
            match.loaded = content is not None

        decision = task.decision
        subtasks: list[SubTask | None]
        if decision is not None and decision.decompose and decision.subtasks:
            subtasks = list(decision.subtasks)
        else:
            subtasks = [None]

        orders = []
        for subtask in subtasks:
            objective = subtask.description if subtask else task.request_text
            orders.append(
                WorkOrder(
                    id=f"wo-{uuid.uuid4().hex[:8]}",
                    task_id=task.id,
                    objective=objective,
                    expected_outcome=expected_outcome(intent),
                    required_actions=tuple(required_actions(task, subtask)),
                    prohibited_actions=tuple(prohibited_actions(task)),
                    context=build_context(task, subtask, len(subtasks), prior_attempts),
                    model=model,
                    capability=capability_name,
                    capability_content=content,
                )
            )
        return orders

    def state(self, order_id: str) -> WorkOrderState | None:
        return self._states.get(order_id)

    async def dispatch(self, task: Task, orders: list[WorkOrder]) -> list[OrderOutcome]:
        """
        Run all orders concurrently and observe their results.

        Raises:
            DispatchSuspended: The task's dispatch is suspended by escalation
        """
        if task.dispatch_suspended:
            raise DispatchSuspended(f"Dispatch suspended for task {task.id}")

        in_flight = self._in_flight.setdefault(task.id, set())
        for order in orders:
            self._states[order.id] = WorkOrderState.PENDING
            in_flight.add(order.id)
            if self.registry is not None:
                self.registry.register(order)
        task.work_orders.extend(orders)

        logger.info("Dispatching %d work order(s) for task %s", len(orders), task.id)
        try:
            return list(await asyncio.gather(*(self._run(order) for order in orders)))
        finally:
            for order in orders:
                in_flight.discard(order.id)
            if not in_flight:
                self._in_flight.pop(task.id, None)

    async def _run(self, order: WorkOrder) -> OrderOutcome:
        start = time.time()
        self._set_state(order.id, WorkOrderState.IN_PROGRESS)

        try:
            raw = await asyncio.wait_for(self.worker(order), timeout=self.timeout)
            result = self._normalize_result(raw)
        except asyncio.TimeoutError:
            result = WorkerResult(WorkerStatus.FAILURE, f"Worker timed out after {self.timeout}s")
        except asyncio.CancelledError:
            self._set_state(order.id, WorkOrderState.ABANDONED)
            raise
        except Exception as exc:
            result = WorkerResult(WorkerStatus.FAILURE, f"{type(exc).__name__}: {exc}")

        duration = time.time() - start
        if self._states.get(order.id) == WorkOrderState.ABANDONED:
            logger.info("Discarding late result for abandoned order %s", order.id)
            return OrderOutcome(order.id, WorkOrderState.ABANDONED, result.summary, duration=duration)

        if result.success:
            self._set_state(order.id, WorkOrderState.COMPLETED, summary=result.summary)
            return OrderOutcome(
                order.id, WorkOrderState.COMPLETED, result.summary, artifacts=result.artifacts, duration=duration
            )

        logger.warning("Work order %s failed: %s", order.id, result.summary[:200])
        self._set_state(order.id, WorkOrderState.FAILED, error=result.summary)
        return OrderOutcome(order.id, WorkOrderState.FAILED, error=result.summary, duration=duration)

    def abandon(self, task_id: str) -> list[str]:
        """Mark a task's in-flight orders ABANDONED. Returns their ids."""
        abandoned = []
        for order_id in sorted(self._in_flight.get(task_id, set())):
            if self._states.get(order_id) in (WorkOrderState.PENDING, WorkOrderState.IN_PROGRESS):
                self._set_state(order_id, WorkOrderState.ABANDONED)
                abandoned.append(order_id)
        if abandoned:
            logger.info("Abandoned %d in-flight order(s) for task %s", len(abandoned), task_id)
        return abandoned

    def _set_state(self, order_id: str, state: WorkOrderState, summary: str = "", error: str = "") -> None:
        self._states[order_id] = state
        if self.registry is None:
            return
        if state == WorkOrderState.IN_PROGRESS:
            self.registry.start(order_id)
        elif state == WorkOrderState.COMPLETED:
            self.registry.complete(order_id, {"summary": summary[:2000]})
        elif state == WorkOrderState.FAILED:
            self.registry.fail(order_id, error[:2000])
        elif state == WorkOrderState.ABANDONED:
            self.registry.abandon(order_id)

    @staticmethod
    def _normalize_result(result: Any) -> WorkerResult:
        if isinstance(result, WorkerResult):
            return result

        if isinstance(result, str):
            return WorkerResult(WorkerStatus.SUCCESS, result)

        if isinstance(result, dict):
            if "status" in result:
                success = str(result["status"]).lower() == WorkerStatus.SUCCESS.value
            elif "success" in result:
                success = bool(result["success"])
            else:
                success = not bool(result.get("isError", False))

            summary = result.get("summary") or result.get("output") or result.get("result")
            if summary is None:
                content = result.get("content", [])
                texts = []
                if isinstance(content, list):
                    texts = [item["text"] for item in content if isinstance(item, dict) and "text" in item]
                summary = "\n".join(texts) if texts else json.dumps(result, default=str)[:1000]

            artifacts = result.get("artifacts", [])
            return WorkerResult(
                WorkerStatus.SUCCESS if success else WorkerStatus.FAILURE,
                str(summary),
                list(artifacts) if isinstance(artifacts, (list, tuple)) else [artifacts],
            )

        if result is None:
            return WorkerResult(WorkerStatus.FAILURE, "Worker returned no result")

        return WorkerResult(WorkerStatus.SUCCESS, str(result)[:1000])
