"""Orchestrator - drives one request through classify, clarify, plan and delegate."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ultrawork.config import DEFAULT_DATA_DIR, UltraworkConfig
from ultrawork.delegation.clarification import ClarificationChannel, ClarificationGate
from ultrawork.delegation.decomposer import evaluate_decomposition
from ultrawork.delegation.executor import Dispatcher, Worker, aggregate_status
from ultrawork.delegation.models import (
    DecomposeDecision,
    Intent,
    MatchResult,
    Request,
    Task,
    TaskStatus,
    WorkOrderState,
)
from ultrawork.delegation.router import match_capabilities, select_capability
from ultrawork.delegation.taxonomy import classify_request, needs_consensus
from ultrawork.engine.consensus import ConsensusEngine, Reviewer
from ultrawork.engine.escalation import FailureEscalation, Reverter
from ultrawork.engine.registry import TaskArchive, WorkOrderRegistry
from ultrawork.engine.supervisor import CycleResult, RetrySupervisor
from ultrawork.errors import ClassificationAmbiguous, TaskFailure, UnresolvedAmbiguity
from ultrawork.skills.registry import CapabilityRegistry
from ultrawork.storage.database import Database
from ultrawork.storage.memory import MemoryStore

logger = logging.getLogger(__name__)

MEMORY_NAMESPACE = "attempts"

# Outcomes kept per request key in the memory store
MAX_REMEMBERED_ATTEMPTS = 10


@dataclass
class OrchestrationResult:
    """Result of one orchestrated request."""

    task_id: str
    status: str
    summary: str
    reason: str | None
    intent: str | None
    category: str | None
    attempts: int
    work_orders: list[dict[str, Any]]
    failure_log: list[dict[str, Any]]
    escalations: list[dict[str, Any]]
    consensus: list[dict[str, Any]]
    clarifications: list[dict[str, Any]]
    decomposed: bool
    duration_seconds: float
    capability: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED.value

    @classmethod
    def from_task(cls, task: Task, orders: dict[str, WorkOrderState] | None = None) -> OrchestrationResult:
        states = orders or {}
        return cls(
            task_id=task.id,
            status=task.status.value,
            summary=task.summary,
            reason=task.reason,
            intent=task.intent.value if task.intent else None,
            category=task.category.value if task.category else None,
            attempts=task.attempt,
            work_orders=[
                {**order.to_dict(), "state": states[order.id].value if order.id in states else None}
                for order in task.work_orders
            ],
            failure_log=list(task.failure_log),
            escalations=list(task.escalations),
            consensus=list(task.consensus),
            clarifications=[
                {"id": c.question_id, "question": c.question, "answers": list(c.answers)}
                for c in task.clarifications
            ],
            decomposed=bool(task.decision and task.decision.decompose),
            duration_seconds=round(time.time() - task.started_at, 3),
            capability=task.match.to_dict() if task.match else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "summary": self.summary,
            "reason": self.reason,
            "intent": self.intent,
            "category": self.category,
            "attempts": self.attempts,
            "work_orders": self.work_orders,
            "failure_log": self.failure_log,
            "escalations": self.escalations,
            "consensus": self.consensus,
            "clarifications": self.clarifications,
            "decomposed": self.decomposed,
            "duration_seconds": self.duration_seconds,
            "capability": self.capability,
        }


class Orchestrator:
    """
    Main entry point for orchestrated requests.

    Workflow per cycle:
    1. Classify intent (and clarify once if the request is ambiguous)
    2. Evaluate parallel decomposition
    3. Match capabilities in the background
    4. Put architecturally significant plans to the review panel
    5. Build and dispatch work orders
    6. Supervise: retry, escalate or finish
    """

    def __init__(
        self,
        worker: Worker,
        config: UltraworkConfig | None = None,
        registry: CapabilityRegistry | None = None,
        channel: ClarificationChannel | None = None,
        reviewers: Sequence[Reviewer] = (),
        reverter: Reverter | None = None,
        memory: MemoryStore | None = None,
        data_dir: Path | None = None,
    ) -> None:
        self.config = config or UltraworkConfig()
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.db = Database(self.data_dir)
        self.db.ensure_tables()
        self.order_registry = WorkOrderRegistry(db=self.db)
        self.archive = TaskArchive(db=self.db)
        self.capabilities = registry or CapabilityRegistry(self.config.resolved_skill_paths())
        self.channel = channel
        self.gate = ClarificationGate(channel)
        self.reviewers = list(reviewers)
        self.consensus = ConsensusEngine(panel_size=self.config.panel_size)
        self.memory = memory
        self.dispatcher = Dispatcher(worker, self.order_registry, timeout=self.config.worker_timeout)
        self.escalation = FailureEscalation(
            consensus=self.consensus,
            reviewers=self.reviewers,
            channel=channel,
            reverter=reverter,
            archive=self.archive,
            deadline=self.config.consensus_deadline,
        )
        self.supervisor = RetrySupervisor(self.escalation)
        self._tasks: dict[str, Task] = {}
        self._cancel: dict[str, asyncio.Event] = {}

    def submit(
        self,
        text: str,
        enable_iteration: bool | None = None,
        max_iterations: int | None = None,
        completion_signal: str | None = None,
        force_decompose: bool | None = None,
        disable_matching: bool | None = None,
        targets: Sequence[str] = (),
        require_consensus: bool = False,
        allow_partial: bool | None = None,
    ) -> Task:
        """Create a task for a request without running it. Unset flags come from config."""
        cfg = self.config
        if force_decompose is None and cfg.force_swarm:
            force_decompose = True
        request = Request(
            text=text,
            targets=tuple(targets),
            force_decompose=force_decompose,
            disable_matching=(not cfg.enable_skills) if disable_matching is None else disable_matching,
            enable_iteration=cfg.ralph_loop if enable_iteration is None else enable_iteration,
            max_iterations=cfg.max_iterations if max_iterations is None else max_iterations,
            completion_signal=completion_signal or cfg.completion_promise,
            require_consensus=require_consensus,
            allow_partial=cfg.allow_partial if allow_partial is None else allow_partial,
        )
        task = Task(request=request)
        self._tasks[task.id] = task
        self._cancel[task.id] = asyncio.Event()
        return task

    async def run(
        self,
        text: str,
        channel: ClarificationChannel | None = None,
        **flags: Any,
    ) -> OrchestrationResult:
        """Submit a request and run it to a terminal status."""
        task = self.submit(text, **flags)
        return await self.run_task(task, channel)

    async def run_task(self, task: Task, channel: ClarificationChannel | None = None) -> OrchestrationResult:
        """Run a submitted task. A channel given here replaces the default for clarification."""
        gate = ClarificationGate(channel) if channel is not None else self.gate
        cancel = self._cancel.setdefault(task.id, asyncio.Event())
        self._tasks[task.id] = task
        try:
            self._classify(task)
            await self.supervisor.until_cancelled(gate.resolve(task), cancel)
            prior = await self._load_prior_attempts(task)

            async def cycle(current: Task) -> CycleResult:
                return await self._cycle(current, prior)

            result = await self.supervisor.supervise(task, cycle, cancel)
            task.complete(result.output)
        except TaskFailure as exc:
            self.dispatcher.abandon(task.id)
            task.fail(exc.reason, exc.documentation)
        except ClassificationAmbiguous as exc:
            logger.error("Task %s: %s", task.id, exc)
            task.fail(UnresolvedAmbiguity.reason)
        except Exception as exc:
            logger.exception("Task %s failed unexpectedly", task.id)
            self.dispatcher.abandon(task.id)
            if not task.status.terminal:
                task.fail(
                    f"internal error: {type(exc).__name__}",
                    [
                        {
                            "attempt": task.attempt,
                            "reason": "internal error",
                            "error": f"{type(exc).__name__}: {exc}",
                            "phase": task.status.value,
                            "work_orders": [order.to_dict() for order in task.work_orders],
                        }
                    ],
                )
        finally:
            self._cancel.pop(task.id, None)
            if task.status.terminal:
                self.archive.archive(task)
                # finished tasks live on in the archive only
                self._tasks.pop(task.id, None)

        logger.info("Task %s finished: %s%s", task.id, task.status, f" ({task.reason})" if task.reason else "")
        states = {o.id: s for o in task.work_orders if (s := self.dispatcher.state(o.id)) is not None}
        return OrchestrationResult.from_task(task, states)

    def cancel(self, task_id: str) -> bool:
        """Request cancellation. In-flight work orders are marked ABANDONED."""
        event = self._cancel.get(task_id)
        if event is None:
            return False
        event.set()
        self.dispatcher.abandon(task_id)
        return True

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def active_tasks(self) -> list[Task]:
        return [t for t in self._tasks.values() if not t.status.terminal]

    def _classify(self, task: Task) -> None:
        result = classify_request(task.request, task.clarifications)
        task.intent = result.intent
        task.category = result.category
        task.routing_profile = result.routing_profile
        logger.info("Task %s classified %s/%s: %s", task.id, result.intent, result.category, result.rationale)

    def _match(self, task: Task) -> MatchResult | None:
        snapshot = self.capabilities.snapshot()
        matches = match_capabilities(
            task.request_text,
            snapshot,
            top_k=self.config.top_k,
            min_confidence=self.config.min_confidence,
        )
        selected = select_capability(matches, task.intent)
        if selected:
            logger.info("Task %s matched capability %s (%.2f)", task.id, selected.name, selected.confidence)
        return selected

    async def _cycle(self, task: Task, prior: list[dict[str, Any]]) -> CycleResult:
        if task.intent is Intent.AMBIGUOUS:
            raise ClassificationAmbiguous(f"Task {task.id} is still ambiguous after clarification")

        if task.decision is None:
            task.transition(TaskStatus.EVALUATING)
            task.decision = evaluate_decomposition(task, force=task.request.force_decompose)
            logger.info("Task %s decompose=%s: %s", task.id, task.decision.decompose, task.decision.rationale)

        matching: asyncio.Future[MatchResult | None] | None = None
        if not task.request.disable_matching and task.intent is not Intent.TRIVIAL:
            task.transition(TaskStatus.MATCHING)
            matching = asyncio.ensure_future(asyncio.to_thread(self._match, task))

        if not any(entry.get("purpose") == "plan" for entry in task.consensus):
            classification = classify_request(task.request, task.clarifications)
            if needs_consensus(task.request, classification):
                await self._review_plan(task)

        selected: MatchResult | None = None
        if matching is not None:
            try:
                selected = await matching
            except Exception as exc:
                logger.warning("Task %s: capability matching failed, dispatching without one: %s", task.id, exc)
        capability = self.capabilities.snapshot().get(selected.name) if selected else None

        task.transition(TaskStatus.DISPATCHING)
        orders = self.dispatcher.build_work_orders(
            task,
            model=self.config.model_for(task.routing_profile),
            capability=capability,
            prior_attempts=prior,
            match=selected,
        )
        task.match = selected
        task.transition(TaskStatus.IN_PROGRESS)
        outcomes = await self.dispatcher.dispatch(task, orders)

        status = aggregate_status((o.state for o in outcomes), task.request.allow_partial)
        by_id = {o.id: o for o in orders}
        failures = [
            {
                **outcome.to_dict(),
                "objective": by_id[outcome.order_id].objective,
            }
            for outcome in outcomes
            if outcome.state != WorkOrderState.COMPLETED
        ]
        output = "\n\n".join(o.summary for o in outcomes if o.state == WorkOrderState.COMPLETED and o.summary)

        if not task.status.terminal:
            await self._remember(task, status, output, failures)
        return CycleResult(status=status, output=output, failures=failures)

    async def _review_plan(self, task: Task) -> None:
        decision = task.decision or DecomposeDecision(False, "no plan")
        if not self.reviewers:
            task.consensus.append({"purpose": "plan", "resolution": "skipped", "reason": "no reviewers"})
            logger.info("Task %s needs review but no reviewers are configured", task.id)
            return

        task.transition(TaskStatus.CONSENSUS)
        plan = [st.description for st in decision.subtasks] or [task.request_text]
        outcome = await self.consensus.decide(
            f"Approve the execution plan for: {task.request.text}",
            self.reviewers[: self.consensus.panel_size],
            deadline=self.config.consensus_deadline,
            context={"task_id": task.id, "plan": plan, "decompose": decision.decompose},
        )
        task.consensus.append({**outcome.to_dict(), "purpose": "plan"})
        if not outcome.accepted:
            # rejected plans fall back to one conservative work order
            task.decision = DecomposeDecision(False, f"plan rejected in review ({outcome.reason})")

    async def _load_prior_attempts(self, task: Task) -> list[dict[str, Any]]:
        if self.memory is None or not self.config.learning_enabled:
            return []
        value = await self.memory.get(task.request.key, MEMORY_NAMESPACE, default=[])
        return list(value) if isinstance(value, list) else []

    async def _remember(
        self,
        task: Task,
        status: TaskStatus,
        output: str,
        failures: list[dict[str, Any]],
    ) -> None:
        if self.memory is None or not self.config.learning_enabled:
            return
        previous = await self.memory.get(task.request.key, MEMORY_NAMESPACE, default=[])
        history = list(previous) if isinstance(previous, list) else []
        history.append(
            {
                "task_id": task.id,
                "attempt": task.attempt,
                "status": status.value,
                "output": output[:500],
                "errors": [f["error"] for f in failures if f.get("error")][:5],
                "at": time.time(),
            }
        )
        await self.memory.put(
            task.request.key,
            MEMORY_NAMESPACE,
            history[-MAX_REMEMBERED_ATTEMPTS:],
            ttl=self.config.memory_ttl_seconds,
            tags=[task.intent.value if task.intent else "unknown"],
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "active_tasks": [
                {"task_id": t.id, "status": t.status.value, "attempt": t.attempt, "request": t.request.text[:80]}
                for t in self.active_tasks()
            ],
            "work_orders": self.order_registry.get_stats(),
            "capabilities": self.capabilities.get_stats(),
        }
