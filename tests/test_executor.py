"""Tests for work-order construction and dispatch."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from ultrawork.delegation.decomposer import angle_subtasks
from ultrawork.delegation.executor import (
    Dispatcher,
    aggregate_status,
    expected_outcome,
    prohibited_actions,
    required_actions,
)
from ultrawork.delegation.models import (
    AttemptRecord,
    DecomposeDecision,
    Intent,
    MatchResult,
    Request,
    Task,
    TaskStatus,
    WorkerResult,
    WorkerStatus,
    WorkOrderState,
)
from ultrawork.engine.registry import WorkOrderRegistry
from ultrawork.errors import DispatchSuspended
from ultrawork.skills.registry import CapabilityDescriptor

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _task(text: str = "Update the timeout in src/config.py", intent: Intent = Intent.EXPLICIT, **kwargs) -> Task:
    return Task(request=Request(text=text, **kwargs), intent=intent)


def _capability(reads: list[str]) -> CapabilityDescriptor:
    def content() -> str:
        reads.append("read")
        return "Always run the linter."

    return CapabilityDescriptor("lint", "Run linters", content_fn=content)


async def ok_worker(order):
    return WorkerResult(WorkerStatus.SUCCESS, f"done: {order.objective}")


class TestAggregateStatus:
    S = WorkOrderState

    def test_all_completed(self):
        assert aggregate_status([self.S.COMPLETED, self.S.COMPLETED]) == TaskStatus.COMPLETED

    def test_any_pending_is_in_progress(self):
        assert aggregate_status([self.S.COMPLETED, self.S.PENDING]) == TaskStatus.IN_PROGRESS
        assert aggregate_status([self.S.FAILED, self.S.IN_PROGRESS]) == TaskStatus.IN_PROGRESS

    def test_failure(self):
        assert aggregate_status([self.S.COMPLETED, self.S.FAILED]) == TaskStatus.FAILED
        assert aggregate_status([self.S.ABANDONED]) == TaskStatus.FAILED

    def test_partial_success(self):
        states = [self.S.COMPLETED, self.S.FAILED]
        assert aggregate_status(states, allow_partial=True) == TaskStatus.COMPLETED
        assert aggregate_status([self.S.FAILED], allow_partial=True) == TaskStatus.FAILED

    def test_empty(self):
        assert aggregate_status([]) == TaskStatus.FAILED


class TestOrderContents:
    @pytest.mark.parametrize("intent", list(Intent))
    def test_every_intent_has_outcome(self, intent):
        assert expected_outcome(intent)

    def test_targets_in_required_actions(self):
        task = _task(targets=("src/config.py",))
        assert any("src/config.py" in a for a in required_actions(task, None))
        assert "Do not modify files outside the stated targets" in prohibited_actions(task)

    def test_exploratory_is_read_only(self):
        task = _task("How does caching work?", Intent.EXPLORATORY)
        assert "Do not modify any files" in prohibited_actions(task)

    def test_iteration_mentions_signal(self):
        task = _task(enable_iteration=True, completion_signal="SHIPPED")
        assert any("SHIPPED" in a for a in required_actions(task, None))
        assert any("SHIPPED" in a for a in prohibited_actions(task))

    def test_rejected_plan_is_conservative(self):
        task = _task(intent=Intent.OPEN_ENDED)
        task.consensus.append({"purpose": "plan", "resolution": "rejected"})
        assert any("architectural" in a for a in prohibited_actions(task))


class TestBuildWorkOrders:
    def test_single_order(self):
        task = _task()
        orders = Dispatcher(ok_worker).build_work_orders(task, model="haiku")

        assert len(orders) == 1
        order = orders[0]
        assert order.task_id == task.id
        assert order.objective == task.request.text
        assert order.model == "haiku"
        assert order.required_actions
        assert order.prohibited_actions
        assert order.context["request"] == task.request.text

    def test_one_order_per_subtask(self):
        task = _task("Investigate why login is slow", Intent.EXPLORATORY)
        task.decision = DecomposeDecision(True, "forced", angle_subtasks(task.request.text))
        orders = Dispatcher(ok_worker).build_work_orders(task)

        assert len(orders) == 3
        assert len({o.id for o in orders}) == 3
        assert all(o.context["sibling_count"] == 3 for o in orders)
        assert [o.objective for o in orders] == [st.description for st in task.decision.subtasks]

    def test_capability_content_embedded(self):
        reads: list[str] = []
        task = _task(intent=Intent.OPEN_ENDED)
        orders = Dispatcher(ok_worker).build_work_orders(task, capability=_capability(reads))

        assert orders[0].capability == "lint"
        assert orders[0].capability_content == "Always run the linter."
        assert reads == ["read"]

    def test_match_marked_loaded(self):
        match = MatchResult("lint", 0.9)
        task = _task(intent=Intent.OPEN_ENDED)
        Dispatcher(ok_worker).build_work_orders(task, capability=_capability([]), match=match)
        assert match.loaded is True

    def test_unloadable_capability_is_left_out(self):
        def broken() -> str:
            raise ValueError("SKILL.md has no frontmatter")

        match = MatchResult("lint", 0.9)
        task = _task(intent=Intent.OPEN_ENDED)
        capability = CapabilityDescriptor("lint", "Run linters", content_fn=broken)
        orders = Dispatcher(ok_worker).build_work_orders(task, capability=capability, match=match)

        assert orders[0].capability is None
        assert orders[0].capability_content is None
        assert match.loaded is False

    def test_trivial_never_loads_capability(self):
        reads: list[str] = []
        task = _task("Fix typo in README", Intent.TRIVIAL)
        orders = Dispatcher(ok_worker).build_work_orders(task, capability=_capability(reads))

        assert orders[0].capability is None
        assert orders[0].capability_content is None
        assert reads == []

    def test_history_in_context(self):
        task = _task()
        task.history.append(AttemptRecord(attempt=1, status=TaskStatus.FAILED, output=""))
        prior = [{"status": "failed", "errors": ["exit code 1"]}]
        order = Dispatcher(ok_worker).build_work_orders(task, prior_attempts=prior)[0]

        assert order.context["previous_attempts"][0]["attempt"] == 1
        assert order.context["prior_attempts"] == prior


class TestDispatch:
    async def test_success(self, tmp_path: Path):
        registry = WorkOrderRegistry(tmp_path)
        dispatcher = Dispatcher(ok_worker, registry)
        task = _task()
        orders = dispatcher.build_work_orders(task)

        outcomes = await dispatcher.dispatch(task, orders)

        assert [o.state for o in outcomes] == [WorkOrderState.COMPLETED]
        assert outcomes[0].summary.startswith("done:")
        assert task.work_orders == orders
        assert registry.get(orders[0].id).state == WorkOrderState.COMPLETED.value
        assert dispatcher.state(orders[0].id) == WorkOrderState.COMPLETED

    async def test_failures_are_contained(self, tmp_path: Path):
        async def worker(order):
            if order.context["subtask_id"] == task.decision.subtasks[0].id:
                raise RuntimeError("worker crashed")
            if order.context["subtask_id"] == task.decision.subtasks[1].id:
                return {"status": "failure", "summary": "tests failed"}
            return "all good"

        registry = WorkOrderRegistry(tmp_path)
        dispatcher = Dispatcher(worker, registry)
        task = _task("Investigate why login is slow", Intent.EXPLORATORY)
        task.decision = DecomposeDecision(True, "forced", angle_subtasks(task.request.text))
        orders = dispatcher.build_work_orders(task)

        outcomes = await dispatcher.dispatch(task, orders)

        assert [o.state for o in outcomes] == [
            WorkOrderState.FAILED,
            WorkOrderState.FAILED,
            WorkOrderState.COMPLETED,
        ]
        assert "worker crashed" in outcomes[0].error
        assert outcomes[1].error == "tests failed"
        assert registry.get(orders[0].id).error.startswith("RuntimeError")

    async def test_orders_run_concurrently(self):
        running = 0
        peak = 0

        async def worker(order):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return "ok"

        dispatcher = Dispatcher(worker)
        task = _task("Investigate why login is slow", Intent.EXPLORATORY)
        task.decision = DecomposeDecision(True, "forced", angle_subtasks(task.request.text))
        await dispatcher.dispatch(task, dispatcher.build_work_orders(task))
        assert peak == 3

    async def test_timeout(self):
        async def slow(order):
            await asyncio.sleep(5)
            return "late"

        dispatcher = Dispatcher(slow, timeout=0.05)
        task = _task()
        outcomes = await dispatcher.dispatch(task, dispatcher.build_work_orders(task))

        assert outcomes[0].state == WorkOrderState.FAILED
        assert "timed out" in outcomes[0].error

    async def test_none_result_is_failure(self):
        async def silent(order):
            return None

        dispatcher = Dispatcher(silent)
        task = _task()
        outcomes = await dispatcher.dispatch(task, dispatcher.build_work_orders(task))
        assert outcomes[0].state == WorkOrderState.FAILED

    async def test_suspended_dispatch(self):
        dispatcher = Dispatcher(ok_worker)
        task = _task()
        task.dispatch_suspended = True
        with pytest.raises(DispatchSuspended):
            await dispatcher.dispatch(task, dispatcher.build_work_orders(task))
        assert task.work_orders == []

    async def test_abandoned_order_discards_late_result(self, tmp_path: Path):
        started = asyncio.Event()
        release = asyncio.Event()

        async def worker(order):
            started.set()
            await release.wait()
            return "finished anyway"

        registry = WorkOrderRegistry(tmp_path)
        dispatcher = Dispatcher(worker, registry)
        task = _task()
        orders = dispatcher.build_work_orders(task)
        running = asyncio.create_task(dispatcher.dispatch(task, orders))

        await started.wait()
        assert dispatcher.abandon(task.id) == [orders[0].id]
        release.set()
        outcomes = await running

        assert outcomes[0].state == WorkOrderState.ABANDONED
        assert dispatcher.state(orders[0].id) == WorkOrderState.ABANDONED
        assert registry.get(orders[0].id).state == WorkOrderState.ABANDONED.value
        assert dispatcher.abandon(task.id) == []
