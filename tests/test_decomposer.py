"""Tests for the decomposition evaluator."""

from __future__ import annotations

import pytest

from ultrawork.delegation.decomposer import (
    ANGLE_TEMPLATES,
    MIN_PARALLEL_SUBTASKS,
    angle_subtasks,
    breakdown_request,
    evaluate_decomposition,
)
from ultrawork.delegation.models import Intent, Request, SubTask, Task

INDEPENDENT = (
    "Add input validation to the signup form; write unit tests for the billing service; "
    "update the README installation section"
)


def _task(text: str, intent: Intent, **kwargs) -> Task:
    return Task(request=Request(text=text, **kwargs), intent=intent)


class TestBreakdown:
    def test_independent_clauses(self):
        subtasks = breakdown_request(INDEPENDENT)
        assert len(subtasks) == 3
        assert all(st.independent for st in subtasks)
        assert subtasks[0].description == "Add input validation to the signup form"

    def test_sequencing_creates_dependency(self):
        subtasks = breakdown_request("Add a cache layer to the client, then update every caller")
        assert len(subtasks) == 2
        assert subtasks[1].dependencies == [subtasks[0].id]

    def test_shared_target_creates_dependency(self):
        subtasks = breakdown_request(
            "Fix the parser in parser.py; add logging to parser.py; update the docs index"
        )
        assert subtasks[1].dependencies == [subtasks[0].id]
        assert subtasks[2].independent

    def test_list_items(self):
        text = "- migrate the users table\n- add the audit log endpoint\n- tidy the admin page"
        subtasks = breakdown_request(text)
        assert [st.description for st in subtasks] == [
            "migrate the users table",
            "add the audit log endpoint",
            "tidy the admin page",
        ]

    def test_unattributed_request_targets_serialize(self):
        subtasks = breakdown_request(INDEPENDENT, targets=["src/app.py"])
        assert subtasks[0].independent
        assert all(subtasks[0].id in st.dependencies for st in subtasks[1:])

    def test_breakdown_fn_used(self):
        custom = [SubTask(id="a", description="one"), SubTask(id="b", description="two")]
        assert breakdown_request("anything", breakdown_fn=lambda text, targets: custom) == custom

    def test_failing_breakdown_fn_falls_back(self):
        def broken(text, targets):
            raise RuntimeError("planner offline")

        assert len(breakdown_request(INDEPENDENT, breakdown_fn=broken)) == 3


class TestAngles:
    def test_one_per_template(self):
        subtasks = angle_subtasks("Investigate why login is slow")
        assert len(subtasks) == len(ANGLE_TEMPLATES)
        assert all(st.independent for st in subtasks)
        assert subtasks[0].description.startswith("Explore architecture for")


class TestEvaluateDecomposition:
    @pytest.mark.parametrize("intent", [Intent.TRIVIAL, Intent.EXPLICIT])
    def test_narrow_intents_never_decompose(self, intent):
        decision = evaluate_decomposition(_task(INDEPENDENT, intent), force=True)
        assert decision.decompose is False
        assert decision.subtasks == []

    def test_open_ended_independent(self):
        decision = evaluate_decomposition(_task(INDEPENDENT, Intent.OPEN_ENDED))
        assert decision.decompose is True
        assert len(decision.subtasks) >= MIN_PARALLEL_SUBTASKS

    def test_exploratory_independent(self):
        assert evaluate_decomposition(_task(INDEPENDENT, Intent.EXPLORATORY)).decompose is True

    def test_dependencies_block_fan_out(self):
        task = _task("Add a cache layer to the client, then update every caller", Intent.OPEN_ENDED)
        decision = evaluate_decomposition(task)
        assert decision.decompose is False
        assert "depend" in decision.rationale

    def test_too_few_subtasks(self):
        decision = evaluate_decomposition(_task("Redesign the onboarding flow", Intent.OPEN_ENDED))
        assert decision.decompose is False

    def test_ambiguous_never_decomposes(self):
        assert evaluate_decomposition(_task(INDEPENDENT, Intent.AMBIGUOUS)).decompose is False

    def test_force_uses_angles_for_single_clause(self):
        decision = evaluate_decomposition(_task("Investigate why login is slow", Intent.EXPLORATORY), force=True)
        assert decision.decompose is True
        assert len(decision.subtasks) == len(ANGLE_TEMPLATES)

    def test_force_drops_dependencies(self):
        task = _task("Add a cache layer to the client, then update every caller", Intent.OPEN_ENDED)
        decision = evaluate_decomposition(task, force=True)
        assert decision.decompose is True
        assert all(st.independent for st in decision.subtasks)

    def test_force_false_forbids(self):
        assert evaluate_decomposition(_task(INDEPENDENT, Intent.OPEN_ENDED), force=False).decompose is False

    def test_precomputed_subtasks(self):
        subtasks = [SubTask(id=str(i), description=f"part {i}") for i in range(4)]
        decision = evaluate_decomposition(_task("whatever", Intent.OPEN_ENDED), subtasks=subtasks)
        assert decision.subtasks == subtasks

    def test_unclassified_task_rejected(self):
        with pytest.raises(ValueError):
            evaluate_decomposition(Task(request=Request(text="Add tests")))
