"""
Decomposition Evaluator — Parallel Fan-Out Decisions

Breaks a request into candidate sub-tasks and decides whether fanning them
out to parallel workers is warranted.

Key principle: decompose only when the sub-tasks are provably independent.
Dependency detection is conservative; any hint of ordering or shared state
between two clauses marks the later one as dependent.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Sequence
from typing import assert_never

from .models import DecomposeDecision, Intent, SubTask, Task
from .taxonomy import extract_targets

logger = logging.getLogger(__name__)

# Independent sub-tasks required before automatic fan-out
MIN_PARALLEL_SUBTASKS = 3

# Clauses shorter than this (in words) are merged into their neighbour
MIN_CLAUSE_WORDS = 2

CLAUSE_SPLIT = re.compile(
    r"\n+|;\s*|,\s*and\s+(?:also\s+)?|\s+and\s+also\s+|,?\s+then\s+|,?\s+afterwards?\s+",
    re.IGNORECASE,
)

LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

SEQUENCING_WORDS = [
    "then", "after", "afterwards", "afterward", "once", "next", "finally",
    "based on", "using the result", "using the output", "with the result",
    "following", "subsequently", "before that", "when done",
]

BACK_REFERENCES = ("it ", "them ", "that ", "those ", "these ", "the result", "the output", "this ")

# Parallel-safe angles used when a forced fan-out has too little to split
ANGLE_TEMPLATES = [
    "Explore architecture for",
    "Find similar patterns for",
    "Analyze dependencies for",
]

BreakdownFn = Callable[[str, Sequence[str]], list[SubTask]]


def _split_clauses(text: str) -> list[tuple[str, str]]:
    """Split text into (separator, clause) pairs, preserving what joined them."""
    pieces: list[tuple[str, str]] = []
    position = 0
    separator = ""
    for match in CLAUSE_SPLIT.finditer(text):
        clause = text[position:match.start()]
        pieces.append((separator, clause))
        separator = match.group(0)
        position = match.end()
    pieces.append((separator, text[position:]))

    result: list[tuple[str, str]] = []
    for sep, clause in pieces:
        clause = LIST_ITEM.sub("", clause).strip().rstrip(".")
        if not clause:
            continue
        if result and len(clause.split()) < MIN_CLAUSE_WORDS:
            prev_sep, prev = result[-1]
            result[-1] = (prev_sep, f"{prev} {clause}")
            continue
        result.append((sep, clause))
    return result


def _is_sequenced(separator: str, clause: str) -> bool:
    sep_lower = separator.lower()
    if "then" in sep_lower or "afterward" in sep_lower:
        return True
    clause_lower = clause.lower()
    for word in SEQUENCING_WORDS:
        if re.search(rf"(?<!\w){re.escape(word)}(?!\w)", clause_lower):
            return True
    return clause_lower.startswith(BACK_REFERENCES)


def _heuristic_breakdown(text: str, targets: Sequence[str]) -> list[SubTask]:
    """Clause-based breakdown (fallback when no breakdown_fn is supplied)."""
    subtasks: list[SubTask] = []
    for separator, clause in _split_clauses(text):
        clause_targets = extract_targets(clause)
        deps: list[str] = []

        if subtasks and _is_sequenced(separator, clause):
            deps.append(subtasks[-1].id)

        for earlier in subtasks:
            shared = set(clause_targets) & set(earlier.targets)
            if shared and earlier.id not in deps:
                deps.append(earlier.id)

        subtasks.append(
            SubTask(
                id=f"subtask-{uuid.uuid4().hex[:8]}",
                description=clause,
                dependencies=deps,
                targets=clause_targets,
                metadata={"heuristic": True},
            )
        )

    # Request-level targets that are not attributed to any clause make every
    # clause potentially touch them.
    if len(subtasks) > 1 and targets:
        unattributed = [t for t in targets if not any(t in st.targets for st in subtasks)]
        if unattributed:
            for st in subtasks[1:]:
                if subtasks[0].id not in st.dependencies:
                    st.dependencies.append(subtasks[0].id)

    return subtasks


def breakdown_request(
    text: str,
    targets: Sequence[str] = (),
    breakdown_fn: BreakdownFn | None = None,
) -> list[SubTask]:
    """
    Break a request into candidate sub-tasks.

    Args:
        text: Request text (with merged clarifications)
        targets: Explicit target references
        breakdown_fn: Optional alternative breakdown; falls back to the
            clause heuristic on error

    Returns:
        List of SubTask objects with conservatively detected dependencies
    """
    if breakdown_fn is not None:
        try:
            return list(breakdown_fn(text, targets))
        except Exception as exc:
            logger.warning("breakdown_fn failed (%s); using clause heuristic", exc)
    return _heuristic_breakdown(text, targets)


def angle_subtasks(text: str) -> list[SubTask]:
    """Parallel-safe sub-tasks that look at the whole request from fixed angles."""
    subject = text.strip().splitlines()[0][:80] if text.strip() else text
    return [
        SubTask(
            id=f"subtask-{uuid.uuid4().hex[:8]}",
            description=f"{angle}: {subject}",
            metadata={"angle": angle},
        )
        for angle in ANGLE_TEMPLATES
    ]


def evaluate_decomposition(
    task: Task,
    subtasks: list[SubTask] | None = None,
    force: bool | None = None,
    breakdown_fn: BreakdownFn | None = None,
) -> DecomposeDecision:
    """
    Decide whether to fan the task out to parallel workers.

    Args:
        task: Classified task (intent must be set and not AMBIGUOUS)
        subtasks: Pre-computed breakdown; computed from the request if None
        force: True forces fan-out, False forbids it, None evaluates
        breakdown_fn: Passed through to breakdown_request

    Returns:
        DecomposeDecision; subtasks is empty when decompose is False
    """
    intent = task.intent
    if intent is None:
        raise ValueError(f"Task {task.id} has not been classified")

    if intent is Intent.TRIVIAL or intent is Intent.EXPLICIT:
        return DecomposeDecision(False, f"{intent} requests run as a single work order")

    if subtasks is None:
        subtasks = breakdown_request(task.request.text, task.request.targets, breakdown_fn)

    if force is True:
        if len(subtasks) < 2:
            subtasks = angle_subtasks(task.request.text)
            return DecomposeDecision(True, "forced fan-out over fixed angles", subtasks)
        # forced fan-out dispatches everything concurrently
        for st in subtasks:
            st.dependencies = []
        return DecomposeDecision(True, "forced fan-out", subtasks)

    if force is False:
        return DecomposeDecision(False, "fan-out disabled by request")

    independent = [st for st in subtasks if st.independent]
    has_dependencies = len(independent) != len(subtasks)

    if intent is Intent.OPEN_ENDED or intent is Intent.EXPLORATORY:
        if has_dependencies:
            return DecomposeDecision(False, "sub-tasks depend on each other")
        if len(independent) < MIN_PARALLEL_SUBTASKS:
            return DecomposeDecision(
                False, f"{len(independent)} independent sub-task(s), need {MIN_PARALLEL_SUBTASKS}"
            )
        logger.info("Task %s fans out into %d sub-tasks", task.id, len(subtasks))
        return DecomposeDecision(True, f"{len(subtasks)} independent sub-tasks", subtasks)
    elif intent is Intent.AMBIGUOUS:
        return DecomposeDecision(False, "ambiguous requests are never decomposed")
    else:
        assert_never(intent)
