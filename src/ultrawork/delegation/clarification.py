"""
Clarification Gate — Resolve Ambiguity Before Committing Resources

Asks at most four structured questions through an external channel, merges
the answers into the task and reclassifies it. Runs once per task, before
the registry is warmed up, workers are spawned or memory is written.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ultrawork.errors import ClarificationCancelled, UnresolvedAmbiguity

from .models import Clarification, Intent, Task, TaskStatus
from .taxonomy import WIDE_SCOPE_MARKERS, classify_intent, extract_targets

logger = logging.getLogger(__name__)

# Bounds interactive round-trips
MAX_QUESTIONS = 4

# Clause/marker estimate above which a request is too broad to act on
SCOPE_BREADTH_LIMIT = 8

DEICTIC_REFERENCES = [
    "this file", "that file", "this function", "that function", "this method",
    "this class", "this module", "that module", "this bug", "that bug", "this error",
    "the above", "this one", "that one", "this code", "that code", "this test",
]

NEGATION_PATTERN = re.compile(
    r"\b(?:without|no|never|don't|do not|avoid|skip)\s+(?:any\s+|adding\s+|using\s+)?([a-z][\w-]{2,})",
    re.IGNORECASE,
)

POSITIVE_DIRECTIVES = r"(?:add|use|with|include|enable|keep|write|introduce|require)"

PERFORMANCE_WORDS = {"performance", "speed", "faster", "slow", "latency", "memory", "throughput"}


@dataclass(frozen=True)
class Question:
    """Structured question with a finite option set."""

    id: str
    prompt: str
    options: tuple[str, ...]
    multi_select: bool = False

    def __post_init__(self) -> None:
        if not self.options:
            raise ValueError(f"Question {self.id} needs at least one option")


class ClarificationChannel(Protocol):
    """Interactive channel that presents questions to the requester."""

    async def ask(self, questions: Sequence[Question]) -> Mapping[str, Sequence[str]] | None:
        """Return selected option(s) per question id, or None if cancelled."""
        ...


@dataclass
class DefaultAnswerChannel:
    """Non-interactive channel: preset answers, else each question's first option."""

    answers: dict[str, list[str]] = field(default_factory=dict)
    asked: list[list[Question]] = field(default_factory=list)

    async def ask(self, questions: Sequence[Question]) -> Mapping[str, Sequence[str]] | None:
        self.asked.append(list(questions))
        return {q.id: self.answers.get(q.id, [q.options[0]]) for q in questions}


def estimate_scope_breadth(text: str) -> int:
    """Rough count of independent areas a request touches."""
    clauses = [c for c in re.split(r"[;\n]|,\s*|\band\b|\bthen\b", text) if c.strip()]
    text_lower = text.lower()
    wide = sum(1 for marker in WIDE_SCOPE_MARKERS if marker in text_lower)
    return len(clauses) + 2 * wide


def find_conflicts(text: str) -> list[str]:
    """Terms that are both requested and negated in the same request."""
    conflicts: list[str] = []
    for match in NEGATION_PATTERN.finditer(text):
        term = match.group(1).lower()
        positive = re.compile(rf"\b{POSITIVE_DIRECTIVES}\s+(?:\w+\s+)?{re.escape(term)}\b", re.IGNORECASE)
        for hit in positive.finditer(text):
            if not (match.start() <= hit.start() < match.end()):
                if term not in conflicts:
                    conflicts.append(term)
                break
    return conflicts


def critical_ambiguities(task: Task) -> list[str]:
    """Reasons the task cannot proceed without asking. Empty means proceed."""
    reasons: list[str] = []
    text = task.request_text
    text_lower = text.lower()

    if task.intent is Intent.AMBIGUOUS:
        reasons.append("ambiguous_intent")

    has_target = bool(task.request.targets) or bool(extract_targets(text))
    if not has_target and any(ref in text_lower for ref in DEICTIC_REFERENCES):
        reasons.append("missing_target")

    if estimate_scope_breadth(text) > SCOPE_BREADTH_LIMIT:
        reasons.append("scope_too_broad")

    if find_conflicts(text):
        reasons.append("conflicting_requirements")

    return reasons


def build_questions(task: Task, reasons: Sequence[str]) -> list[Question]:
    """Turn ambiguity reasons into at most MAX_QUESTIONS questions."""
    text = task.request_text
    words = set(re.findall(r"[a-z]+", text.lower()))
    questions: list[Question] = []

    if "ambiguous_intent" in reasons:
        questions.append(
            Question(
                id="scope",
                prompt="What should this change cover?",
                options=("A single file or function", "One module", "The whole codebase"),
            )
        )
        if words & PERFORMANCE_WORDS:
            goal_options = ("Lower latency", "Lower memory use", "Higher throughput", "Faster startup")
        else:
            goal_options = ("Fix a defect", "Add a feature", "Improve existing code", "Answer a question")
        questions.append(
            Question(
                id="goal",
                prompt="What outcome matters most?",
                options=goal_options,
                multi_select=True,
            )
        )
        questions.append(
            Question(
                id="approach",
                prompt="How should the work be carried out?",
                options=("Implement the changes", "Report findings only", "Plan first, then implement"),
            )
        )

    if "missing_target" in reasons:
        questions.append(
            Question(
                id="target",
                prompt="Which file, module or symbol does this refer to?",
                options=("The most recently edited file", "The entry-point module", "Let the worker locate it"),
            )
        )

    conflicts = find_conflicts(text)
    if "conflicting_requirements" in reasons and conflicts:
        term = conflicts[0]
        questions.append(
            Question(
                id="conflict",
                prompt=f"The request both asks for and rules out '{term}'. Which applies?",
                options=(f"Use {term}", f"Avoid {term}"),
            )
        )

    if "scope_too_broad" in reasons:
        questions.append(
            Question(
                id="breadth",
                prompt="The request spans many areas. How should it be narrowed?",
                options=("Handle the first area only", "Proceed with every area", "Plan the split first"),
            )
        )

    return questions[:MAX_QUESTIONS]


class ClarificationGate:
    """Suspends a task on the channel, merges answers and reclassifies."""

    def __init__(self, channel: ClarificationChannel | None) -> None:
        self.channel = channel

    async def resolve(self, task: Task) -> bool:
        """
        Clarify the task if needed.

        Returns:
            True if questions were asked and the task was reclassified,
            False if no clarification was needed.

        Raises:
            ClarificationCancelled: the interaction was cancelled
            UnresolvedAmbiguity: reclassification is still ambiguous
        """
        if task.clarifications:
            return False

        reasons = critical_ambiguities(task)
        if not reasons:
            return False

        task.transition(TaskStatus.CLARIFYING)
        questions = build_questions(task, reasons)
        logger.info("Task %s needs clarification (%s): %d question(s)", task.id, ", ".join(reasons), len(questions))

        if self.channel is None:
            logger.warning("No clarification channel configured for task %s", task.id)
            raise ClarificationCancelled()

        answers = await self.channel.ask(questions)
        if answers is None:
            raise ClarificationCancelled()

        for question in questions:
            selected = tuple(str(a) for a in answers.get(question.id, ()))
            if not selected:
                continue
            if not question.multi_select:
                selected = selected[:1]
            task.clarifications.append(
                Clarification(question_id=question.id, question=question.prompt, answers=selected)
            )

        task.transition(TaskStatus.CLASSIFYING)
        result = classify_intent(task.request.text, task.clarifications, task.request.targets)
        task.intent = result.intent
        task.category = result.category
        task.routing_profile = result.routing_profile
        if result.intent is Intent.AMBIGUOUS:
            raise UnresolvedAmbiguity()

        logger.info("Task %s reclassified as %s/%s", task.id, result.intent, result.category)
        return True
