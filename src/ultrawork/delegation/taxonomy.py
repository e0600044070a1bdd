"""
Intent Taxonomy — Request Classification

Maps a free-form request onto one of five intents and a routing category
using keyword heuristics. An optional callable may classify instead; it falls
back to the heuristics whenever it fails, so classification never raises.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import assert_never

from .models import Category, Clarification, Intent, Request

logger = logging.getLogger(__name__)

STOPWORDS = {
    "the", "and", "for", "from", "with", "this", "that", "these", "those", "are",
    "was", "will", "can", "has", "have", "been", "our", "its", "into", "onto",
    "some", "any", "all", "one", "make", "please", "you", "your", "just", "also",
    "then", "them", "they", "not", "but", "use", "using", "more", "less", "very",
    "should", "would", "could", "there", "here", "what", "how", "why", "where",
    "which", "when", "who", "does", "did", "about", "out", "over", "under", "get",
    "let", "need", "needs", "want", "like", "able", "etc", "it's", "is", "to",
    "of", "in", "on", "at", "by", "be", "do", "an", "a", "or", "if", "so", "up",
}

FILE_EXTENSIONS = (
    "py|pyi|js|jsx|ts|tsx|mjs|go|rs|java|kt|rb|php|c|h|cc|cpp|hpp|cs|swift|m|scala|"
    "md|rst|txt|json|ya?ml|toml|ini|cfg|conf|env|html|css|scss|sql|sh|bash|lock|xml|proto"
)

TARGET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"(?<![\w/.-])[\w./-]*\w\.(?:{FILE_EXTENSIONS})(?::\d+)?\b", re.IGNORECASE),
    re.compile(r"\blines?\s+\d+(?:\s*-\s*\d+)?\b", re.IGNORECASE),
    re.compile(r"`([^`\n]+)`"),
    re.compile(
        r"\b(?:function|method|class|symbol|variable|constant|field|struct|file)[ \t]+"
        r"([A-Za-z_][\w.]*(?:\(\))?)",
        re.IGNORECASE,
    ),
]

WIDE_SCOPE_MARKERS = [
    "across", "all files", "all modules", "all the", "entire", "every", "everywhere",
    "whole", "codebase", "project-wide", "system-wide", "throughout", "repo-wide",
]

TRIVIAL_KEYWORDS = [
    "typo", "rename", "bump", "spelling", "misspelled", "whitespace", "formatting",
    "indentation", "comment", "docstring", "version number", "trailing",
    "import order", "unused import", "changelog",
]

QUESTION_WORDS = {
    "how", "what", "where", "why", "which", "who", "when", "does", "do", "is", "are",
    "can", "could", "explain", "describe", "show", "tell", "walk",
}

INQUIRY_VERBS = {
    "investigate", "explore", "analyze", "analyse", "research", "locate", "find",
    "audit", "understand", "trace", "summarize", "summarise", "document",
}

CHANGE_VERBS = {
    "fix", "add", "remove", "delete", "update", "change", "replace", "move", "write",
    "rename", "bump", "set", "make", "convert", "enable", "disable",
}

BROAD_VERBS = {
    "improve", "refactor", "migrate", "redesign", "rewrite", "overhaul", "modernize",
    "modernise", "optimize", "optimise", "restructure", "build", "implement", "create",
    "develop", "port", "upgrade", "integrate", "design", "architect", "scale",
    "harden", "streamline", "rework",
}

BROAD_PHRASES = ["add support", "clean up", "speed up", "set up", "tidy up"]

POLITE_PREFIXES = ("please ", "can you ", "could you ", "would you ", "will you ")

VAGUE_PHRASES = [
    "something", "stuff", "things", "somehow", "figure out", "deal with", "whatever",
    "fix it", "make it better", "make it work", "sort out", "you know",
]

VISUAL_KEYWORDS = {
    "ui", "ux", "css", "scss", "frontend", "front-end", "layout", "styling", "stylesheet",
    "theme", "colors", "colours", "font", "fonts", "animation", "animations",
    "responsive", "button", "buttons", "dashboard", "visual", "visuals", "icon",
    "icons", "modal", "navbar", "tailwind", "accessibility", "a11y",
}

ARCHITECTURE_SIGNALS = [
    "architecture", "architectural", "schema", "database", "protocol", "framework",
    "migrate", "migration", "api design", "data model", "microservice", "monolith",
    "infrastructure", "breaking change", "event bus", "message queue",
]

# Minimum subject words (besides the verb) for a broad request to be actionable
MIN_SUBJECT_WORDS = 2

# Maximum explicit targets for a change to still count as narrowly scoped
MAX_NARROW_TARGETS = 3

# Word budget for a trivial single edit
MAX_TRIVIAL_WORDS = 15

ROUTING_PROFILES: dict[Category, str] = {
    Category.QUICK: "simple",
    Category.RESEARCH: "research",
    Category.VISUAL: "implementation",
    Category.ARCHITECTURAL: "research",
    Category.COORDINATION: "implementation",
}


@dataclass(frozen=True)
class Classification:
    """Result of intent classification."""

    intent: Intent
    category: Category
    routing_profile: str
    rationale: str
    targets: tuple[str, ...] = ()


def _words(text: str) -> list[str]:
    return re.findall(r"[a-z0-9_+#'-]+", text.lower())


def _looks_like_identifier(value: str) -> bool:
    # "class hierarchy" is prose, "class UserService" is a symbol
    return bool(re.search(r"[A-Z_.()0-9]", value))


def extract_targets(text: str) -> list[str]:
    """Find file, line and symbol references named in the text."""
    found: list[str] = []
    keyword_pattern = TARGET_PATTERNS[-1]
    for pattern in TARGET_PATTERNS:
        for match in pattern.finditer(text):
            value = match.group(match.lastindex or 0).strip()
            if not value or value.lower() in STOPWORDS:
                continue
            if pattern is keyword_pattern and not _looks_like_identifier(value):
                continue
            if value not in found:
                found.append(value)
    return found


def content_words(text: str) -> list[str]:
    """Words that carry meaning: not stopwords, not verbs of change, not vague."""
    return [
        w
        for w in _words(text)
        if len(w) >= 3
        and w not in STOPWORDS
        and w not in BROAD_VERBS
        and w not in CHANGE_VERBS
        and w not in VAGUE_PHRASES
    ]


def _has_any(text_lower: str, phrases: Sequence[str]) -> bool:
    return any(re.search(rf"(?<!\w){re.escape(p)}(?!\w)", text_lower) for p in phrases)


def _is_question(text_lower: str) -> bool:
    stripped = text_lower.strip()
    polite = False
    for prefix in POLITE_PREFIXES:
        if stripped.startswith(prefix):
            stripped = stripped[len(prefix):]
            polite = True
            break

    words = _words(stripped)
    if not words:
        return False
    first = words[0]
    if first in CHANGE_VERBS or first in BROAD_VERBS:
        return False
    if first in INQUIRY_VERBS:
        return True
    if not polite and first in QUESTION_WORDS:
        return True
    return stripped.rstrip().endswith("?")


def _has_broad_verb(text_lower: str) -> bool:
    words = set(_words(text_lower))
    return bool(words & BROAD_VERBS) or _has_any(text_lower, BROAD_PHRASES)


def category_for(intent: Intent, text: str = "") -> Category:
    """Deterministic category for an intent."""
    if intent is Intent.TRIVIAL or intent is Intent.EXPLICIT:
        return Category.QUICK
    elif intent is Intent.EXPLORATORY:
        return Category.RESEARCH
    elif intent is Intent.OPEN_ENDED:
        words = set(_words(text))
        if words & VISUAL_KEYWORDS or _has_any(text.lower(), ["user interface", "look and feel"]):
            return Category.VISUAL
        return Category.ARCHITECTURAL
    elif intent is Intent.AMBIGUOUS:
        return Category.COORDINATION
    else:
        assert_never(intent)


def _classification(intent: Intent, text: str, rationale: str, targets: Sequence[str]) -> Classification:
    category = category_for(intent, text)
    return Classification(
        intent=intent,
        category=category,
        routing_profile=ROUTING_PROFILES[category],
        rationale=rationale,
        targets=tuple(targets),
    )


def _heuristic_classify(text: str, targets: Sequence[str]) -> Classification:
    text_lower = text.lower()
    word_count = len(_words(text))

    if not text.strip():
        return _classification(Intent.AMBIGUOUS, text, "empty request", targets)

    wide = _has_any(text_lower, WIDE_SCOPE_MARKERS)
    question = _is_question(text_lower)
    asks_for_change = bool(set(_words(text_lower)) & CHANGE_VERBS)

    # (a) named target, narrow change; a question about a target describes no change
    if targets and (not question or asks_for_change):
        if not wide and len(targets) <= MAX_NARROW_TARGETS:
            return _classification(
                Intent.EXPLICIT, text, f"names {', '.join(targets[:3])} with a narrow scope", targets
            )

    # (b) single self-contained edit
    if (
        not targets
        and not wide
        and word_count <= MAX_TRIVIAL_WORDS
        and _has_any(text_lower, TRIVIAL_KEYWORDS)
    ):
        return _classification(Intent.TRIVIAL, text, "single self-contained edit", targets)

    # (c) question about existing structure or behavior
    if question:
        return _classification(Intent.EXPLORATORY, text, "phrased as a question", targets)

    # (d) broad multi-step change without a pinned scope
    if _has_broad_verb(text_lower) and not targets:
        if _has_any(text_lower, VAGUE_PHRASES):
            return _classification(Intent.AMBIGUOUS, text, "vague wording", targets)
        subject = content_words(text)
        if len(subject) >= MIN_SUBJECT_WORDS:
            return _classification(Intent.OPEN_ENDED, text, "broad change with a stated subject", targets)
        return _classification(Intent.AMBIGUOUS, text, "broad change without a stated subject", targets)

    # (e) everything else
    if targets and wide:
        return _classification(Intent.AMBIGUOUS, text, "pinned targets contradict a wide scope", targets)
    return _classification(Intent.AMBIGUOUS, text, "no rule matched", targets)


def classify_intent(
    text: str,
    clarifications: Sequence[Clarification] = (),
    targets: Sequence[str] = (),
    classifier_fn: Callable[[str], Classification] | None = None,
) -> Classification:
    """
    Classify a request into exactly one (intent, category) pair.

    Args:
        text: Raw request text
        clarifications: Answers merged into the request text before classifying
        targets: Explicit target references supplied alongside the request
        classifier_fn: Optional alternative classifier; any error or non-
            Classification result falls back to the heuristics

    Returns:
        Classification. Never raises; identical input yields identical output.
    """
    lines = [text]
    for item in clarifications:
        lines.append(f"{item.question_id.capitalize()}: {', '.join(item.answers)}")
    augmented = "\n".join(lines)

    named = list(dict.fromkeys([*targets, *extract_targets(augmented)]))

    if classifier_fn is not None:
        try:
            result = classifier_fn(augmented)
            if isinstance(result, Classification):
                return result
            logger.warning("classifier_fn returned %r; using heuristics", type(result).__name__)
        except Exception as exc:
            logger.warning("classifier_fn failed (%s); using heuristics", exc)

    return _heuristic_classify(augmented, named)


def classify_request(request: Request, clarifications: Sequence[Clarification] = ()) -> Classification:
    return classify_intent(request.text, clarifications, request.targets)


def needs_consensus(request: Request, classification: Classification) -> bool:
    """Whether the plan is architecturally significant enough for a panel vote."""
    if request.require_consensus:
        return True
    if classification.category is not Category.ARCHITECTURAL:
        return False
    return _has_any(request.text.lower(), ARCHITECTURE_SIGNALS)
