"""
Capability Matcher — Request-to-Skill Similarity

Scores a request against each capability's name and short description.
Capability bodies are never read here; matching is side-effect free.

Scoring:
    confidence = |R ∩ D| / min(|R|, |D|)   (overlap coefficient)
    confidence = 1.0 when every token of the capability name is in the request
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

from .models import Intent, MatchResult
from ultrawork.skills.registry import CapabilityDescriptor

DEFAULT_TOP_K = 3
DEFAULT_MIN_CONFIDENCE = 0.7

KEYWORD_STOPWORDS = {
    "the", "and", "for", "from", "with", "this", "that", "are", "was", "will",
    "can", "has", "have", "been", "into", "when", "what", "which", "your", "you",
    "use", "using", "used", "any", "all", "our", "its", "their", "about", "help",
    "helps", "please", "some", "such", "also", "like", "make", "need", "want",
}

Scorer = Callable[[str, CapabilityDescriptor], float]


def _normalize(word: str) -> str:
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _extract_keywords(text: str) -> set[str]:
    """Extract normalised keywords for capability matching."""
    words = re.findall(r"[a-z0-9]+", text.lower())
    return {_normalize(w) for w in words if len(w) >= 3 and w not in KEYWORD_STOPWORDS}


def _name_tokens(name: str) -> set[str]:
    return {_normalize(w) for w in re.findall(r"[a-z0-9]+", name.lower()) if len(w) >= 2}


def score_capability(text: str, descriptor: CapabilityDescriptor) -> float:
    """Similarity between a request and one capability, in [0.0, 1.0]."""
    request_words = _extract_keywords(text)
    if not request_words:
        return 0.0

    name_tokens = _name_tokens(descriptor.name)
    request_tokens = {_normalize(w) for w in re.findall(r"[a-z0-9]+", text.lower())}
    if name_tokens and name_tokens <= request_tokens:
        return 1.0

    descriptor_words = _extract_keywords(f"{descriptor.name} {descriptor.description}")
    if not descriptor_words:
        return 0.0

    overlap = request_words & descriptor_words
    return len(overlap) / min(len(request_words), len(descriptor_words))


def match_capabilities(
    text: str,
    descriptors: Iterable[CapabilityDescriptor],
    top_k: int = DEFAULT_TOP_K,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    scorer: Scorer | None = None,
) -> list[MatchResult]:
    """
    Rank capabilities against a request.

    Args:
        text: Request text
        descriptors: Capabilities to consider (typically a RegistrySnapshot)
        top_k: Maximum results to return
        min_confidence: Confidence floor in [0.0, 1.0]
        scorer: Optional alternative similarity function

    Returns:
        At most top_k MatchResults at or above the floor, by descending
        confidence with ties broken by name
    """
    if top_k < 1:
        raise ValueError(f"top_k must be >= 1, got {top_k}")
    if not 0.0 <= min_confidence <= 1.0:
        raise ValueError(f"min_confidence must be in [0.0, 1.0], got {min_confidence}")

    score = scorer or score_capability
    scored: list[MatchResult] = []
    for descriptor in descriptors:
        confidence = min(1.0, max(0.0, float(score(text, descriptor))))
        if confidence >= min_confidence:
            scored.append(MatchResult(name=descriptor.name, confidence=confidence))

    scored.sort(key=lambda m: (-m.confidence, m.name))
    return scored[:top_k]


def select_capability(matches: list[MatchResult], intent: Intent | None) -> MatchResult | None:
    """Best match to embed in the work order, or None for trivial tasks."""
    if intent is Intent.TRIVIAL or not matches:
        return None
    return matches[0]
