"""
Stage-1 gate: a cheap lexical pre-filter run on every invocation.

Decides whether a prompt is worth sending to deeper (and more expensive)
complexity analysis. Five independent signals are summed:

    token budget above threshold          +1
    >= 3 domain keywords                  +2
    >= 2 domain categories                +2
    >= 2 complexity words                 +2
    word count above threshold            +1

so the attainable maximum is 8. ``score >= threshold`` means proceed.
All patterns are compiled once; evaluation is linear in prompt length and
never touches I/O.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from routeguard.config import Stage1Config
from routeguard.exceptions import InputValidationError
from routeguard.models import SignalVector, Stage1Decision, Stage1Result

logger = logging.getLogger(__name__)

MAX_SCORE = 8

DOMAIN_KEYWORDS: tuple[str, ...] = (
    "architecture",
    "microservices",
    "distributed",
    "scalability",
    "performance",
    "security",
    "authentication",
    "authorization",
    "encryption",
    "vulnerability",
    "database",
    "migration",
    "schema",
    "optimization",
    "indexing",
    "testing",
    "integration",
    "end-to-end",
    "coverage",
    "mocking",
    "deployment",
    "ci/cd",
    "pipeline",
    "kubernetes",
    "docker",
    "refactor",
    "design pattern",
    "framework",
    "api",
    "backend",
    "frontend",
    "async",
    "concurrency",
    "parallel",
    "thread",
    "queue",
    "monitoring",
    "logging",
    "observability",
    "tracing",
    "metrics",
)

DOMAIN_CATEGORIES: dict[str, tuple[str, ...]] = {
    "frontend": ("frontend", "ui", "react", "vue", "angular", "css", "html"),
    "backend": ("backend", "api", "server", "database", "sql", "nosql"),
    "devops": ("devops", "deploy", "ci/cd", "docker", "kubernetes", "aws", "gcp"),
    "security": ("security", "auth", "encrypt", "vulnerability", "penetration"),
    "testing": ("testing", "test", "qa", "e2e", "integration", "unit"),
}

COMPLEXITY_WORDS: tuple[str, ...] = (
    "complex",
    "comprehensive",
    "complete",
    "full",
    "entire",
    "whole",
    "implement",
    "build",
    "create",
    "design",
    "architect",
    "migrate",
    "refactor",
    "redesign",
    "overhaul",
    "modernize",
    "system",
    "platform",
    "infrastructure",
    "ecosystem",
    "multiple",
    "several",
    "various",
    "different",
    "across",
)


def _word_pattern(term: str) -> re.Pattern[str]:
    # Whole-word match; terms like "ci/cd" and "end-to-end" keep their punctuation.
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


def _any_word_pattern(terms: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(t) for t in terms)
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE)


_KEYWORD_PATTERNS = [(kw, _word_pattern(kw)) for kw in DOMAIN_KEYWORDS]
_COMPLEXITY_PATTERNS = [(w, _word_pattern(w)) for w in COMPLEXITY_WORDS]
# Categories match whole words only ("auth" does not count for "authentication").
_CATEGORY_PATTERNS = {name: _any_word_pattern(terms) for name, terms in DOMAIN_CATEGORIES.items()}


class Stage1Gate:
    """Deterministic lexical scorer deciding proceed/skip for a prompt."""

    def __init__(self, config: Optional[Stage1Config] = None):
        self.config = config or Stage1Config()

    def signals(self, prompt: str, token_budget: int) -> SignalVector:
        """Collect the raw signals and their aggregate score."""
        _validate(prompt, token_budget)
        cfg = self.config

        keyword_hits = [kw for kw, pattern in _KEYWORD_PATTERNS if pattern.search(prompt)]
        categories = [name for name, pattern in _CATEGORY_PATTERNS.items() if pattern.search(prompt)]
        complexity_hits = [w for w, pattern in _COMPLEXITY_PATTERNS if pattern.search(prompt)]
        word_count = len(prompt.split())
        budget_exceeded = token_budget > cfg.token_budget_threshold

        score = 0
        if budget_exceeded:
            score += 1
        if len(keyword_hits) >= cfg.keyword_min:
            score += 2
        if len(categories) >= cfg.category_min:
            score += 2
        if len(complexity_hits) >= cfg.complexity_min:
            score += 2
        if word_count > cfg.word_count_threshold:
            score += 1

        return SignalVector(
            token_budget_exceeded=budget_exceeded,
            keyword_hits=keyword_hits,
            categories_hit=categories,
            complexity_hits=complexity_hits,
            word_count=word_count,
            score=score,
        )

    def evaluate(self, prompt: str, token_budget: int, tool_name: str = "") -> Stage1Result:
        """Score a prompt against the configured threshold.

        Args:
            prompt: The task text.
            token_budget: Declared token budget for the task (non-negative).
            tool_name: Calling tool, used for logging only.

        Raises:
            InputValidationError: On a non-string prompt or a bad budget.
        """
        signals = self.signals(prompt, token_budget)
        threshold = self.config.threshold
        decision = Stage1Decision.PROCEED if signals.score >= threshold else Stage1Decision.SKIP

        logger.debug(
            "Stage-1 %s: score=%d/%d threshold=%d keywords=%d categories=%d "
            "complexity=%d words=%d tool=%s",
            decision.value,
            signals.score,
            MAX_SCORE,
            threshold,
            len(signals.keyword_hits),
            len(signals.categories_hit),
            len(signals.complexity_hits),
            signals.word_count,
            tool_name or "-",
        )
        return Stage1Result(
            decision=decision, signals=signals, threshold=threshold, tool_name=tool_name
        )


def _validate(prompt: str, token_budget: int) -> None:
    if not isinstance(prompt, str):
        raise InputValidationError("prompt", f"expected str, got {type(prompt).__name__}")
    if isinstance(token_budget, bool) or not isinstance(token_budget, int):
        raise InputValidationError(
            "token_budget", f"expected int, got {type(token_budget).__name__}"
        )
    if token_budget < 0:
        raise InputValidationError("token_budget", "must be non-negative")


__all__ = [
    "MAX_SCORE",
    "DOMAIN_KEYWORDS",
    "DOMAIN_CATEGORIES",
    "COMPLEXITY_WORDS",
    "Stage1Gate",
]
