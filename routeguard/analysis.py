"""
Default lexical complexity analyzer.

Production deployments usually inject their own ComplexityAnalyzer; this
one needs no model calls and produces a 0-100 score from three parts:

    estimated tokens   up to 40 points
    domain diversity   up to 30 points
    task structure     up to 30 points
"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional

from routeguard.capability_registry import DOMAIN_KEYWORDS
from routeguard.models import ComplexityAssessment, Pattern

logger = logging.getLogger(__name__)

STEP_INDICATORS = ("first", "then", "after", "next", "finally")
REVIEW_INDICATORS = ("review", "check", "validate", "verify", "audit", "analyze")
BREADTH_INDICATORS = ("and", "both", "all", "comprehensive", "complete")

_CODE_FENCE = re.compile(r"```")
_SENTENCE_END = re.compile(r"[.!?]+")
_LIST_ITEM = re.compile(r"^\s*[-*]\s", re.MULTILINE)


def _contains_word(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(w)}\b", text) for w in words)


class LexicalComplexityAnalyzer:
    """Keyword and structure based ComplexityAnalyzer."""

    def __init__(self, domain_keywords: Optional[dict[str, list[str]]] = None):
        self.domain_keywords = domain_keywords or DOMAIN_KEYWORDS

    def estimate_tokens(self, text: str) -> int:
        """Roughly four characters per token, inflated for code, prose and lists."""
        base = math.ceil(len(text) / 4)
        multiplier = 1.0
        if len(_CODE_FENCE.findall(text)) >= 2:
            multiplier += 0.3
        if len(_SENTENCE_END.findall(text)) > 5:
            multiplier += 0.2
        if len(_LIST_ITEM.findall(text)) > 3:
            multiplier += 0.1
        return math.ceil(base * multiplier)

    def detect_domains(self, text: str) -> list[str]:
        """Domains ordered by the share of their keywords present."""
        lowered = text.lower()
        scored = []
        for domain, keywords in self.domain_keywords.items():
            matches = sum(1 for kw in keywords if kw.lower() in lowered)
            if matches:
                scored.append((matches / len(keywords), domain))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [domain for _, domain in scored]

    def structure_points(self, text: str, domains: list[str]) -> int:
        lowered = text.lower()
        points = 0
        if _contains_word(lowered, STEP_INDICATORS):
            points += 10
        if _contains_word(lowered, REVIEW_INDICATORS):
            points += 10
        if _contains_word(lowered, BREADTH_INDICATORS) and len(domains) > 1:
            points += 10
        return min(points, 30)

    @staticmethod
    def score(tokens: int, domains: list[str], structure: int) -> int:
        score = 0
        if tokens > 50000:
            score += 40
        elif tokens > 30000:
            score += 30
        elif tokens > 10000:
            score += 20
        elif tokens > 5000:
            score += 10

        if len(domains) >= 3:
            score += 30
        elif len(domains) == 2:
            score += 20
        elif len(domains) == 1:
            score += 10

        return min(score + structure, 100)

    @staticmethod
    def select_pattern(complexity: int, domains: list[str]) -> Pattern:
        if complexity < 30:
            return Pattern.SINGLE
        if complexity < 50:
            return Pattern.SEQUENTIAL
        if complexity < 70:
            return Pattern.PARALLEL if len(domains) > 1 else Pattern.SEQUENTIAL
        return Pattern.HIERARCHICAL

    def analyze(self, prompt: str) -> ComplexityAssessment:
        tokens = self.estimate_tokens(prompt)
        domains = self.detect_domains(prompt)
        structure = self.structure_points(prompt, domains)
        complexity = self.score(tokens, domains, structure)
        pattern = self.select_pattern(complexity, domains)
        logger.debug(
            f"Complexity {complexity} ({pattern.value}): tokens={tokens} "
            f"domains={domains} structure={structure}"
        )
        return ComplexityAssessment(
            complexity=complexity,
            recommended_pattern=pattern,
            domains=domains,
            estimated_tokens=tokens,
            rationale=_rationale(complexity, domains),
        )


def _rationale(complexity: int, domains: list[str]) -> str:
    if complexity < 30:
        return "Simple task, single agent sufficient"
    if complexity < 50:
        return f"Moderate task across {len(domains) or 1} domain(s), sequential review"
    if complexity < 70:
        return f"Multi-domain task ({', '.join(domains) or 'general'}), parallel specialists"
    return "Complex task, hierarchical coordination of specialists"


__all__ = ["LexicalComplexityAnalyzer"]
