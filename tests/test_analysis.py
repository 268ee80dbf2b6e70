"""Tests for the lexical complexity analyzer and the capability registry."""

from routeguard.analysis import LexicalComplexityAnalyzer
from routeguard.capability_registry import (
    AgentCapability,
    AgentStatus,
    CapabilityRegistry,
    get_capability_registry,
    reset_capability_registry,
)
from routeguard.models import Pattern


class TestLexicalComplexityAnalyzer:
    """Tests for LexicalComplexityAnalyzer."""

    def test_simple_prompt(self):
        """A short single-domain prompt is simple."""
        assessment = LexicalComplexityAnalyzer().analyze("fix typo")
        assert assessment.complexity == 10
        assert assessment.domains == ["debugging"]
        assert assessment.recommended_pattern == Pattern.SINGLE
        assert "single agent" in assessment.rationale

    def test_multi_domain_prompt(self):
        """Several domains plus review and breadth words score as parallel work."""
        assessment = LexicalComplexityAnalyzer().analyze(
            "security vulnerability review and test coverage"
        )
        assert assessment.domains == ["testing", "security", "review"]
        assert assessment.complexity == 50
        assert assessment.recommended_pattern == Pattern.PARALLEL

    def test_estimate_tokens(self):
        """Plain text is four characters per token; code fences inflate it."""
        analyzer = LexicalComplexityAnalyzer()
        assert analyzer.estimate_tokens("a" * 400) == 100
        fenced = analyzer.estimate_tokens("```" + "x" * 394 + "```")
        assert 130 <= fenced <= 131

    def test_score_capped(self):
        """The total score never exceeds 100."""
        assert LexicalComplexityAnalyzer.score(60000, ["a", "b", "c"], 30) == 100

    def test_select_pattern(self):
        """Pattern selection follows the complexity bands."""
        select = LexicalComplexityAnalyzer.select_pattern
        assert select(10, []) == Pattern.SINGLE
        assert select(40, ["a", "b"]) == Pattern.SEQUENTIAL
        assert select(55, ["a"]) == Pattern.SEQUENTIAL
        assert select(55, ["a", "b"]) == Pattern.PARALLEL
        assert select(75, []) == Pattern.HIERARCHICAL

    def test_custom_vocabulary(self):
        """Injected domain keywords replace the defaults."""
        analyzer = LexicalComplexityAnalyzer({"billing": ["invoice", "refund"]})
        assert analyzer.detect_domains("issue a refund for the invoice") == ["billing"]
        assert analyzer.detect_domains("fix the crash") == []


class TestCapabilityRegistry:
    """Tests for CapabilityRegistry."""

    def test_default_candidates_by_band(self):
        """Cold-start candidates grow with complexity."""
        registry = CapabilityRegistry()
        assert registry.default_candidates(10) == ["code-reviewer"]
        assert registry.default_candidates(45) == ["code-reviewer", "test-automator"]
        assert registry.default_candidates(80) == [
            "code-reviewer",
            "test-automator",
            "security-auditor",
        ]

    def test_deprecated_agents_not_routable(self):
        """Deprecated agents are skipped everywhere."""
        registry = CapabilityRegistry()
        registry.register(
            AgentCapability("code-reviewer", "retired", ["review"], status=AgentStatus.DEPRECATED)
        )
        assert "code-reviewer" not in registry.agent_ids()
        assert registry.default_candidates(10) == []
        assert registry.get_by_domain("review") == []

    def test_agents_for_domains(self):
        """One agent per domain, deduplicated and limited."""
        registry = CapabilityRegistry()
        assert registry.agents_for_domains(["security", "testing", "security"]) == [
            "security-auditor",
            "test-automator",
        ]
        assert registry.agents_for_domains(["security", "testing"], limit=1) == ["security-auditor"]

    def test_capability_lookup(self):
        """Capability tags match case-insensitively."""
        registry = CapabilityRegistry()
        assert [a.agent_id for a in registry.get_by_capability("OWASP")] == ["security-auditor"]

    def test_unregister_and_summary(self):
        """Removing the only security agent leaves the domain uncovered."""
        registry = CapabilityRegistry()
        assert registry.unregister("security-auditor") is True
        assert registry.unregister("security-auditor") is False
        summary = registry.summary()
        assert summary["uncovered_domains"] == ["security"]
        assert summary["total_agents"] == 6

    def test_empty_registry(self):
        """A registry without defaults has no candidates."""
        assert CapabilityRegistry(load_defaults=False).default_candidates(90) == []

    def test_singleton(self):
        """The module registry is shared until reset."""
        first = get_capability_registry()
        assert get_capability_registry() is first
        reset_capability_registry()
        assert get_capability_registry() is not first
