"""Tests for adaptive candidate scoring and pattern recommendation."""

import pytest

from routeguard.capability_registry import CapabilityRegistry
from routeguard.decision_store import NS_AGENT_STATS, NS_PATTERN_STATS
from routeguard.exceptions import InputValidationError
from routeguard.models import AgentStatistic, Pattern, PatternStatistic, PROXY_FACTORS
from routeguard.scoring import AdaptiveScorer


def put_agent(store, agent_id, invocations, successes, avg_latency_ms):
    stat = AgentStatistic(
        agent_id=agent_id,
        invocations=invocations,
        successes=successes,
        failures=invocations - successes,
        total_latency_ms=avg_latency_ms * invocations,
        avg_latency_ms=avg_latency_ms,
        success_rate=successes / invocations if invocations else 0.0,
    )
    store.backend.put(NS_AGENT_STATS, agent_id, stat.to_dict())


def put_pattern(store, pattern, total, successes):
    stat = PatternStatistic(
        pattern=pattern, total=total, successes=successes, success_rate=successes / total
    )
    store.backend.put(NS_PATTERN_STATS, pattern.value, stat.to_dict())


@pytest.fixture
def scorer(store):
    return AdaptiveScorer(store)


class TestFitness:
    """Tests for per-candidate fitness."""

    def test_cold_start(self, scorer):
        """Agents without history get the neutral cold-start fitness."""
        candidate = scorer.score_candidate("unknown-agent")
        assert candidate.fitness == 0.5
        assert candidate.cold_start is True
        assert candidate.invocations == 0

    def test_weighted_formula(self, store, scorer):
        """Fitness is the weighted sum of the four factors times experience."""
        put_agent(store, "a", invocations=10, successes=8, avg_latency_ms=1000)
        candidate = scorer.score_candidate("a")
        assert candidate.success_rate == pytest.approx(0.8)
        assert candidate.latency_score == pytest.approx(0.8)
        assert candidate.experience_factor == pytest.approx(1.01)
        expected = (0.4 * 0.8 + 0.25 * 0.8 + 0.15 * 0.8 + 0.2 * 0.8) * 1.01
        assert candidate.fitness == pytest.approx(expected)

    def test_proxy_factors_flagged(self, store, scorer):
        """Cost and approval are marked as derived proxies."""
        put_agent(store, "a", invocations=5, successes=5, avg_latency_ms=500)
        candidate = scorer.score_candidate("a")
        assert candidate.proxies == list(PROXY_FACTORS)
        assert candidate.cost_score == candidate.latency_score
        assert candidate.approval_score == candidate.success_rate

    def test_experience_capped(self, store, scorer):
        """Experience factor never exceeds the cap."""
        put_agent(store, "veteran", invocations=5000, successes=5000, avg_latency_ms=100)
        assert scorer.score_candidate("veteran").experience_factor == 1.2

    def test_unknown_latency(self, store, scorer):
        """Zero recorded latency scores as unknown."""
        put_agent(store, "a", invocations=3, successes=3, avg_latency_ms=0)
        assert scorer.score_candidate("a").latency_score == 0.5

    def test_slow_agent_latency_floor(self, store, scorer):
        """Latency above the baseline clamps to zero."""
        put_agent(store, "slow", invocations=3, successes=3, avg_latency_ms=9000)
        assert scorer.score_candidate("slow").latency_score == 0.0


class TestRecommendPattern:
    """Tests for coordination pattern recommendation."""

    def test_single_agent_sequential(self, scorer):
        """One agent always runs sequentially."""
        assert scorer.recommend_pattern(90, 1) == Pattern.SEQUENTIAL

    def test_large_team_hierarchical(self, scorer):
        """Four or more agents run hierarchically."""
        assert scorer.recommend_pattern(75, 4) == Pattern.HIERARCHICAL

    def test_complex_without_history_sequential(self, scorer):
        """Complex tasks with equal unseen records prefer sequential."""
        assert scorer.recommend_pattern(70, 2) == Pattern.SEQUENTIAL

    def test_complex_parallel_when_better(self, store, scorer):
        """Complex tasks go parallel when parallel outperforms sequential."""
        put_pattern(store, Pattern.PARALLEL, total=10, successes=9)
        put_pattern(store, Pattern.SEQUENTIAL, total=10, successes=6)
        assert scorer.recommend_pattern(70, 3) == Pattern.PARALLEL

    def test_moderate_parallel_needs_proven_record(self, store, scorer):
        """Moderate tasks go parallel only at 70% parallel success or more."""
        put_pattern(store, Pattern.PARALLEL, total=10, successes=7)
        assert scorer.recommend_pattern(40, 2) == Pattern.PARALLEL
        put_pattern(store, Pattern.PARALLEL, total=10, successes=6)
        assert scorer.recommend_pattern(40, 2) == Pattern.SEQUENTIAL


class TestScoreAndSelect:
    """Tests for ranking and selection."""

    def test_cold_start_defaults(self, scorer):
        """Without history, candidates come from the registry defaults."""
        plan = scorer.score_and_select(complexity=45)
        assert plan.agent_ids == ["code-reviewer", "test-automator"]
        assert plan.confidence == pytest.approx(0.5)
        assert plan.auto_approve is False
        assert plan.min_confidence == 0.70

    def test_ranks_by_fitness(self, store, scorer):
        """Higher fitness ranks first."""
        put_agent(store, "weak", invocations=10, successes=2, avg_latency_ms=4000)
        put_agent(store, "strong", invocations=10, successes=10, avg_latency_ms=500)
        plan = scorer.score_and_select(["weak", "strong"], complexity=20)
        assert plan.agent_ids == ["strong", "weak"]

    def test_ties_keep_input_order(self, scorer):
        """Equal fitness preserves the supplied order."""
        plan = scorer.score_and_select(["b", "a", "c"], complexity=10)
        assert plan.agent_ids == ["b", "a", "c"]

    def test_limit_and_dedup(self, scorer):
        """Duplicates are dropped and the selection is truncated."""
        plan = scorer.score_and_select(["a", "a", "b", "c"], complexity=10, max_candidates=2)
        assert plan.agent_ids == ["a", "b"]

    def test_auto_approve_when_confident(self, store, scorer):
        """High mean fitness clears min_confidence."""
        put_agent(store, "a", invocations=50, successes=50, avg_latency_ms=200)
        plan = scorer.score_and_select(["a"], complexity=10)
        assert plan.confidence >= 0.7
        assert plan.auto_approve is True

    def test_history_replaces_defaults(self, store, scorer):
        """Agents with recorded history become the default pool."""
        put_agent(store, "custom-agent", invocations=4, successes=4, avg_latency_ms=300)
        plan = scorer.score_and_select(complexity=80)
        assert plan.agent_ids == ["custom-agent"]

    def test_complex_four_candidates_hierarchical(self, scorer):
        """Complexity 75 with four candidates recommends hierarchical."""
        plan = scorer.score_and_select(["a", "b", "c", "d"], complexity=75)
        assert plan.pattern == Pattern.HIERARCHICAL

    def test_custom_capability_source(self, store):
        """An injected registry supplies the cold-start pool."""
        registry = CapabilityRegistry(load_defaults=False)
        scorer = AdaptiveScorer(store, capabilities=registry)
        assert scorer.score_and_select(complexity=10).agent_ids == []

    @pytest.mark.parametrize("complexity", [-1, 101, 50.5, True])
    def test_invalid_complexity(self, scorer, complexity):
        """Complexity must be an integer in [0, 100]."""
        with pytest.raises(InputValidationError):
            scorer.score_and_select(["a"], complexity=complexity)

    def test_invalid_candidates(self, scorer):
        """A bare string is not a candidate list."""
        with pytest.raises(InputValidationError):
            scorer.score_and_select("code-reviewer", complexity=10)
