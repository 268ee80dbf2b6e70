"""
Adaptive scorer: ranks candidate agents by learned fitness and picks an
execution pattern.

Fitness for an agent with history:

    latency_score  = clamp(1 - avg_latency / baseline_latency, 0, 1)
    cost_score     = latency_score          (proxy)
    approval_score = success_rate           (proxy)
    fitness = (w_success * success_rate + w_latency * latency_score
               + w_cost * cost_score + w_approval * approval_score)
              * min(experience_cap, 1 + invocations / experience_divisor)

Unseen agents get a flat cold-start fitness so new agents are not starved.
The scorer only reads from the DecisionStore.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from routeguard.capability_registry import get_capability_registry
from routeguard.config import ScorerConfig
from routeguard.decision_store import DecisionStore
from routeguard.exceptions import InputValidationError
from routeguard.models import (
    AgentStatistic,
    Pattern,
    RoutingPlan,
    RoutingWeights,
    ScoredCandidate,
)
from routeguard.protocols import CapabilitySource

logger = logging.getLogger(__name__)


class AdaptiveScorer:
    """Multi-factor candidate ranking backed by recorded outcomes."""

    def __init__(
        self,
        store: DecisionStore,
        capabilities: Optional[CapabilitySource] = None,
        config: Optional[ScorerConfig] = None,
    ):
        self.store = store
        self.capabilities = capabilities if capabilities is not None else get_capability_registry()
        self.config = config or ScorerConfig()

    # -- fitness -------------------------------------------------------------

    def _latency_score(self, stat: AgentStatistic) -> float:
        if stat.avg_latency_ms <= 0:
            return self.config.unknown_latency_score
        raw = 1.0 - stat.avg_latency_ms / self.config.baseline_latency_ms
        return max(0.0, min(1.0, raw))

    def score_candidate(
        self, agent_id: str, weights: Optional[RoutingWeights] = None
    ) -> ScoredCandidate:
        """Full fitness breakdown for one agent."""
        weights = weights or self.store.get_weights()
        stat = self.store.get_agent_stat(agent_id)
        if stat is None or stat.invocations == 0:
            return ScoredCandidate(
                agent_id=agent_id,
                fitness=self.config.cold_start_fitness,
                cold_start=True,
            )

        success_rate = stat.success_rate
        latency_score = self._latency_score(stat)
        cost_score = latency_score
        approval_score = success_rate
        experience = min(
            self.config.experience_cap,
            1.0 + stat.invocations / self.config.experience_divisor,
        )
        base = (
            weights.w_success * success_rate
            + weights.w_latency * latency_score
            + weights.w_cost * cost_score
            + weights.w_approval * approval_score
        )
        return ScoredCandidate(
            agent_id=agent_id,
            fitness=base * experience,
            success_rate=success_rate,
            latency_score=latency_score,
            cost_score=cost_score,
            approval_score=approval_score,
            experience_factor=experience,
            invocations=stat.invocations,
        )

    def fitness(self, agent_id: str) -> float:
        return self.score_candidate(agent_id).fitness

    # -- candidates and patterns ---------------------------------------------

    def candidates_for(self, complexity: int) -> list[str]:
        """Agents with history, or the registry's cold-start set when there is none."""
        known = [s.agent_id for s in self.store.all_agent_stats() if s.invocations > 0]
        if known:
            return known
        return list(self.capabilities.default_candidates(complexity))

    def _pattern_success_rate(self, pattern: Pattern) -> float:
        stat = self.store.get_pattern_stat(pattern)
        if stat is None or stat.total == 0:
            return self.config.unseen_pattern_success_rate
        return stat.success_rate

    def recommend_pattern(
        self, complexity: int, num_agents: int, weights: Optional[RoutingWeights] = None
    ) -> Pattern:
        """Pick a coordination pattern for a team of ``num_agents``.

        One agent runs sequentially and large teams run hierarchically. In
        between, complex tasks take whichever of parallel/sequential has the
        better record; simpler ones go parallel only if parallel has proven
        reliable.
        """
        weights = weights or self.store.get_weights()
        if num_agents <= 1:
            return Pattern.SEQUENTIAL
        if num_agents >= self.config.hierarchical_min_agents:
            return Pattern.HIERARCHICAL

        parallel = self._pattern_success_rate(Pattern.PARALLEL)
        sequential = self._pattern_success_rate(Pattern.SEQUENTIAL)
        if complexity >= weights.complexity_complex:
            return Pattern.PARALLEL if parallel > sequential else Pattern.SEQUENTIAL
        if parallel >= self.config.parallel_min_success:
            return Pattern.PARALLEL
        return Pattern.SEQUENTIAL

    # -- selection -----------------------------------------------------------

    def score_and_select(
        self,
        candidates: Optional[Sequence[str]] = None,
        complexity: int = 0,
        max_candidates: Optional[int] = None,
    ) -> RoutingPlan:
        """Rank candidates, keep the top N, and recommend a pattern.

        Ties keep the order in which candidates were supplied (or
        discovered). ``auto_approve`` is set when the mean fitness of the
        selection reaches the current ``min_confidence``.

        Raises:
            InputValidationError: On bad complexity, limits or candidate ids.
        """
        _validate_complexity(complexity)
        weights = self.store.get_weights()
        limit = max_candidates if max_candidates is not None else weights.max_agents_parallel
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InputValidationError("max_candidates", "must be a positive integer")

        if candidates is None:
            pool = self.candidates_for(complexity)
        else:
            if isinstance(candidates, str):
                raise InputValidationError("candidates", "expected a sequence of agent ids")
            pool = []
            for agent_id in candidates:
                if not isinstance(agent_id, str) or not agent_id:
                    raise InputValidationError("candidates", f"invalid agent id: {agent_id!r}")
                if agent_id not in pool:
                    pool.append(agent_id)
            if not pool:
                pool = self.candidates_for(complexity)

        scored = [self.score_candidate(agent_id, weights) for agent_id in pool]
        # sorted() is stable, so equal fitness keeps discovery order
        ranked = sorted(scored, key=lambda c: c.fitness, reverse=True)[:limit]

        pattern = self.recommend_pattern(complexity, len(ranked), weights)
        confidence = (
            min(1.0, sum(c.fitness for c in ranked) / len(ranked)) if ranked else 0.0
        )
        plan = RoutingPlan(
            ranked_agents=ranked,
            pattern=pattern,
            complexity=complexity,
            confidence=confidence,
            min_confidence=weights.min_confidence,
            auto_approve=bool(ranked) and confidence >= weights.min_confidence,
        )
        logger.debug(
            f"Selected {plan.agent_ids} pattern={pattern.value} "
            f"confidence={confidence:.3f} min_confidence={weights.min_confidence:.2f}"
        )
        return plan


def _validate_complexity(complexity: int) -> None:
    if isinstance(complexity, bool) or not isinstance(complexity, int):
        raise InputValidationError("complexity", f"expected int, got {type(complexity).__name__}")
    if not 0 <= complexity <= 100:
        raise InputValidationError("complexity", "must be within [0, 100]")


__all__ = ["AdaptiveScorer"]
