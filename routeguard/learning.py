"""
Online learning from routing outcomes.

OutcomeRecorder appends each outcome to the outcome log and folds it into
the per-agent and per-pattern statistics. WeightAdapter is the periodic
job that nudges ``min_confidence`` from the recent success rate:

    avg_success >= 0.80   min_confidence += adaptation_rate  (ceiling 0.90)
    avg_success <  0.60   min_confidence -= adaptation_rate  (floor 0.50)
    otherwise             unchanged

It is a bounded homeostatic controller rather than an optimizer: the
threshold can only move one step per run and never leaves its bounds.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from routeguard.audit import DecisionTracer
from routeguard.config import AdaptationConfig
from routeguard.decision_store import DecisionStore
from routeguard.exceptions import InputValidationError
from routeguard.models import (
    AdaptationResult,
    DecisionType,
    OutcomeRecord,
    Pattern,
    RoutingWeights,
    UserAction,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Rounding applied to min_confidence so repeated steps do not drift.
CONFIDENCE_PRECISION = 6


class OutcomeRecorder:
    """Records outcomes and updates statistics, atomically per key."""

    def __init__(self, store: DecisionStore):
        self.store = store

    def record(
        self,
        agents: Sequence[str],
        pattern: Pattern | str,
        complexity: int,
        success: bool,
        latency_ms: float,
        tokens_used: int = 0,
        user_action: UserAction | str = UserAction.IGNORED,
    ) -> OutcomeRecord:
        """Append an outcome and update each agent's and the pattern's statistics.

        Input is validated before anything is written.

        Raises:
            InputValidationError: On any malformed argument.
        """
        outcome = _build_outcome(
            agents, pattern, complexity, success, latency_ms, tokens_used, user_action
        )
        self.store.append_outcome(outcome)

        for agent_id in dict.fromkeys(outcome.agents):
            self.store.update_agent_stat(
                agent_id,
                lambda stat: stat.record(outcome.success, outcome.latency_ms, outcome.timestamp),
            )
        self.store.update_pattern_stat(
            outcome.pattern, lambda stat: stat.record(outcome.success, outcome.latency_ms)
        )

        logger.debug(
            f"Recorded outcome agents={outcome.agents} pattern={outcome.pattern.value} "
            f"success={outcome.success} latency_ms={outcome.latency_ms}"
        )
        return outcome


def _build_outcome(
    agents: Sequence[str],
    pattern: Pattern | str,
    complexity: int,
    success: bool,
    latency_ms: float,
    tokens_used: int,
    user_action: UserAction | str,
) -> OutcomeRecord:
    if isinstance(agents, str) or not agents:
        raise InputValidationError("agents", "expected a non-empty list of agent ids")
    for agent_id in agents:
        if not isinstance(agent_id, str) or not agent_id:
            raise InputValidationError("agents", f"invalid agent id: {agent_id!r}")
    try:
        pattern = Pattern(pattern)
    except ValueError as e:
        raise InputValidationError("pattern", f"unknown pattern: {pattern!r}") from e
    if isinstance(complexity, bool) or not isinstance(complexity, int):
        raise InputValidationError("complexity", "expected int")
    if not 0 <= complexity <= 100:
        raise InputValidationError("complexity", "must be within [0, 100]")
    if not isinstance(success, bool):
        raise InputValidationError("success", "expected bool")
    if isinstance(latency_ms, bool) or not isinstance(latency_ms, (int, float)) or latency_ms < 0:
        raise InputValidationError("latency_ms", "must be a non-negative number")
    if isinstance(tokens_used, bool) or not isinstance(tokens_used, int) or tokens_used < 0:
        raise InputValidationError("tokens_used", "must be a non-negative integer")
    try:
        user_action = UserAction(user_action)
    except ValueError as e:
        raise InputValidationError("user_action", f"unknown action: {user_action!r}") from e

    return OutcomeRecord(
        agents=list(agents),
        pattern=pattern,
        complexity=complexity,
        success=success,
        latency_ms=float(latency_ms),
        tokens_used=tokens_used,
        user_action=user_action,
    )


class WeightAdapter:
    """Periodic job adapting ``min_confidence`` from the recent outcome window."""

    def __init__(
        self,
        store: DecisionStore,
        tracer: Optional[DecisionTracer] = None,
        config: Optional[AdaptationConfig] = None,
    ):
        self.store = store
        self.tracer = tracer
        self.config = config or AdaptationConfig()

    def _next_confidence(self, current: float, avg_success: float, rate: float) -> float:
        cfg = self.config
        if avg_success >= cfg.raise_above:
            return min(cfg.ceiling, round(current + rate, CONFIDENCE_PRECISION))
        if avg_success < cfg.lower_below:
            return max(cfg.floor, round(current - rate, CONFIDENCE_PRECISION))
        return current

    def adapt(self) -> AdaptationResult:
        """Run one adaptation over the newest ``window`` outcomes.

        A no-op when fewer than ``min_samples`` outcomes exist, and when no
        outcome has been recorded since the previous adaptation.
        """
        weights = self.store.get_weights()
        log_length = self.store.outcome_count()
        if log_length <= weights.last_adapted_log_length:
            return AdaptationResult(
                adapted=False,
                reason="no_new_outcomes",
                min_confidence=weights.min_confidence,
            )

        window = self.store.recent_outcomes(self.config.window)
        sample_count = len(window)
        if sample_count < weights.min_samples:
            logger.debug(
                f"Skipping adaptation: {sample_count} samples < min_samples {weights.min_samples}"
            )
            return AdaptationResult(
                adapted=False,
                reason="insufficient_samples",
                sample_count=sample_count,
                min_confidence=weights.min_confidence,
            )

        avg_success = sum(1 for o in window if o.success) / sample_count

        def apply(w: RoutingWeights) -> Optional[tuple[float, float]]:
            if w.last_adapted_log_length >= log_length:
                return None
            previous = w.min_confidence
            w.min_confidence = self._next_confidence(previous, avg_success, w.adaptation_rate)
            w.last_updated = utc_now_iso()
            w.last_adapted_log_length = log_length
            return previous, w.min_confidence

        updated, change = self.store.update_weights(apply)
        if change is None:
            return AdaptationResult(
                adapted=False,
                reason="no_new_outcomes",
                min_confidence=updated.min_confidence,
            )

        previous, current = change
        if current > previous:
            direction = "increased"
        elif current < previous:
            direction = "decreased"
        else:
            direction = "unchanged"
        logger.info(
            f"Adapted min_confidence {previous:.2f} -> {current:.2f} "
            f"(avg_success={avg_success:.2f}, n={sample_count})"
        )

        if self.tracer is not None:
            self.tracer.log_decision(
                DecisionType.LEARNING_OPTIMIZATION,
                direction,
                f"Window success rate {avg_success:.2f} over {sample_count} outcomes; "
                f"min_confidence {previous:.2f} -> {current:.2f}",
                avg_success,
                context={
                    "sample_count": sample_count,
                    "previous_min_confidence": previous,
                    "min_confidence": current,
                    "outcome_log_length": log_length,
                },
            )

        return AdaptationResult(
            adapted=True,
            reason=direction,
            sample_count=sample_count,
            avg_success=avg_success,
            previous_min_confidence=previous,
            min_confidence=current,
        )


def performance_report(store: DecisionStore, top_n: int = 5) -> dict[str, Any]:
    """Summary of current weights, best agents and pattern performance."""
    weights = store.get_weights()
    agents = sorted(
        (s for s in store.all_agent_stats() if s.invocations > 0),
        key=lambda s: (s.success_rate, s.invocations),
        reverse=True,
    )
    return {
        "weights": {
            "success_rate": weights.w_success,
            "avg_latency": weights.w_latency,
            "cost_efficiency": weights.w_cost,
            "user_approval": weights.w_approval,
        },
        "thresholds": {
            "min_confidence": weights.min_confidence,
            "complexity_simple": weights.complexity_simple,
            "complexity_complex": weights.complexity_complex,
            "max_agents_parallel": weights.max_agents_parallel,
        },
        "last_updated": weights.last_updated,
        "outcomes_recorded": store.outcome_count(),
        "top_agents": [
            {
                "agent_id": s.agent_id,
                "success_rate": round(s.success_rate, 4),
                "avg_latency_ms": round(s.avg_latency_ms, 1),
                "invocations": s.invocations,
            }
            for s in agents[:top_n]
        ],
        "pattern_performance": {
            p.pattern.value: {
                "success_rate": round(p.success_rate, 4),
                "avg_latency_ms": round(p.avg_latency_ms, 1),
                "total": p.total,
            }
            for p in store.all_pattern_stats()
        },
    }


__all__ = ["OutcomeRecorder", "WeightAdapter", "performance_report", "CONFIDENCE_PRECISION"]
