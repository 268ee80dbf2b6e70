"""
RoutingEngine: one object wiring the gate, scorer, learner, breakers,
retry orchestrator and audit trail over a shared state backend.

Usage:
    from routeguard import RoutingEngine, load_config

    engine = RoutingEngine.from_config(load_config(), executor=my_executor)
    decision = engine.route(prompt, token_budget=50_000)
    if decision.escalate and decision.auto_approved:
        execution = engine.execute_plan("task-42", decision.plan, {"prompt": prompt})

    # periodically
    engine.adapt_weights()
"""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from routeguard.analysis import LexicalComplexityAnalyzer
from routeguard.audit import DecisionTracer
from routeguard.capability_registry import CapabilityRegistry
from routeguard.config import RouteguardConfig
from routeguard.decision_store import DecisionStore
from routeguard.exceptions import ConfigurationError, InputValidationError
from routeguard.learning import OutcomeRecorder, WeightAdapter, performance_report
from routeguard.logging_config import LogContext, log_function
from routeguard.models import (
    AdaptationResult,
    ChainOfThoughtStep,
    ComplexityAssessment,
    DecisionRecord,
    DecisionReplay,
    DecisionType,
    OutcomeRecord,
    Operation,
    Pattern,
    RetryResult,
    RoutingPlan,
    Stage1Result,
    UserAction,
)
from routeguard.prefilter import MAX_SCORE, Stage1Gate
from routeguard.protocols import (
    CapabilitySource,
    ComplexityAnalyzer,
    EventSink,
    Executor,
    StateBackend,
)
from routeguard.recovery import CancellationToken, RetryOrchestrator
from routeguard.resilience import CircuitBreaker
from routeguard.scoring import AdaptiveScorer
from routeguard.serialization import SerializableMixin
from routeguard.store import create_backend

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGENTS = 3


@dataclass
class RouteDecision(SerializableMixin):
    """Result of routing one prompt.

    ``plan`` is only set when the Stage-1 gate decided to proceed.
    """

    stage1: Stage1Result
    decision_id: str
    assessment: Optional[ComplexityAssessment] = None
    plan: Optional[RoutingPlan] = None

    @property
    def escalate(self) -> bool:
        return self.plan is not None

    @property
    def auto_approved(self) -> bool:
        return self.plan is not None and self.plan.auto_approve


@dataclass
class PlanExecution(SerializableMixin):
    """Per-agent retry results for an executed plan and the recorded outcome."""

    task_id: str
    pattern: Pattern
    results: list[RetryResult] = field(default_factory=list)
    success: bool = False
    latency_ms: float = 0.0
    tokens_used: int = 0
    outcome: Optional[OutcomeRecord] = None


class RoutingEngine:
    """Facade over the routing, learning, resilience and audit components.

    All components share one state backend, so an engine built on a SQLite
    file can be used from several processes at once.
    """

    def __init__(
        self,
        executor: Optional[Executor] = None,
        backend: Optional[StateBackend] = None,
        config: Optional[RouteguardConfig] = None,
        analyzer: Optional[ComplexityAnalyzer] = None,
        capabilities: Optional[CapabilitySource] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RouteguardConfig()
        self.backend: StateBackend = (
            backend if backend is not None else create_backend(self.config.db_path)
        )
        self.event_sink = event_sink

        self.store = DecisionStore(self.backend, self.config.weights)
        self.tracer = DecisionTracer(self.backend, event_sink)
        self.gate = Stage1Gate(self.config.stage1)
        self.analyzer: ComplexityAnalyzer = analyzer or LexicalComplexityAnalyzer()
        if capabilities is None:
            capabilities = CapabilityRegistry(
                self.config.weights.complexity_simple, self.config.weights.complexity_complex
            )
        self.capabilities: CapabilitySource = capabilities
        self.scorer = AdaptiveScorer(self.store, capabilities, self.config.scorer)
        self.recorder = OutcomeRecorder(self.store)
        self.adapter = WeightAdapter(self.store, self.tracer, self.config.adaptation)
        self.breaker = CircuitBreaker(
            self.store, self.config.circuit_breaker, clock, event_sink, self.tracer
        )
        self.orchestrator: Optional[RetryOrchestrator] = None
        if executor is not None:
            self.orchestrator = RetryOrchestrator(
                self.store,
                self.breaker,
                executor,
                tracer=self.tracer,
                config=self.config.retry,
                event_sink=event_sink,
                sleep=sleep,
                rng=rng,
            )

    @classmethod
    def from_config(
        cls, config: Optional[RouteguardConfig] = None, executor: Optional[Executor] = None, **kwargs: Any
    ) -> RoutingEngine:
        """Build an engine whose backend is chosen by ``config.db_path``."""
        config = config or RouteguardConfig()
        return cls(executor=executor, backend=create_backend(config.db_path), config=config, **kwargs)

    def close(self) -> None:
        self.backend.close()

    def _require_orchestrator(self) -> RetryOrchestrator:
        if self.orchestrator is None:
            raise ConfigurationError("RoutingEngine", "an executor is required to run operations")
        return self.orchestrator

    # -- routing -------------------------------------------------------------

    def evaluate_stage1(self, prompt: str, token_budget: int, tool_name: str = "") -> str:
        """Return ``"proceed"`` or ``"skip"`` for a prompt."""
        return self.gate.evaluate(prompt, token_budget, tool_name).decision.value

    def score_and_select(
        self,
        candidates: Optional[Sequence[str]] = None,
        complexity: int = 0,
        max_agents: Optional[int] = None,
    ) -> RoutingPlan:
        return self.scorer.score_and_select(candidates, complexity, max_agents)

    def route(
        self,
        prompt: str,
        token_budget: int,
        candidates: Optional[Sequence[str]] = None,
        max_agents: int = DEFAULT_MAX_AGENTS,
        tool_name: str = "",
    ) -> RouteDecision:
        """Gate, analyze, rank and audit one prompt.

        A skipped prompt is logged as a ``skipped`` routing decision. An
        escalated one carries a plan and is logged as ``approved`` when its
        confidence clears ``min_confidence``, else ``pending_approval``.
        """
        if isinstance(max_agents, bool) or not isinstance(max_agents, int) or max_agents < 1:
            raise InputValidationError("max_agents", "must be a positive integer")

        stage1 = self.gate.evaluate(prompt, token_budget, tool_name)
        if not stage1.proceed:
            record = self.tracer.trace_routing_decision(
                "skipped",
                round(1.0 - stage1.signals.score / MAX_SCORE, 4),
                stage1=stage1,
                prompt=prompt,
            )
            return RouteDecision(stage1=stage1, decision_id=record.id)

        assessment = self.analyzer.analyze(prompt)
        plan = self.scorer.score_and_select(candidates, assessment.complexity, max_agents)
        outcome = "approved" if plan.auto_approve else "pending_approval"
        record = self.tracer.trace_routing_decision(
            outcome,
            plan.confidence,
            stage1=stage1,
            complexity=assessment.complexity,
            pattern=plan.pattern.value,
            agents=plan.agent_ids,
            prompt=prompt,
        )
        with LogContext(decision_id=record.id):
            logger.info(
                f"Routed to {plan.agent_ids} ({plan.pattern.value}, "
                f"complexity={assessment.complexity}, confidence={plan.confidence:.2f}): {outcome}"
            )
        return RouteDecision(
            stage1=stage1, decision_id=record.id, assessment=assessment, plan=plan
        )

    def _run_pattern(
        self,
        orchestrator: RetryOrchestrator,
        task_id: str,
        plan: RoutingPlan,
        payload: dict[str, Any],
    ) -> list[RetryResult]:
        agents = plan.agent_ids

        def run(agent_id: str, body: dict[str, Any]) -> RetryResult:
            return orchestrator.retry(f"{task_id}:{agent_id}", Operation(agent_id, body))

        def run_parallel(agent_ids: list[str], body: dict[str, Any]) -> list[RetryResult]:
            if len(agent_ids) == 1:
                return [run(agent_ids[0], body)]
            with ThreadPoolExecutor(max_workers=len(agent_ids)) as pool:
                return list(pool.map(lambda a: run(a, body), agent_ids))

        if plan.pattern == Pattern.PARALLEL:
            return run_parallel(agents, payload)

        results: list[RetryResult] = []
        if plan.pattern == Pattern.HIERARCHICAL:
            lead = run(agents[0], payload)
            results.append(lead)
            if lead.success and len(agents) > 1:
                results.extend(run_parallel(agents[1:], {**payload, "lead_result": lead.result}))
            return results

        body = payload
        for agent_id in agents:
            result = run(agent_id, body)
            results.append(result)
            if not result.success:
                break
            body = {**payload, "previous_result": result.result}
        return results

    @log_function(level="DEBUG")
    def execute_plan(
        self, task_id: str, plan: RoutingPlan, payload: Optional[dict[str, Any]] = None
    ) -> PlanExecution:
        """Run each planned agent under retries and record the combined outcome.

        Sequential plans run in rank order, feeding each agent the previous
        result and stopping at the first failure. Parallel plans run all
        agents at once. Hierarchical plans run the lead agent first, then the
        rest in parallel.
        """
        orchestrator = self._require_orchestrator()
        if not isinstance(plan, RoutingPlan) or not plan.ranked_agents:
            raise InputValidationError("plan", "expected a RoutingPlan with at least one agent")
        if not isinstance(task_id, str) or not task_id:
            raise InputValidationError("task_id", "must be a non-empty string")

        with LogContext(task_id=task_id):
            started = time.monotonic()
            results = self._run_pattern(orchestrator, task_id, plan, dict(payload or {}))
            latency_ms = (time.monotonic() - started) * 1000

            success = len(results) == len(plan.ranked_agents) and all(r.success for r in results)
            tokens = sum(r.tokens_used for r in results)
            outcome = self.recorder.record(
                plan.agent_ids, plan.pattern, plan.complexity, success, latency_ms, tokens
            )
            logger.info(
                f"Executed plan {task_id} ({plan.pattern.value}) success={success} "
                f"in {latency_ms:.0f}ms"
            )
        return PlanExecution(
            task_id=task_id,
            pattern=plan.pattern,
            results=results,
            success=success,
            latency_ms=latency_ms,
            tokens_used=tokens,
            outcome=outcome,
        )

    # -- learning ------------------------------------------------------------

    def record_outcome(
        self,
        agents: Sequence[str],
        pattern: Pattern | str,
        complexity: int,
        success: bool,
        latency_ms: float,
        tokens_used: int = 0,
        user_action: UserAction | str = UserAction.IGNORED,
    ) -> OutcomeRecord:
        return self.recorder.record(
            agents, pattern, complexity, success, latency_ms, tokens_used, user_action
        )

    def adapt_weights(self) -> AdaptationResult:
        return self.adapter.adapt()

    def performance_report(self, top_n: int = 5) -> dict[str, Any]:
        return performance_report(self.store, top_n)

    # -- circuit breakers ----------------------------------------------------

    def circuit_check(self, resource_id: str) -> bool:
        return self.breaker.check(resource_id)

    def circuit_record_success(self, resource_id: str) -> None:
        self.breaker.record_success(resource_id)

    def circuit_record_failure(self, resource_id: str) -> None:
        self.breaker.record_failure(resource_id)

    def circuit_reset(self, resource_id: str) -> None:
        self.breaker.reset(resource_id)

    def circuit_status(self, resource_id: Optional[str] = None) -> dict[str, Any]:
        if resource_id is None:
            return self.breaker.all_status()
        return self.breaker.status(resource_id)

    # -- recovery ------------------------------------------------------------

    def retry(
        self,
        task_id: str,
        operation: Operation,
        max_retries: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RetryResult:
        return self._require_orchestrator().retry(task_id, operation, max_retries, cancel)

    async def retry_async(
        self,
        task_id: str,
        operation: Operation,
        max_retries: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RetryResult:
        return await self._require_orchestrator().retry_async(
            task_id, operation, max_retries, cancel
        )

    def redrive_failed(self) -> int:
        return self._require_orchestrator().redrive_failed()

    def redrive_task(self, task_id: str) -> RetryResult:
        return self._require_orchestrator().redrive_task(task_id)

    def recovery_stats(self) -> dict[str, Any]:
        return self._require_orchestrator().recovery_stats()

    # -- audit ---------------------------------------------------------------

    def log_decision(
        self,
        decision_type: DecisionType | str,
        outcome: str,
        rationale: str,
        confidence: float,
        context: Optional[dict[str, Any]] = None,
    ) -> DecisionRecord:
        return self.tracer.log_decision(decision_type, outcome, rationale, confidence, context)

    def log_chain_of_thought(
        self,
        decision_id: str,
        step: int,
        description: str,
        reasoning: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> ChainOfThoughtStep:
        return self.tracer.log_chain_of_thought(decision_id, step, description, reasoning, data)

    def query_decisions(
        self,
        decision_type: Optional[DecisionType | str] = None,
        outcome: Optional[str] = None,
        since: Optional[str | datetime] = None,
        until: Optional[str | datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DecisionRecord]:
        return self.tracer.query_decisions(decision_type, outcome, since, until, limit)

    def replay(self, decision_id: str) -> DecisionReplay:
        return self.tracer.replay(decision_id)

    def export(
        self,
        export_format: str = "json",
        start: Optional[str | datetime] = None,
        end: Optional[str | datetime] = None,
        path: Optional[str | Path] = None,
    ) -> str:
        return self.tracer.export(export_format, start, end, path)

    def stats(self) -> dict[str, Any]:
        return self.tracer.stats()


__all__ = ["RoutingEngine", "RouteDecision", "PlanExecution", "DEFAULT_MAX_AGENTS"]
