"""
Data model for routing decisions, learned statistics and resilience state.

Every persisted entity is a dataclass mixing in SerializableMixin so that
state backends only ever see JSON-compatible dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from routeguard.serialization import SerializableMixin


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO timestamp; naive values are treated as UTC."""
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Enums
# =============================================================================


class Stage1Decision(str, Enum):
    PROCEED = "proceed"
    SKIP = "skip"


class Pattern(str, Enum):
    """Execution pattern for a multi-agent plan."""

    SINGLE = "single"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ErrorClass(str, Enum):
    """Error taxonomy used by the retry orchestrator."""

    TRANSIENT = "transient"
    INTERMITTENT = "intermittent"
    PERMANENT = "permanent"


class RetryReason(str, Enum):
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CANCELLED = "cancelled"


class UserAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    IGNORED = "ignored"


class DecisionType(str, Enum):
    AUTO_ROUTING = "auto_routing"
    AUTO_APPROVAL = "auto_approval"
    AUTO_CLEANUP = "auto_cleanup"
    AUTO_REFLECT = "auto_reflect"
    AUTO_FIX = "auto_fix"
    LEARNING_OPTIMIZATION = "learning_optimization"
    AUTO_RECOVERY = "auto_recovery"
    CIRCUIT_BREAKER = "circuit_breaker"


# =============================================================================
# Stage-1 gate and complexity analysis
# =============================================================================


@dataclass
class SignalVector(SerializableMixin):
    """Signals collected by the stage-1 gate and their aggregate score."""

    token_budget_exceeded: bool = False
    keyword_hits: list[str] = field(default_factory=list)
    categories_hit: list[str] = field(default_factory=list)
    complexity_hits: list[str] = field(default_factory=list)
    word_count: int = 0
    score: int = 0


@dataclass
class Stage1Result(SerializableMixin):
    decision: Stage1Decision
    signals: SignalVector
    threshold: int
    tool_name: str = ""

    @property
    def proceed(self) -> bool:
        return self.decision == Stage1Decision.PROCEED


@dataclass
class ComplexityAssessment(SerializableMixin):
    """Output of a complexity analyzer. Read-only once produced."""

    complexity: int
    recommended_pattern: Pattern
    domains: list[str] = field(default_factory=list)
    estimated_tokens: int = 0
    rationale: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.complexity <= 100:
            raise ValueError(f"complexity must be within [0, 100], got {self.complexity}")


# =============================================================================
# Learned statistics
# =============================================================================


@dataclass
class AgentStatistic(SerializableMixin):
    """Running performance counters for one agent.

    success_rate and avg_latency_ms are always recomputed from the integer
    counters and the latency sum, never nudged incrementally.
    """

    agent_id: str
    invocations: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    success_rate: float = 0.0
    last_used: Optional[str] = None

    def record(self, success: bool, latency_ms: float, at: Optional[str] = None) -> None:
        self.invocations += 1
        if success:
            self.successes += 1
        else:
            self.failures += 1
        self.total_latency_ms += latency_ms
        self.avg_latency_ms = self.total_latency_ms / self.invocations
        self.success_rate = self.successes / self.invocations
        self.last_used = at or utc_now_iso()


@dataclass
class PatternStatistic(SerializableMixin):
    pattern: Pattern
    total: int = 0
    successes: int = 0
    total_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    success_rate: float = 0.0

    def record(self, success: bool, latency_ms: float) -> None:
        self.total += 1
        if success:
            self.successes += 1
        self.total_latency_ms += latency_ms
        self.avg_latency_ms = self.total_latency_ms / self.total
        self.success_rate = self.successes / self.total


@dataclass
class RoutingWeights(SerializableMixin):
    """Versioned routing weights singleton.

    ``last_adapted_log_length`` is the outcome log length consumed by the
    most recent adaptation, so re-running the adapter on an unchanged log
    is a no-op.
    """

    w_success: float = 0.40
    w_latency: float = 0.25
    w_cost: float = 0.15
    w_approval: float = 0.20
    min_confidence: float = 0.70
    adaptation_rate: float = 0.05
    min_samples: int = 20
    complexity_simple: int = 30
    complexity_complex: int = 60
    max_agents_parallel: int = 4
    version: int = 1
    last_updated: Optional[str] = None
    last_adapted_log_length: int = 0

    @classmethod
    def from_config(cls, config: Any) -> RoutingWeights:
        """Build initial weights from a WeightsConfig."""
        return cls(
            w_success=config.w_success,
            w_latency=config.w_latency,
            w_cost=config.w_cost,
            w_approval=config.w_approval,
            min_confidence=config.min_confidence,
            adaptation_rate=config.adaptation_rate,
            min_samples=config.min_samples,
            complexity_simple=config.complexity_simple,
            complexity_complex=config.complexity_complex,
            max_agents_parallel=config.max_agents_parallel,
            last_updated=utc_now_iso(),
        )


# =============================================================================
# Resilience state
# =============================================================================


@dataclass
class CircuitRecord(SerializableMixin):
    """Persisted circuit breaker state for one resource.

    Times are seconds from the breaker's clock (``time.time`` by default).
    """

    resource_id: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_state_change: Optional[float] = None
    probes_in_flight: int = 0


@dataclass
class Operation(SerializableMixin):
    """Descriptor of a unit of work handed to an Executor.

    ``resource_id`` names the dependency guarded by a circuit breaker and
    defaults to ``agent:<agent_id>``.
    """

    agent_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None

    @property
    def resource(self) -> str:
        return self.resource_id or f"agent:{self.agent_id}"


@dataclass
class ExecutionResult(SerializableMixin):
    success: bool
    latency_ms: float = 0.0
    result: Any = None
    error: Optional[str] = None
    tokens_used: int = 0


@dataclass
class FailedTaskRecord(SerializableMixin):
    """A task that exhausted its retries, kept for operator redrive."""

    task_id: str
    operation: Operation
    attempts: int
    classification: ErrorClass
    last_error: str = ""
    failed_at: str = field(default_factory=utc_now_iso)
    redrive_attempts: int = 0


@dataclass
class RecoveryEvent(SerializableMixin):
    task_id: str
    event_type: str
    attempts: int
    classification: Optional[ErrorClass] = None
    details: str = ""
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class RetryResult(SerializableMixin):
    """Final outcome of a retried task with its reason code."""

    task_id: str
    success: bool
    reason: RetryReason
    attempts: int
    classification: Optional[ErrorClass] = None
    result: Any = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    tokens_used: int = 0


# =============================================================================
# Outcomes and audit trail
# =============================================================================


@dataclass
class OutcomeRecord(SerializableMixin):
    agents: list[str]
    pattern: Pattern
    complexity: int
    success: bool
    latency_ms: float
    tokens_used: int = 0
    user_action: UserAction = UserAction.IGNORED
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class DecisionRecord(SerializableMixin):
    """Immutable audit record of one automated decision."""

    id: str
    decision_type: str
    outcome: str
    rationale: str
    confidence: float
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class ChainOfThoughtStep(SerializableMixin):
    decision_id: str
    step: int
    description: str
    reasoning: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class DecisionReplay(SerializableMixin):
    decision: DecisionRecord
    steps: list[ChainOfThoughtStep] = field(default_factory=list)


# =============================================================================
# Scoring and learning results
# =============================================================================

PROXY_FACTORS = ("cost_score", "approval_score")


@dataclass
class ScoredCandidate(SerializableMixin):
    """Fitness breakdown for one candidate agent.

    ``proxies`` names the factors that are derived from other signals
    rather than measured directly.
    """

    agent_id: str
    fitness: float
    success_rate: float = 0.0
    latency_score: float = 0.0
    cost_score: float = 0.0
    approval_score: float = 0.0
    experience_factor: float = 1.0
    invocations: int = 0
    cold_start: bool = False
    proxies: list[str] = field(default_factory=lambda: list(PROXY_FACTORS))


@dataclass
class RoutingPlan(SerializableMixin):
    ranked_agents: list[ScoredCandidate]
    pattern: Pattern
    complexity: int
    confidence: float
    min_confidence: float
    auto_approve: bool

    @property
    def agent_ids(self) -> list[str]:
        return [c.agent_id for c in self.ranked_agents]


@dataclass
class AdaptationResult(SerializableMixin):
    adapted: bool
    reason: str
    sample_count: int = 0
    avg_success: Optional[float] = None
    previous_min_confidence: Optional[float] = None
    min_confidence: Optional[float] = None


__all__ = [
    "utc_now",
    "utc_now_iso",
    "parse_timestamp",
    "Stage1Decision",
    "Pattern",
    "CircuitState",
    "ErrorClass",
    "RetryReason",
    "UserAction",
    "DecisionType",
    "SignalVector",
    "Stage1Result",
    "ComplexityAssessment",
    "AgentStatistic",
    "PatternStatistic",
    "RoutingWeights",
    "CircuitRecord",
    "Operation",
    "ExecutionResult",
    "FailedTaskRecord",
    "RecoveryEvent",
    "RetryResult",
    "OutcomeRecord",
    "DecisionRecord",
    "ChainOfThoughtStep",
    "DecisionReplay",
    "PROXY_FACTORS",
    "ScoredCandidate",
    "RoutingPlan",
    "AdaptationResult",
]
