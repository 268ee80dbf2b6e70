"""
routeguard: Adaptive Routing and Resilience Engine

Decides whether a task warrants multi-agent handling, ranks candidate
agents from learned performance statistics, protects agent calls with
circuit breakers and classified-error retries, and records every
automated decision in a replayable audit trail.

=== COMPONENTS ===

ROUTING:
- Stage-1 lexical pre-filter (token budget, domain keywords, categories,
  complexity vocabulary, prompt length)
- Lexical complexity analysis with coordination pattern recommendation
- Multi-factor fitness scoring with cold-start defaults

LEARNING:
- Per-agent and per-pattern outcome statistics
- Bounded adaptation of the auto-approval threshold

RESILIENCE:
- Per-resource circuit breakers with bounded half-open probing
- Retry orchestration with error classification and exponential backoff
- Durable failed-task store with manual redrive

AUDIT:
- Append-only decision and chain-of-thought ledgers
- Queries, replay, and json/csv/audit exports

STATE:
- In-memory backend for tests and single processes
- SQLite backend (WAL) for durable multi-process use
"""

from __future__ import annotations

import importlib
from typing import Any

from routeguard.__version__ import __version__

_EXPORT_MAP = {
    'AdaptationResult': ('routeguard.models', 'AdaptationResult'),
    'AdaptiveScorer': ('routeguard.scoring', 'AdaptiveScorer'),
    'AgentCapability': ('routeguard.capability_registry', 'AgentCapability'),
    'CancellationToken': ('routeguard.recovery', 'CancellationToken'),
    'CapabilityRegistry': ('routeguard.capability_registry', 'CapabilityRegistry'),
    'CircuitBreaker': ('routeguard.resilience', 'CircuitBreaker'),
    'CircuitBreakerConfig': ('routeguard.config', 'CircuitBreakerConfig'),
    'CircuitOpenError': ('routeguard.exceptions', 'CircuitOpenError'),
    'CircuitState': ('routeguard.models', 'CircuitState'),
    'ComplexityAssessment': ('routeguard.models', 'ComplexityAssessment'),
    'ConfigurationError': ('routeguard.exceptions', 'ConfigurationError'),
    'DecisionNotFoundError': ('routeguard.exceptions', 'DecisionNotFoundError'),
    'DecisionRecord': ('routeguard.models', 'DecisionRecord'),
    'DecisionStore': ('routeguard.decision_store', 'DecisionStore'),
    'DecisionTracer': ('routeguard.audit', 'DecisionTracer'),
    'DecisionType': ('routeguard.models', 'DecisionType'),
    'ErrorClass': ('routeguard.models', 'ErrorClass'),
    'ExecutionResult': ('routeguard.models', 'ExecutionResult'),
    'Executor': ('routeguard.protocols', 'Executor'),
    'ExecutorError': ('routeguard.exceptions', 'ExecutorError'),
    'FailedTaskRecord': ('routeguard.models', 'FailedTaskRecord'),
    'InMemoryBackend': ('routeguard.store', 'InMemoryBackend'),
    'InMemoryEventSink': ('routeguard.events', 'InMemoryEventSink'),
    'InputValidationError': ('routeguard.exceptions', 'InputValidationError'),
    'LexicalComplexityAnalyzer': ('routeguard.analysis', 'LexicalComplexityAnalyzer'),
    'LoggingEventSink': ('routeguard.events', 'LoggingEventSink'),
    'Operation': ('routeguard.models', 'Operation'),
    'OutcomeRecorder': ('routeguard.learning', 'OutcomeRecorder'),
    'Pattern': ('routeguard.models', 'Pattern'),
    'PlanExecution': ('routeguard.engine', 'PlanExecution'),
    'RecordNotFoundError': ('routeguard.exceptions', 'RecordNotFoundError'),
    'RetryConfig': ('routeguard.config', 'RetryConfig'),
    'RetryOrchestrator': ('routeguard.recovery', 'RetryOrchestrator'),
    'RetryReason': ('routeguard.models', 'RetryReason'),
    'RetryResult': ('routeguard.models', 'RetryResult'),
    'RouteDecision': ('routeguard.engine', 'RouteDecision'),
    'RouteguardConfig': ('routeguard.config', 'RouteguardConfig'),
    'RouteguardError': ('routeguard.exceptions', 'RouteguardError'),
    'RoutingEngine': ('routeguard.engine', 'RoutingEngine'),
    'RoutingPlan': ('routeguard.models', 'RoutingPlan'),
    'SQLiteBackend': ('routeguard.store', 'SQLiteBackend'),
    'Stage1Gate': ('routeguard.prefilter', 'Stage1Gate'),
    'Stage1Result': ('routeguard.models', 'Stage1Result'),
    'StateBackend': ('routeguard.protocols', 'StateBackend'),
    'StorageError': ('routeguard.exceptions', 'StorageError'),
    'UserAction': ('routeguard.models', 'UserAction'),
    'WebhookEventSink': ('routeguard.events', 'WebhookEventSink'),
    'WeightAdapter': ('routeguard.learning', 'WeightAdapter'),
    'calculate_backoff': ('routeguard.recovery', 'calculate_backoff'),
    'classify_error': ('routeguard.recovery', 'classify_error'),
    'configure_logging': ('routeguard.logging_config', 'configure_logging'),
    'create_backend': ('routeguard.store', 'create_backend'),
    'get_capability_registry': ('routeguard.capability_registry', 'get_capability_registry'),
    'load_config': ('routeguard.config', 'load_config'),
}


def __getattr__(name: str) -> Any:
    """Lazily import public symbols to avoid heavy import side effects."""
    try:
        module_name, attr_name = _EXPORT_MAP[name]
    except KeyError as exc:
        raise AttributeError(f"module 'routeguard' has no attribute {name!r}") from exc
    module = importlib.import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value

def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))

__all__ = [
    "__version__",
    # Engine
    "RoutingEngine",
    "RouteDecision",
    "PlanExecution",
    # Routing
    "Stage1Gate",
    "Stage1Result",
    "LexicalComplexityAnalyzer",
    "ComplexityAssessment",
    "AdaptiveScorer",
    "RoutingPlan",
    "Pattern",
    "CapabilityRegistry",
    "AgentCapability",
    "get_capability_registry",
    # Learning
    "OutcomeRecorder",
    "WeightAdapter",
    "AdaptationResult",
    "UserAction",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "RetryOrchestrator",
    "RetryResult",
    "RetryReason",
    "CancellationToken",
    "ErrorClass",
    "Operation",
    "ExecutionResult",
    "FailedTaskRecord",
    "classify_error",
    "calculate_backoff",
    # Audit
    "DecisionTracer",
    "DecisionRecord",
    "DecisionType",
    # State
    "DecisionStore",
    "StateBackend",
    "InMemoryBackend",
    "SQLiteBackend",
    "create_backend",
    # Events
    "InMemoryEventSink",
    "LoggingEventSink",
    "WebhookEventSink",
    # Protocols
    "Executor",
    # Config and logging
    "RouteguardConfig",
    "CircuitBreakerConfig",
    "RetryConfig",
    "load_config",
    "configure_logging",
    # Errors
    "RouteguardError",
    "ConfigurationError",
    "InputValidationError",
    "StorageError",
    "DecisionNotFoundError",
    "RecordNotFoundError",
    "CircuitOpenError",
    "ExecutorError",
]
