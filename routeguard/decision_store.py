"""
Typed keyed state for routing and resilience.

DecisionStore maps the engine's entities onto a StateBackend:

    routing/weights          RoutingWeights (versioned singleton)
    agent_stats/<agent_id>   AgentStatistic
    pattern_stats/<pattern>  PatternStatistic
    circuits/<resource_id>   CircuitRecord
    failed_tasks/<task_id>   FailedTaskRecord
    log: outcomes            OutcomeRecord (append-only)
    log: recovery_events     RecoveryEvent (append-only)

Every mutation goes through ``StateBackend.update`` so read-modify-write
on a single key is atomic; nothing spans more than one key.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Type, TypeVar

from routeguard.config import WeightsConfig
from routeguard.models import (
    AgentStatistic,
    CircuitRecord,
    FailedTaskRecord,
    OutcomeRecord,
    Pattern,
    PatternStatistic,
    RecoveryEvent,
    RoutingWeights,
)
from routeguard.protocols import StateBackend
from routeguard.serialization import SerializableMixin
from routeguard.store import InMemoryBackend

logger = logging.getLogger(__name__)

NS_ROUTING = "routing"
KEY_WEIGHTS = "weights"
NS_AGENT_STATS = "agent_stats"
NS_PATTERN_STATS = "pattern_stats"
NS_CIRCUITS = "circuits"
NS_FAILED_TASKS = "failed_tasks"
LOG_OUTCOMES = "outcomes"
LOG_RECOVERY_EVENTS = "recovery_events"

S = TypeVar("S", bound=SerializableMixin)
R = TypeVar("R")


class DecisionStore:
    """Typed, per-key atomic access to routing and resilience state."""

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        weights_config: Optional[WeightsConfig] = None,
    ):
        self.backend: StateBackend = backend if backend is not None else InMemoryBackend()
        self._weights_config = weights_config or WeightsConfig()

    # -- generic helpers -----------------------------------------------------

    def _load(self, namespace: str, key: str, cls: Type[S]) -> Optional[S]:
        current = self.backend.get(namespace, key)
        return cls.from_dict(current.value) if current else None

    def _mutate(
        self,
        namespace: str,
        key: str,
        cls: Type[S],
        factory: Callable[[], S],
        fn: Callable[[S], R],
    ) -> tuple[S, R]:
        """Atomically load (or create) an entity, apply ``fn``, store it back."""
        box: dict[str, Any] = {}

        def mutator(value: Optional[dict[str, Any]]) -> dict[str, Any]:
            entity = cls.from_dict(value) if value is not None else factory()
            box["result"] = fn(entity)
            box["entity"] = entity
            return entity.to_dict()

        self.backend.update(namespace, key, mutator)
        return box["entity"], box["result"]

    # -- routing weights -----------------------------------------------------

    def get_weights(self) -> RoutingWeights:
        """Current weights, initializing them from config on first access."""
        weights = self._load(NS_ROUTING, KEY_WEIGHTS, RoutingWeights)
        if weights is not None:
            return weights

        def init(value: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
            if value is not None:
                return None
            return RoutingWeights.from_config(self._weights_config).to_dict()

        stored = self.backend.update(NS_ROUTING, KEY_WEIGHTS, init)
        logger.debug("Initialized routing weights")
        return RoutingWeights.from_dict(stored or {})

    def update_weights(self, fn: Callable[[RoutingWeights], R]) -> tuple[RoutingWeights, R]:
        """Atomically mutate the weights; ``fn`` edits the object in place."""

        def apply(weights: RoutingWeights) -> R:
            before = weights.to_dict()
            result = fn(weights)
            if weights.to_dict() != before:
                weights.version += 1
            return result

        return self._mutate(
            NS_ROUTING,
            KEY_WEIGHTS,
            RoutingWeights,
            lambda: RoutingWeights.from_config(self._weights_config),
            apply,
        )

    # -- agent and pattern statistics ----------------------------------------

    def get_agent_stat(self, agent_id: str) -> Optional[AgentStatistic]:
        return self._load(NS_AGENT_STATS, agent_id, AgentStatistic)

    def all_agent_stats(self) -> list[AgentStatistic]:
        return [AgentStatistic.from_dict(v) for _, v in self.backend.items(NS_AGENT_STATS)]

    def update_agent_stat(
        self, agent_id: str, fn: Callable[[AgentStatistic], R]
    ) -> tuple[AgentStatistic, R]:
        return self._mutate(
            NS_AGENT_STATS, agent_id, AgentStatistic, lambda: AgentStatistic(agent_id), fn
        )

    def get_pattern_stat(self, pattern: Pattern) -> Optional[PatternStatistic]:
        return self._load(NS_PATTERN_STATS, Pattern(pattern).value, PatternStatistic)

    def all_pattern_stats(self) -> list[PatternStatistic]:
        return [PatternStatistic.from_dict(v) for _, v in self.backend.items(NS_PATTERN_STATS)]

    def update_pattern_stat(
        self, pattern: Pattern, fn: Callable[[PatternStatistic], R]
    ) -> tuple[PatternStatistic, R]:
        pattern = Pattern(pattern)
        return self._mutate(
            NS_PATTERN_STATS, pattern.value, PatternStatistic, lambda: PatternStatistic(pattern), fn
        )

    # -- circuits ------------------------------------------------------------

    def get_circuit(self, resource_id: str) -> Optional[CircuitRecord]:
        return self._load(NS_CIRCUITS, resource_id, CircuitRecord)

    def all_circuits(self) -> list[CircuitRecord]:
        return [CircuitRecord.from_dict(v) for _, v in self.backend.items(NS_CIRCUITS)]

    def update_circuit(
        self, resource_id: str, fn: Callable[[CircuitRecord], R]
    ) -> tuple[CircuitRecord, R]:
        return self._mutate(
            NS_CIRCUITS, resource_id, CircuitRecord, lambda: CircuitRecord(resource_id), fn
        )

    # -- failed tasks --------------------------------------------------------

    def save_failed_task(self, record: FailedTaskRecord) -> None:
        self.backend.put(NS_FAILED_TASKS, record.task_id, record.to_dict())

    def get_failed_task(self, task_id: str) -> Optional[FailedTaskRecord]:
        return self._load(NS_FAILED_TASKS, task_id, FailedTaskRecord)

    def list_failed_tasks(self) -> list[FailedTaskRecord]:
        records = [FailedTaskRecord.from_dict(v) for _, v in self.backend.items(NS_FAILED_TASKS)]
        return sorted(records, key=lambda r: r.failed_at)

    def remove_failed_task(self, task_id: str) -> bool:
        return self.backend.delete(NS_FAILED_TASKS, task_id)

    # -- append-only logs ----------------------------------------------------

    def append_outcome(self, record: OutcomeRecord) -> int:
        return self.backend.append(LOG_OUTCOMES, record.to_dict())

    def recent_outcomes(self, limit: Optional[int] = None) -> list[OutcomeRecord]:
        return [OutcomeRecord.from_dict(r) for r in self.backend.read_log(LOG_OUTCOMES, limit)]

    def outcome_count(self) -> int:
        return self.backend.log_length(LOG_OUTCOMES)

    def append_recovery_event(self, event: RecoveryEvent) -> int:
        return self.backend.append(LOG_RECOVERY_EVENTS, event.to_dict())

    def recovery_events(self, limit: Optional[int] = None) -> list[RecoveryEvent]:
        return [
            RecoveryEvent.from_dict(r) for r in self.backend.read_log(LOG_RECOVERY_EVENTS, limit)
        ]


__all__ = [
    "DecisionStore",
    "NS_ROUTING",
    "KEY_WEIGHTS",
    "NS_AGENT_STATS",
    "NS_PATTERN_STATS",
    "NS_CIRCUITS",
    "NS_FAILED_TASKS",
    "LOG_OUTCOMES",
    "LOG_RECOVERY_EVENTS",
]
