"""
Shared pytest fixtures for the routeguard test suite.

Provides fresh state backends, a deterministic clock, scripted executors
and an engine wired with all of them, plus autouse fixtures that reset
module-level registries and strip ROUTEGUARD_* environment overrides.
"""

from __future__ import annotations

import os
import random
from collections import deque
from typing import Any, Iterable

import pytest

from routeguard.audit import DecisionTracer
from routeguard.capability_registry import reset_capability_registry
from routeguard.config import (
    CircuitBreakerConfig,
    RetryConfig,
    RouteguardConfig,
    clear_resource_configs,
)
from routeguard.decision_store import DecisionStore
from routeguard.engine import RoutingEngine
from routeguard.events import InMemoryEventSink
from routeguard.logging_config import clear_context
from routeguard.models import ExecutionResult
from routeguard.recovery import RetryOrchestrator
from routeguard.resilience import CircuitBreaker
from routeguard.store import InMemoryBackend, SQLiteBackend


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedExecutor:
    """Executor returning queued outcomes in order, then repeating the last one.

    Each outcome is an ExecutionResult, an exception instance (raised), or an
    error string (returned as a failed ExecutionResult).
    """

    def __init__(self, outcomes: Iterable[Any] = ()):
        self.outcomes = deque(outcomes)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._last: Any = ExecutionResult(success=True, result="ok", latency_ms=10.0)

    def execute(self, agent_id: str, payload: dict[str, Any]) -> ExecutionResult:
        self.calls.append((agent_id, payload))
        if self.outcomes:
            self._last = self.outcomes.popleft()
        outcome = self._last
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return ExecutionResult(success=False, error=outcome)
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def reset_registries():
    """Reset module-level registries before and after each test."""
    reset_capability_registry()
    clear_resource_configs()
    clear_context()
    yield
    reset_capability_registry()
    clear_resource_configs()
    clear_context()


@pytest.fixture(autouse=True)
def clean_routeguard_env(monkeypatch):
    """Remove ROUTEGUARD_* variables so host settings never leak into tests."""
    for name in list(os.environ):
        if name.startswith("ROUTEGUARD_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def sqlite_backend(tmp_path) -> SQLiteBackend:
    backend = SQLiteBackend(tmp_path / "routeguard.db")
    yield backend
    backend.close()


@pytest.fixture
def store(backend) -> DecisionStore:
    return DecisionStore(backend)


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def tracer(backend, events) -> DecisionTracer:
    return DecisionTracer(backend, events)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def breaker(store, clock, events, tracer) -> CircuitBreaker:
    return CircuitBreaker(store, CircuitBreakerConfig(), clock, events, tracer)


@pytest.fixture
def scripted():
    """Factory for ScriptedExecutor instances."""
    return ScriptedExecutor


@pytest.fixture
def make_orchestrator(store, breaker, tracer, sleeper):
    """Factory building a RetryOrchestrator with jitter off unless overridden."""

    def factory(executor: ScriptedExecutor, **retry_overrides: Any) -> RetryOrchestrator:
        config = RetryConfig(**{"enable_jitter": False, **retry_overrides})
        return RetryOrchestrator(
            store,
            breaker,
            executor,
            tracer=tracer,
            config=config,
            sleep=sleeper,
            rng=random.Random(7),
        )

    return factory


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def engine(backend, executor, events, clock, sleeper) -> RoutingEngine:
    config = RouteguardConfig(retry=RetryConfig(enable_jitter=False))
    return RoutingEngine(
        executor=executor,
        backend=backend,
        config=config,
        event_sink=events,
        clock=clock,
        sleep=sleeper,
        rng=random.Random(7),
    )
