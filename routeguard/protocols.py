"""
Protocol definitions for routeguard collaborators and state backends.

The engine never talks to agents, analyzers or storage directly; it talks
to these interfaces so that tests can inject fakes and deployments can swap
in durable implementations.

Usage:
    from routeguard.protocols import Executor

    class EchoExecutor:
        def execute(self, agent_id: str, payload: dict) -> ExecutionResult:
            return ExecutionResult(success=True, result=payload)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from routeguard.models import ComplexityAssessment, ExecutionResult


@dataclass(frozen=True)
class VersionedValue:
    """A stored JSON value together with its monotonically increasing version."""

    value: dict[str, Any]
    version: int


Mutator = Callable[[Optional[dict[str, Any]]], Optional[dict[str, Any]]]


@runtime_checkable
class StateBackend(Protocol):
    """Protocol for keyed state plus append-only logs.

    Keyed values are namespaced JSON objects with a version that increases
    on every write. ``update`` is the per-key atomic read-modify-write
    primitive; ``compare_and_swap`` is the optimistic alternative.
    """

    def get(self, namespace: str, key: str) -> Optional[VersionedValue]:
        ...

    def put(self, namespace: str, key: str, value: dict[str, Any]) -> int:
        """Unconditionally write a value. Returns the new version."""
        ...

    def compare_and_swap(
        self, namespace: str, key: str, expected_version: int, value: dict[str, Any]
    ) -> int:
        """Write only if the current version matches (0 = key must be absent).

        Raises ConcurrentUpdateError on mismatch.
        """
        ...

    def update(self, namespace: str, key: str, mutator: Mutator) -> Optional[dict[str, Any]]:
        """Atomically apply ``mutator`` to the current value (None if absent).

        A mutator returning None leaves the key untouched. Exceptions raised
        by the mutator abort the update and propagate. Returns the value
        stored after the call.
        """
        ...

    def delete(self, namespace: str, key: str) -> bool:
        ...

    def items(self, namespace: str) -> list[tuple[str, dict[str, Any]]]:
        ...

    def append(self, log: str, record: dict[str, Any]) -> int:
        """Atomically append one record.

        Returns a sequence number that grows with every append to ``log``.
        Use ``log_length`` for the record count.
        """
        ...

    def read_log(self, log: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Return records in append order; with ``limit``, only the newest N."""
        ...

    def log_length(self, log: str) -> int:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Executor(Protocol):
    """Runs an operation on an agent. The actual LLM or tool call lives here.

    Implementations either return an ExecutionResult (``success=False`` with
    an ``error`` message on failure) or raise; both count as a failure.
    """

    def execute(self, agent_id: str, payload: dict[str, Any]) -> ExecutionResult:
        ...


@runtime_checkable
class ComplexityAnalyzer(Protocol):
    """Scores prompt complexity (0-100) and recommends an execution pattern."""

    def analyze(self, prompt: str) -> ComplexityAssessment:
        ...


@runtime_checkable
class CapabilitySource(Protocol):
    """Enumerates known agents to seed routing candidates without history."""

    def agent_ids(self) -> list[str]:
        ...

    def default_candidates(self, complexity: int) -> list[str]:
        ...


@runtime_checkable
class EventSink(Protocol):
    """Best-effort notification channel. Failures must never reach callers."""

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


__all__ = [
    "VersionedValue",
    "Mutator",
    "StateBackend",
    "Executor",
    "ComplexityAnalyzer",
    "CapabilitySource",
    "EventSink",
]
