"""
Per-resource circuit breakers backed by the decision store.

State machine:

    CLOSED    --failure_count >= failure_threshold-->      OPEN
    OPEN      --half_open_after elapsed, at check()-->     HALF_OPEN
    HALF_OPEN --success_count >= success_threshold-->      CLOSED (counts reset)
    HALF_OPEN --any failure-->                             OPEN (opened_at reset)

Every check and record is a single atomic update of the circuit's key, so
transitions are linearizable per resource even across processes sharing a
SQLite backend. While HALF_OPEN only ``half_open_max_probes`` requests are
let through until a result is recorded. If the state cannot be read or
written the breaker fails open and lets the call through.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable, Generator, Optional

from routeguard.config import CircuitBreakerConfig, get_circuit_breaker_config
from routeguard.decision_store import DecisionStore
from routeguard.events import safe_emit
from routeguard.exceptions import CircuitOpenError, InputValidationError, StorageError
from routeguard.logging_config import get_logger
from routeguard.models import CircuitRecord, CircuitState, DecisionType
from routeguard.protocols import EventSink

if TYPE_CHECKING:
    from routeguard.audit import DecisionTracer

logger = logging.getLogger(__name__)
transition_logger = get_logger(__name__)

Transition = Optional[tuple[CircuitState, CircuitState]]


def _validate_resource(resource_id: str) -> None:
    if not isinstance(resource_id, str) or not resource_id:
        raise InputValidationError("resource_id", "must be a non-empty string")


class CircuitBreaker:
    """
    Circuit breaker registry keyed by resource id.

    Usage:
        breaker = CircuitBreaker(store)
        if breaker.check("agent:code-reviewer"):
            try:
                result = executor.execute(...)
                breaker.record_success("agent:code-reviewer")
            except Exception:
                breaker.record_failure("agent:code-reviewer")

    or with the context managers:

        async with breaker.protected_call("agent:code-reviewer"):
            result = await call_agent()
    """

    def __init__(
        self,
        store: DecisionStore,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        event_sink: Optional[EventSink] = None,
        tracer: Optional["DecisionTracer"] = None,
    ):
        self.store = store
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.event_sink = event_sink
        self.tracer = tracer

    def config_for(self, resource_id: str) -> CircuitBreakerConfig:
        """Resource-specific config if registered, else the breaker default."""
        return get_circuit_breaker_config(resource_id, base=self.config)

    # -- transitions ---------------------------------------------------------

    @staticmethod
    def _move(record: CircuitRecord, state: CircuitState, now: float) -> Transition:
        previous = record.state
        record.state = state
        record.last_state_change = now
        if state == CircuitState.OPEN:
            record.opened_at = now
            record.probes_in_flight = 0
        elif state == CircuitState.HALF_OPEN:
            record.success_count = 0
            record.probes_in_flight = 0
        else:
            record.failure_count = 0
            record.success_count = 0
            record.opened_at = None
            record.probes_in_flight = 0
        return previous, state

    def _on_transition(self, record: CircuitRecord, transition: Transition, reason: str) -> None:
        if transition is None or transition[0] == transition[1]:
            return
        before, after = transition
        log = transition_logger.warning if after == CircuitState.OPEN else transition_logger.info
        log(
            f"Circuit {record.resource_id}: {before.value} -> {after.value} ({reason})",
            extra={"resource_id": record.resource_id},
            failure_count=record.failure_count,
        )
        payload = {
            "resource_id": record.resource_id,
            "from": before.value,
            "to": after.value,
            "reason": reason,
            "failure_count": record.failure_count,
            "success_count": record.success_count,
        }
        safe_emit(self.event_sink, "circuit_state", payload)
        if self.tracer is not None:
            try:
                self.tracer.log_decision(
                    DecisionType.CIRCUIT_BREAKER,
                    after.value,
                    f"Circuit {record.resource_id} moved {before.value} -> {after.value}: {reason}",
                    1.0,
                    context=payload,
                )
            except StorageError as e:
                logger.warning(f"Could not audit circuit transition for {record.resource_id}: {e}")

    # -- public API ----------------------------------------------------------

    def check(self, resource_id: str) -> bool:
        """Return True if a call to ``resource_id`` may proceed.

        An OPEN circuit whose cool-down has elapsed moves to HALF_OPEN here.
        In HALF_OPEN, calls beyond the probe limit are denied until a
        success or failure is recorded (or the probe itself goes stale).
        """
        _validate_resource(resource_id)
        cfg = self.config_for(resource_id)
        now = self.clock()

        def decide(record: CircuitRecord) -> tuple[bool, Transition]:
            transition: Transition = None
            if record.state == CircuitState.OPEN:
                opened_at = record.opened_at if record.opened_at is not None else now
                if now - opened_at < cfg.half_open_after_seconds:
                    return False, None
                transition = self._move(record, CircuitState.HALF_OPEN, now)
            if record.state == CircuitState.HALF_OPEN:
                stale = (
                    record.probes_in_flight > 0
                    and record.last_state_change is not None
                    and now - record.last_state_change >= cfg.half_open_after_seconds
                )
                if stale:
                    record.probes_in_flight = 0
                    record.last_state_change = now
                if record.probes_in_flight >= cfg.half_open_max_probes:
                    return False, transition
                record.probes_in_flight += 1
            return True, transition

        try:
            record, (allowed, transition) = self.store.update_circuit(resource_id, decide)
        except StorageError as e:
            logger.warning(f"Circuit state unavailable for {resource_id}, failing open: {e}")
            return True
        self._on_transition(record, transition, "cool-down elapsed")
        if not allowed:
            logger.debug(f"Circuit {resource_id} denied call ({record.state.value})")
        return allowed

    def record_success(self, resource_id: str) -> Optional[CircuitState]:
        """Record a successful call. Returns the resulting state."""
        _validate_resource(resource_id)
        cfg = self.config_for(resource_id)
        now = self.clock()

        def apply(record: CircuitRecord) -> Transition:
            record.success_count += 1
            record.failure_count = 0
            record.probes_in_flight = max(0, record.probes_in_flight - 1)
            if record.state == CircuitState.HALF_OPEN:
                if record.success_count >= cfg.success_threshold:
                    return self._move(record, CircuitState.CLOSED, now)
            elif record.state == CircuitState.CLOSED:
                record.success_count = 0
            return None

        try:
            record, transition = self.store.update_circuit(resource_id, apply)
        except StorageError as e:
            logger.warning(f"Could not record success for {resource_id}: {e}")
            return None
        self._on_transition(record, transition, f"{cfg.success_threshold} successful probes")
        return record.state

    def record_failure(self, resource_id: str) -> Optional[CircuitState]:
        """Record a failed call. Returns the resulting state."""
        _validate_resource(resource_id)
        cfg = self.config_for(resource_id)
        now = self.clock()

        def apply(record: CircuitRecord) -> Transition:
            record.failure_count += 1
            record.success_count = 0
            record.last_failure_at = now
            record.probes_in_flight = max(0, record.probes_in_flight - 1)
            if record.state == CircuitState.CLOSED:
                if record.failure_count >= cfg.failure_threshold:
                    return self._move(record, CircuitState.OPEN, now)
            elif record.state == CircuitState.HALF_OPEN:
                return self._move(record, CircuitState.OPEN, now)
            return None

        try:
            record, transition = self.store.update_circuit(resource_id, apply)
        except StorageError as e:
            logger.warning(f"Could not record failure for {resource_id}: {e}")
            return None
        reason = (
            "probe failed"
            if transition is not None and transition[0] == CircuitState.HALF_OPEN
            else f"{record.failure_count} consecutive failures"
        )
        self._on_transition(record, transition, reason)
        return record.state

    def reset(self, resource_id: str) -> None:
        """Force a circuit CLOSED with zeroed counters."""
        _validate_resource(resource_id)
        now = self.clock()
        record, transition = self.store.update_circuit(
            resource_id, lambda r: self._move(r, CircuitState.CLOSED, now)
        )
        self._on_transition(record, transition, "manual reset")

    def reset_all(self) -> int:
        records = self.store.all_circuits()
        for record in records:
            self.reset(record.resource_id)
        logger.info(f"Reset {len(records)} circuit breakers")
        return len(records)

    # -- inspection ----------------------------------------------------------

    def _cooldown_remaining(self, record: CircuitRecord, now: float) -> float:
        if record.state != CircuitState.OPEN or record.opened_at is None:
            return 0.0
        cfg = self.config_for(record.resource_id)
        return max(0.0, cfg.half_open_after_seconds - (now - record.opened_at))

    def state(self, resource_id: str) -> CircuitState:
        """Stored state, without applying the lazy OPEN -> HALF_OPEN move."""
        record = self.store.get_circuit(resource_id)
        return record.state if record else CircuitState.CLOSED

    def status(self, resource_id: str) -> dict[str, Any]:
        record = self.store.get_circuit(resource_id) or CircuitRecord(resource_id)
        cfg = self.config_for(resource_id)
        return {
            **record.to_dict(),
            "cooldown_remaining": self._cooldown_remaining(record, self.clock()),
            "failure_threshold": cfg.failure_threshold,
            "success_threshold": cfg.success_threshold,
            "half_open_after_seconds": cfg.half_open_after_seconds,
        }

    def all_status(self) -> dict[str, dict[str, Any]]:
        return {r.resource_id: self.status(r.resource_id) for r in self.store.all_circuits()}

    def metrics(self) -> dict[str, Any]:
        """Summary counts and health indicators for monitoring."""
        now = self.clock()
        metrics: dict[str, Any] = {
            "timestamp": now,
            "summary": {
                "total": 0,
                "open": 0,
                "closed": 0,
                "half_open": 0,
                "total_failures": 0,
                "circuits_with_failures": 0,
            },
            "circuits": {},
            "health": {
                "status": "healthy",
                "open_circuits": [],
                "high_failure_circuits": [],
            },
        }

        for record in self.store.all_circuits():
            cfg = self.config_for(record.resource_id)
            summary = metrics["summary"]
            summary["total"] += 1
            summary["total_failures"] += record.failure_count
            if record.failure_count > 0:
                summary["circuits_with_failures"] += 1
            summary[record.state.value] += 1
            if record.state == CircuitState.OPEN:
                metrics["health"]["open_circuits"].append(record.resource_id)

            metrics["circuits"][record.resource_id] = {
                "state": record.state.value,
                "failures": record.failure_count,
                "failure_threshold": cfg.failure_threshold,
                "cooldown_remaining": self._cooldown_remaining(record, now),
            }

            # More than half way to tripping
            if record.state == CircuitState.CLOSED and (
                record.failure_count >= cfg.failure_threshold * 0.5 and record.failure_count > 0
            ):
                metrics["health"]["high_failure_circuits"].append(
                    {
                        "resource_id": record.resource_id,
                        "failures": record.failure_count,
                        "threshold": cfg.failure_threshold,
                        "percentage": round(record.failure_count / cfg.failure_threshold * 100, 1),
                    }
                )

        if metrics["summary"]["open"] > 0:
            metrics["health"]["status"] = "degraded"
        if metrics["summary"]["open"] >= 3:
            metrics["health"]["status"] = "critical"
        return metrics

    # -- context managers ----------------------------------------------------

    def _raise_open(self, resource_id: str) -> None:
        record = self.store.get_circuit(resource_id) or CircuitRecord(resource_id)
        raise CircuitOpenError(resource_id, self._cooldown_remaining(record, self.clock()))

    @asynccontextmanager
    async def protected_call(self, resource_id: str) -> AsyncGenerator[None, None]:
        """
        Async context manager for circuit-breaker-protected calls.

        Raises:
            CircuitOpenError: If the circuit denies the call.
        """
        if not self.check(resource_id):
            self._raise_open(resource_id)

        try:
            yield
        except asyncio.CancelledError:
            # Not a dependency failure
            raise
        except Exception as e:
            logger.debug(f"Circuit breaker recorded failure for {resource_id}: {type(e).__name__}: {e}")
            self.record_failure(resource_id)
            raise
        self.record_success(resource_id)

    @contextmanager
    def protected_call_sync(self, resource_id: str) -> Generator[None, None, None]:
        """
        Sync context manager for circuit-breaker-protected calls.

        Raises:
            CircuitOpenError: If the circuit denies the call.
        """
        if not self.check(resource_id):
            self._raise_open(resource_id)

        try:
            yield
        except Exception as e:
            logger.debug(
                f"Circuit breaker (sync) recorded failure for {resource_id}: {type(e).__name__}: {e}"
            )
            self.record_failure(resource_id)
            raise
        self.record_success(resource_id)


__all__ = ["CircuitBreaker"]
