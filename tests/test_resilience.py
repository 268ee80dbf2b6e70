"""Tests for the store-backed per-resource circuit breaker."""

import asyncio
import logging
import threading
from unittest.mock import MagicMock

import pytest

from routeguard.config import CircuitBreakerConfig, register_resource_config
from routeguard.decision_store import DecisionStore
from routeguard.exceptions import CircuitOpenError, StorageError
from routeguard.models import CircuitState, DecisionType
from routeguard.resilience import CircuitBreaker

RES = "agent:code-reviewer"


def trip(breaker, resource=RES, times=3):
    for _ in range(times):
        breaker.record_failure(resource)


class TestStateMachine:
    """Tests for circuit transitions."""

    def test_initially_closed(self, breaker):
        """Unknown resources are closed and allowed."""
        assert breaker.state(RES) == CircuitState.CLOSED
        assert breaker.check(RES) is True

    def test_opens_after_threshold(self, breaker):
        """Three consecutive failures open the circuit."""
        breaker.record_failure(RES)
        breaker.record_failure(RES)
        assert breaker.state(RES) == CircuitState.CLOSED
        assert breaker.record_failure(RES) == CircuitState.OPEN
        assert breaker.check(RES) is False

    def test_success_resets_failure_count(self, breaker, store):
        """A success in between resets the consecutive failure count."""
        breaker.record_failure(RES)
        breaker.record_failure(RES)
        breaker.record_success(RES)
        breaker.record_failure(RES)
        record = store.get_circuit(RES)
        assert record.state == CircuitState.CLOSED
        assert record.failure_count == 1

    def test_half_open_after_cooldown(self, breaker, clock):
        """The first check after the cool-down moves the circuit to half-open."""
        trip(breaker)
        clock.advance(59)
        assert breaker.check(RES) is False
        clock.advance(1)
        assert breaker.check(RES) is True
        assert breaker.state(RES) == CircuitState.HALF_OPEN

    def test_half_open_closes_after_successes(self, breaker, clock, store):
        """Two successes while half-open close the circuit with counters reset."""
        trip(breaker)
        clock.advance(60)
        assert breaker.check(RES) is True
        breaker.record_success(RES)
        assert breaker.state(RES) == CircuitState.HALF_OPEN
        assert breaker.check(RES) is True
        assert breaker.record_success(RES) == CircuitState.CLOSED
        record = store.get_circuit(RES)
        assert record.failure_count == 0
        assert record.success_count == 0
        assert record.opened_at is None

    def test_half_open_failure_reopens(self, breaker, clock, store):
        """A failure while half-open reopens with a fresh opened_at."""
        trip(breaker)
        first_opened = store.get_circuit(RES).opened_at
        clock.advance(61)
        breaker.check(RES)
        assert breaker.record_failure(RES) == CircuitState.OPEN
        assert store.get_circuit(RES).opened_at == first_opened + 61
        assert breaker.check(RES) is False

    def test_half_open_bounds_probes(self, breaker, clock):
        """Only one probe is let through while half-open."""
        trip(breaker)
        clock.advance(60)
        assert breaker.check(RES) is True
        assert breaker.check(RES) is False
        breaker.record_success(RES)
        assert breaker.check(RES) is True

    def test_stale_probe_released(self, breaker, clock):
        """A probe with no recorded result is released after another cool-down."""
        trip(breaker)
        clock.advance(60)
        assert breaker.check(RES) is True
        clock.advance(60)
        assert breaker.check(RES) is True

    def test_success_while_open_stays_open(self, breaker, store):
        """A late success on an open circuit resets failures but keeps it open."""
        trip(breaker)
        assert breaker.record_success(RES) == CircuitState.OPEN
        assert store.get_circuit(RES).failure_count == 0

    def test_resources_independent(self, breaker):
        """Each resource has its own circuit."""
        trip(breaker, "agent:a")
        assert breaker.check("agent:a") is False
        assert breaker.check("agent:b") is True

    def test_reset(self, breaker):
        """reset forces the circuit closed."""
        trip(breaker)
        breaker.reset(RES)
        assert breaker.state(RES) == CircuitState.CLOSED
        assert breaker.check(RES) is True

    def test_reset_all(self, breaker):
        """reset_all closes every known circuit."""
        trip(breaker, "agent:a")
        trip(breaker, "agent:b")
        assert breaker.reset_all() == 2
        assert breaker.metrics()["summary"]["open"] == 0

    def test_resource_specific_config(self, breaker):
        """Registered per-resource configs override the default threshold."""
        register_resource_config("agent:fragile", CircuitBreakerConfig(failure_threshold=1))
        assert breaker.record_failure("agent:fragile") == CircuitState.OPEN

    def test_env_override(self, breaker, monkeypatch):
        """ROUTEGUARD_CB_* variables override thresholds."""
        monkeypatch.setenv("ROUTEGUARD_CB_FAILURE_THRESHOLD", "5")
        trip(breaker, times=4)
        assert breaker.state(RES) == CircuitState.CLOSED
        breaker.record_failure(RES)
        assert breaker.state(RES) == CircuitState.OPEN

    def test_invalid_resource(self, breaker):
        """Empty resource ids are rejected."""
        from routeguard.exceptions import InputValidationError

        with pytest.raises(InputValidationError):
            breaker.check("")


class TestNotifications:
    """Tests for transition events and audit records."""

    def test_transition_events(self, breaker, events, clock):
        """Each transition emits a circuit_state event."""
        trip(breaker)
        clock.advance(60)
        breaker.check(RES)
        transitions = [(p["from"], p["to"]) for _, p in events.events("circuit_state")]
        assert transitions == [("closed", "open"), ("open", "half_open")]

    def test_transitions_audited(self, breaker, tracer):
        """Transitions are logged as circuit_breaker decisions."""
        trip(breaker)
        decisions = tracer.query_decisions(DecisionType.CIRCUIT_BREAKER)
        assert len(decisions) == 1
        assert decisions[0].outcome == "open"
        assert decisions[0].context["resource_id"] == RES

    def test_transition_logged_with_resource(self, breaker, caplog):
        """Opening is logged at WARNING with the resource id attached."""
        with caplog.at_level(logging.INFO, logger="routeguard.resilience"):
            trip(breaker)
        record = [r for r in caplog.records if "closed -> open" in r.getMessage()][0]
        assert record.levelno == logging.WARNING
        assert record.resource_id == RES
        assert record.structured_fields == {"failure_count": 3}

    def test_sink_failure_does_not_propagate(self, store, clock):
        """A raising event sink never breaks a state change."""
        sink = MagicMock()
        sink.emit.side_effect = RuntimeError("sink down")
        breaker = CircuitBreaker(store, clock=clock, event_sink=sink)
        trip(breaker)
        assert breaker.state(RES) == CircuitState.OPEN
        assert sink.emit.called


class TestFailOpen:
    """Tests for storage failures."""

    def test_check_fails_open(self, clock):
        """If state cannot be read the call is allowed."""
        store = MagicMock(spec=DecisionStore)
        store.update_circuit.side_effect = StorageError("database is locked")
        breaker = CircuitBreaker(store, clock=clock)
        assert breaker.check(RES) is True
        assert breaker.record_failure(RES) is None


class TestInspection:
    """Tests for status and metrics."""

    def test_status_cooldown(self, breaker, clock):
        """status reports the remaining cool-down for open circuits."""
        trip(breaker)
        clock.advance(20)
        status = breaker.status(RES)
        assert status["state"] == "open"
        assert status["cooldown_remaining"] == pytest.approx(40)
        assert status["failure_threshold"] == 3

    def test_metrics_health(self, breaker):
        """Open circuits degrade health; three or more make it critical."""
        breaker.record_failure("agent:warm")
        breaker.record_failure("agent:warm")
        assert breaker.metrics()["health"]["status"] == "healthy"
        assert breaker.metrics()["health"]["high_failure_circuits"][0]["resource_id"] == "agent:warm"

        trip(breaker, "agent:a")
        assert breaker.metrics()["health"]["status"] == "degraded"
        trip(breaker, "agent:b")
        trip(breaker, "agent:c")
        metrics = breaker.metrics()
        assert metrics["health"]["status"] == "critical"
        assert metrics["summary"]["open"] == 3
        assert metrics["summary"]["closed"] == 1

    def test_all_status(self, breaker):
        """all_status covers every stored circuit."""
        breaker.record_failure("agent:a")
        breaker.record_success("agent:b")
        assert set(breaker.all_status()) == {"agent:a", "agent:b"}


class TestProtectedCall:
    """Tests for the protected_call context managers."""

    def test_sync_records_success(self, breaker, store):
        """A clean block records a success."""
        with breaker.protected_call_sync(RES):
            pass
        assert store.get_circuit(RES).failure_count == 0

    def test_sync_records_failure(self, breaker, store):
        """An exception in the block records a failure and propagates."""
        with pytest.raises(ValueError):
            with breaker.protected_call_sync(RES):
                raise ValueError("boom")
        assert store.get_circuit(RES).failure_count == 1

    def test_sync_raises_when_open(self, breaker):
        """An open circuit raises CircuitOpenError with the cool-down."""
        trip(breaker)
        with pytest.raises(CircuitOpenError) as exc_info:
            with breaker.protected_call_sync(RES):
                pytest.fail("block should not run")
        assert exc_info.value.cooldown_remaining == pytest.approx(60)

    @pytest.mark.asyncio
    async def test_async_records_failure(self, breaker, store):
        """Async block failures are recorded."""
        with pytest.raises(RuntimeError):
            async with breaker.protected_call(RES):
                raise RuntimeError("down")
        assert store.get_circuit(RES).failure_count == 1

    @pytest.mark.asyncio
    async def test_async_cancellation_not_recorded(self, breaker, store):
        """Cancellation is not counted as a failure."""
        with pytest.raises(asyncio.CancelledError):
            async with breaker.protected_call(RES):
                raise asyncio.CancelledError()
        assert store.get_circuit(RES).failure_count == 0


class TestConcurrency:
    """Tests for concurrent updates."""

    def test_concurrent_failures_counted_exactly(self, store, clock):
        """Concurrent failures are all counted."""
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1000), clock)

        def worker():
            for _ in range(50):
                breaker.record_failure(RES)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get_circuit(RES).failure_count == 400

    def test_sqlite_backend(self, sqlite_backend, clock):
        """The breaker works over the SQLite backend."""
        breaker = CircuitBreaker(DecisionStore(sqlite_backend), clock=clock)
        trip(breaker)
        assert breaker.check(RES) is False
        clock.advance(60)
        assert breaker.check(RES) is True
