"""
Retry orchestration with classified errors, exponential backoff and
circuit-breaker guarding.

Per attempt:

    1. execute the operation through the Executor
    2. success          -> record circuit success, return
    3. classify error   -> permanent aborts at once (escalated, not stored)
    4. circuit open     -> abort with circuit_breaker_open
    5. attempts remain  -> compute backoff, check cancellation, sleep
    6. record circuit failure and go again

A task that exhausts its attempts is persisted as a FailedTaskRecord so an
operator can redrive it later. Every terminal path writes a recovery event
and, when a tracer is attached, an ``auto_recovery`` decision.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Optional

from routeguard.config import RetryConfig
from routeguard.decision_store import NS_FAILED_TASKS, DecisionStore
from routeguard.events import safe_emit
from routeguard.exceptions import InputValidationError, RecordNotFoundError, StorageError
from routeguard.models import (
    DecisionType,
    ErrorClass,
    ExecutionResult,
    FailedTaskRecord,
    Operation,
    RecoveryEvent,
    RetryReason,
    RetryResult,
)
from routeguard.protocols import EventSink, Executor
from routeguard.resilience import CircuitBreaker

if TYPE_CHECKING:
    from routeguard.audit import DecisionTracer

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = ("timeout", "timed out", "connection", "network", "temporar")
INTERMITTENT_MARKERS = ("rate limit", "too many requests", "unavailable")
PERMANENT_MARKERS = ("not found", "forbidden", "unauthorized", "invalid")
_PERMANENT_CODES = re.compile(r"\b(?:401|403|404)\b")

# Outcome recorded on the auto_recovery decision for each terminal reason
_DECISION_OUTCOMES = {
    RetryReason.SUCCESS: "recovered",
    RetryReason.PERMANENT_FAILURE: "escalated",
    RetryReason.CIRCUIT_BREAKER_OPEN: "aborted",
    RetryReason.MAX_RETRIES_EXCEEDED: "stored_for_redrive",
    RetryReason.CANCELLED: "cancelled",
}


def classify_error(message: Optional[str]) -> ErrorClass:
    """Map an error message to transient, intermittent or permanent.

    Checked in that order; anything unrecognised is intermittent.
    """
    text = (message or "").lower()
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorClass.TRANSIENT
    if any(marker in text for marker in INTERMITTENT_MARKERS):
        return ErrorClass.INTERMITTENT
    if any(marker in text for marker in PERMANENT_MARKERS) or _PERMANENT_CODES.search(text):
        return ErrorClass.PERMANENT
    return ErrorClass.INTERMITTENT


def calculate_backoff(
    attempt: int, config: Optional[RetryConfig] = None, rng: Optional[random.Random] = None
) -> int:
    """Backoff in integer milliseconds before retrying after ``attempt`` (0-based).

    ``initial_backoff_ms`` multiplied once per attempt until it reaches
    ``max_backoff_ms``, plus jitter in ``[0, backoff/4)`` when enabled. The
    result never exceeds ``max_backoff_ms``, however large ``attempt`` is.
    """
    cfg = config or RetryConfig()
    if attempt < 0:
        raise InputValidationError("attempt", "must be non-negative")
    backoff = cfg.initial_backoff_ms
    for _ in range(attempt):
        grown = int(backoff * cfg.backoff_multiplier)
        if backoff >= cfg.max_backoff_ms or grown <= backoff:
            break
        backoff = grown
    backoff = min(backoff, cfg.max_backoff_ms)
    if cfg.enable_jitter and backoff // 4 > 0:
        backoff += (rng or random).randrange(backoff // 4)
    return min(backoff, cfg.max_backoff_ms)


class CancellationToken:
    """Cooperative cancellation flag with an optional deadline.

    Usage:
        token = CancellationToken(timeout=30.0)
        orchestrator.retry("task-1", op, cancel=token)
        # from another thread
        token.cancel()
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self.deadline = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline


@dataclass
class _Failure:
    """What to do after a failed attempt."""

    classification: ErrorClass
    error: str
    terminal: Optional[RetryResult] = None
    backoff_ms: Optional[int] = None


class RetryOrchestrator:
    """Runs operations under error classification, backoff and circuit breaking."""

    def __init__(
        self,
        store: DecisionStore,
        breaker: CircuitBreaker,
        executor: Executor,
        tracer: Optional["DecisionTracer"] = None,
        config: Optional[RetryConfig] = None,
        event_sink: Optional[EventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.breaker = breaker
        self.executor = executor
        self.tracer = tracer
        self.config = config or RetryConfig()
        self.event_sink = event_sink
        self.sleep = sleep
        self.rng = rng or random.Random()

    # -- bookkeeping ---------------------------------------------------------

    def _log_event(
        self,
        task_id: str,
        event_type: str,
        attempts: int,
        classification: Optional[ErrorClass],
        details: str,
    ) -> None:
        try:
            self.store.append_recovery_event(
                RecoveryEvent(task_id, event_type, attempts, classification, details[:500])
            )
        except StorageError as e:
            logger.warning(f"Could not log recovery event {event_type} for {task_id}: {e}")

    def _finish(
        self,
        task_id: str,
        operation: Operation,
        reason: RetryReason,
        attempts: int,
        classification: Optional[ErrorClass] = None,
        result: Any = None,
        error: Optional[str] = None,
        latency_ms: float = 0.0,
        tokens_used: int = 0,
    ) -> RetryResult:
        outcome = RetryResult(
            task_id=task_id,
            success=reason == RetryReason.SUCCESS,
            reason=reason,
            attempts=attempts,
            classification=classification,
            result=result,
            error=error,
            latency_ms=latency_ms,
            tokens_used=tokens_used,
        )
        self._log_event(task_id, reason.value, attempts, classification, error or "")

        if self.tracer is not None:
            class_text = classification.value if classification else "none"
            try:
                self.tracer.log_decision(
                    DecisionType.AUTO_RECOVERY,
                    _DECISION_OUTCOMES[reason],
                    f"Task {task_id} on {operation.resource}: {reason.value} after "
                    f"{attempts} attempt(s), classification={class_text}",
                    1.0,
                    context={
                        "task_id": task_id,
                        "agent_id": operation.agent_id,
                        "resource_id": operation.resource,
                        "reason": reason.value,
                        "attempts": attempts,
                        "classification": classification.value if classification else None,
                        "error": error,
                    },
                )
            except StorageError as e:
                logger.warning(f"Could not audit recovery of {task_id}: {e}")
        return outcome

    def _store_failed(
        self, task_id: str, operation: Operation, attempts: int, failure: _Failure
    ) -> None:
        record = FailedTaskRecord(
            task_id=task_id,
            operation=operation,
            attempts=attempts,
            classification=failure.classification,
            last_error=failure.error,
        )
        previous = self.store.get_failed_task(task_id)
        if previous is not None:
            # A failed redrive keeps the original failure time and counters
            record = replace(
                record,
                attempts=previous.attempts + attempts,
                failed_at=previous.failed_at,
                redrive_attempts=previous.redrive_attempts,
            )
        self.store.save_failed_task(record)
        logger.info(f"Stored failed task {task_id} for manual redrive")
        safe_emit(
            self.event_sink,
            "task_failed",
            {
                "task_id": task_id,
                "agent_id": operation.agent_id,
                "attempts": attempts,
                "classification": failure.classification.value,
                "error": failure.error,
            },
        )

    # -- attempt steps -------------------------------------------------------

    @staticmethod
    def _validate(task_id: str, operation: Operation, max_retries: Optional[int]) -> None:
        if not isinstance(task_id, str) or not task_id:
            raise InputValidationError("task_id", "must be a non-empty string")
        if not isinstance(operation, Operation):
            raise InputValidationError("operation", "expected an Operation")
        if max_retries is not None and (
            isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1
        ):
            raise InputValidationError("max_retries", "must be a positive integer")

    @staticmethod
    def _normalize(outcome: Any) -> ExecutionResult:
        if isinstance(outcome, ExecutionResult):
            return outcome
        return ExecutionResult(success=True, result=outcome)

    def _on_success(
        self, task_id: str, operation: Operation, attempt: int, result: ExecutionResult
    ) -> RetryResult:
        self.breaker.record_success(operation.resource)
        logger.info(f"Task {task_id} succeeded on attempt {attempt}")
        return self._finish(
            task_id,
            operation,
            RetryReason.SUCCESS,
            attempt,
            result=result.result,
            latency_ms=result.latency_ms,
            tokens_used=result.tokens_used,
        )

    def _on_failure(
        self, task_id: str, operation: Operation, attempt: int, max_retries: int, error: str
    ) -> _Failure:
        classification = classify_error(error)
        failure = _Failure(classification, error)
        logger.warning(
            f"Task {task_id} failed (attempt {attempt}/{max_retries}): "
            f"{classification.value} error: {error}"
        )

        if classification == ErrorClass.PERMANENT:
            logger.error(f"Permanent error for {task_id}, not retrying")
            failure.terminal = self._finish(
                task_id,
                operation,
                RetryReason.PERMANENT_FAILURE,
                attempt,
                classification,
                error=error,
            )
            return failure

        if not self.breaker.check(operation.resource):
            logger.error(f"Circuit breaker open for {operation.resource}, aborting {task_id}")
            failure.terminal = self._finish(
                task_id,
                operation,
                RetryReason.CIRCUIT_BREAKER_OPEN,
                attempt,
                classification,
                error=error,
            )
            return failure

        if attempt < max_retries:
            failure.backoff_ms = calculate_backoff(attempt - 1, self.config, self.rng)
        return failure

    def _cancelled(
        self,
        task_id: str,
        operation: Operation,
        attempts: int,
        classification: Optional[ErrorClass] = None,
        error: Optional[str] = None,
    ) -> RetryResult:
        logger.info(f"Task {task_id} cancelled after {attempts} attempt(s)")
        return self._finish(
            task_id, operation, RetryReason.CANCELLED, attempts, classification, error=error
        )

    def _exhausted(
        self, task_id: str, operation: Operation, attempts: int, failure: _Failure
    ) -> RetryResult:
        logger.error(f"Task {task_id} failed after {attempts} attempts")
        self._store_failed(task_id, operation, attempts, failure)
        return self._finish(
            task_id,
            operation,
            RetryReason.MAX_RETRIES_EXCEEDED,
            attempts,
            failure.classification,
            error=failure.error,
        )

    # -- public API ----------------------------------------------------------

    def retry(
        self,
        task_id: str,
        operation: Operation,
        max_retries: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RetryResult:
        """Execute ``operation`` with retries. Blocks only during backoff sleeps.

        Raises:
            InputValidationError: On a malformed task id, operation or limit.
        """
        self._validate(task_id, operation, max_retries)
        limit = max_retries or self.config.max_retries
        failure: Optional[_Failure] = None

        for attempt in range(1, limit + 1):
            if cancel is not None and cancel.cancelled:
                return self._cancelled(
                    task_id,
                    operation,
                    attempt - 1,
                    failure.classification if failure else None,
                    failure.error if failure else None,
                )
            logger.info(f"Attempt {attempt}/{limit} for task {task_id}")
            try:
                result = self._normalize(self.executor.execute(operation.agent_id, operation.payload))
                error = None if result.success else (result.error or "unknown error")
            except Exception as e:
                error = str(e) or type(e).__name__
            if error is None:
                return self._on_success(task_id, operation, attempt, result)

            failure = self._on_failure(task_id, operation, attempt, limit, error)
            if failure.terminal is not None:
                return failure.terminal
            if failure.backoff_ms is not None:
                if cancel is not None and cancel.cancelled:
                    self.breaker.record_failure(operation.resource)
                    return self._cancelled(
                        task_id, operation, attempt, failure.classification, error
                    )
                logger.info(f"Waiting {failure.backoff_ms / 1000:.2f}s before retry")
                self.sleep(failure.backoff_ms / 1000)
            self.breaker.record_failure(operation.resource)

        if failure is None:
            raise InputValidationError("max_retries", "must be a positive integer")
        return self._exhausted(task_id, operation, limit, failure)

    async def retry_async(
        self,
        task_id: str,
        operation: Operation,
        max_retries: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RetryResult:
        """Asyncio variant of :meth:`retry`.

        Awaits the executor when it returns an awaitable and backs off with
        ``asyncio.sleep``. Task cancellation propagates unrecorded.
        """
        self._validate(task_id, operation, max_retries)
        limit = max_retries or self.config.max_retries
        failure: Optional[_Failure] = None

        for attempt in range(1, limit + 1):
            if cancel is not None and cancel.cancelled:
                return self._cancelled(
                    task_id,
                    operation,
                    attempt - 1,
                    failure.classification if failure else None,
                    failure.error if failure else None,
                )
            logger.info(f"Attempt {attempt}/{limit} for task {task_id}")
            try:
                outcome = self.executor.execute(operation.agent_id, operation.payload)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                result = self._normalize(outcome)
                error = None if result.success else (result.error or "unknown error")
            except Exception as e:
                error = str(e) or type(e).__name__
            if error is None:
                return self._on_success(task_id, operation, attempt, result)

            failure = self._on_failure(task_id, operation, attempt, limit, error)
            if failure.terminal is not None:
                return failure.terminal
            if failure.backoff_ms is not None:
                if cancel is not None and cancel.cancelled:
                    self.breaker.record_failure(operation.resource)
                    return self._cancelled(
                        task_id, operation, attempt, failure.classification, error
                    )
                await asyncio.sleep(failure.backoff_ms / 1000)
            self.breaker.record_failure(operation.resource)

        if failure is None:
            raise InputValidationError("max_retries", "must be a positive integer")
        return self._exhausted(task_id, operation, limit, failure)

    def failed_tasks(self) -> list[FailedTaskRecord]:
        return self.store.list_failed_tasks()

    def redrive_task(self, task_id: str) -> RetryResult:
        """Retry one stored failed task once, removing it on success.

        Raises:
            RecordNotFoundError: If no failed task is stored under ``task_id``.
        """
        record = self.store.get_failed_task(task_id)
        if record is None:
            raise RecordNotFoundError(NS_FAILED_TASKS, task_id)
        logger.info(f"Redriving task: {task_id}")
        self.store.save_failed_task(replace(record, redrive_attempts=record.redrive_attempts + 1))
        outcome = self.retry(task_id, record.operation, max_retries=1)
        if outcome.success:
            self.store.remove_failed_task(task_id)
        return outcome

    def redrive_failed(self) -> int:
        """Retry every stored failed task once. Returns the number recovered."""
        tasks = self.store.list_failed_tasks()
        if not tasks:
            logger.info("No failed tasks to redrive")
            return 0

        recovered = sum(1 for record in tasks if self.redrive_task(record.task_id).success)
        logger.info(f"Redrive complete: {recovered}/{len(tasks)} tasks recovered")
        return recovered

    def recovery_stats(self) -> dict[str, Any]:
        """Counts of recovery events by type plus the failed-task backlog."""
        events = self.store.recovery_events()
        by_type: dict[str, int] = {}
        by_class: dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
            if event.classification is not None:
                key = event.classification.value
                by_class[key] = by_class.get(key, 0) + 1
        finished = len(events)
        successes = by_type.get(RetryReason.SUCCESS.value, 0)
        return {
            "total_events": finished,
            "by_event_type": by_type,
            "by_classification": by_class,
            "success_rate": round(successes / finished, 4) if finished else 0.0,
            "failed_tasks": len(self.store.list_failed_tasks()),
        }


__all__ = [
    "classify_error",
    "calculate_backoff",
    "CancellationToken",
    "RetryOrchestrator",
    "TRANSIENT_MARKERS",
    "INTERMITTENT_MARKERS",
    "PERMANENT_MARKERS",
]
