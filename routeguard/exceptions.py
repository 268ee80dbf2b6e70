"""
Custom exception types for routeguard.

All errors raised by the engine derive from RouteguardError so callers can
catch the whole family with a single handler. Each exception carries a
human readable message plus a ``details`` dict suitable for structured
logging (``logger.error(str(e), extra=e.details)``).
"""

from __future__ import annotations

from typing import Any


class RouteguardError(Exception):
    """Base exception for all routeguard errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(RouteguardError):
    """Raised when a component's configuration is missing or invalid."""

    def __init__(self, component: str, reason: str):
        super().__init__(
            f"Configuration error in {component}: {reason}",
            {"component": component, "reason": reason},
        )
        self.component = component
        self.reason = reason


# ============================================================================
# Validation Errors
# ============================================================================


class ValidationError(RouteguardError):
    """Base exception for validation errors."""

    pass


class InputValidationError(ValidationError):
    """Raised when caller input fails validation.

    Always raised before any state is mutated.
    """

    def __init__(self, field: str, reason: str):
        super().__init__(
            f"Invalid input for '{field}': {reason}", {"field": field, "reason": reason}
        )
        self.field = field
        self.reason = reason


# ============================================================================
# Storage Errors
# ============================================================================


class StorageError(RouteguardError):
    """Base exception for storage-related errors."""

    pass


class RecordNotFoundError(StorageError):
    """Raised when a requested record cannot be found."""

    def __init__(self, namespace: str, record_id: str):
        super().__init__(
            f"Record not found in {namespace}: {record_id}",
            {"namespace": namespace, "record_id": record_id},
        )
        self.namespace = namespace
        self.record_id = record_id


class ConcurrentUpdateError(StorageError):
    """Raised when a compare-and-swap loses to a concurrent writer."""

    def __init__(self, namespace: str, key: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Concurrent update on {namespace}/{key}: "
            f"expected version {expected_version}, found {actual_version}",
            {
                "namespace": namespace,
                "key": key,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.namespace = namespace
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


# ============================================================================
# Audit Errors
# ============================================================================


class AuditError(RouteguardError):
    """Base exception for decision audit trail errors."""

    pass


class DecisionNotFoundError(AuditError):
    """Raised when replaying a decision id that was never logged."""

    def __init__(self, decision_id: str):
        super().__init__(f"Decision not found: {decision_id}", {"decision_id": decision_id})
        self.decision_id = decision_id


class UnsupportedExportFormatError(AuditError):
    """Raised when an audit export is requested in an unknown format."""

    def __init__(self, export_format: str, supported: list[str]):
        super().__init__(
            f"Unsupported export format: {export_format}",
            {"format": export_format, "supported": supported},
        )
        self.export_format = export_format
        self.supported = supported


# ============================================================================
# Resilience Errors
# ============================================================================


class ResilienceError(RouteguardError):
    """Base exception for circuit breaker and retry errors."""

    pass


class CircuitBreakerError(ResilienceError):
    """Raised when circuit breaker operations fail."""

    def __init__(self, resource_id: str, state: str, reason: str):
        super().__init__(
            f"Circuit breaker for {resource_id} ({state}): {reason}",
            {"resource_id": resource_id, "state": state, "reason": reason},
        )
        self.resource_id = resource_id
        self.state = state
        self.reason = reason


class CircuitOpenError(CircuitBreakerError):
    """Raised by protected calls when the circuit denies the request."""

    def __init__(self, resource_id: str, cooldown_remaining: float):
        super().__init__(
            resource_id,
            "open",
            f"circuit open, retry in {cooldown_remaining:.1f}s",
        )
        self.details["cooldown_remaining"] = cooldown_remaining
        self.cooldown_remaining = cooldown_remaining


class ExecutorError(ResilienceError):
    """Raised by executors to report a failed operation with an error message."""

    def __init__(self, agent_id: str, reason: str):
        super().__init__(
            f"Executor for {agent_id} failed: {reason}",
            {"agent_id": agent_id, "reason": reason},
        )
        self.agent_id = agent_id
        self.reason = reason


# ============================================================================
# Exception Hierarchy
# ============================================================================
#
#   RouteguardError (base)
#   ├── ConfigurationError
#   ├── ValidationError
#   │   └── InputValidationError
#   ├── StorageError
#   │   ├── RecordNotFoundError
#   │   └── ConcurrentUpdateError
#   ├── AuditError
#   │   ├── DecisionNotFoundError
#   │   └── UnsupportedExportFormatError
#   └── ResilienceError
#       ├── CircuitBreakerError
#       │   └── CircuitOpenError
#       └── ExecutorError

__all__ = [
    "RouteguardError",
    "ConfigurationError",
    "ValidationError",
    "InputValidationError",
    "StorageError",
    "RecordNotFoundError",
    "ConcurrentUpdateError",
    "AuditError",
    "DecisionNotFoundError",
    "UnsupportedExportFormatError",
    "ResilienceError",
    "CircuitBreakerError",
    "CircuitOpenError",
    "ExecutorError",
]
