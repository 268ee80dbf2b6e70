"""
Structured logging for routeguard.

Every record can carry the routing identifiers of the work in progress
(task, decision and resource ids). They are bound with ``LogContext`` and
picked up by the formatters, so retry, breaker and audit logs of one task can
be correlated without threading ids through every call.

Usage:
    from routeguard.logging_config import LogContext, configure_logging, get_logger

    configure_logging(level="INFO", json_output=True)

    logger = get_logger(__name__)
    with LogContext(task_id="t-42", resource_id="agent:code-reviewer"):
        logger.warning("Circuit opened", failures=3)
"""

from __future__ import annotations

import inspect
import json
import logging
import logging.handlers
import os
import sys
import threading
import time
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional

# Identifiers rendered in their own slots by the formatters
ROUTING_KEYS = ("task_id", "decision_id", "resource_id")

LOG_LEVEL = os.environ.get("ROUTEGUARD_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("ROUTEGUARD_LOG_FORMAT", "json")  # "json" or "text"
LOG_FILE = os.environ.get("ROUTEGUARD_LOG_FILE", "")
LOG_MAX_BYTES = int(os.environ.get("ROUTEGUARD_LOG_MAX_BYTES", 10 * 1024 * 1024))
LOG_BACKUP_COUNT = int(os.environ.get("ROUTEGUARD_LOG_BACKUP_COUNT", 5))

_context: ContextVar[Dict[str, Any]] = ContextVar("routeguard_log_context", default={})


def _split_context(record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
    """Routing ids and remaining fields for ``record``.

    Bound context wins over attributes passed through ``extra``.
    """
    bound = _context.get()
    ids = {}
    for key in ROUTING_KEYS:
        value = bound.get(key) or getattr(record, key, None)
        if value:
            ids[key] = value
    fields = {k: v for k, v in bound.items() if k not in ROUTING_KEYS}
    fields.update(getattr(record, "structured_fields", None) or {})
    return ids, fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, routing ids, fields."""

    def format(self, record: logging.LogRecord) -> str:
        ids, fields = _split_context(record)
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **ids,
            **fields,
        }
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc_value) if exc_value else "",
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line text for terminals.

    ``2026-01-01 12:00:00 [WARNING] [resilience] [task=t-1] [agent:a] [1a2b3c4d] msg k=v``
    """

    def format(self, record: logging.LogRecord) -> str:
        ids, fields = _split_context(record)
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        parts = [stamp, f"[{record.levelname}]", f"[{record.name.rsplit('.', 1)[-1]}]"]
        if "task_id" in ids:
            parts.append(f"[task={ids['task_id']}]")
        if "resource_id" in ids:
            parts.append(f"[{ids['resource_id']}]")
        if "decision_id" in ids:
            parts.append(f"[{str(ids['decision_id'])[:8]}]")
        parts.append(record.getMessage())
        if fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter turning keyword arguments into structured fields.

    ``logger.info("Circuit opened", failures=3)`` attaches ``{"failures": 3}``
    to the record as ``structured_fields``.
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        kwargs["extra"] = {**(kwargs.get("extra") or {}), "structured_fields": fields}
        return msg, kwargs


class LogContext:
    """Bind fields to every log record emitted inside the block.

    Nested contexts layer on top of the enclosing one and restore it on exit.
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> LogContext:
        self._token = _context.set({**_context.get(), **self._fields})
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None


def set_context(**fields: Any) -> None:
    """Bind fields until ``clear_context`` is called (current context only)."""
    _context.set({**_context.get(), **fields})


def get_context() -> Dict[str, Any]:
    return dict(_context.get())


def clear_context() -> None:
    _context.set({})


_loggers: Dict[str, StructuredLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str) -> StructuredLogger:
    with _loggers_lock:
        logger = _loggers.get(name)
        if logger is None:
            logger = _loggers[name] = StructuredLogger(name)
        return logger


def _handlers(formatter: logging.Formatter, level: int, file_path: str) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file_path:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                file_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
    return handlers


def configure_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
    propagate: bool = True,
) -> None:
    """
    Install routeguard's formatter on the root logger.

    Call once at startup. Explicit arguments win over the ROUTEGUARD_LOG_*
    environment variables. Existing root handlers are replaced.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines if True, text if False
        log_file: Optional path for a size-rotated copy of the output
        propagate: Whether ``routeguard.*`` loggers propagate to the root
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    use_json = json_output if json_output is not None else LOG_FORMAT == "json"
    formatter = JSONFormatter() if use_json else TextFormatter()

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in _handlers(formatter, log_level, log_file or LOG_FILE):
        root.addHandler(handler)
    root.setLevel(log_level)

    package_logger = logging.getLogger("routeguard")
    package_logger.setLevel(log_level)
    package_logger.propagate = propagate


def log_function(level: str = "DEBUG", log_result: bool = False) -> Callable:
    """
    Log completion of the decorated function with its duration.

    Works for plain and ``async def`` functions. A raised exception is logged
    at ERROR with its traceback and re-raised unchanged.
    """
    log_level = getattr(logging, level.upper(), logging.DEBUG)

    def decorator(func: Callable) -> Callable:
        logger = get_logger(func.__module__)
        name = func.__name__

        def completed(started: float, result: Any) -> None:
            fields: Dict[str, Any] = {
                "function": name,
                "duration_ms": round((time.monotonic() - started) * 1000, 3),
            }
            if log_result and result is not None:
                fields["result_type"] = type(result).__name__
            logger.log(log_level, f"Function completed: {name}", **fields)

        def failed(started: float, error: Exception) -> None:
            logger.error(
                f"Function failed: {name}",
                exc_info=True,
                function=name,
                duration_ms=round((time.monotonic() - started) * 1000, 3),
                error=str(error),
            )

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                started = time.monotonic()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    failed(started, e)
                    raise
                completed(started, result)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            started = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                failed(started, e)
                raise
            completed(started, result)
            return result

        return wrapper

    return decorator


__all__ = [
    "ROUTING_KEYS",
    "JSONFormatter",
    "TextFormatter",
    "StructuredLogger",
    "LogContext",
    "set_context",
    "get_context",
    "clear_context",
    "get_logger",
    "configure_logging",
    "log_function",
]
