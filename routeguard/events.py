"""
Best-effort event sinks for decision and circuit-state notifications.

Emitting an event must never fail the call that produced it: every sink
is invoked through ``safe_emit``, which logs and drops sink errors.

Event types emitted by the engine:

    decision        a decision record was appended to the audit log
    circuit_state   a circuit changed state
    task_failed     a task exhausted its retries
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp

from routeguard.http_client import EVENT_TIMEOUT, create_client_session
from routeguard.protocols import EventSink

logger = logging.getLogger(__name__)


def safe_emit(sink: Optional[EventSink], event_type: str, payload: dict[str, Any]) -> None:
    """Emit through ``sink`` if there is one, swallowing and logging failures."""
    if sink is None:
        return
    try:
        sink.emit(event_type, payload)
    except Exception as e:
        logger.warning(f"Event sink failed for {event_type}: {type(e).__name__}: {e}")


class NullEventSink:
    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    """Writes events to the ``routeguard.events`` logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.log(self.level, f"event {event_type}: {payload}")


class InMemoryEventSink:
    """Keeps emitted events in a bounded buffer (thread-safe)."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self._events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events.append((event_type, dict(payload)))
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

    def events(self, event_type: Optional[str] = None) -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            return [e for e in self._events if event_type is None or e[0] == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class WebhookEventSink:
    """POSTs events as JSON to an HTTP endpoint using aiohttp.

    ``emit`` never waits for the endpoint. Inside a running event loop the
    POST is scheduled as a background task; otherwise it is handed to a
    single delivery thread. ``drain`` (async) and ``flush`` (sync) wait for
    outstanding deliveries. Delivery failures are logged at WARNING and
    never raised.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: aiohttp.ClientTimeout = EVENT_TIMEOUT,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.delivered = 0
        self.failed = 0
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()
        self._futures: set[Future] = set()
        self._executor: Optional[ThreadPoolExecutor] = None

    def _body(self, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }

    async def emit_async(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Deliver one event. Returns True on a 2xx response."""
        try:
            async with create_client_session(timeout=self.timeout) as session:
                async with session.post(
                    self.url, json=self._body(event_type, payload), headers=self.headers
                ) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            with self._lock:
                self.failed += 1
            logger.warning(f"Webhook delivery of {event_type} to {self.url} failed: {e}")
            return False
        with self._lock:
            self.delivered += 1
        return True

    def _deliver(self, event_type: str, payload: dict[str, Any]) -> bool:
        return asyncio.run(self.emit_async(event_type, payload))

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            with self._lock:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="routeguard-webhook"
                    )
                future = self._executor.submit(self._deliver, event_type, dict(payload))
                self._futures.add(future)
            future.add_done_callback(self._forget)
            return
        task = loop.create_task(self.emit_async(event_type, dict(payload)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _outstanding(self) -> list[Future]:
        with self._lock:
            return list(self._futures)

    async def drain(self) -> None:
        """Wait for every scheduled delivery, loop tasks and thread deliveries alike."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        futures = self._outstanding()
        if futures:
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in futures), return_exceptions=True
            )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until thread deliveries finish. Returns False on timeout."""
        _, not_done = wait(self._outstanding(), timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Wait for thread deliveries and stop the delivery thread."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)


__all__ = [
    "safe_emit",
    "NullEventSink",
    "LoggingEventSink",
    "InMemoryEventSink",
    "WebhookEventSink",
]
