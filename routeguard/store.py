"""
State backends: namespaced versioned JSON values plus append-only logs.

Two implementations of the StateBackend protocol:

- InMemoryBackend: per-key locks for read-modify-write, one lock per log.
  Values are stored as JSON text so callers never share mutable state.
- SQLiteBackend: durable storage using WAL mode, a busy timeout, and
  ``BEGIN IMMEDIATE`` transactions so that read-modify-write cycles are
  serialized across threads and processes sharing the database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

from routeguard.exceptions import ConcurrentUpdateError, StorageError
from routeguard.protocols import Mutator, VersionedValue

logger = logging.getLogger(__name__)

DB_TIMEOUT_SECONDS = 30.0  # SQLite busy timeout for concurrent access


def _dumps(value: dict[str, Any]) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Value is not JSON serializable: {e}") from e


class InMemoryBackend:
    """Thread-safe in-process backend, used for tests and ephemeral engines."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str], tuple[str, int]] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._logs: dict[str, list[str]] = defaultdict(list)
        self._logs_lock = threading.Lock()

    def _lock_for(self, namespace: str, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get((namespace, key))
            if lock is None:
                lock = self._key_locks[(namespace, key)] = threading.Lock()
            return lock

    def _read(self, namespace: str, key: str) -> Optional[VersionedValue]:
        entry = self._values.get((namespace, key))
        if entry is None:
            return None
        return VersionedValue(json.loads(entry[0]), entry[1])

    def _write(self, namespace: str, key: str, value: dict[str, Any], version: int) -> int:
        self._values[(namespace, key)] = (_dumps(value), version)
        return version

    def get(self, namespace: str, key: str) -> Optional[VersionedValue]:
        with self._lock_for(namespace, key):
            return self._read(namespace, key)

    def put(self, namespace: str, key: str, value: dict[str, Any]) -> int:
        with self._lock_for(namespace, key):
            current = self._read(namespace, key)
            return self._write(namespace, key, value, (current.version if current else 0) + 1)

    def compare_and_swap(
        self, namespace: str, key: str, expected_version: int, value: dict[str, Any]
    ) -> int:
        with self._lock_for(namespace, key):
            current = self._read(namespace, key)
            actual = current.version if current else 0
            if actual != expected_version:
                raise ConcurrentUpdateError(namespace, key, expected_version, actual)
            return self._write(namespace, key, value, actual + 1)

    def update(self, namespace: str, key: str, mutator: Mutator) -> Optional[dict[str, Any]]:
        with self._lock_for(namespace, key):
            current = self._read(namespace, key)
            new_value = mutator(current.value if current else None)
            if new_value is None:
                return current.value if current else None
            self._write(namespace, key, new_value, (current.version if current else 0) + 1)
            return json.loads(_dumps(new_value))

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock_for(namespace, key):
            return self._values.pop((namespace, key), None) is not None

    def items(self, namespace: str) -> list[tuple[str, dict[str, Any]]]:
        with self._registry_lock:
            keys = sorted(k for ns, k in self._values if ns == namespace)
        result = []
        for key in keys:
            current = self.get(namespace, key)
            if current is not None:
                result.append((key, current.value))
        return result

    def append(self, log: str, record: dict[str, Any]) -> int:
        line = _dumps(record)
        with self._logs_lock:
            self._logs[log].append(line)
            return len(self._logs[log])

    def read_log(self, log: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        with self._logs_lock:
            lines = list(self._logs.get(log, ()))
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        return [json.loads(line) for line in lines]

    def log_length(self, log: str) -> int:
        with self._logs_lock:
            return len(self._logs.get(log, ()))

    def close(self) -> None:
        pass


class SQLiteBackend:
    """Durable backend on a single SQLite database file.

    Each call opens its own connection (the pattern used for circuit breaker
    persistence), so one instance is safe to share across threads.
    """

    def __init__(self, db_path: str | Path, timeout: float = DB_TIMEOUT_SECONDS):
        self.db_path = str(db_path)
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        logger.info(f"SQLite state backend initialized: {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    @contextmanager
    def _transaction(self, write: bool = True) -> Generator[sqlite3.Connection, None, None]:
        """Run a block in one transaction; sqlite errors become StorageError."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StorageError(
                f"Cannot open state database: {e}", {"db_path": self.db_path}
            ) from e
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(
                f"State database operation failed: {e}", {"db_path": self.db_path}
            ) from e
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS log_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    log TEXT NOT NULL,
                    record_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_log_records_log
                ON log_records(log, id)
            """
            )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _select(conn: sqlite3.Connection, namespace: str, key: str) -> Optional[VersionedValue]:
        row = conn.execute(
            "SELECT value_json, version FROM kv WHERE namespace = ? AND key = ?",
            (namespace, key),
        ).fetchone()
        if row is None:
            return None
        return VersionedValue(json.loads(row[0]), row[1])

    def _upsert(
        self, conn: sqlite3.Connection, namespace: str, key: str, value: dict[str, Any], version: int
    ) -> int:
        conn.execute(
            """
            INSERT OR REPLACE INTO kv (namespace, key, value_json, version, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """,
            (namespace, key, _dumps(value), version, self._now()),
        )
        return version

    def get(self, namespace: str, key: str) -> Optional[VersionedValue]:
        with self._transaction(write=False) as conn:
            return self._select(conn, namespace, key)

    def put(self, namespace: str, key: str, value: dict[str, Any]) -> int:
        with self._transaction() as conn:
            current = self._select(conn, namespace, key)
            return self._upsert(
                conn, namespace, key, value, (current.version if current else 0) + 1
            )

    def compare_and_swap(
        self, namespace: str, key: str, expected_version: int, value: dict[str, Any]
    ) -> int:
        with self._transaction() as conn:
            current = self._select(conn, namespace, key)
            actual = current.version if current else 0
            if actual != expected_version:
                raise ConcurrentUpdateError(namespace, key, expected_version, actual)
            return self._upsert(conn, namespace, key, value, actual + 1)

    def update(self, namespace: str, key: str, mutator: Mutator) -> Optional[dict[str, Any]]:
        with self._transaction() as conn:
            current = self._select(conn, namespace, key)
            new_value = mutator(current.value if current else None)
            if new_value is None:
                return current.value if current else None
            self._upsert(conn, namespace, key, new_value, (current.version if current else 0) + 1)
            return json.loads(_dumps(new_value))

    def delete(self, namespace: str, key: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM kv WHERE namespace = ? AND key = ?", (namespace, key)
            )
            return cursor.rowcount > 0

    def items(self, namespace: str) -> list[tuple[str, dict[str, Any]]]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT key, value_json FROM kv WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return [(key, json.loads(value_json)) for key, value_json in rows]

    def append(self, log: str, record: dict[str, Any]) -> int:
        line = _dumps(record)
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO log_records (log, record_json, created_at) VALUES (?, ?, ?)",
                (log, line, self._now()),
            )
            return cursor.lastrowid

    def read_log(self, log: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        with self._transaction(write=False) as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT record_json FROM log_records WHERE log = ? ORDER BY id", (log,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT record_json FROM log_records WHERE log = ? ORDER BY id DESC LIMIT ?",
                    (log, max(limit, 0)),
                ).fetchall()
                rows.reverse()
        return [json.loads(row[0]) for row in rows]

    def log_length(self, log: str) -> int:
        with self._transaction(write=False) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM log_records WHERE log = ?", (log,)
            ).fetchone()[0]

    def close(self) -> None:
        pass


def create_backend(db_path: str | Path | None = None) -> InMemoryBackend | SQLiteBackend:
    """SQLite when a path is given, otherwise in-memory."""
    if db_path:
        return SQLiteBackend(db_path)
    return InMemoryBackend()


__all__ = [
    "DB_TIMEOUT_SECONDS",
    "InMemoryBackend",
    "SQLiteBackend",
    "create_backend",
]
