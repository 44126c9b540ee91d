"""
Append-only analytics log for ask queries.

Writes are fire-and-forget: `QueryLogEmitter` hands them to a small thread pool
and returns immediately. A failing write is logged and dropped; it never reaches
the request that triggered it.
"""
from __future__ import annotations

import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .config import DB_PATH, QUERY_LOG_WORKERS
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .observability import get_logger

logger = get_logger(__name__)

ERROR_MESSAGE_MAX_CHARS = 500
ERROR_SOURCES = ("database", "llm", "unknown")


class QueryLogSink(Protocol):
    def append_search(self, owner_id: str, query_text: str) -> str:
        ...

    def append_error(self, owner_id: str, search_log_id: str | None, source: str, message: str) -> None:
        ...


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


QUERY_LOG_MIGRATIONS = [
    SqliteMigration(
        version=1,
        name="create_search_logs",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS search_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                query_text TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_search_logs_user_id ON search_logs(user_id)",
        ),
    ),
    SqliteMigration(
        version=2,
        name="create_search_errors",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS search_errors (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                search_log_id TEXT REFERENCES search_logs(id) ON DELETE SET NULL,
                source TEXT NOT NULL,
                error_message TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
        ),
    ),
]


class SqliteQueryLog:
    """`search_logs` / `search_errors` tables in the library database."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0
        )
        self._conn.row_factory = sqlite3.Row
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="query_log", migrations=QUERY_LOG_MIGRATIONS)

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("query log connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def append_search(self, owner_id: str, query_text: str) -> str:
        log_id = str(uuid.uuid4())
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO search_logs (id, user_id, query_text, created_at) VALUES (?, ?, ?, ?)",
                (log_id, owner_id, query_text, _utcnow_iso()),
            )
        return log_id

    def append_error(self, owner_id: str, search_log_id: str | None, source: str, message: str) -> None:
        safe_source = source if source in ERROR_SOURCES else "unknown"
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO search_errors (id, user_id, search_log_id, source, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    owner_id,
                    search_log_id,
                    safe_source,
                    str(message or "")[:ERROR_MESSAGE_MAX_CHARS],
                    _utcnow_iso(),
                ),
            )

    def list_searches(self, owner_id: str) -> list[dict]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, query_text, created_at FROM search_logs WHERE user_id = ? ORDER BY created_at, id",
                (owner_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_errors(self, owner_id: str) -> list[dict]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, search_log_id, source, error_message, created_at
                FROM search_errors WHERE user_id = ? ORDER BY created_at, id
                """,
                (owner_id,),
            ).fetchall()
        return [dict(row) for row in rows]


class QueryLogEmitter:
    """Detaches query-log writes from the request path."""

    def __init__(self, sink: QueryLogSink, *, max_workers: int = QUERY_LOG_WORKERS):
        self._sink = sink
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="query-log")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def _track(self, future: Future) -> Future:
        with self._pending_lock:
            self._pending.add(future)

        def _forget(done: Future):
            with self._pending_lock:
                self._pending.discard(done)

        future.add_done_callback(_forget)
        return future

    def _write_search(self, owner_id: str, query_text: str) -> str | None:
        try:
            return self._sink.append_search(owner_id, query_text)
        except Exception as exc:
            logger.warning(
                "query_log_write_failed",
                kind="search",
                owner_id=owner_id,
                error_type=type(exc).__name__,
                error=str(exc)[:200],
            )
            return None

    def _write_error(self, owner_id: str, search_future: Future | None, source: str, message: str) -> None:
        search_log_id = search_future.result() if search_future is not None else None
        try:
            self._sink.append_error(owner_id, search_log_id, source, message)
        except Exception as exc:
            logger.warning(
                "query_log_write_failed",
                kind="error",
                owner_id=owner_id,
                search_log_id=search_log_id,
                error_type=type(exc).__name__,
                error=str(exc)[:200],
            )

    def emit_search(self, owner_id: str, query_text: str) -> Future:
        """Schedules the search-log insert; the returned future resolves to the log id or None."""
        return self._track(self._executor.submit(self._write_search, owner_id, query_text))

    def emit_error(self, owner_id: str, search_future: Future | None, source: str, message: str) -> Future:
        return self._track(self._executor.submit(self._write_error, owner_id, search_future, source, message))

    def flush(self, timeout: float | None = None):
        """Blocks until every write scheduled so far has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def close(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
