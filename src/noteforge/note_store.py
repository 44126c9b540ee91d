"""
Owner-scoped read access to the reading library (series, books, chapters, notes
and note embeddings).

The ask pipeline consumes the `NoteRepository` protocol. `SqliteNoteStore` is the
bundled implementation; every query it runs filters by the owner id, so a caller
supplying another owner's identifiers simply gets nothing back.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from .config import DB_PATH, NOTE_MAX_CHARS
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .errors import InvalidRequestError
from .models import Book, EmbeddingStatus, Note, NoteChunk, ScopedNote, Series
from .observability import get_logger

logger = get_logger(__name__)

# SQLite caps the number of bound parameters per statement.
_IN_CLAUSE_BATCH = 500


class NoteRepository(Protocol):
    def get_book(self, owner_id: str, book_id: str) -> Book | None:
        ...

    def get_series(self, owner_id: str, series_id: str) -> Series | None:
        ...

    def list_book_notes(self, owner_id: str, book_id: str) -> list[ScopedNote]:
        ...

    def list_series_notes(self, owner_id: str, series_id: str) -> list[ScopedNote]:
        ...

    def list_note_chunks(self, owner_id: str, note_ids: Sequence[str]) -> list[NoteChunk]:
        ...


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


LIBRARY_MIGRATIONS = [
    SqliteMigration(
        version=1,
        name="create_library_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS series (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                series_id TEXT REFERENCES series(id) ON DELETE SET NULL,
                series_order INTEGER,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS chapters (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                chapter_id TEXT NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
                content TEXT NOT NULL,
                embedding_status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_books_user_series ON books(user_id, series_id)",
            "CREATE INDEX IF NOT EXISTS idx_chapters_user_book ON chapters(user_id, book_id)",
            "CREATE INDEX IF NOT EXISTS idx_notes_user_chapter ON notes(user_id, chapter_id)",
        ),
    ),
    SqliteMigration(
        version=2,
        name="create_note_embeddings",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS note_embeddings (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
                chunk_index INTEGER NOT NULL DEFAULT 0,
                chunk_content TEXT NOT NULL,
                embedding_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_note_embeddings_user_note ON note_embeddings(user_id, note_id)",
        ),
    ),
]

# Reading order: series position (unordered books last), book, chapter, note age.
_SCOPED_NOTE_SELECT = """
    SELECT
        n.id AS note_id, n.user_id AS owner_id, n.chapter_id, n.content,
        n.embedding_status, n.created_at, n.updated_at,
        b.id AS book_id, b.title AS book_title, b.series_order,
        c.title AS chapter_title, c.sort_order AS chapter_order
    FROM notes n
    INNER JOIN chapters c ON c.id = n.chapter_id AND c.user_id = n.user_id
    INNER JOIN books b ON b.id = c.book_id AND b.user_id = n.user_id
"""
_SCOPED_NOTE_ORDER = """
    ORDER BY (b.series_order IS NULL), b.series_order, b.title, b.id,
             c.sort_order, c.id, n.created_at, n.id
"""


def _row_to_scoped_note(row: sqlite3.Row) -> ScopedNote:
    note = Note(
        id=row["note_id"],
        owner_id=row["owner_id"],
        chapter_id=row["chapter_id"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        embedding_status=EmbeddingStatus(row["embedding_status"]),
    )
    return ScopedNote(
        note=note,
        book_id=row["book_id"],
        book_title=row["book_title"],
        chapter_id=row["chapter_id"],
        chapter_title=row["chapter_title"],
        chapter_order=int(row["chapter_order"]),
        series_order=row["series_order"],
    )


def _batched(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SqliteNoteStore:
    """SQLite-backed library store used by the ask pipeline and the demo CLI."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            logger.warning("note_store_pragma_failed", db_path=str(self.db_path))
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="library", migrations=LIBRARY_MIGRATIONS)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("note store connection is closed")
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
            self._conn.commit()
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_book(self, owner_id: str, book_id: str) -> Book | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, title, series_id, series_order FROM books WHERE id = ? AND user_id = ?",
                (book_id, owner_id),
            ).fetchone()
        if row is None:
            return None
        return Book(
            id=row["id"],
            owner_id=row["user_id"],
            title=row["title"],
            series_id=row["series_id"],
            series_order=row["series_order"],
        )

    def get_series(self, owner_id: str, series_id: str) -> Series | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, title FROM series WHERE id = ? AND user_id = ?",
                (series_id, owner_id),
            ).fetchone()
        if row is None:
            return None
        return Series(id=row["id"], owner_id=row["user_id"], title=row["title"])

    def list_book_notes(self, owner_id: str, book_id: str) -> list[ScopedNote]:
        sql = f"{_SCOPED_NOTE_SELECT} WHERE n.user_id = ? AND b.id = ? {_SCOPED_NOTE_ORDER}"
        with self._connection() as conn:
            rows = conn.execute(sql, (owner_id, book_id)).fetchall()
        return [_row_to_scoped_note(row) for row in rows]

    def list_series_notes(self, owner_id: str, series_id: str) -> list[ScopedNote]:
        sql = f"{_SCOPED_NOTE_SELECT} WHERE n.user_id = ? AND b.series_id = ? {_SCOPED_NOTE_ORDER}"
        with self._connection() as conn:
            rows = conn.execute(sql, (owner_id, series_id)).fetchall()
        return [_row_to_scoped_note(row) for row in rows]

    def list_note_chunks(self, owner_id: str, note_ids: Sequence[str]) -> list[NoteChunk]:
        """Returns embedded chunks of the given notes, in the order the ids were given."""
        ordered_ids = list(dict.fromkeys(str(note_id) for note_id in note_ids))
        if not ordered_ids:
            return []

        rows_by_note: dict[str, list[sqlite3.Row]] = {}
        with self._connection() as conn:
            for batch in _batched(ordered_ids, _IN_CLAUSE_BATCH):
                placeholders = ",".join("?" for _ in batch)
                rows = conn.execute(
                    f"""
                    SELECT
                        ne.id, ne.note_id, ne.chunk_content, ne.embedding_json,
                        c.id AS chapter_id, c.title AS chapter_title,
                        b.id AS book_id, b.title AS book_title
                    FROM note_embeddings ne
                    INNER JOIN notes n ON n.id = ne.note_id AND n.user_id = ne.user_id
                    INNER JOIN chapters c ON c.id = n.chapter_id AND c.user_id = n.user_id
                    INNER JOIN books b ON b.id = c.book_id AND b.user_id = n.user_id
                    WHERE ne.user_id = ?
                      AND n.embedding_status = ?
                      AND ne.note_id IN ({placeholders})
                    ORDER BY ne.chunk_index, ne.id
                    """,
                    (owner_id, EmbeddingStatus.COMPLETED.value, *batch),
                ).fetchall()
                for row in rows:
                    rows_by_note.setdefault(row["note_id"], []).append(row)

        chunks: list[NoteChunk] = []
        for note_id in ordered_ids:
            for row in rows_by_note.get(note_id, []):
                chunks.append(
                    NoteChunk(
                        id=row["id"],
                        note_id=row["note_id"],
                        content=row["chunk_content"],
                        embedding=tuple(float(v) for v in json.loads(row["embedding_json"])),
                        book_id=row["book_id"],
                        book_title=row["book_title"],
                        chapter_id=row["chapter_id"],
                        chapter_title=row["chapter_title"],
                    )
                )
        return chunks

    # ------------------------------------------------------------------
    # Seeding helpers (tests, demo library)
    # ------------------------------------------------------------------

    def add_series(self, owner_id: str, title: str, *, series_id: str | None = None) -> str:
        series_id = series_id or _new_id()
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO series (id, user_id, title, created_at) VALUES (?, ?, ?, ?)",
                (series_id, owner_id, title, _utcnow_iso()),
            )
        return series_id

    def add_book(
        self,
        owner_id: str,
        title: str,
        *,
        series_id: str | None = None,
        series_order: int | None = None,
        book_id: str | None = None,
    ) -> str:
        book_id = book_id or _new_id()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO books (id, user_id, series_id, series_order, title, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (book_id, owner_id, series_id, series_order, title, _utcnow_iso()),
            )
        return book_id

    def add_chapter(self, owner_id: str, book_id: str, title: str, *, order: int = 0) -> str:
        chapter_id = _new_id()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO chapters (id, user_id, book_id, title, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (chapter_id, owner_id, book_id, title, int(order), _utcnow_iso()),
            )
        return chapter_id

    def add_note(
        self,
        owner_id: str,
        chapter_id: str,
        content: str,
        *,
        created_at: datetime | None = None,
        embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING,
    ) -> str:
        if len(content) > NOTE_MAX_CHARS:
            raise InvalidRequestError(
                f"note content cannot exceed {NOTE_MAX_CHARS} characters",
                details={"length": len(content)},
            )
        note_id = _new_id()
        stamp = (created_at or datetime.now(timezone.utc)).isoformat(timespec="microseconds")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO notes (id, user_id, chapter_id, content, embedding_status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (note_id, owner_id, chapter_id, content, EmbeddingStatus(embedding_status).value, stamp, stamp),
            )
        return note_id

    def update_note(self, owner_id: str, note_id: str, content: str) -> bool:
        """Edits a note and invalidates its embeddings."""
        if len(content) > NOTE_MAX_CHARS:
            raise InvalidRequestError(
                f"note content cannot exceed {NOTE_MAX_CHARS} characters",
                details={"length": len(content)},
            )
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE notes SET content = ?, embedding_status = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (content, EmbeddingStatus.PENDING.value, _utcnow_iso(), note_id, owner_id),
            )
            conn.execute(
                "DELETE FROM note_embeddings WHERE note_id = ? AND user_id = ?",
                (note_id, owner_id),
            )
        return cursor.rowcount > 0

    def add_note_chunk(
        self,
        owner_id: str,
        note_id: str,
        content: str,
        embedding: Sequence[float],
        *,
        chunk_index: int = 0,
        mark_completed: bool = True,
    ) -> str:
        chunk_id = _new_id()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO note_embeddings (id, user_id, note_id, chunk_index, chunk_content, embedding_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk_id,
                    owner_id,
                    note_id,
                    int(chunk_index),
                    content,
                    json.dumps([float(v) for v in embedding]),
                    _utcnow_iso(),
                ),
            )
            if mark_completed:
                conn.execute(
                    "UPDATE notes SET embedding_status = ? WHERE id = ? AND user_id = ?",
                    (EmbeddingStatus.COMPLETED.value, note_id, owner_id),
                )
        return chunk_id
