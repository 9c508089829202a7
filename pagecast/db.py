"""Database helpers for the pagecast service.

The service stores books, their chunks and user likes in an SQLite
database. Each helper function opens its own connection on demand using
the standard ``sqlite3`` module and closes it as soon as possible.

The ``chunks`` table is the single source of truth for pipeline state.
Only the pipeline controller writes chunk rows. The pair
``(book_id, chunk_number)`` is unique, which gives the controller an
atomic create-if-absent when two callers race to materialize the same
next chunk. Every committed chunk write is published on the change
broker in :mod:`pagecast.notifier`.

Status values for chunks are ``pending``, ``processing``, ``completed``
and ``failed``. While a chunk is ``processing`` its ``stage`` column is
``ocr`` or ``synthesis``.
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConflictError, NotFoundError, ValidationError
from .notifier import ChangeEvent, broker

DB_PATH = os.environ.get("PAGECAST_DB", str(Path("./data/pagecast.db")))

CHUNK_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})

BOOK_FIELDS = (
    "title",
    "author",
    "description",
    "language",
    "is_public",
    "cover_url",
    "source_url",
    "source_path",
    "total_pages",
)
CHUNK_FIELDS = (
    "status",
    "stage",
    "text_content",
    "audio_url",
    "audio_path",
    "duration_seconds",
    "error",
)
BOOK_SORTS = {
    "recent": "b.created_at DESC, b.rowid DESC",
    "popular": "likes_count DESC, b.created_at DESC",
    "title": "b.title COLLATE NOCASE ASC",
    "author": "b.author COLLATE NOCASE ASC",
}


def get_connection() -> sqlite3.Connection:
    """Return a new SQLite connection with dict-like rows and foreign keys on."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    """Create the tables if they do not exist. Safe to call repeatedly."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            author TEXT,
            description TEXT,
            language TEXT NOT NULL,
            is_public INTEGER NOT NULL DEFAULT 1,
            cover_url TEXT,
            source_url TEXT,
            source_path TEXT,
            total_pages INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS chunks (
            book_id TEXT NOT NULL,
            chunk_number INTEGER NOT NULL CHECK (chunk_number >= 1),
            status TEXT NOT NULL DEFAULT 'pending',
            stage TEXT,
            first_page INTEGER,
            last_page INTEGER,
            text_content TEXT,
            audio_url TEXT,
            audio_path TEXT,
            duration_seconds INTEGER,
            error TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (book_id, chunk_number),
            FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS likes (
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, book_id),
            FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_books_user_id ON books(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_likes_book_id ON likes(book_id)")
    conn.commit()
    conn.close()


def _book_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_public"] = bool(data.get("is_public"))
    return data


def create_book(book: Dict[str, Any], first_chunk: Dict[str, Any]) -> None:
    """Insert a book together with its first ``pending`` chunk.

    Both rows are written in one transaction so that a book never exists
    without chunk 1.
    """
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO books(id, user_id, title, author, description, language,
                                  is_public, cover_url, source_url, source_path, total_pages)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    book["id"],
                    book["user_id"],
                    book["title"],
                    book.get("author"),
                    book.get("description"),
                    book["language"],
                    1 if book.get("is_public", True) else 0,
                    book.get("cover_url"),
                    book.get("source_url"),
                    book.get("source_path"),
                    book.get("total_pages"),
                ),
            )
            conn.execute(
                """
                INSERT INTO chunks(book_id, chunk_number, status, first_page, last_page)
                VALUES (?, 1, 'pending', ?, ?)
                """,
                (book["id"], first_chunk.get("first_page"), first_chunk.get("last_page")),
            )
    finally:
        conn.close()
    broker.publish(ChangeEvent(book["id"], "insert", 1))


def get_book(book_id: str) -> Optional[Dict[str, Any]]:
    """Return the book row for ``book_id`` as a dict, or None if absent."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT b.*, (SELECT COUNT(*) FROM likes l WHERE l.book_id = b.id) AS likes_count
        FROM books b WHERE b.id = ?
        """,
        (book_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _book_dict(row) if row else None


def list_books(*, public_only: bool = False, user_id: Optional[str] = None,
               language: Optional[str] = None, sort: str = "recent") -> List[Dict[str, Any]]:
    """Return books matching the filters, ordered by ``sort``."""
    if sort not in BOOK_SORTS:
        raise ValidationError(f"Unsupported sort {sort!r}")
    clauses: List[str] = []
    params: List[Any] = []
    if public_only:
        clauses.append("b.is_public = 1")
    if user_id is not None:
        clauses.append("b.user_id = ?")
        params.append(user_id)
    if language:
        clauses.append("b.language = ?")
        params.append(language)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT b.*, (SELECT COUNT(*) FROM likes l WHERE l.book_id = b.id) AS likes_count
        FROM books b {where}
        ORDER BY {BOOK_SORTS[sort]}
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_book_dict(row) for row in rows]


def update_book(book_id: str, **fields: Any) -> None:
    """Apply a partial update to a book. The owner can never change."""
    if "user_id" in fields:
        raise ValidationError("The owner of a book cannot be changed")
    unknown = set(fields) - set(BOOK_FIELDS)
    if unknown:
        raise ValueError(f"Unknown book fields: {sorted(unknown)}")
    if not fields:
        return
    if "is_public" in fields:
        fields["is_public"] = 1 if fields["is_public"] else 0
    set_clause = ", ".join(f"{name} = ?" for name in fields)
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        f"UPDATE books SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        list(fields.values()) + [book_id],
    )
    updated = cur.rowcount
    conn.commit()
    conn.close()
    if not updated:
        raise NotFoundError(f"Book {book_id} not found")


def delete_book(book_id: str) -> bool:
    """Delete a book. Chunks and likes go with it via ``ON DELETE CASCADE``."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("DELETE FROM books WHERE id = ?", (book_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    if deleted:
        broker.publish(ChangeEvent(book_id, "delete"))
    return deleted


def insert_chunk(book_id: str, chunk_number: int, first_page: Optional[int] = None,
                 last_page: Optional[int] = None) -> Dict[str, Any]:
    """Create a ``pending`` chunk if it does not exist yet.

    Raises :class:`ConflictError` when the chunk already exists and
    :class:`NotFoundError` when the parent book is gone.
    """
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO chunks(book_id, chunk_number, status, first_page, last_page)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                (book_id, chunk_number, first_page, last_page),
            )
    except sqlite3.IntegrityError as exc:
        if "FOREIGN KEY" in str(exc).upper():
            raise NotFoundError(f"Book {book_id} not found") from exc
        raise ConflictError(f"Chunk {chunk_number} of book {book_id} already exists") from exc
    finally:
        conn.close()
    broker.publish(ChangeEvent(book_id, "insert", chunk_number))
    return get_chunk(book_id, chunk_number) or {}


def get_chunk(book_id: str, chunk_number: int) -> Optional[Dict[str, Any]]:
    """Return one chunk row as a dict, or None if absent."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM chunks WHERE book_id = ? AND chunk_number = ?",
        (book_id, chunk_number),
    )
    row = cur.fetchone()
    conn.close()
    return dict(row) if row else None


def get_chunks(book_id: str) -> List[Dict[str, Any]]:
    """Return all chunks of a book, ordered by chunk number."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM chunks WHERE book_id = ? ORDER BY chunk_number ASC",
        (book_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def get_unfinished_chunks() -> List[Dict[str, Any]]:
    """Return pending and processing chunks across all books."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM chunks WHERE status IN ('pending', 'processing') "
        "ORDER BY book_id, chunk_number"
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def update_chunk(book_id: str, chunk_number: int, **fields: Any) -> None:
    """Apply a partial update to a chunk.

    The last write wins; there is no optimistic locking. Raises
    :class:`NotFoundError` if the chunk does not exist.
    """
    unknown = set(fields) - set(CHUNK_FIELDS)
    if unknown:
        raise ValueError(f"Unknown chunk fields: {sorted(unknown)}")
    if "status" in fields and fields["status"] not in CHUNK_STATUSES:
        raise ValueError(f"Invalid chunk status {fields['status']!r}")
    if not fields:
        return
    set_clause = ", ".join(f"{name} = ?" for name in fields)
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        f"UPDATE chunks SET {set_clause}, updated_at = CURRENT_TIMESTAMP "
        "WHERE book_id = ? AND chunk_number = ?",
        list(fields.values()) + [book_id, chunk_number],
    )
    updated = cur.rowcount
    conn.commit()
    conn.close()
    if not updated:
        raise NotFoundError(f"Chunk {chunk_number} of book {book_id} not found")
    broker.publish(ChangeEvent(book_id, "update", chunk_number))


def add_like(user_id: str, book_id: str) -> bool:
    """Record that ``user_id`` likes ``book_id``. Returns False if already liked."""
    conn = get_connection()
    try:
        with conn:
            conn.execute("INSERT INTO likes(user_id, book_id) VALUES (?, ?)", (user_id, book_id))
    except sqlite3.IntegrityError as exc:
        if "FOREIGN KEY" in str(exc).upper():
            raise NotFoundError(f"Book {book_id} not found") from exc
        return False
    finally:
        conn.close()
    return True


def remove_like(user_id: str, book_id: str) -> bool:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("DELETE FROM likes WHERE user_id = ? AND book_id = ?", (user_id, book_id))
    removed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return removed


def count_likes(book_id: str) -> int:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM likes WHERE book_id = ?", (book_id,))
    (count,) = cur.fetchone()
    conn.close()
    return count
