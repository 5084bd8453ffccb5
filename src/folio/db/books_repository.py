"""Repository functions for books table.

Provides CRUD operations for the books table.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import structlog

from folio.db.database import get_db, use_connection, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class BookRecord:
    """Book record from database."""

    book_id: str
    title: str
    author: str | None
    language: str | None
    source_format: str
    source_file: str | None
    source_blob_id: str
    source_size: int
    sha256: str
    imported_at: str


def insert_book(
    book_id: str,
    title: str,
    author: str | None,
    language: str | None,
    source_format: str,
    source_file: str | None,
    source_blob_id: str,
    source_size: int,
    sha256: str,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Insert a new book record.

    Args:
        book_id: Book slug identifier
        title: Book title
        author: Author name
        language: ISO 639-1 language code
        source_format: 'gutenberg_txt' or 'markdown'
        source_file: Original filename
        source_blob_id: Blob holding the source text
        source_size: Source size in bytes
        sha256: Source text hash
        conn: Optional connection to join an open transaction

    Raises:
        sqlite3.IntegrityError: If book_id or sha256 already exists
    """
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT INTO books (
                book_id, title, author, language, source_format,
                source_file, source_blob_id, source_size, sha256, imported_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                book_id,
                title,
                author,
                language,
                source_format,
                source_file,
                source_blob_id,
                source_size,
                sha256,
                utc_now(),
            ),
        )

    logger.debug("books.inserted", book_id=book_id)


def get_book_by_id(book_id: str) -> BookRecord | None:
    """Get book by ID.

    Args:
        book_id: Book slug identifier

    Returns:
        BookRecord if found, None otherwise
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM books WHERE book_id = ?", (book_id,)
        ).fetchone()

    if row is None:
        return None

    return _row_to_record(row)


def get_book_by_sha256(sha256: str) -> BookRecord | None:
    """Get book by source hash.

    Args:
        sha256: Source text hash

    Returns:
        BookRecord if found, None otherwise
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM books WHERE sha256 = ?", (sha256,)
        ).fetchone()

    if row is None:
        return None

    return _row_to_record(row)


def get_all_books() -> list[BookRecord]:
    """Get all books, oldest import first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM books ORDER BY imported_at, book_id"
        ).fetchall()

    return [_row_to_record(row) for row in rows]


def get_all_book_ids() -> list[str]:
    """Get all book IDs."""
    with get_db() as conn:
        rows = conn.execute("SELECT book_id FROM books ORDER BY book_id").fetchall()
    return [row["book_id"] for row in rows]


def _row_to_record(row) -> BookRecord:
    """Convert database row to BookRecord."""
    return BookRecord(
        book_id=row["book_id"],
        title=row["title"],
        author=row["author"],
        language=row["language"],
        source_format=row["source_format"],
        source_file=row["source_file"],
        source_blob_id=row["source_blob_id"],
        source_size=row["source_size"],
        sha256=row["sha256"],
        imported_at=row["imported_at"],
    )
