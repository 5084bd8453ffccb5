"""Repository functions for originals, revisions and chapters tables.

Write functions take an optional connection so a revision, its chapters
and its flags can be committed in one transaction.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Iterable

import structlog

from folio.core.cleanup_models import ChapterCandidate
from folio.db.blob_store import BlobContent, ContentRef, content_from_row
from folio.db.database import get_db, use_connection, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class OriginalRecord:
    """Immutable captured source text for a book."""

    original_id: str
    book_id: str
    source_format: str
    sha256: str
    content: ContentRef
    size_bytes: int
    captured_at: str


@dataclass
class RevisionRecord:
    """Revision record from database."""

    revision_id: str
    book_id: str
    revision_number: int
    parent_revision_id: str | None
    original_id: str | None
    provenance: str
    is_deterministic: bool
    is_ai_assisted: bool
    preserve_archaic: bool
    content: ContentRef
    size_bytes: int
    created_by: str | None
    created_at: str


@dataclass
class ChapterRecord:
    """Chapter record from database."""

    chapter_id: str
    revision_id: str
    chapter_number: int
    title: str
    section_type: str
    start_offset: int
    end_offset: int
    detected_heading: str | None
    confidence: float | None
    is_ocr_corrupted: bool
    is_user_confirmed: bool
    created_at: str


# =============================================================================
# ORIGINALS
# =============================================================================


def insert_original(
    original_id: str,
    book_id: str,
    source_format: str,
    sha256: str,
    blob: BlobContent,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Insert an original capture.

    Raises:
        sqlite3.IntegrityError: If (book_id, sha256) was already captured
    """
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT INTO originals (
                original_id, book_id, source_format, sha256,
                content, blob_id, size_bytes, captured_at
            ) VALUES (?, ?, ?, ?, NULL, ?, ?, ?)
            """,
            (original_id, book_id, source_format, sha256, blob.blob_id, blob.size_bytes, utc_now()),
        )
    logger.debug("originals.inserted", original_id=original_id, book_id=book_id)


def get_original(original_id: str) -> OriginalRecord | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM originals WHERE original_id = ?", (original_id,)
        ).fetchone()
    return _row_to_original(row) if row else None


def get_original_by_hash(book_id: str, sha256: str) -> OriginalRecord | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM originals WHERE book_id = ? AND sha256 = ?",
            (book_id, sha256),
        ).fetchone()
    return _row_to_original(row) if row else None


# =============================================================================
# REVISIONS
# =============================================================================


def next_revision_number(book_id: str, conn: sqlite3.Connection | None = None) -> int:
    """Next monotonic revision number for a book (starting at 1)."""
    with use_connection(conn) as db:
        row = db.execute(
            "SELECT COALESCE(MAX(revision_number), 0) AS latest FROM revisions WHERE book_id = ?",
            (book_id,),
        ).fetchone()
    return row["latest"] + 1


def insert_revision(
    revision_id: str,
    book_id: str,
    revision_number: int,
    parent_revision_id: str | None,
    original_id: str | None,
    provenance: str,
    preserve_archaic: bool,
    blob: BlobContent,
    created_by: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Insert a revision row. Bodies are always written by reference."""
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT INTO revisions (
                revision_id, book_id, revision_number, parent_revision_id,
                original_id, provenance, is_deterministic, is_ai_assisted,
                preserve_archaic, content, blob_id, size_bytes, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
            """,
            (
                revision_id,
                book_id,
                revision_number,
                parent_revision_id,
                original_id,
                provenance,
                int(provenance == "system"),
                int(provenance == "ai"),
                int(preserve_archaic),
                blob.blob_id,
                blob.size_bytes,
                created_by,
                utc_now(),
            ),
        )
    logger.debug("revisions.inserted", revision_id=revision_id, provenance=provenance)


def get_revision(revision_id: str, conn: sqlite3.Connection | None = None) -> RevisionRecord | None:
    with use_connection(conn) as db:
        row = db.execute(
            "SELECT * FROM revisions WHERE revision_id = ?", (revision_id,)
        ).fetchone()
    return _row_to_revision(row) if row else None


def list_revisions(book_id: str) -> list[RevisionRecord]:
    """All revisions of a book, ordered by revision number."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM revisions WHERE book_id = ? ORDER BY revision_number",
            (book_id,),
        ).fetchall()
    return [_row_to_revision(row) for row in rows]


def get_latest_revision(book_id: str) -> RevisionRecord | None:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM revisions WHERE book_id = ?
            ORDER BY revision_number DESC LIMIT 1
            """,
            (book_id,),
        ).fetchone()
    return _row_to_revision(row) if row else None


def find_oversized_inline_rows(threshold_bytes: int) -> list[tuple[str, str]]:
    """Rows still holding an inline body above the size threshold.

    Returns:
        List of (table, record_id) pairs
    """
    with get_db() as conn:
        originals = conn.execute(
            """
            SELECT original_id AS record_id FROM originals
            WHERE blob_id IS NULL AND content IS NOT NULL AND size_bytes > ?
            """,
            (threshold_bytes,),
        ).fetchall()
        revisions = conn.execute(
            """
            SELECT revision_id AS record_id FROM revisions
            WHERE blob_id IS NULL AND content IS NOT NULL AND size_bytes > ?
            """,
            (threshold_bytes,),
        ).fetchall()
    return [("originals", r["record_id"]) for r in originals] + [
        ("revisions", r["record_id"]) for r in revisions
    ]


# =============================================================================
# CHAPTERS
# =============================================================================


def insert_chapters(
    revision_id: str,
    chapters: Iterable[ChapterCandidate],
    conn: sqlite3.Connection | None = None,
) -> dict[int, str]:
    """Insert a revision's chapter set.

    Returns:
        Mapping of chapter_number to the new chapter_id
    """
    ids: dict[int, str] = {}
    now = utc_now()
    with use_connection(conn) as db:
        for chapter in chapters:
            chapter_id = uuid.uuid4().hex
            db.execute(
                """
                INSERT INTO chapters (
                    chapter_id, revision_id, chapter_number, title, section_type,
                    start_offset, end_offset, detected_heading, confidence,
                    is_ocr_corrupted, is_user_confirmed, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chapter_id,
                    revision_id,
                    chapter.chapter_number,
                    chapter.title,
                    chapter.section_type,
                    chapter.start_offset,
                    chapter.end_offset,
                    chapter.detected_heading,
                    chapter.confidence,
                    int(chapter.is_ocr_corrupted),
                    int(chapter.is_user_confirmed),
                    now,
                ),
            )
            ids[chapter.chapter_number] = chapter_id
    return ids


def get_chapters(revision_id: str, conn: sqlite3.Connection | None = None) -> list[ChapterRecord]:
    """Chapters of a revision ordered by chapter number."""
    with use_connection(conn) as db:
        rows = db.execute(
            "SELECT * FROM chapters WHERE revision_id = ? ORDER BY chapter_number",
            (revision_id,),
        ).fetchall()
    return [_row_to_chapter(row) for row in rows]


def update_chapter_end(chapter_id: str, end_offset: int, conn: sqlite3.Connection) -> None:
    conn.execute(
        "UPDATE chapters SET end_offset = ? WHERE chapter_id = ?",
        (end_offset, chapter_id),
    )


def shift_chapter_numbers(
    revision_id: str, from_number: int, delta: int, conn: sqlite3.Connection
) -> int:
    """Add delta to every chapter number >= from_number.

    Renumbering passes through negative numbers so that no intermediate
    row collides with UNIQUE(revision_id, chapter_number).

    Returns:
        Number of chapters renumbered
    """
    cursor = conn.execute(
        """
        UPDATE chapters SET chapter_number = -(chapter_number + ?)
        WHERE revision_id = ? AND chapter_number >= ?
        """,
        (delta, revision_id, from_number),
    )
    conn.execute(
        """
        UPDATE chapters SET chapter_number = -chapter_number
        WHERE revision_id = ? AND chapter_number < 0
        """,
        (revision_id,),
    )
    return cursor.rowcount


# =============================================================================
# ROW MAPPING
# =============================================================================


def _row_to_original(row) -> OriginalRecord:
    return OriginalRecord(
        original_id=row["original_id"],
        book_id=row["book_id"],
        source_format=row["source_format"],
        sha256=row["sha256"],
        content=content_from_row(row),
        size_bytes=row["size_bytes"],
        captured_at=row["captured_at"],
    )


def _row_to_revision(row) -> RevisionRecord:
    return RevisionRecord(
        revision_id=row["revision_id"],
        book_id=row["book_id"],
        revision_number=row["revision_number"],
        parent_revision_id=row["parent_revision_id"],
        original_id=row["original_id"],
        provenance=row["provenance"],
        is_deterministic=bool(row["is_deterministic"]),
        is_ai_assisted=bool(row["is_ai_assisted"]),
        preserve_archaic=bool(row["preserve_archaic"]),
        content=content_from_row(row),
        size_bytes=row["size_bytes"],
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def _row_to_chapter(row) -> ChapterRecord:
    return ChapterRecord(
        chapter_id=row["chapter_id"],
        revision_id=row["revision_id"],
        chapter_number=row["chapter_number"],
        title=row["title"],
        section_type=row["section_type"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        detected_heading=row["detected_heading"],
        confidence=row["confidence"],
        is_ocr_corrupted=bool(row["is_ocr_corrupted"]),
        is_user_confirmed=bool(row["is_user_confirmed"]),
        created_at=row["created_at"],
    )
