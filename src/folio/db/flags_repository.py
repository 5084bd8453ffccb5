"""Repository functions for flags and approvals tables."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Iterable

import structlog

from folio.core.cleanup_models import FlagCandidate
from folio.db.database import get_db, use_connection, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class FlagRecord:
    """Flag record from database."""

    flag_id: str
    revision_id: str
    book_id: str
    chapter_id: str | None
    flag_type: str
    status: str
    start_offset: int
    end_offset: int
    context_text: str
    condition: str | None
    suggested_action: str | None
    reviewer_note: str | None
    resolved_by: str | None
    resolved_at: str | None
    created_at: str

    @property
    def is_resolved(self) -> bool:
        return self.status != "unresolved"


@dataclass
class ApprovalRecord:
    """Approval record from database."""

    approval_id: str
    revision_id: str
    book_id: str
    approved_by: str
    approved_at: str
    boilerplate_removed: bool
    boundaries_verified: bool
    punctuation_reviewed: bool
    archaic_preserved: bool


# =============================================================================
# FLAGS
# =============================================================================


def insert_flags(
    revision_id: str,
    book_id: str,
    flags: Iterable[FlagCandidate],
    chapter_ids: dict[int, str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[str]:
    """Insert flags for a revision.

    Args:
        revision_id: Revision the flags belong to
        book_id: Book identifier
        flags: Flag candidates with offsets into the revision body
        chapter_ids: Mapping of chapter_number to chapter_id
        conn: Optional connection to join an open transaction

    Returns:
        New flag IDs in insertion order
    """
    chapter_ids = chapter_ids or {}
    now = utc_now()
    flag_ids: list[str] = []
    with use_connection(conn) as db:
        for flag in flags:
            flag_id = f"flag-{uuid.uuid4().hex[:12]}"
            chapter_id = (
                chapter_ids.get(flag.chapter_number) if flag.chapter_number is not None else None
            )
            db.execute(
                """
                INSERT INTO flags (
                    flag_id, revision_id, book_id, chapter_id, flag_type, status,
                    start_offset, end_offset, context_text, condition,
                    suggested_action, created_at
                ) VALUES (?, ?, ?, ?, ?, 'unresolved', ?, ?, ?, ?, ?, ?)
                """,
                (
                    flag_id,
                    revision_id,
                    book_id,
                    chapter_id,
                    flag.flag_type,
                    flag.start_offset,
                    flag.end_offset,
                    flag.context_text,
                    flag.condition,
                    flag.suggested_action,
                    now,
                ),
            )
            flag_ids.append(flag_id)
    logger.debug("flags.inserted", revision_id=revision_id, count=len(flag_ids))
    return flag_ids


def get_flag(flag_id: str, conn: sqlite3.Connection | None = None) -> FlagRecord | None:
    with use_connection(conn) as db:
        row = db.execute("SELECT * FROM flags WHERE flag_id = ?", (flag_id,)).fetchone()
    return _row_to_flag(row) if row else None


def list_flags(
    revision_id: str | None = None,
    book_id: str | None = None,
    status: str | None = None,
    flag_type: str | None = None,
) -> list[FlagRecord]:
    """List flags filtered by revision, book, status and type.

    Returns:
        Flags ordered by start offset
    """
    query = "SELECT * FROM flags WHERE 1 = 1"
    params: list = []
    if revision_id is not None:
        query += " AND revision_id = ?"
        params.append(revision_id)
    if book_id is not None:
        query += " AND book_id = ?"
        params.append(book_id)
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    if flag_type is not None:
        query += " AND flag_type = ?"
        params.append(flag_type)
    query += " ORDER BY start_offset, end_offset, flag_type, flag_id"

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_flag(row) for row in rows]


def mark_resolved(
    flag_id: str,
    status: str,
    resolved_by: str,
    resolved_at: str,
    reviewer_note: str | None,
    conn: sqlite3.Connection,
) -> bool:
    """Move an unresolved flag to a resolved status.

    The update only matches unresolved rows, so a concurrent resolution
    of the same flag leaves exactly one winner.

    Returns:
        True if this call resolved the flag
    """
    cursor = conn.execute(
        """
        UPDATE flags
        SET status = ?, resolved_by = ?, resolved_at = ?, reviewer_note = ?
        WHERE flag_id = ? AND status = 'unresolved'
        """,
        (status, resolved_by, resolved_at, reviewer_note, flag_id),
    )
    return cursor.rowcount == 1


def count_unresolved(revision_id: str, conn: sqlite3.Connection | None = None) -> int:
    with use_connection(conn) as db:
        row = db.execute(
            "SELECT COUNT(*) AS n FROM flags WHERE revision_id = ? AND status = 'unresolved'",
            (revision_id,),
        ).fetchone()
    return row["n"]


def count_unresolved_by_type(revision_id: str) -> dict[str, int]:
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT flag_type, COUNT(*) AS n FROM flags
            WHERE revision_id = ? AND status = 'unresolved'
            GROUP BY flag_type ORDER BY flag_type
            """,
            (revision_id,),
        ).fetchall()
    return {row["flag_type"]: row["n"] for row in rows}


# =============================================================================
# APPROVALS
# =============================================================================


def insert_approval(
    approval_id: str,
    revision_id: str,
    book_id: str,
    approved_by: str,
    boilerplate_removed: bool,
    boundaries_verified: bool,
    punctuation_reviewed: bool,
    archaic_preserved: bool,
    conn: sqlite3.Connection | None = None,
) -> ApprovalRecord:
    """Append an approval record."""
    approved_at = utc_now()
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT INTO approvals (
                approval_id, revision_id, book_id, approved_by, approved_at,
                boilerplate_removed, boundaries_verified,
                punctuation_reviewed, archaic_preserved
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                approval_id,
                revision_id,
                book_id,
                approved_by,
                approved_at,
                int(boilerplate_removed),
                int(boundaries_verified),
                int(punctuation_reviewed),
                int(archaic_preserved),
            ),
        )
    return ApprovalRecord(
        approval_id=approval_id,
        revision_id=revision_id,
        book_id=book_id,
        approved_by=approved_by,
        approved_at=approved_at,
        boilerplate_removed=boilerplate_removed,
        boundaries_verified=boundaries_verified,
        punctuation_reviewed=punctuation_reviewed,
        archaic_preserved=archaic_preserved,
    )


def count_approvals(revision_id: str, conn: sqlite3.Connection | None = None) -> int:
    with use_connection(conn) as db:
        row = db.execute(
            "SELECT COUNT(*) AS n FROM approvals WHERE revision_id = ?", (revision_id,)
        ).fetchone()
    return row["n"]


def get_latest_approval(revision_id: str) -> ApprovalRecord | None:
    """Most recent approval for a revision; earlier ones are superseded."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM approvals WHERE revision_id = ?
            ORDER BY approved_at DESC, rowid DESC LIMIT 1
            """,
            (revision_id,),
        ).fetchone()
    return _row_to_approval(row) if row else None


def list_approvals(revision_id: str) -> list[ApprovalRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM approvals WHERE revision_id = ? ORDER BY approved_at, rowid",
            (revision_id,),
        ).fetchall()
    return [_row_to_approval(row) for row in rows]


def _row_to_flag(row) -> FlagRecord:
    return FlagRecord(
        flag_id=row["flag_id"],
        revision_id=row["revision_id"],
        book_id=row["book_id"],
        chapter_id=row["chapter_id"],
        flag_type=row["flag_type"],
        status=row["status"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        context_text=row["context_text"],
        condition=row["condition"],
        suggested_action=row["suggested_action"],
        reviewer_note=row["reviewer_note"],
        resolved_by=row["resolved_by"],
        resolved_at=row["resolved_at"],
        created_at=row["created_at"],
    )


def _row_to_approval(row) -> ApprovalRecord:
    return ApprovalRecord(
        approval_id=row["approval_id"],
        revision_id=row["revision_id"],
        book_id=row["book_id"],
        approved_by=row["approved_by"],
        approved_at=row["approved_at"],
        boilerplate_removed=bool(row["boilerplate_removed"]),
        boundaries_verified=bool(row["boundaries_verified"]),
        punctuation_reviewed=bool(row["punctuation_reviewed"]),
        archaic_preserved=bool(row["archaic_preserved"]),
    )
