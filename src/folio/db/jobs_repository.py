"""Repository functions for cleanup jobs, stage outputs and the active-job token."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import structlog

from folio.db.blob_store import BlobContent
from folio.db.database import get_db, use_connection, utc_now

logger = structlog.get_logger(__name__)

# Columns update_job may touch
_UPDATABLE = frozenset(
    {
        "revision_id",
        "original_id",
        "stage",
        "status",
        "progress",
        "flags_created",
        "chapters_detected",
        "failed_stage",
        "error",
        "started_at",
        "completed_at",
        "failed_at",
    }
)


@dataclass
class JobRecord:
    """Cleanup job record from database."""

    job_id: str
    book_id: str
    revision_id: str | None
    original_id: str | None
    stage: str
    status: str
    progress: int
    flags_created: int
    chapters_detected: int
    failed_stage: str | None
    error: str | None
    config_json: str
    retry_of_job_id: str | None
    queued_at: str
    started_at: str | None
    completed_at: str | None
    failed_at: str | None
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


def insert_job(
    job_id: str,
    book_id: str,
    config_json: str,
    original_id: str | None = None,
    retry_of_job_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Insert a queued job."""
    now = utc_now()
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT INTO cleanup_jobs (
                job_id, book_id, original_id, stage, status, progress,
                config_json, retry_of_job_id, queued_at, updated_at
            ) VALUES (?, ?, ?, 'queued', 'queued', 0, ?, ?, ?, ?)
            """,
            (job_id, book_id, original_id, config_json, retry_of_job_id, now, now),
        )
    logger.debug("jobs.inserted", job_id=job_id, book_id=book_id)


def update_job(
    job_id: str,
    conn: sqlite3.Connection | None = None,
    expected_stage: str | None = None,
    **fields,
) -> bool:
    """Update job columns; updated_at is always refreshed.

    With ``expected_stage`` the update is a compare-and-set: it only
    applies while the row is still at that stage.

    Returns:
        True if the row was updated

    Raises:
        ValueError: If an unknown column is given
    """
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update job columns: {sorted(unknown)}")

    fields["updated_at"] = utc_now()
    assignments = ", ".join(f"{name} = ?" for name in fields)
    query = f"UPDATE cleanup_jobs SET {assignments} WHERE job_id = ?"
    params: list = [*fields.values(), job_id]
    if expected_stage is not None:
        query += " AND stage = ?"
        params.append(expected_stage)

    with use_connection(conn) as db:
        cursor = db.execute(query, params)
    return cursor.rowcount == 1


def get_job(job_id: str, conn: sqlite3.Connection | None = None) -> JobRecord | None:
    with use_connection(conn) as db:
        row = db.execute("SELECT * FROM cleanup_jobs WHERE job_id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def get_latest_job(book_id: str) -> JobRecord | None:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM cleanup_jobs WHERE book_id = ?
            ORDER BY queued_at DESC, rowid DESC LIMIT 1
            """,
            (book_id,),
        ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(book_id: str | None = None, status: str | None = None) -> list[JobRecord]:
    query = "SELECT * FROM cleanup_jobs WHERE 1 = 1"
    params: list = []
    if book_id is not None:
        query += " AND book_id = ?"
        params.append(book_id)
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY queued_at, rowid"

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_job(row) for row in rows]


def has_open_job_for_revision(revision_id: str) -> bool:
    """Whether a non-terminal job writes or reads this revision."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT 1 FROM cleanup_jobs
            WHERE revision_id = ? AND status IN ('queued', 'running') LIMIT 1
            """,
            (revision_id,),
        ).fetchone()
    return row is not None


# =============================================================================
# STAGE OUTPUTS
# =============================================================================


def put_stage_output(
    job_id: str, stage: str, blob: BlobContent, conn: sqlite3.Connection | None = None
) -> None:
    with use_connection(conn) as db:
        db.execute(
            """
            INSERT OR REPLACE INTO job_stage_outputs (job_id, stage, blob_id, size_bytes, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, stage, blob.blob_id, blob.size_bytes, utc_now()),
        )


def get_stage_outputs(job_id: str) -> dict[str, BlobContent]:
    """Persisted stage outputs of a job keyed by stage name."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT stage, blob_id, size_bytes FROM job_stage_outputs WHERE job_id = ?",
            (job_id,),
        ).fetchall()
    return {
        row["stage"]: BlobContent(blob_id=row["blob_id"], size_bytes=row["size_bytes"])
        for row in rows
    }


# =============================================================================
# ACTIVE JOB TOKEN
# =============================================================================


def acquire_active_job(book_id: str, job_id: str, conn: sqlite3.Connection | None = None) -> None:
    """Take the book's active-job token.

    Raises:
        sqlite3.IntegrityError: If another job already holds the token
    """
    with use_connection(conn) as db:
        db.execute(
            "INSERT INTO active_jobs (book_id, job_id, acquired_at) VALUES (?, ?, ?)",
            (book_id, job_id, utc_now()),
        )
    logger.debug("jobs.token_acquired", book_id=book_id, job_id=job_id)


def release_active_job(book_id: str, job_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """Release the token if this job holds it.

    Returns:
        True if a token was released
    """
    with use_connection(conn) as db:
        cursor = db.execute(
            "DELETE FROM active_jobs WHERE book_id = ? AND job_id = ?",
            (book_id, job_id),
        )
    released = cursor.rowcount == 1
    if released:
        logger.debug("jobs.token_released", book_id=book_id, job_id=job_id)
    return released


def get_active_job_id(book_id: str) -> str | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT job_id FROM active_jobs WHERE book_id = ?", (book_id,)
        ).fetchone()
    return row["job_id"] if row else None


def _row_to_job(row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        book_id=row["book_id"],
        revision_id=row["revision_id"],
        original_id=row["original_id"],
        stage=row["stage"],
        status=row["status"],
        progress=row["progress"],
        flags_created=row["flags_created"],
        chapters_detected=row["chapters_detected"],
        failed_stage=row["failed_stage"],
        error=row["error"],
        config_json=row["config_json"],
        retry_of_job_id=row["retry_of_job_id"],
        queued_at=row["queued_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        updated_at=row["updated_at"],
    )
