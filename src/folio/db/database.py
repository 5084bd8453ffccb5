"""SQLite database connection and schema management.

Provides connection management and schema initialization for the cleanup
pipeline's record store. Bodies live in the blob store; rows hold blob
references (inline ``content`` columns are a legacy read-only path).
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger(__name__)

# Default database location
DEFAULT_DB_PATH = Path("data/db/folio.db")

# Current connection (module-level for simplicity in CLI context)
_db_path: Path | None = None


def init_db(db_path: Path | None = None) -> None:
    """Initialize database with schema.

    Creates the database file and all required tables if they don't exist.

    Args:
        db_path: Path to database file. Defaults to data/db/folio.db
    """
    global _db_path
    _db_path = db_path or DEFAULT_DB_PATH

    # Ensure directory exists
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        _create_schema(conn)

    logger.info("database.initialized", path=str(_db_path))


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get database connection as context manager.

    Everything executed on the connection commits together when the block
    exits normally and rolls back if it raises.

    Yields:
        SQLite connection with row factory set to sqlite3.Row

    Example:
        with get_db() as conn:
            cursor = conn.execute("SELECT * FROM revisions")
            rows = cursor.fetchall()
    """
    db_path = _db_path or DEFAULT_DB_PATH

    # Ensure directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def use_connection(
    conn: sqlite3.Connection | None = None,
) -> Generator[sqlite3.Connection, None, None]:
    """Join the caller's transaction, or open a new one.

    Repository functions take an optional connection so several writes can
    commit all-or-nothing inside one ``get_db()`` block.
    """
    if conn is not None:
        yield conn
        return
    with get_db() as new_conn:
        yield new_conn


def begin_immediate(conn: sqlite3.Connection) -> None:
    """Take the database write lock now unless a transaction is already open.

    Read-then-insert allocations (the next revision number) run under it so
    two writers cannot read the same value.
    """
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")


def utc_now() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _create_schema(conn: sqlite3.Connection) -> None:
    """Create database schema.

    Uses IF NOT EXISTS for idempotency.
    """
    conn.executescript(
        """
        -- books: one row per imported source; sha256 is UNIQUE
        CREATE TABLE IF NOT EXISTS books (
            book_id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT,
            language TEXT,
            source_format TEXT NOT NULL CHECK(source_format IN ('gutenberg_txt', 'markdown')),
            source_file TEXT,
            source_blob_id TEXT NOT NULL,
            source_size INTEGER NOT NULL,
            sha256 TEXT NOT NULL UNIQUE,
            imported_at TEXT NOT NULL
        );

        -- originals: immutable captured source, one per (book, source hash)
        CREATE TABLE IF NOT EXISTS originals (
            original_id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL REFERENCES books(book_id),
            source_format TEXT NOT NULL CHECK(source_format IN ('gutenberg_txt', 'markdown')),
            sha256 TEXT NOT NULL,
            content TEXT,
            blob_id TEXT,
            size_bytes INTEGER NOT NULL,
            captured_at TEXT NOT NULL,
            UNIQUE(book_id, sha256)
        );

        -- revisions: flat arena keyed by id; parent_revision_id forms a DAG
        CREATE TABLE IF NOT EXISTS revisions (
            revision_id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL REFERENCES books(book_id),
            revision_number INTEGER NOT NULL,
            parent_revision_id TEXT REFERENCES revisions(revision_id),
            original_id TEXT REFERENCES originals(original_id),
            provenance TEXT NOT NULL CHECK(provenance IN ('system', 'ai', 'user')),
            is_deterministic INTEGER NOT NULL,
            is_ai_assisted INTEGER NOT NULL,
            preserve_archaic INTEGER NOT NULL,
            content TEXT,
            blob_id TEXT,
            size_bytes INTEGER NOT NULL,
            created_by TEXT,
            created_at TEXT NOT NULL,
            UNIQUE(book_id, revision_number)
        );

        CREATE TABLE IF NOT EXISTS chapters (
            chapter_id TEXT PRIMARY KEY,
            revision_id TEXT NOT NULL REFERENCES revisions(revision_id),
            chapter_number INTEGER NOT NULL,
            title TEXT NOT NULL,
            section_type TEXT NOT NULL CHECK(section_type IN (
                'chapter', 'preface', 'introduction', 'notes', 'appendix', 'body'
            )),
            start_offset INTEGER NOT NULL,
            end_offset INTEGER NOT NULL,
            detected_heading TEXT,
            confidence REAL,
            is_ocr_corrupted INTEGER NOT NULL DEFAULT 0,
            is_user_confirmed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            CHECK(start_offset < end_offset),
            UNIQUE(revision_id, chapter_number)
        );

        CREATE TABLE IF NOT EXISTS flags (
            flag_id TEXT PRIMARY KEY,
            revision_id TEXT NOT NULL REFERENCES revisions(revision_id),
            book_id TEXT NOT NULL REFERENCES books(book_id),
            chapter_id TEXT REFERENCES chapters(chapter_id),
            flag_type TEXT NOT NULL CHECK(flag_type IN (
                'unlabeled_boundary_candidate', 'low_confidence_cleanup',
                'ocr_corruption_detected', 'ambiguous_punctuation',
                'chapter_boundary_disputed'
            )),
            status TEXT NOT NULL DEFAULT 'unresolved' CHECK(status IN (
                'unresolved', 'confirmed', 'rejected', 'overridden'
            )),
            start_offset INTEGER NOT NULL,
            end_offset INTEGER NOT NULL,
            context_text TEXT NOT NULL,
            condition TEXT,
            suggested_action TEXT,
            reviewer_note TEXT,
            resolved_by TEXT,
            resolved_at TEXT,
            created_at TEXT NOT NULL,
            CHECK(start_offset < end_offset)
        );

        -- approvals: append-only; the latest row per revision is authoritative
        CREATE TABLE IF NOT EXISTS approvals (
            approval_id TEXT PRIMARY KEY,
            revision_id TEXT NOT NULL REFERENCES revisions(revision_id),
            book_id TEXT NOT NULL REFERENCES books(book_id),
            approved_by TEXT NOT NULL,
            approved_at TEXT NOT NULL,
            boilerplate_removed INTEGER NOT NULL,
            boundaries_verified INTEGER NOT NULL,
            punctuation_reviewed INTEGER NOT NULL,
            archaic_preserved INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS cleanup_jobs (
            job_id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL REFERENCES books(book_id),
            revision_id TEXT REFERENCES revisions(revision_id),
            original_id TEXT REFERENCES originals(original_id),
            stage TEXT NOT NULL CHECK(stage IN (
                'queued', 'loading_original', 'boilerplate_removal',
                'paragraph_unwrap', 'chapter_detection',
                'punctuation_normalization', 'completed', 'failed'
            )),
            status TEXT NOT NULL CHECK(status IN ('queued', 'running', 'completed', 'failed')),
            progress INTEGER NOT NULL DEFAULT 0,
            flags_created INTEGER NOT NULL DEFAULT 0,
            chapters_detected INTEGER NOT NULL DEFAULT 0,
            failed_stage TEXT,
            error TEXT,
            config_json TEXT NOT NULL,
            retry_of_job_id TEXT REFERENCES cleanup_jobs(job_id),
            queued_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            failed_at TEXT,
            updated_at TEXT NOT NULL
        );

        -- persisted output of each completed stage, by blob reference
        CREATE TABLE IF NOT EXISTS job_stage_outputs (
            job_id TEXT NOT NULL REFERENCES cleanup_jobs(job_id),
            stage TEXT NOT NULL,
            blob_id TEXT NOT NULL,
            size_bytes INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (job_id, stage)
        );

        -- ownership token: at most one active cleanup job per book
        CREATE TABLE IF NOT EXISTS active_jobs (
            book_id TEXT PRIMARY KEY REFERENCES books(book_id),
            job_id TEXT NOT NULL REFERENCES cleanup_jobs(job_id),
            acquired_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_originals_book ON originals(book_id);
        CREATE INDEX IF NOT EXISTS idx_revisions_book ON revisions(book_id);
        CREATE INDEX IF NOT EXISTS idx_chapters_revision ON chapters(revision_id, chapter_number);
        CREATE INDEX IF NOT EXISTS idx_flags_revision_status ON flags(revision_id, status);
        CREATE INDEX IF NOT EXISTS idx_flags_book ON flags(book_id);
        CREATE INDEX IF NOT EXISTS idx_approvals_revision ON approvals(revision_id);
        CREATE INDEX IF NOT EXISTS idx_jobs_book ON cleanup_jobs(book_id);
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON cleanup_jobs(status);
        """
    )
