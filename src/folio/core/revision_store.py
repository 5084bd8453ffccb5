"""Originals, revisions and chapter sets.

A book's source is captured once as an immutable Original. Every cleanup
pass produces a new Revision with a monotonic number, a parent link and a
validated chapter set. Revisions are never updated in place; the review
workflow only changes flag status and, for boundary overrides, the
chapter rows of the revision under review.

Revision state is derived from records:

    approved           an approval exists
    flagged            at least one flag is unresolved
    chapters_attached  chapters exist, the producing job is still open
    clean              chapters exist, nothing unresolved
    created            no chapters yet
"""

from __future__ import annotations

import sqlite3
from typing import Iterable, Sequence

import structlog

from folio.config.cleanup_config import SECTION_TYPES
from folio.core.book_importer import require_book
from folio.core.cleanup_models import ChapterCandidate, FlagCandidate
from folio.db.blob_store import BlobContent, BlobNotFoundError, BlobStore, resolve_text
from folio.db.database import begin_immediate, use_connection
from folio.db.flags_repository import count_approvals, count_unresolved, insert_flags
from folio.db.jobs_repository import has_open_job_for_revision
from folio.db import revisions_repository as repo
from folio.db.revisions_repository import ChapterRecord, OriginalRecord, RevisionRecord
from folio.utils.validators import child_id

logger = structlog.get_logger(__name__)

PROVENANCES = ("system", "ai", "user")

STATE_CREATED = "created"
STATE_CHAPTERS_ATTACHED = "chapters_attached"
STATE_FLAGGED = "flagged"
STATE_CLEAN = "clean"
STATE_APPROVED = "approved"


class RevisionStoreError(Exception):
    """Base exception for revision store errors."""

    pass


class RevisionInvariantViolation(RevisionStoreError):
    """Raised when a revision, chapter set or flag set breaks an invariant."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Revision invariant violated: {reason}")


class RevisionNotFoundError(RevisionStoreError):
    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(f"Revision not found: {revision_id}")


class OriginalNotFoundError(RevisionStoreError):
    def __init__(self, original_id: str):
        self.original_id = original_id
        super().__init__(f"Original not found: {original_id}")


class ChapterNotFoundError(RevisionStoreError):
    def __init__(self, revision_id: str, chapter_number: int):
        self.revision_id = revision_id
        self.chapter_number = chapter_number
        super().__init__(f"Chapter {chapter_number} not found in {revision_id}")


class ParentRevisionError(RevisionStoreError):
    """Raised when a parent revision belongs to another book."""

    def __init__(self, parent_revision_id: str, book_id: str):
        self.parent_revision_id = parent_revision_id
        self.book_id = book_id
        super().__init__(
            f"Parent revision '{parent_revision_id}' does not belong to book '{book_id}'"
        )


class RevisionLockedError(RevisionStoreError):
    """Raised when a cleanup job still targets the revision."""

    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(
            f"Revision '{revision_id}' is not reviewable until its cleanup job completes"
        )


class RevisionNumberConflictError(RevisionStoreError):
    """Raised when another writer took the revision number being allocated."""

    def __init__(self, book_id: str, revision_number: int):
        self.book_id = book_id
        self.revision_number = revision_number
        super().__init__(
            f"Revision number {revision_number} of '{book_id}' was taken by a concurrent writer"
        )


# =============================================================================
# ORIGINALS
# =============================================================================


def capture_original(book_id: str, blob_store: BlobStore) -> str:
    """Capture the book's current source body as an Original.

    Repeated captures of the same source return the existing Original.

    Returns:
        original_id

    Raises:
        BookNotFoundError: If the book does not exist
        BlobNotFoundError: If the source body is missing from the blob store
    """
    book = require_book(book_id)

    existing = repo.get_original_by_hash(book_id, book.sha256)
    if existing:
        return existing.original_id

    if not blob_store.exists(book.source_blob_id):
        raise BlobNotFoundError(book.source_blob_id)

    original_id = child_id(book_id, "orig", book.sha256[:12])
    try:
        repo.insert_original(
            original_id=original_id,
            book_id=book_id,
            source_format=book.source_format,
            sha256=book.sha256,
            blob=BlobContent(blob_id=book.source_blob_id, size_bytes=book.source_size),
        )
    except sqlite3.IntegrityError:
        # Captured concurrently
        existing = repo.get_original_by_hash(book_id, book.sha256)
        if existing is None:
            raise
        return existing.original_id

    logger.info("revision_store.original_captured", book_id=book_id, original_id=original_id)
    return original_id


def get_original(original_id: str) -> OriginalRecord:
    original = repo.get_original(original_id)
    if original is None:
        raise OriginalNotFoundError(original_id)
    return original


def get_original_text(original_id: str, blob_store: BlobStore) -> str:
    return resolve_text(get_original(original_id).content, blob_store)


# =============================================================================
# REVISIONS
# =============================================================================


def create_revision(
    book_id: str,
    provenance: str,
    chapters: Sequence[ChapterCandidate],
    *,
    blob_store: BlobStore,
    body: str | None = None,
    parent_revision_id: str | None = None,
    original_id: str | None = None,
    preserve_archaic: bool | None = None,
    flags: Iterable[FlagCandidate] = (),
    created_by: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """Create a revision with its chapter set and flags, all-or-nothing.

    Args:
        book_id: Book the revision belongs to
        provenance: 'system', 'ai' or 'user'
        chapters: Chapter set with spans into the revision body
        blob_store: Where the body is written
        body: Revision text; inherited from the parent when omitted
        parent_revision_id: Revision this one derives from
        original_id: Original the lineage starts from (inherited by default)
        preserve_archaic: Inherited from the parent unless given
        flags: Flags raised against this body
        created_by: Actor recorded on the revision
        conn: Optional connection to join an open transaction

    Returns:
        revision_id

    Raises:
        RevisionInvariantViolation: If provenance, body, chapters or flags are invalid
        RevisionNotFoundError: If the parent does not exist
        ParentRevisionError: If the parent belongs to another book
        BookNotFoundError: If the book does not exist
        RevisionNumberConflictError: If a writer sharing the caller's open
            transaction lost the revision number to another writer
    """
    if provenance not in PROVENANCES:
        raise RevisionInvariantViolation(f"unknown provenance '{provenance}'")

    require_book(book_id)

    parent: RevisionRecord | None = None
    if parent_revision_id is not None:
        parent = repo.get_revision(parent_revision_id, conn)
        if parent is None:
            raise RevisionNotFoundError(parent_revision_id)
        if parent.book_id != book_id:
            raise ParentRevisionError(parent_revision_id, book_id)

    if body is None:
        if parent is None:
            raise RevisionInvariantViolation("a revision without parent needs a body")
        body = resolve_text(parent.content, blob_store)

    if preserve_archaic is None:
        preserve_archaic = parent.preserve_archaic if parent else True
    if original_id is None and parent is not None:
        original_id = parent.original_id

    chapters = list(chapters)
    flags = list(flags)
    validate_chapters(chapters, len(body))
    validate_flag_spans(flags, len(body))

    # Content-addressed: an orphan blob left by a rollback is harmless
    blob = blob_store.put_text(body)

    with use_connection(conn) as db:
        begin_immediate(db)
        revision_number = repo.next_revision_number(book_id, db)
        revision_id = child_id(book_id, "rev", revision_number)
        try:
            repo.insert_revision(
                revision_id=revision_id,
                book_id=book_id,
                revision_number=revision_number,
                parent_revision_id=parent_revision_id,
                original_id=original_id,
                provenance=provenance,
                preserve_archaic=preserve_archaic,
                blob=blob,
                created_by=created_by,
                conn=db,
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed: revisions." not in str(e):
                raise
            raise RevisionNumberConflictError(book_id, revision_number) from e
        chapter_ids = repo.insert_chapters(revision_id, chapters, conn=db)
        insert_flags(revision_id, book_id, flags, chapter_ids, conn=db)

    logger.info(
        "revision_store.revision_created",
        book_id=book_id,
        revision_id=revision_id,
        provenance=provenance,
        chapters=len(chapters),
        flags=len(flags),
    )
    return revision_id


def validate_chapters(chapters: Sequence[ChapterCandidate], body_length: int) -> None:
    """Check a chapter set against a body.

    Chapter numbers must be exactly 1..n in text order, every span must be
    non-empty and inside the body, and spans must not overlap.

    Raises:
        RevisionInvariantViolation: On the first broken rule
    """
    numbers = sorted(c.chapter_number for c in chapters)
    if numbers != list(range(1, len(chapters) + 1)):
        raise RevisionInvariantViolation(f"chapter numbers must be 1..{len(chapters)}, got {numbers}")

    ordered = sorted(chapters, key=lambda c: c.chapter_number)
    previous: ChapterCandidate | None = None
    for chapter in ordered:
        if chapter.section_type not in SECTION_TYPES:
            raise RevisionInvariantViolation(
                f"chapter {chapter.chapter_number} has unknown section type '{chapter.section_type}'"
            )
        if chapter.start_offset >= chapter.end_offset:
            raise RevisionInvariantViolation(
                f"chapter {chapter.chapter_number} span "
                f"[{chapter.start_offset}, {chapter.end_offset}) is empty"
            )
        if chapter.start_offset < 0 or chapter.end_offset > body_length:
            raise RevisionInvariantViolation(
                f"chapter {chapter.chapter_number} span "
                f"[{chapter.start_offset}, {chapter.end_offset}) is outside the body "
                f"(length {body_length})"
            )
        if previous is not None and chapter.start_offset < previous.end_offset:
            raise RevisionInvariantViolation(
                f"chapters {previous.chapter_number} and {chapter.chapter_number} overlap"
            )
        previous = chapter


def validate_flag_spans(flags: Sequence[FlagCandidate], body_length: int) -> None:
    """Raises RevisionInvariantViolation for empty or out-of-body flag spans."""
    for flag in flags:
        if not 0 <= flag.start_offset < flag.end_offset <= body_length:
            raise RevisionInvariantViolation(
                f"{flag.flag_type} flag span [{flag.start_offset}, {flag.end_offset}) "
                f"is invalid for body length {body_length}"
            )


def get_revision(revision_id: str) -> RevisionRecord:
    revision = repo.get_revision(revision_id)
    if revision is None:
        raise RevisionNotFoundError(revision_id)
    return revision


def list_revisions(book_id: str) -> list[RevisionRecord]:
    return repo.list_revisions(book_id)


def get_latest_revision(book_id: str) -> RevisionRecord | None:
    return repo.get_latest_revision(book_id)


def get_chapters(revision_id: str) -> list[ChapterRecord]:
    """Chapters of a revision ordered by chapter number."""
    get_revision(revision_id)
    return repo.get_chapters(revision_id)


def get_revision_text(revision_id: str, blob_store: BlobStore) -> str:
    return resolve_text(get_revision(revision_id).content, blob_store)


def get_chapter_text(revision_id: str, chapter_number: int, blob_store: BlobStore) -> str:
    """Text of one chapter, sliced from the revision body."""
    for chapter in get_chapters(revision_id):
        if chapter.chapter_number == chapter_number:
            body = get_revision_text(revision_id, blob_store)
            return body[chapter.start_offset : chapter.end_offset]
    raise ChapterNotFoundError(revision_id, chapter_number)


def get_lineage(revision_id: str) -> list[RevisionRecord]:
    """The revision followed by its ancestors, nearest first."""
    lineage: list[RevisionRecord] = []
    seen: set[str] = set()
    current: str | None = revision_id
    while current is not None:
        if current in seen:
            raise RevisionInvariantViolation(f"revision lineage cycles at '{current}'")
        seen.add(current)
        revision = get_revision(current)
        lineage.append(revision)
        current = revision.parent_revision_id
    return lineage


def get_revision_state(revision_id: str) -> str:
    """Derive the lifecycle state of a revision from its records."""
    get_revision(revision_id)

    if count_approvals(revision_id) > 0:
        return STATE_APPROVED
    if count_unresolved(revision_id) > 0:
        return STATE_FLAGGED
    if repo.get_chapters(revision_id):
        if has_open_job_for_revision(revision_id):
            return STATE_CHAPTERS_ATTACHED
        return STATE_CLEAN
    return STATE_CREATED


def is_reviewable(revision_id: str) -> bool:
    return not has_open_job_for_revision(revision_id)


def assert_reviewable(revision_id: str) -> RevisionRecord:
    """Get a revision, raising RevisionLockedError while a job still targets it."""
    revision = get_revision(revision_id)
    if has_open_job_for_revision(revision_id):
        raise RevisionLockedError(revision_id)
    return revision


def check_layout(threshold_bytes: int) -> list[tuple[str, str]]:
    """Report legacy rows storing a body inline above the size threshold.

    Returns:
        List of (table, record_id) pairs; empty when the layout is clean
    """
    rows = repo.find_oversized_inline_rows(threshold_bytes)
    for table, record_id in rows:
        logger.warning(
            "revision_store.inline_body_oversized",
            table=table,
            record_id=record_id,
            threshold_bytes=threshold_bytes,
        )
    return rows
