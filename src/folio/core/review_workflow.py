"""Flag resolution and the approval gate.

Flags move one way: unresolved -> confirmed | rejected | overridden. The
transition is a conditional UPDATE, so two reviewers racing on the same
flag produce exactly one resolution.

Overriding an unlabeled boundary candidate promotes it to a real chapter
boundary: the containing chapter is split at the chosen offset and every
later chapter is renumbered, in the same transaction as the flag update.

A revision can be approved only when it has chapters, no unresolved flags,
no open cleanup job, and a fully checked checklist.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Sequence

import structlog

from folio.core.book_importer import require_book
from folio.core.cleanup_models import ChapterCandidate
from folio.core.revision_store import (
    assert_reviewable,
    get_original,
    get_revision,
    get_revision_text,
    is_reviewable,
    validate_chapters,
)
from folio.db import flags_repository as flags_repo
from folio.db import revisions_repository as revisions_repo
from folio.db.blob_store import BlobStore
from folio.db.books_repository import BookRecord
from folio.db.database import get_db, utc_now
from folio.db.flags_repository import ApprovalRecord, FlagRecord
from folio.db.revisions_repository import ChapterRecord, OriginalRecord, RevisionRecord
from folio.utils.validators import child_id

logger = structlog.get_logger(__name__)

RESOLUTIONS = ("confirmed", "rejected", "overridden")
BOUNDARY_FLAG_TYPE = "unlabeled_boundary_candidate"


class ReviewError(Exception):
    """Base exception for review workflow errors."""

    pass


class InvalidReviewInputError(ReviewError):
    """Raised for an unknown resolution or an empty actor."""

    pass


class FlagNotFoundError(ReviewError):
    def __init__(self, flag_id: str):
        self.flag_id = flag_id
        super().__init__(f"Flag not found: {flag_id}")


class FlagAlreadyResolvedError(ReviewError):
    """Raised when a flag has already left the unresolved state."""

    def __init__(self, flag_id: str, status: str | None = None):
        self.flag_id = flag_id
        self.status = status
        detail = f" as '{status}'" if status else ""
        super().__init__(f"Flag {flag_id} is already resolved{detail}")


class RevisionApprovedError(ReviewError):
    """Raised when resolving flags on an approved revision."""

    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(f"Revision {revision_id} is approved; its flags are frozen")


class BoundaryOverrideError(ReviewError):
    """Raised when a boundary override cannot produce a valid chapter split."""

    def __init__(self, offset: int, reason: str):
        self.offset = offset
        self.reason = reason
        super().__init__(f"Cannot place a chapter boundary at offset {offset}: {reason}")


class ApprovalBlockedError(ReviewError):
    """Raised when approval preconditions are not met."""

    def __init__(
        self,
        revision_id: str,
        unresolved_count: int,
        missing_checklist_items: list[str],
        reasons: list[str],
    ):
        self.revision_id = revision_id
        self.unresolved_count = unresolved_count
        self.missing_checklist_items = missing_checklist_items
        self.reasons = reasons
        super().__init__(f"Approval of {revision_id} blocked: {'; '.join(reasons)}")


@dataclass(frozen=True)
class ApprovalChecklist:
    """Reviewer confirmations required before approval."""

    boilerplate_removed: bool = False
    boundaries_verified: bool = False
    punctuation_reviewed: bool = False
    archaic_preserved: bool = False

    @classmethod
    def from_value(cls, value: ApprovalChecklist | Mapping[str, Any]) -> ApprovalChecklist:
        if isinstance(value, ApprovalChecklist):
            return value
        known = {f.name for f in fields(cls)}
        unknown = set(value) - known
        if unknown:
            raise InvalidReviewInputError(f"Unknown checklist items: {sorted(unknown)}")
        return cls(**{name: bool(value.get(name, False)) for name in known})

    def missing_items(self) -> list[str]:
        return [f.name for f in fields(self) if not getattr(self, f.name)]


@dataclass
class ResolutionOutcome:
    """Result of a flag resolution."""

    flag_id: str
    revision_id: str
    status: str
    resolved_by: str
    resolved_at: str
    new_chapter_number: int | None = None


@dataclass
class ReviewData:
    """Everything a reviewer needs for the latest revision of a book."""

    book: BookRecord
    revision: RevisionRecord | None
    original: OriginalRecord | None
    chapters: list[ChapterRecord] = field(default_factory=list)
    unresolved_flags: list[FlagRecord] = field(default_factory=list)
    unresolved_by_type: dict[str, int] = field(default_factory=dict)
    is_reviewable: bool = False
    active_approval: ApprovalRecord | None = None

    @property
    def can_approve(self) -> bool:
        """Whether approval is possible once the checklist is complete."""
        return (
            self.revision is not None
            and self.is_reviewable
            and bool(self.chapters)
            and not self.unresolved_flags
        )


# =============================================================================
# FLAG RESOLUTION
# =============================================================================


def resolve_flag(
    flag_id: str,
    resolution: str,
    actor: str,
    note: str | None = None,
    *,
    resolved_at: str | None = None,
    boundary_offset: int | None = None,
    title: str | None = None,
    section_type: str = "chapter",
    blob_store: BlobStore | None = None,
) -> ResolutionOutcome:
    """Resolve an unresolved flag.

    Args:
        flag_id: Flag to resolve
        resolution: 'confirmed', 'rejected' or 'overridden'
        actor: Who resolves the flag
        note: Optional reviewer note
        resolved_at: ISO-8601 timestamp (defaults to now, UTC)
        boundary_offset: Where an overridden boundary candidate splits
            (defaults to the flag's start offset)
        title: Title of the chapter created by a boundary override
        section_type: Section type of that chapter
        blob_store: Needed to read the body for boundary overrides

    Returns:
        ResolutionOutcome

    Raises:
        InvalidReviewInputError: For an unknown resolution or empty actor
        FlagNotFoundError: If the flag does not exist
        FlagAlreadyResolvedError: If the flag is no longer unresolved
        RevisionLockedError: While a cleanup job still targets the revision
        RevisionApprovedError: If the revision is already approved
        BoundaryOverrideError: If the override cannot split a chapter there
        RevisionInvariantViolation: If the split breaks the chapter invariants
    """
    if resolution not in RESOLUTIONS:
        raise InvalidReviewInputError(
            f"Unknown resolution '{resolution}'. Expected one of: {', '.join(RESOLUTIONS)}"
        )
    if not actor or not actor.strip():
        raise InvalidReviewInputError("A resolving actor is required")

    flag = flags_repo.get_flag(flag_id)
    if flag is None:
        raise FlagNotFoundError(flag_id)
    if flag.is_resolved:
        raise FlagAlreadyResolvedError(flag_id, flag.status)

    assert_reviewable(flag.revision_id)
    if flags_repo.count_approvals(flag.revision_id) > 0:
        raise RevisionApprovedError(flag.revision_id)

    resolved_at = resolved_at or utc_now()
    promotes_boundary = resolution == "overridden" and flag.flag_type == BOUNDARY_FLAG_TYPE

    body_length = 0
    if promotes_boundary:
        if blob_store is None:
            raise InvalidReviewInputError("A blob store is required to override a boundary")
        body_length = len(get_revision_text(flag.revision_id, blob_store))

    new_chapter_number: int | None = None
    with get_db() as conn:
        if not flags_repo.mark_resolved(flag_id, resolution, actor, resolved_at, note, conn):
            raise FlagAlreadyResolvedError(flag_id)

        if promotes_boundary:
            offset = flag.start_offset if boundary_offset is None else boundary_offset
            chapters = revisions_repo.get_chapters(flag.revision_id, conn)
            containing, new_chapter = plan_boundary_split(
                chapters, offset, body_length, title=title, section_type=section_type
            )
            validate_chapters(
                _apply_split(chapters, containing, new_chapter), body_length
            )

            if containing is not None:
                revisions_repo.update_chapter_end(containing.chapter_id, offset, conn)
            revisions_repo.shift_chapter_numbers(
                flag.revision_id, new_chapter.chapter_number, 1, conn
            )
            revisions_repo.insert_chapters(flag.revision_id, [new_chapter], conn=conn)
            new_chapter_number = new_chapter.chapter_number

    if new_chapter_number is not None:
        logger.info(
            "review.boundary_promoted",
            flag_id=flag_id,
            revision_id=flag.revision_id,
            chapter_number=new_chapter_number,
        )
    logger.info(
        "review.flag_resolved",
        flag_id=flag_id,
        revision_id=flag.revision_id,
        resolution=resolution,
        actor=actor,
    )

    return ResolutionOutcome(
        flag_id=flag_id,
        revision_id=flag.revision_id,
        status=resolution,
        resolved_by=actor,
        resolved_at=resolved_at,
        new_chapter_number=new_chapter_number,
    )


def plan_boundary_split(
    chapters: Sequence[ChapterRecord],
    offset: int,
    body_length: int,
    title: str | None = None,
    section_type: str = "chapter",
) -> tuple[ChapterRecord | None, ChapterCandidate]:
    """Work out the chapter a new boundary at ``offset`` creates.

    Args:
        chapters: Current chapters ordered by number
        offset: Start of the new chapter
        body_length: Length of the revision body

    Returns:
        (containing chapter or None for a front-matter gap, new chapter)

    Raises:
        BoundaryOverrideError: If offset is outside the body or already a boundary
    """
    if not 0 <= offset < body_length:
        raise BoundaryOverrideError(offset, f"outside the revision body (length {body_length})")

    for chapter in chapters:
        if chapter.start_offset == offset:
            raise BoundaryOverrideError(offset, f"chapter {chapter.chapter_number} already starts there")
        if chapter.start_offset < offset < chapter.end_offset:
            number = chapter.chapter_number + 1
            return chapter, ChapterCandidate(
                chapter_number=number,
                title=title or f"Section {number}",
                section_type=section_type,
                start_offset=offset,
                end_offset=chapter.end_offset,
                is_user_confirmed=True,
            )

    following = [c for c in chapters if c.start_offset > offset]
    if following:
        number = following[0].chapter_number
        end = following[0].start_offset
    else:
        number = len(chapters) + 1
        end = body_length
    return None, ChapterCandidate(
        chapter_number=number,
        title=title or f"Section {number}",
        section_type=section_type,
        start_offset=offset,
        end_offset=end,
        is_user_confirmed=True,
    )


def _apply_split(
    chapters: Sequence[ChapterRecord],
    containing: ChapterRecord | None,
    new_chapter: ChapterCandidate,
) -> list[ChapterCandidate]:
    result = [new_chapter]
    for chapter in chapters:
        number = chapter.chapter_number
        if number >= new_chapter.chapter_number:
            number += 1
        end = chapter.end_offset
        if containing is not None and chapter.chapter_id == containing.chapter_id:
            end = new_chapter.start_offset
        result.append(
            ChapterCandidate(
                chapter_number=number,
                title=chapter.title,
                section_type=chapter.section_type,
                start_offset=chapter.start_offset,
                end_offset=end,
            )
        )
    return result


# =============================================================================
# QUERIES
# =============================================================================


def count_unresolved_flags(revision_id: str) -> int:
    """Number of unresolved flags on a revision."""
    get_revision(revision_id)
    return flags_repo.count_unresolved(revision_id)


def count_unresolved_by_type(revision_id: str) -> dict[str, int]:
    get_revision(revision_id)
    return flags_repo.count_unresolved_by_type(revision_id)


def list_flags(
    revision_id: str | None = None,
    book_id: str | None = None,
    status: str | None = None,
) -> list[FlagRecord]:
    if revision_id is None and book_id is None:
        raise InvalidReviewInputError("Either revision_id or book_id is required")
    return flags_repo.list_flags(revision_id=revision_id, book_id=book_id, status=status)


# =============================================================================
# APPROVAL
# =============================================================================


def approve(
    revision_id: str,
    checklist: ApprovalChecklist | Mapping[str, Any],
    actor: str,
) -> str:
    """Approve a revision for export.

    Returns:
        approval_id

    Raises:
        ApprovalBlockedError: With unresolved flags, unchecked items,
            no chapters, or an open cleanup job
        InvalidReviewInputError: For an empty actor or unknown checklist items
        RevisionNotFoundError: If the revision does not exist
    """
    if not actor or not actor.strip():
        raise InvalidReviewInputError("An approving actor is required")

    checklist = ApprovalChecklist.from_value(checklist)
    revision = get_revision(revision_id)
    missing = checklist.missing_items()

    with get_db() as conn:
        unresolved = flags_repo.count_unresolved(revision_id, conn)
        has_chapters = bool(revisions_repo.get_chapters(revision_id, conn))

        reasons: list[str] = []
        if not is_reviewable(revision_id):
            reasons.append("a cleanup job still targets this revision")
        if not has_chapters:
            reasons.append("the revision has no chapters")
        if unresolved:
            reasons.append(f"{unresolved} unresolved flag(s)")
        if missing:
            reasons.append(f"unchecked: {', '.join(missing)}")
        if reasons:
            logger.info(
                "review.approval_blocked",
                revision_id=revision_id,
                unresolved=unresolved,
                missing=missing,
            )
            raise ApprovalBlockedError(revision_id, unresolved, missing, reasons)

        sequence = flags_repo.count_approvals(revision_id, conn) + 1
        approval_id = child_id(revision_id, "approval", sequence)
        flags_repo.insert_approval(
            approval_id=approval_id,
            revision_id=revision_id,
            book_id=revision.book_id,
            approved_by=actor,
            boilerplate_removed=checklist.boilerplate_removed,
            boundaries_verified=checklist.boundaries_verified,
            punctuation_reviewed=checklist.punctuation_reviewed,
            archaic_preserved=checklist.archaic_preserved,
            conn=conn,
        )

    logger.info("review.approved", revision_id=revision_id, approval_id=approval_id, actor=actor)
    return approval_id


def get_active_approval(revision_id: str) -> ApprovalRecord | None:
    """The latest approval of a revision, which supersedes earlier ones."""
    return flags_repo.get_latest_approval(revision_id)


def get_review_data(book_id: str) -> ReviewData:
    """Collect the review view for a book's latest revision.

    Raises:
        BookNotFoundError: If the book does not exist
    """
    book = require_book(book_id)
    revision = revisions_repo.get_latest_revision(book_id)
    if revision is None:
        return ReviewData(book=book, revision=None, original=None)

    original = get_original(revision.original_id) if revision.original_id else None
    return ReviewData(
        book=book,
        revision=revision,
        original=original,
        chapters=revisions_repo.get_chapters(revision.revision_id),
        unresolved_flags=flags_repo.list_flags(
            revision_id=revision.revision_id, status="unresolved"
        ),
        unresolved_by_type=flags_repo.count_unresolved_by_type(revision.revision_id),
        is_reviewable=is_reviewable(revision.revision_id),
        active_approval=flags_repo.get_latest_approval(revision.revision_id),
    )
