"""Tests for flag resolution and approval (F4)."""

import pytest

from folio.core.cleanup_models import ChapterCandidate, FlagCandidate
from folio.core.review_workflow import (
    ApprovalBlockedError,
    ApprovalChecklist,
    BoundaryOverrideError,
    FlagAlreadyResolvedError,
    FlagNotFoundError,
    InvalidReviewInputError,
    approve,
    count_unresolved_flags,
    get_active_approval,
    get_review_data,
    list_flags,
    plan_boundary_split,
    resolve_flag,
)
from folio.core.revision_store import create_revision, get_chapters, get_revision_state
from folio.db.flags_repository import get_flag

BODY = "AAAA\n\nBBBB\n\nCCCC"

FULL_CHECKLIST = {
    "boilerplate_removed": True,
    "boundaries_verified": True,
    "punctuation_reviewed": True,
    "archaic_preserved": True,
}


def chapter(number, start, end, title=None):
    return ChapterCandidate(
        chapter_number=number,
        title=title or f"Chapter {number}",
        section_type="chapter",
        start_offset=start,
        end_offset=end,
    )


def boundary_flag(start, end, chapter_number=None):
    return FlagCandidate(
        flag_type="unlabeled_boundary_candidate",
        start_offset=start,
        end_offset=end,
        context_text=BODY[start:end],
        condition="ambiguous_boundary",
        chapter_number=chapter_number,
    )


def cleanup_flag(start, end):
    return FlagCandidate(
        flag_type="low_confidence_cleanup",
        start_offset=start,
        end_offset=end,
        context_text=BODY[start:end],
        condition="short_line_join",
    )


@pytest.fixture
def revision_with_flags(blob_store, make_book):
    """Two chapters; a boundary candidate inside chapter 1 and a cleanup flag."""
    book_id = make_book()
    revision_id = create_revision(
        book_id,
        "system",
        [chapter(1, 0, 10), chapter(2, 10, 16)],
        blob_store=blob_store,
        body=BODY,
        flags=[boundary_flag(6, 10, chapter_number=1), cleanup_flag(12, 16)],
    )
    flags = list_flags(revision_id=revision_id)
    return revision_id, {f.flag_type: f.flag_id for f in flags}


class TestResolveFlag:
    """Tests for one-way flag resolution."""

    def test_confirm_records_reviewer(self, revision_with_flags):
        """Resolution stores status, actor, time and note."""
        _revision_id, flag_ids = revision_with_flags
        flag_id = flag_ids["low_confidence_cleanup"]

        outcome = resolve_flag(
            flag_id, "confirmed", "ana", "looks right", resolved_at="2026-01-01T00:00:00+00:00"
        )

        record = get_flag(flag_id)
        assert outcome.status == "confirmed"
        assert record.status == "confirmed"
        assert record.resolved_by == "ana"
        assert record.resolved_at == "2026-01-01T00:00:00+00:00"
        assert record.reviewer_note == "looks right"

    def test_resolution_is_one_way(self, revision_with_flags):
        """A resolved flag cannot be resolved again."""
        _revision_id, flag_ids = revision_with_flags
        flag_id = flag_ids["low_confidence_cleanup"]
        resolve_flag(flag_id, "rejected", "ana")

        with pytest.raises(FlagAlreadyResolvedError) as exc_info:
            resolve_flag(flag_id, "confirmed", "ben")

        assert exc_info.value.status == "rejected"
        assert get_flag(flag_id).resolved_by == "ana"

    def test_invalid_input(self, revision_with_flags):
        """Unknown resolutions and empty actors are refused."""
        _revision_id, flag_ids = revision_with_flags
        flag_id = flag_ids["low_confidence_cleanup"]

        with pytest.raises(InvalidReviewInputError):
            resolve_flag(flag_id, "ignored", "ana")
        with pytest.raises(InvalidReviewInputError):
            resolve_flag(flag_id, "confirmed", "  ")
        assert get_flag(flag_id).status == "unresolved"

    def test_unknown_flag(self, init_test_db):
        """Resolving a missing flag raises FlagNotFoundError."""
        with pytest.raises(FlagNotFoundError):
            resolve_flag("flag-000000000000", "confirmed", "ana")

    def test_override_without_boundary_keeps_chapters(self, revision_with_flags, blob_store):
        """Overriding a non-boundary flag does not touch chapters."""
        revision_id, flag_ids = revision_with_flags

        outcome = resolve_flag(
            flag_ids["low_confidence_cleanup"], "overridden", "ana", blob_store=blob_store
        )

        assert outcome.new_chapter_number is None
        assert len(get_chapters(revision_id)) == 2

    def test_rejecting_boundary_keeps_chapters(self, revision_with_flags):
        """Rejecting a boundary candidate leaves the chapter set alone."""
        revision_id, flag_ids = revision_with_flags

        resolve_flag(flag_ids["unlabeled_boundary_candidate"], "rejected", "ana")

        assert len(get_chapters(revision_id)) == 2
        assert count_unresolved_flags(revision_id) == 1


class TestBoundaryOverride:
    """Tests for promoting a boundary candidate to a chapter."""

    def test_split_and_renumber(self, revision_with_flags, blob_store):
        """The containing chapter is split and later chapters shift up."""
        revision_id, flag_ids = revision_with_flags

        outcome = resolve_flag(
            flag_ids["unlabeled_boundary_candidate"], "overridden", "ana", blob_store=blob_store
        )

        chapters = get_chapters(revision_id)
        assert outcome.new_chapter_number == 2
        assert [(c.chapter_number, c.start_offset, c.end_offset) for c in chapters] == [
            (1, 0, 6),
            (2, 6, 10),
            (3, 10, 16),
        ]
        assert chapters[1].title == "Section 2"
        assert chapters[1].is_user_confirmed
        assert chapters[2].title == "Chapter 2"

    def test_split_in_front_matter_gap(self, blob_store, make_book):
        """A boundary before the first chapter fills the gap up to it."""
        book_id = make_book()
        revision_id = create_revision(
            book_id,
            "system",
            [chapter(1, 6, 16)],
            blob_store=blob_store,
            body=BODY,
            flags=[boundary_flag(0, 4)],
        )
        [flag] = list_flags(revision_id=revision_id)

        resolve_flag(
            flag.flag_id,
            "overridden",
            "ana",
            title="Preface",
            section_type="preface",
            blob_store=blob_store,
        )

        chapters = get_chapters(revision_id)
        assert [(c.chapter_number, c.title, c.start_offset, c.end_offset) for c in chapters] == [
            (1, "Preface", 0, 6),
            (2, "Chapter 1", 6, 16),
        ]
        assert chapters[0].section_type == "preface"

    def test_existing_boundary_refused(self, revision_with_flags, blob_store):
        """A boundary where a chapter already starts is refused, atomically."""
        revision_id, flag_ids = revision_with_flags
        flag_id = flag_ids["unlabeled_boundary_candidate"]

        with pytest.raises(BoundaryOverrideError):
            resolve_flag(flag_id, "overridden", "ana", boundary_offset=10, blob_store=blob_store)

        assert get_flag(flag_id).status == "unresolved"
        assert len(get_chapters(revision_id)) == 2

    def test_offset_outside_body(self, revision_with_flags, blob_store):
        """Offsets past the body end are refused."""
        _revision_id, flag_ids = revision_with_flags

        with pytest.raises(BoundaryOverrideError):
            resolve_flag(
                flag_ids["unlabeled_boundary_candidate"],
                "overridden",
                "ana",
                boundary_offset=99,
                blob_store=blob_store,
            )

    def test_plan_after_last_chapter(self):
        """A boundary after every chapter appends a new last chapter."""

        class Row:
            def __init__(self, number, start, end):
                self.chapter_id = str(number)
                self.chapter_number = number
                self.start_offset = start
                self.end_offset = end

        containing, new_chapter = plan_boundary_split([Row(1, 0, 4)], 12, 16)

        assert containing is None
        assert (new_chapter.chapter_number, new_chapter.start_offset, new_chapter.end_offset) == (
            2,
            12,
            16,
        )


class TestApproval:
    """Tests for the approval gate."""

    def test_blocked_by_unresolved_flags(self, revision_with_flags):
        """Unresolved flags block approval."""
        revision_id, _flag_ids = revision_with_flags

        with pytest.raises(ApprovalBlockedError) as exc_info:
            approve(revision_id, FULL_CHECKLIST, "ana")

        assert exc_info.value.unresolved_count == 2
        assert get_active_approval(revision_id) is None

    def test_blocked_by_checklist(self, blob_store, make_book):
        """Every checklist item must be checked."""
        book_id = make_book()
        revision_id = create_revision(book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY)

        with pytest.raises(ApprovalBlockedError) as exc_info:
            approve(revision_id, {"boilerplate_removed": True}, "ana")

        assert exc_info.value.missing_checklist_items == [
            "boundaries_verified",
            "punctuation_reviewed",
            "archaic_preserved",
        ]

    def test_blocked_without_chapters(self, blob_store, make_book):
        """A revision with no chapters cannot be approved."""
        book_id = make_book()
        revision_id = create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)

        with pytest.raises(ApprovalBlockedError) as exc_info:
            approve(revision_id, FULL_CHECKLIST, "ana")

        assert "the revision has no chapters" in exc_info.value.reasons

    def test_approve_after_resolving(self, revision_with_flags, blob_store):
        """Approval succeeds once every flag is resolved."""
        revision_id, flag_ids = revision_with_flags
        resolve_flag(flag_ids["unlabeled_boundary_candidate"], "overridden", "ana", blob_store=blob_store)
        resolve_flag(flag_ids["low_confidence_cleanup"], "confirmed", "ana")

        approval_id = approve(revision_id, ApprovalChecklist(**FULL_CHECKLIST), "ana")

        assert approval_id == f"{revision_id}:approval:1"
        assert get_revision_state(revision_id) == "approved"
        assert get_active_approval(revision_id).approved_by == "ana"

    def test_reapproval_appends(self, blob_store, make_book):
        """Approving again adds a record; the latest one is active."""
        book_id = make_book()
        revision_id = create_revision(book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY)

        approve(revision_id, FULL_CHECKLIST, "ana")
        second = approve(revision_id, FULL_CHECKLIST, "ben")

        assert second == f"{revision_id}:approval:2"
        active = get_active_approval(revision_id)
        assert active.approval_id == second
        assert active.approved_by == "ben"

    def test_unknown_checklist_item(self):
        """Unknown checklist keys are refused."""
        with pytest.raises(InvalidReviewInputError):
            ApprovalChecklist.from_value({"spelling_modernized": True})


class TestReviewData:
    """Tests for the reviewer's view of a book."""

    def test_book_without_revisions(self, make_book):
        """A freshly imported book has nothing to review."""
        data = get_review_data(make_book())

        assert data.revision is None
        assert not data.can_approve

    def test_latest_revision_summary(self, revision_with_flags):
        """Review data lists chapters and unresolved flags by type."""
        revision_id, _flag_ids = revision_with_flags
        book_id = revision_id.split(":")[0]

        data = get_review_data(book_id)

        assert data.revision.revision_id == revision_id
        assert len(data.chapters) == 2
        assert data.unresolved_by_type == {
            "low_confidence_cleanup": 1,
            "unlabeled_boundary_candidate": 1,
        }
        assert data.is_reviewable
        assert not data.can_approve
