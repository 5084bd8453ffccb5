"""Tests for originals, revisions and chapter sets (F3)."""

import sqlite3
from unittest.mock import patch

import pytest

from folio.core.cleanup_models import ChapterCandidate, FlagCandidate
from folio.core.revision_store import (
    ChapterNotFoundError,
    ParentRevisionError,
    RevisionInvariantViolation,
    RevisionNotFoundError,
    RevisionNumberConflictError,
    capture_original,
    check_layout,
    create_revision,
    get_chapter_text,
    get_chapters,
    get_lineage,
    get_original,
    get_original_text,
    get_revision,
    get_revision_state,
    get_revision_text,
    list_revisions,
)
from folio.db.blob_store import BlobNotFoundError, InlineContent
from folio.db.books_repository import get_book_by_id
from folio.db.database import begin_immediate, get_db, utc_now
from folio.db.revisions_repository import insert_chapters, shift_chapter_numbers
from folio.db.flags_repository import insert_approval, list_flags

BODY = "AAAA\n\nBBBB\n\nCCCC"


def chapter(number, start, end, title=None, section_type="chapter"):
    return ChapterCandidate(
        chapter_number=number,
        title=title or f"Chapter {number}",
        section_type=section_type,
        start_offset=start,
        end_offset=end,
    )


def flag(start, end, flag_type="low_confidence_cleanup", chapter_number=None):
    return FlagCandidate(
        flag_type=flag_type,
        start_offset=start,
        end_offset=end,
        context_text=BODY[start:end],
        condition="test",
        chapter_number=chapter_number,
    )


class TestCaptureOriginal:
    """Tests for capturing the immutable source."""

    def test_capture_idempotent(self, blob_store, make_book, sample_text):
        """Capturing the same source twice returns the same Original."""
        book_id = make_book()

        first = capture_original(book_id, blob_store)
        second = capture_original(book_id, blob_store)

        assert first == second
        assert first.startswith(f"{book_id}:orig:")
        assert get_original(first).sha256 == get_book_by_id(book_id).sha256
        assert get_original_text(first, blob_store) == sample_text

    def test_missing_source_blob(self, blob_store, make_book):
        """A source body missing from the blob store cannot be captured."""
        book_id = make_book()
        blob_id = get_book_by_id(book_id).source_blob_id
        (blob_store.root / blob_id[:2] / blob_id).unlink()

        with pytest.raises(BlobNotFoundError):
            capture_original(book_id, blob_store)


class TestCreateRevision:
    """Tests for revision creation."""

    def test_numbers_are_monotonic(self, blob_store, make_book):
        """Revision numbers count up per book."""
        book_id = make_book()

        first = create_revision(book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY)
        second = create_revision(book_id, "user", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY)

        assert first == f"{book_id}:rev:1"
        assert second == f"{book_id}:rev:2"
        assert [r.revision_number for r in list_revisions(book_id)] == [1, 2]

    def test_provenance_flags(self, blob_store, make_book):
        """is_deterministic and is_ai_assisted follow the provenance."""
        book_id = make_book()

        system_id = create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)
        ai_id = create_revision(
            book_id, "ai", [], blob_store=blob_store, parent_revision_id=system_id
        )

        system = get_revision(system_id)
        ai = get_revision(ai_id)
        assert system.is_deterministic and not system.is_ai_assisted
        assert ai.is_ai_assisted and not ai.is_deterministic

    def test_child_inherits_from_parent(self, blob_store, make_book):
        """Body, original and preserve_archaic default to the parent's."""
        book_id = make_book()
        original_id = capture_original(book_id, blob_store)
        parent_id = create_revision(
            book_id,
            "system",
            [chapter(1, 0, 16)],
            blob_store=blob_store,
            body=BODY,
            original_id=original_id,
            preserve_archaic=False,
        )

        child_id = create_revision(
            book_id, "user", [chapter(1, 0, 16)], blob_store=blob_store, parent_revision_id=parent_id
        )

        child = get_revision(child_id)
        assert child.parent_revision_id == parent_id
        assert child.original_id == original_id
        assert child.preserve_archaic is False
        assert get_revision_text(child_id, blob_store) == BODY

    def test_body_stored_as_blob(self, blob_store, make_book):
        """New revisions reference the blob store, never an inline body."""
        book_id = make_book()

        revision_id = create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)

        revision = get_revision(revision_id)
        assert not isinstance(revision.content, InlineContent)
        assert blob_store.get_text(revision.content.blob_id) == BODY

    def test_parent_from_other_book(self, blob_store, make_book):
        """A parent from another book is refused."""
        first = make_book()
        second = make_book(text="another source", title="Other")
        parent_id = create_revision(first, "system", [], blob_store=blob_store, body=BODY)

        with pytest.raises(ParentRevisionError):
            create_revision(second, "user", [], blob_store=blob_store, parent_revision_id=parent_id)

    def test_unknown_parent(self, blob_store, make_book):
        """A missing parent raises RevisionNotFoundError."""
        book_id = make_book()

        with pytest.raises(RevisionNotFoundError):
            create_revision(
                book_id, "user", [], blob_store=blob_store, parent_revision_id=f"{book_id}:rev:9"
            )

    def test_unknown_provenance(self, blob_store, make_book):
        """Provenance must be system, ai or user."""
        book_id = make_book()

        with pytest.raises(RevisionInvariantViolation):
            create_revision(book_id, "robot", [], blob_store=blob_store, body=BODY)

    def test_revision_number_taken_concurrently(self, blob_store, make_book):
        """Losing a revision number to another writer is a domain error."""
        book_id = make_book()
        create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)

        with patch("folio.db.revisions_repository.next_revision_number", return_value=1):
            with pytest.raises(RevisionNumberConflictError) as exc_info:
                create_revision(
                    book_id, "user", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY
                )

        assert exc_info.value.revision_number == 1
        assert [r.revision_number for r in list_revisions(book_id)] == [1]

    def test_allocation_holds_write_lock(self, init_test_db):
        """A second writer cannot start while the lock is held."""
        with get_db() as conn:
            begin_immediate(conn)
            assert conn.in_transaction
            other = sqlite3.connect(init_test_db, timeout=0)
            try:
                with pytest.raises(sqlite3.OperationalError):
                    other.execute("BEGIN IMMEDIATE")
            finally:
                other.close()

    def test_flags_attached_to_chapters(self, blob_store, make_book):
        """Flags carrying a chapter number are linked to that chapter."""
        book_id = make_book()

        revision_id = create_revision(
            book_id,
            "system",
            [chapter(1, 0, 6), chapter(2, 6, 16)],
            blob_store=blob_store,
            body=BODY,
            flags=[flag(6, 10, chapter_number=2)],
        )

        chapters = get_chapters(revision_id)
        [record] = list_flags(revision_id=revision_id)
        assert record.chapter_id == chapters[1].chapter_id
        assert record.status == "unresolved"


class TestChapterInvariants:
    """Tests for chapter-set validation."""

    @pytest.mark.parametrize(
        "chapters",
        [
            [chapter(1, 0, 6), chapter(3, 6, 16)],
            [chapter(1, 0, 10), chapter(2, 6, 16)],
            [chapter(1, 4, 4)],
            [chapter(1, 0, 17)],
            [chapter(1, 0, 16, section_type="epilogue")],
        ],
        ids=["numbering-gap", "overlap", "empty-span", "out-of-bounds", "section-type"],
    )
    def test_invalid_chapter_sets(self, blob_store, make_book, chapters):
        """Invalid chapter sets are refused and nothing is written."""
        book_id = make_book()

        with pytest.raises(RevisionInvariantViolation):
            create_revision(book_id, "system", chapters, blob_store=blob_store, body=BODY)

        assert list_revisions(book_id) == []

    def test_gaps_between_chapters_allowed(self, blob_store, make_book):
        """Chapters need not cover the whole body."""
        book_id = make_book()

        revision_id = create_revision(
            book_id, "system", [chapter(1, 6, 10), chapter(2, 12, 16)], blob_store=blob_store, body=BODY
        )

        assert [c.chapter_number for c in get_chapters(revision_id)] == [1, 2]

    def test_duplicate_chapter_number_refused(self, blob_store, make_book):
        """The store itself refuses two chapters with one number."""
        book_id = make_book()
        revision_id = create_revision(
            book_id, "system", [chapter(1, 0, 4)], blob_store=blob_store, body=BODY
        )

        with pytest.raises(sqlite3.IntegrityError):
            insert_chapters(revision_id, [chapter(1, 6, 10)])

        assert len(get_chapters(revision_id)) == 1

    def test_shift_renumbers_without_collisions(self, blob_store, make_book):
        """Shifting consecutive numbers up keeps them unique and ordered."""
        book_id = make_book()
        revision_id = create_revision(
            book_id,
            "system",
            [chapter(1, 0, 4), chapter(2, 6, 10), chapter(3, 12, 16)],
            blob_store=blob_store,
            body=BODY,
        )

        with get_db() as conn:
            assert shift_chapter_numbers(revision_id, 2, 1, conn) == 2

        chapters = get_chapters(revision_id)
        assert [c.chapter_number for c in chapters] == [1, 3, 4]
        assert [c.start_offset for c in chapters] == [0, 6, 12]

    def test_invalid_flag_span(self, blob_store, make_book):
        """Flag spans must be non-empty and inside the body."""
        book_id = make_book()

        with pytest.raises(RevisionInvariantViolation):
            create_revision(
                book_id, "system", [], blob_store=blob_store, body=BODY, flags=[flag(10, 40)]
            )

    def test_all_or_nothing(self, blob_store, make_book):
        """A failure while writing flags rolls back the revision and chapters."""
        book_id = make_book()

        with patch(
            "folio.core.revision_store.insert_flags",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            with pytest.raises(sqlite3.OperationalError):
                create_revision(
                    book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY
                )

        assert list_revisions(book_id) == []
        with get_db() as conn:
            assert conn.execute("SELECT COUNT(*) FROM chapters").fetchone()[0] == 0


class TestQueries:
    """Tests for lineage, chapter text and derived state."""

    def test_lineage_nearest_first(self, blob_store, make_book):
        """get_lineage walks parent links back to the root."""
        book_id = make_book()
        first = create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)
        second = create_revision(book_id, "ai", [], blob_store=blob_store, parent_revision_id=first)
        third = create_revision(book_id, "user", [], blob_store=blob_store, parent_revision_id=second)

        assert [r.revision_id for r in get_lineage(third)] == [third, second, first]

    def test_chapter_text(self, blob_store, make_book):
        """Chapter text is sliced from the revision body."""
        book_id = make_book()
        revision_id = create_revision(
            book_id, "system", [chapter(1, 0, 6), chapter(2, 6, 16)], blob_store=blob_store, body=BODY
        )

        assert get_chapter_text(revision_id, 2, blob_store) == "BBBB\n\nCCCC"
        with pytest.raises(ChapterNotFoundError):
            get_chapter_text(revision_id, 3, blob_store)

    def test_revision_states(self, blob_store, make_book):
        """State is derived from chapters, flags and approvals."""
        book_id = make_book()
        created = create_revision(book_id, "system", [], blob_store=blob_store, body=BODY)
        flagged = create_revision(
            book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY, flags=[flag(0, 4)]
        )
        clean = create_revision(book_id, "system", [chapter(1, 0, 16)], blob_store=blob_store, body=BODY)

        assert get_revision_state(created) == "created"
        assert get_revision_state(flagged) == "flagged"
        assert get_revision_state(clean) == "clean"

        insert_approval(
            approval_id=f"{clean}:approval:1",
            revision_id=clean,
            book_id=book_id,
            approved_by="ana",
            boilerplate_removed=True,
            boundaries_verified=True,
            punctuation_reviewed=True,
            archaic_preserved=True,
        )
        assert get_revision_state(clean) == "approved"


class TestCheckLayout:
    """Tests for the inline-body layout check."""

    def _insert_inline_revision(self, book_id, revision_id, content):
        with get_db() as conn:
            conn.execute(
                """
                INSERT INTO revisions (
                    revision_id, book_id, revision_number, provenance,
                    is_deterministic, is_ai_assisted, preserve_archaic,
                    content, blob_id, size_bytes, created_at
                ) VALUES (?, ?, 1, 'system', 1, 0, 1, ?, NULL, ?, ?)
                """,
                (revision_id, book_id, content, len(content.encode("utf-8")), utc_now()),
            )

    def test_clean_layout(self, blob_store, make_book):
        """Blob-backed revisions never trip the check."""
        book_id = make_book()
        create_revision(book_id, "system", [], blob_store=blob_store, body=BODY * 10)

        assert check_layout(16) == []

    def test_oversized_inline_body_reported(self, blob_store, make_book):
        """Legacy inline bodies above the threshold are reported."""
        book_id = make_book()
        revision_id = f"{book_id}:rev:1"
        self._insert_inline_revision(book_id, revision_id, "x" * 100)

        assert check_layout(64) == [("revisions", revision_id)]
        assert check_layout(1000) == []

    def test_inline_body_still_readable(self, blob_store, make_book):
        """Legacy inline bodies resolve through the same accessor."""
        book_id = make_book()
        revision_id = f"{book_id}:rev:1"
        self._insert_inline_revision(book_id, revision_id, "legacy body")

        assert get_revision_text(revision_id, blob_store) == "legacy body"
