"""Tests for the deterministic cleanup engine (F2)."""

import pytest

from folio.config.cleanup_config import CleanupConfig
from folio.core.chapter_detector import detect_chapters, normalize_chapter_title
from folio.core.offsets import OffsetMap, TextEdit
from folio.core.text_cleanup import (
    CleanupState,
    UnknownStageError,
    normalize_punctuation,
    run_deterministic_cleanup,
    run_stage,
    strip_boilerplate,
    unwrap_paragraphs,
)


@pytest.fixture
def config():
    return CleanupConfig()


class TestStripBoilerplate:
    """Tests for license boilerplate removal."""

    def test_markers_removed(self, sample_text):
        """Only the text between START and END markers is kept."""
        output = strip_boilerplate(sample_text)

        assert output.text.startswith("CHAPTER I")
        assert output.text.endswith("answer...")
        assert "Project Gutenberg" not in output.text
        assert output.flags == []

    def test_no_markers_flags_and_keeps_text(self):
        """Without markers the text is unchanged and one flag is raised."""
        text = "Just a plain story.\n\nWith two paragraphs."

        output = strip_boilerplate(text)

        assert output.text == text
        assert len(output.flags) == 1
        flag = output.flags[0]
        assert flag.flag_type == "low_confidence_cleanup"
        assert flag.condition == "no_boilerplate_markers"
        assert (flag.start_offset, flag.end_offset) == (0, len(text))

    def test_missing_end_marker(self):
        """A START marker without an END marker keeps the tail and flags it."""
        text = "Header\n*** START OF THE PROJECT GUTENBERG EBOOK X ***\nBody text."

        output = strip_boilerplate(text)

        assert output.text == "Body text."
        assert [f.condition for f in output.flags] == ["missing_end_marker"]

    def test_empty_text(self):
        """Empty text produces no flags."""
        output = strip_boilerplate("")

        assert output.text == ""
        assert output.flags == []


class TestUnwrapParagraphs:
    """Tests for hard-wrap removal."""

    def test_lines_joined_with_space(self, config):
        """Wrapped lines in a paragraph become one line."""
        output = unwrap_paragraphs("first line of text\nsecond line\n\nnext para", config)

        assert output.text == "first line of text second line\n\nnext para"
        assert output.stats == {"lines_joined": 1}

    def test_heading_lines_kept(self, config):
        """A heading is never joined to the paragraph after it."""
        output = unwrap_paragraphs("CHAPTER I\nIt began.", config)

        assert output.text == "CHAPTER I\nIt began."

    def test_short_lines_flagged(self, config):
        """Joining suspiciously short lines raises a review flag."""
        text = "Roses are red,\nviolets are blue, sugar is sweet and so are you\nend"

        output = unwrap_paragraphs(text, config)

        assert output.text == "Roses are red, violets are blue, sugar is sweet and so are you end"
        assert [f.condition for f in output.flags] == ["short_line_join"]

    def test_disabled(self):
        """unwrap_paragraphs=False leaves the text alone."""
        text = "a\nb"
        output = unwrap_paragraphs(text, CleanupConfig(unwrap_paragraphs=False))

        assert output.text == text


class TestChapterDetection:
    """Tests for boundary detection."""

    def test_numbered_chapters(self, config):
        """Chapter headings split the text into contiguous chapters."""
        text = "CHAPTER I\n\nalpha\n\nCHAPTER II. The Return\n\nbeta"

        chapters, flags = detect_chapters(text, config)

        assert [c.title for c in chapters] == ["Chapter I", "Chapter II: The Return"]
        assert [c.chapter_number for c in chapters] == [1, 2]
        assert chapters[0].start_offset == 0
        assert chapters[0].end_offset == chapters[1].start_offset
        assert chapters[1].end_offset == len(text)
        assert flags == []

    def test_low_confidence_heading_flagged(self, config):
        """A weak heading below the threshold becomes a flag, not a boundary."""
        text = "Intro.\n\nTHE STORM\n\nRain."

        chapters, flags = detect_chapters(text, config)

        assert len(chapters) == 1
        assert chapters[0].section_type == "body"
        assert chapters[0].title == "Body"
        assert len(flags) == 1
        assert flags[0].flag_type == "unlabeled_boundary_candidate"
        assert text[flags[0].start_offset : flags[0].end_offset] == "THE STORM"
        assert flags[0].chapter_number == 1

    def test_threshold_configurable(self):
        """Lowering the threshold commits the same heading."""
        text = "Intro.\n\nTHE STORM\n\nRain."

        chapters, flags = detect_chapters(
            text, CleanupConfig(boundary_confidence_threshold=0.5)
        )

        assert [c.title for c in chapters] == ["The Storm"]
        assert chapters[0].start_offset == text.index("THE STORM")
        assert flags == []

    def test_section_types(self, config):
        """Preface and appendix headings get their section types."""
        text = "PREFACE\n\nWords.\n\nCHAPTER 1\n\nStory.\n\nAPPENDIX A\n\nTables."

        chapters, _flags = detect_chapters(text, config)

        assert [c.section_type for c in chapters] == ["preface", "chapter", "appendix"]

    def test_ocr_corrupted_heading(self, config):
        """OCR-damaged chapter headings commit with a corruption flag."""
        text = "CHAPTFR IV\n\nThe text."

        chapters, flags = detect_chapters(text, config)

        assert chapters[0].title == "Chapter IV"
        assert chapters[0].is_ocr_corrupted
        assert [f.flag_type for f in flags] == ["ocr_corruption_detected"]

    def test_empty_text(self, config):
        """Empty text has no chapters."""
        assert detect_chapters("", config) == ([], [])

    def test_normalize_title(self):
        """All-caps titles are title-cased; roman numerals stay upper."""
        assert normalize_chapter_title("THE  RETURN OF   THE KING") == "The Return Of The King"
        assert normalize_chapter_title("Chap. XII") == "Chapter XII"


class TestNormalizePunctuation:
    """Tests for punctuation normalization."""

    def test_canonical_forms(self, config):
        """Curly quotes, double hyphens and dotted ellipses are folded."""
        output = normalize_punctuation("“Hi,” she said--‘there’... a---b", config)

        assert output.text == "\"Hi,\" she said—'there'… a—b"

    def test_archaic_preserved_and_flagged(self, config):
        """Archaic elisions are kept verbatim and flagged."""
        text = "’Tis the night o’er the hill."

        output = normalize_punctuation(text, config)

        assert output.text == text
        assert [f.flag_type for f in output.flags] == [
            "ambiguous_punctuation",
            "ambiguous_punctuation",
        ]

    def test_archaic_normalized_when_not_preserved(self):
        """With preserve_archaic=False the apostrophes are folded."""
        output = normalize_punctuation(
            "’Tis the night o’er the hill.", CleanupConfig(preserve_archaic=False)
        )

        assert output.text == "'Tis the night o'er the hill."
        assert output.flags == []

    def test_rule_lines_untouched(self, config):
        """Horizontal rules are not turned into dashes."""
        text = "Before\n---\nAfter"

        assert normalize_punctuation(text, config).text == text

    def test_locale_keeps_low_quotes(self, config):
        """German profile keeps its low-high quotes; English folds them."""
        text = "„Hallo“"

        assert normalize_punctuation(text, CleanupConfig(locale="de")).text == text
        assert normalize_punctuation(text, config).text == '"Hallo"'


class TestDeterministicCleanup:
    """Tests for the full stage sequence."""

    def test_sample_book(self, sample_text):
        """The sample cleans to two chapters with no flags."""
        result = run_deterministic_cleanup(sample_text)

        assert [c.title for c in result.chapters] == ["Chapter I", "Chapter II: The Return"]
        assert result.flags == []
        assert "torrents—except at occasional intervals." in result.normalized_text
        assert 'He said, "Come home." She didn\'t answer…' in result.normalized_text
        assert result.stats["punctuation_replacements"] == 5

    def test_chapter_spans_follow_edits(self, sample_text):
        """Chapter spans refer to the final normalized text."""
        result = run_deterministic_cleanup(sample_text)
        text = result.normalized_text

        assert text[result.chapters[0].start_offset :].startswith("CHAPTER I\n")
        assert text[result.chapters[1].start_offset :].startswith("CHAPTER II.")
        assert result.chapters[1].end_offset == len(text)

    def test_flag_spans_follow_edits(self, flagged_text):
        """A flag raised before normalization still covers its text."""
        result = run_deterministic_cleanup(flagged_text)
        text = result.normalized_text

        assert len(result.flags) == 1
        flag = result.flags[0]
        assert text[flag.start_offset : flag.end_offset] == "* * *"
        assert flag.chapter_number == 2

    def test_deterministic(self, flagged_text):
        """Identical input and config give identical output."""
        first = run_deterministic_cleanup(flagged_text)
        second = run_deterministic_cleanup(flagged_text)

        assert first.normalized_text == second.normalized_text
        assert [c.to_dict() for c in first.chapters] == [c.to_dict() for c in second.chapters]
        assert [f.to_dict() for f in first.flags] == [f.to_dict() for f in second.flags]

    def test_empty_text(self):
        """Empty input yields empty output, no chapters and no flags."""
        result = run_deterministic_cleanup("")

        assert result.normalized_text == ""
        assert result.chapters == []
        assert result.flags == []

    def test_unmarked_text_flag_in_bounds(self):
        """The missing-marker flag is remapped through later stages."""
        text = "A story that was\nwrapped by hand\nacross lines."

        result = run_deterministic_cleanup(text)

        assert result.normalized_text == "A story that was wrapped by hand across lines."
        flag = result.flags[0]
        assert flag.condition == "no_boilerplate_markers"
        assert 0 <= flag.start_offset < flag.end_offset <= len(result.normalized_text)

    def test_unknown_stage(self, config):
        """run_stage refuses stages it does not know."""
        with pytest.raises(UnknownStageError):
            run_stage("spell_check", CleanupState(text="x"), config)

    def test_state_json(self, flagged_text, config):
        """Stage states survive persistence as JSON."""
        state = CleanupState(text=flagged_text)
        for stage in ("boilerplate_removal", "paragraph_unwrap", "chapter_detection"):
            state = run_stage(stage, state, config)

        restored = CleanupState.from_json(state.to_json())

        assert restored == state


class TestOffsetMap:
    """Tests for position remapping."""

    def test_positions_shift_after_edit(self):
        """Positions after a shrinking edit move left."""
        offset_map = OffsetMap([TextEdit(2, 4, 1)], 10)

        assert offset_map.map_position(1) == 1
        assert offset_map.map_position(5) == 4
        assert offset_map.target_length == 9

    def test_position_inside_edit_snaps(self):
        """A position inside a replaced region snaps to its edges."""
        offset_map = OffsetMap([TextEdit(2, 5, 1)], 10)

        assert offset_map.map_position(3, "left") == 2
        assert offset_map.map_position(3, "right") == 3

    def test_deleted_span_keeps_anchor(self):
        """A span whose text was deleted maps to a one-char anchor."""
        offset_map = OffsetMap([TextEdit(0, 4, 0)], 10)

        assert offset_map.map_span(0, 4) == (0, 1)

    def test_empty_target(self):
        """Nothing can be mapped into empty text."""
        assert OffsetMap([TextEdit(0, 3, 0)], 3).map_span(0, 3) is None

    def test_overlapping_edits_rejected(self):
        """Overlapping edits are a programming error."""
        with pytest.raises(ValueError):
            OffsetMap([TextEdit(0, 4, 1), TextEdit(3, 6, 1)], 10)
