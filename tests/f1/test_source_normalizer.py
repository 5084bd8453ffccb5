"""Tests for source normalization (F1)."""

from unittest.mock import patch

import pytest
from ebooklib import epub

from folio.core.source_normalizer import (
    InvalidSourceError,
    SourceSection,
    UnsupportedFormatError,
    annotate,
    build_document,
    load_source,
    normalize,
)
from folio.core.text_cleanup import run_deterministic_cleanup


class TestAnnotate:
    """Tests for inline markup annotation."""

    def test_emphasis_and_smallcaps(self):
        """Emphasis and small caps become plain-text annotations."""
        markup = '<p>He said <em>Hello</em> to <span class="smallcaps">Rome</span>.</p>'
        assert annotate(markup) == "He said *Hello* to {smallcaps:Rome}."

    def test_italic_tag_and_smallcaps_style(self):
        """<i> and a font-variant style are recognized too."""
        markup = (
            '<p><i>Vale</i>, said <span style="font-variant: small-caps">Cato</span></p>'
        )
        assert annotate(markup) == "*Vale*, said {smallcaps:Cato}"

    def test_blocks_become_paragraphs(self):
        """Block elements are separated by a blank line."""
        assert annotate("<p>One</p><p>Two</p>") == "One\n\nTwo"

    def test_line_break(self):
        """<br> keeps a single newline inside a block."""
        assert annotate("<p>first<br/>second</p>") == "first\nsecond"

    def test_head_and_scripts_dropped(self):
        """Document head, scripts and styles contribute no text."""
        markup = (
            "<html><head><title>T</title><style>p {}</style></head>"
            "<body><script>x()</script><p>Body text</p></body></html>"
        )
        assert annotate(markup) == "Body text"

    def test_entities_decoded(self):
        """Character entities are decoded."""
        assert annotate("<p>Fish &amp; chips</p>") == "Fish & chips"

    def test_other_markup_stripped(self):
        """Unknown inline tags keep only their text."""
        assert annotate('<p>A <a href="#n1">note</a> here</p>') == "A note here"

    def test_empty_markup(self):
        """Empty or blank markup yields an empty string."""
        assert annotate("") == ""
        assert annotate("   \n") == ""

    def test_bytes_input(self):
        """UTF-8 bytes are accepted."""
        assert annotate("<p>Café</p>".encode("utf-8")) == "Café"

    def test_annotated_text_is_stable(self):
        """Annotating already-annotated text changes nothing."""
        once = annotate("<p>He said <em>Hello</em>.</p>")
        assert annotate(once) == once

    def test_unparseable_markup_degrades(self):
        """Parser failures fall back to tag-stripped text."""
        with patch(
            "folio.core.source_normalizer.BeautifulSoup",
            side_effect=AssertionError("bad markup"),
        ):
            assert annotate("<p>Fish &amp; <b>chips</b></p>") == "Fish & chips"


class TestBuildDocument:
    """Tests for document assembly."""

    def test_order_and_count_preserved(self):
        """Sections keep their order; duplicate titles are not merged."""
        sections = [
            SourceSection("c1.xhtml", "Part", "<p>one</p>"),
            SourceSection("c2.xhtml", "Part", "<p>two</p>"),
            SourceSection("c3.xhtml", "End", "<p>three</p>"),
        ]

        document = build_document(sections)

        assert document.titles == ["Part", "Part", "End"]
        assert [c.annotated_text for c in document.chapters] == ["one", "two", "three"]
        assert document.full_text.index("one") < document.full_text.index("two")

    def test_section_markers_follow_reading_order(self):
        """Each section's heading marker precedes the next section's."""
        sections = [
            SourceSection(f"c{n}.xhtml", f"Chapter {n}", f"<p>Body of part {n}.</p>")
            for n in range(1, 4)
        ]

        document = build_document(sections)

        text = document.full_text
        assert text.index("## Chapter 1") < text.index("## Chapter 2") < text.index("## Chapter 3")

    def test_own_heading_becomes_marker(self):
        """A section opening with its title carries one heading, not two."""
        sections = [
            SourceSection("c1.xhtml", "Chapter I", "<h1>Chapter I</h1><p>Text 1 here.</p>"),
            SourceSection("c2.xhtml", "Chapter  ii", "<h1>Chapter II</h1><p>Text 2 here.</p>"),
            SourceSection("c3.xhtml", "Notes", "<h1>Endnotes</h1><p>Text 3 here.</p>"),
        ]

        document = build_document(sections)

        assert document.full_text == (
            "## Chapter I\n\nText 1 here.\n\n"
            "## Chapter II\n\nText 2 here.\n\n"
            "## Notes\n\nEndnotes\n\nText 3 here."
        )
        assert document.chapters[0].annotated_text == "Chapter I\n\nText 1 here."

    def test_empty_section_kept(self):
        """An empty section yields an empty chapter, not a missing one."""
        sections = [
            SourceSection("c1.xhtml", "One", "<p>text</p>"),
            SourceSection("c2.xhtml", "Blank", ""),
        ]

        document = build_document(sections)

        assert len(document.chapters) == 2
        assert document.chapters[1].annotated_text == ""
        assert "## Blank" in document.full_text

    def test_degraded_sections_recorded(self):
        """Sections that fell back to stripped text are listed."""
        with patch(
            "folio.core.source_normalizer.BeautifulSoup",
            side_effect=AssertionError("bad markup"),
        ):
            document = build_document([SourceSection("bad.xhtml", "Bad", "<p>x</p>")])

        assert document.degraded_sections == ["bad.xhtml"]
        assert document.chapters[0].annotated_text == "x"

    def test_normalize_accepts_mappings(self):
        """normalize() takes spine entries as plain mappings."""
        document = normalize(
            [{"href": "c1.xhtml", "title": "One", "xhtml": "<p><em>x</em></p>"}]
        )

        assert document.chapters[0].identifier == "c1.xhtml"
        assert document.chapters[0].annotated_text == "*x*"


class TestLoadSource:
    """Tests for loading source files."""

    def test_load_gutenberg_txt(self, temp_dir, sample_text):
        """Plain text keeps its body and reads the Gutenberg header."""
        path = temp_dir / "tales.txt"
        path.write_bytes(sample_text.replace("\n", "\r\n").encode("utf-8"))

        loaded = load_source(path)

        assert loaded.source_format == "gutenberg_txt"
        assert loaded.title == "Sample Tales"
        assert loaded.author == "Jane Doe"
        assert loaded.language == "en"
        assert "\r" not in loaded.text
        assert "*** START OF THE PROJECT GUTENBERG" in loaded.text

    def test_load_epub(self, temp_dir):
        """EPUB spine documents are annotated in reading order."""
        book = epub.EpubBook()
        book.set_identifier("tiny-1")
        book.set_title("Tiny Book")
        book.set_language("en")
        book.add_author("Jane Doe")

        first = epub.EpubHtml(title="First", file_name="c1.xhtml", lang="en")
        first.content = "<html><body><h1>First</h1><p>He said <em>Hello</em>.</p></body></html>"
        second = epub.EpubHtml(title="Second", file_name="c2.xhtml", lang="en")
        second.content = "<html><body><h1>Second</h1><p>Goodbye.</p></body></html>"
        book.add_item(first)
        book.add_item(second)
        book.toc = (
            epub.Link("c1.xhtml", "First", "c1"),
            epub.Link("c2.xhtml", "Second", "c2"),
        )
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = [first, second]

        path = temp_dir / "tiny.epub"
        epub.write_epub(str(path), book)

        loaded = load_source(path)

        assert loaded.source_format == "markdown"
        assert loaded.title == "Tiny Book"
        assert loaded.author == "Jane Doe"
        assert loaded.section_count == 2
        assert "He said *Hello*." in loaded.text
        assert loaded.text.index("Hello") < loaded.text.index("Goodbye")

    def test_epub_headings_give_one_chapter_per_document(self, temp_dir):
        """Spine documents repeating their TOC title as <h1> clean to one chapter each."""
        book = epub.EpubBook()
        book.set_identifier("headed-1")
        book.set_title("Headed Book")
        book.set_language("en")
        documents = []
        for number, numeral in [(1, "I"), (2, "II")]:
            document = epub.EpubHtml(
                title=f"Chapter {numeral}", file_name=f"c{number}.xhtml", lang="en"
            )
            document.content = (
                f"<html><body><h1>Chapter {numeral}</h1><p>Text {number} here.</p></body></html>"
            )
            book.add_item(document)
            documents.append(document)
        book.toc = tuple(
            epub.Link(d.file_name, d.title, d.file_name.split(".")[0]) for d in documents
        )
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = documents

        path = temp_dir / "headed.epub"
        epub.write_epub(str(path), book)

        result = run_deterministic_cleanup(load_source(path).text)

        assert [c.title for c in result.chapters] == ["Chapter I", "Chapter II"]
        text = result.normalized_text
        assert [text[c.start_offset : c.end_offset].strip() for c in result.chapters] == [
            "## Chapter I\n\nText 1 here.",
            "## Chapter II\n\nText 2 here.",
        ]

    def test_missing_file(self, temp_dir):
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_source(temp_dir / "missing.txt")

    def test_unsupported_extension(self, temp_dir):
        """Only .txt and .epub are accepted."""
        path = temp_dir / "book.pdf"
        path.write_bytes(b"%PDF-1.4")

        with pytest.raises(UnsupportedFormatError):
            load_source(path)

    def test_corrupted_epub(self, temp_dir):
        """An unreadable EPUB raises InvalidSourceError."""
        path = temp_dir / "broken.epub"
        path.write_bytes(b"not a zip archive")

        with pytest.raises(InvalidSourceError):
            load_source(path)
