"""Source normalization: EPUB spine / plain text to annotated text.

Responsibilities:
- Read EPUB spine documents in reading order (ebooklib)
- Read plain Gutenberg text as a single section
- Annotate inline formatting with a minimal plain-text grammar:
  emphasis -> *text*, small caps -> {smallcaps:text}
- Strip all other markup to its text content
- Assemble the ordered sections into one annotated document

Sections are never dropped or reordered: an empty section yields an empty
chapter. Markup that cannot be parsed degrades to tag-stripped text.

Dependencies:
- ebooklib
- beautifulsoup4
- langdetect
"""

from __future__ import annotations

import html
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import ebooklib
import structlog
from bs4 import BeautifulSoup, NavigableString, Tag, XMLParsedAsHTMLWarning
from bs4.builder import ParserRejectedMarkup
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction
from ebooklib import epub
from langdetect import DetectorFactory, detect

# Suppress XML parser warning for EPUB content
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

# Make langdetect deterministic
DetectorFactory.seed = 0

logger = structlog.get_logger(__name__)

BLOCK_TAGS = frozenset(
    {
        "address", "article", "aside", "blockquote", "body", "dd", "div", "dl",
        "dt", "figcaption", "figure", "footer", "h1", "h2", "h3", "h4", "h5",
        "h6", "header", "hr", "html", "li", "nav", "ol", "p", "pre", "section",
        "table", "tbody", "td", "th", "thead", "tr", "ul",
    }
)
DROP_TAGS = frozenset({"head", "script", "style", "title", "meta", "link"})
EMPHASIS_TAGS = frozenset({"em", "i"})
SMALLCAPS_CLASSES = frozenset({"smallcaps", "small-caps", "smcap", "sc"})

# Placeholder marking a block boundary while rendering
_BLOCK = "\x1e"
_TAG_RE = re.compile(r"<[^>]*>")
_SKIPPED_NODES = (Comment, Declaration, Doctype, ProcessingInstruction)


@dataclass
class SourceSection:
    """One reading-order section of a source (an EPUB spine document)."""

    identifier: str
    title: str
    raw_markup: str


@dataclass
class AnnotatedChapter:
    """A section after annotation."""

    identifier: str
    title: str
    annotated_text: str


@dataclass
class AnnotatedDocument:
    """Ordered annotated chapters plus the combined document text."""

    chapters: list[AnnotatedChapter]
    full_text: str
    degraded_sections: list[str] = field(default_factory=list)

    @property
    def titles(self) -> list[str]:
        return [c.title for c in self.chapters]


@dataclass
class LoadedSource:
    """Source text loaded from a file, ready to register as a book."""

    text: str
    source_format: str
    title: str | None = None
    author: str | None = None
    language: str | None = None
    section_count: int = 1


class SourceNormalizationError(Exception):
    """Base exception for source normalization errors."""

    pass


class MalformedSourceError(SourceNormalizationError):
    """Raised when markup cannot be parsed."""

    pass


class InvalidSourceError(SourceNormalizationError):
    """Raised when a source file is invalid or corrupted."""

    def __init__(self, file_path: Path, detail: str = ""):
        self.file_path = file_path
        msg = f"Invalid or corrupted source: {file_path.name}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class UnsupportedFormatError(SourceNormalizationError):
    """Raised for files that are neither .txt nor .epub."""

    def __init__(self, file_path: Path):
        self.file_path = file_path
        super().__init__(
            f"Unsupported source format: {file_path.suffix or file_path.name} "
            "(expected .txt or .epub)"
        )


# =============================================================================
# ANNOTATION
# =============================================================================


def annotate(raw_markup: str | bytes) -> str:
    """Convert inline markup to annotated plain text.

    Text between markup boundaries is kept verbatim; only whitespace at
    block boundaries and at the ends of the document is trimmed.

    Args:
        raw_markup: XHTML/HTML fragment or document

    Returns:
        Annotated text (empty string for empty markup)
    """
    text, _degraded = _annotate(raw_markup)
    return text


def _annotate(raw_markup: str | bytes) -> tuple[str, bool]:
    """Annotate markup, reporting whether it degraded to stripped text."""
    if isinstance(raw_markup, bytes):
        raw_markup = raw_markup.decode("utf-8", errors="replace")

    if not raw_markup.strip():
        return "", False

    try:
        return _annotate_markup(raw_markup), False
    except MalformedSourceError as e:
        logger.warning("source_normalizer.malformed_markup", error=str(e))
        return strip_markup(raw_markup), True


def strip_markup(raw_markup: str) -> str:
    """Degraded rendering: drop every tag and decode entities."""
    return html.unescape(_TAG_RE.sub("", raw_markup)).strip()


def _annotate_markup(raw_markup: str) -> str:
    try:
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
            soup = BeautifulSoup(raw_markup, "html.parser")
        rendered = "".join(_render(child) for child in soup.contents)
    except (ParserRejectedMarkup, AssertionError, RecursionError) as e:
        raise MalformedSourceError(str(e) or type(e).__name__) from e

    blocks = [segment.strip() for segment in rendered.split(_BLOCK)]
    return "\n\n".join(block for block in blocks if block)


def _render(node: Any) -> str:
    if isinstance(node, _SKIPPED_NODES):
        return ""
    if isinstance(node, NavigableString):
        return str(node)
    if not isinstance(node, Tag):
        return ""

    name = (node.name or "").lower()
    if name in DROP_TAGS:
        return ""
    if name == "br":
        return "\n"

    inner = "".join(_render(child) for child in node.children)

    if _is_smallcaps(node):
        inner = _wrap(inner, "{smallcaps:", "}")
    if name in EMPHASIS_TAGS:
        inner = _wrap(inner, "*", "*")
    if name in BLOCK_TAGS:
        return f"{_BLOCK}{inner}{_BLOCK}"
    return inner


def _wrap(inner: str, opener: str, closer: str) -> str:
    core = inner.strip()
    if not core:
        # Empty runs emit nothing but keep their whitespace
        return inner
    lead = inner[: len(inner) - len(inner.lstrip())]
    trail = inner[len(inner.rstrip()) :]
    return f"{lead}{opener}{core}{closer}{trail}"


def _is_smallcaps(tag: Tag) -> bool:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    if any(c.lower() in SMALLCAPS_CLASSES for c in classes):
        return True
    style = (tag.get("style") or "").lower().replace(" ", "")
    return "font-variant:small-caps" in style or "font-variant-caps:small-caps" in style


# =============================================================================
# DOCUMENT ASSEMBLY
# =============================================================================


def build_document(sections: Iterable[SourceSection]) -> AnnotatedDocument:
    """Annotate sections and join them into one document.

    Order and count are preserved exactly; there is no deduplication by
    title. The combined text carries a "## <title>" marker per section.

    Args:
        sections: Sections in reading order

    Returns:
        AnnotatedDocument with one chapter per input section
    """
    chapters: list[AnnotatedChapter] = []
    degraded: list[str] = []

    for section in sections:
        annotated, was_degraded = _annotate(section.raw_markup or "")
        if was_degraded:
            degraded.append(section.identifier)
        chapters.append(
            AnnotatedChapter(
                identifier=section.identifier,
                title=section.title,
                annotated_text=annotated,
            )
        )

    full_text = "\n\n".join(_section_block(chapter) for chapter in chapters)

    logger.debug(
        "source_normalizer.document_built",
        sections=len(chapters),
        empty_sections=sum(1 for c in chapters if not c.annotated_text),
        chars=len(full_text),
    )
    return AnnotatedDocument(chapters=chapters, full_text=full_text, degraded_sections=degraded)


def _section_block(chapter: AnnotatedChapter) -> str:
    """Render one section with its "## <title>" marker.

    When the section opens with its own heading line equal to the title,
    that line becomes the marker so the section carries a single heading.
    """
    first, sep, rest = chapter.annotated_text.partition("\n\n")
    if first.strip() and _collapse(first) == _collapse(chapter.title):
        return f"## {first.strip()}{sep}{rest}"
    return f"## {chapter.title}\n\n{chapter.annotated_text}"


def _collapse(text: str) -> str:
    return " ".join(text.split()).casefold()


def normalize(sections: Iterable[SourceSection | Mapping[str, Any]]) -> AnnotatedDocument:
    """Normalize reading-order sections into an annotated document.

    Accepts SourceSection objects or mappings with ``identifier``/``href``,
    ``title`` and ``raw_markup``/``xhtml``/``markup`` keys.
    """
    return build_document(_coerce_section(s) for s in sections)


def _coerce_section(section: SourceSection | Mapping[str, Any]) -> SourceSection:
    if isinstance(section, SourceSection):
        return section

    identifier = section.get("identifier") or section.get("href") or ""
    markup = (
        section.get("raw_markup")
        or section.get("xhtml")
        or section.get("markup")
        or ""
    )
    title = section.get("title") or identifier
    return SourceSection(identifier=str(identifier), title=str(title), raw_markup=markup)


# =============================================================================
# LOADERS
# =============================================================================


def read_plain_sections(path: Path) -> list[SourceSection]:
    """Read a plain-text file as a single section."""
    return [SourceSection(identifier=path.name, title=path.stem, raw_markup=_read_text(path))]


def _read_text(path: Path) -> str:
    raw = path.read_bytes()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _open_epub(path: Path) -> epub.EpubBook:
    try:
        return epub.read_epub(str(path))
    except Exception as e:
        raise InvalidSourceError(path, str(e)) from e


def read_epub_sections(path: Path) -> list[SourceSection]:
    """Read EPUB spine documents in reading order.

    Titles come from the TOC entry for the document, else its first
    heading, else the document name.

    Raises:
        InvalidSourceError: If the EPUB cannot be read
    """
    return _spine_sections(_open_epub(path), path)


def _spine_sections(book: epub.EpubBook, path: Path) -> list[SourceSection]:
    toc_titles = _toc_titles(book)
    sections = []
    for item in _get_spine_items(book):
        content = item.get_content()
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        name = item.get_name()
        title = toc_titles.get(name) or _first_heading(content) or name
        sections.append(SourceSection(identifier=name, title=title, raw_markup=content))

    logger.info("source_normalizer.epub_read", path=str(path), sections=len(sections))
    return sections


def _get_spine_items(book: epub.EpubBook) -> list[epub.EpubItem]:
    """Document items in spine order, falling back to manifest order."""
    items = []
    for entry in book.spine:
        idref = entry[0] if isinstance(entry, tuple) else entry
        item = book.get_item_with_id(idref)
        if item is not None and item.get_type() == ebooklib.ITEM_DOCUMENT:
            items.append(item)

    if not items:
        items = list(book.get_items_of_type(ebooklib.ITEM_DOCUMENT))
    return items


def _toc_titles(book: epub.EpubBook) -> dict[str, str]:
    titles: dict[str, str] = {}

    def visit(entry: Any) -> None:
        if isinstance(entry, epub.Link):
            href = (entry.href or "").split("#")[0]
            if href and entry.title:
                titles.setdefault(href, entry.title)
        elif isinstance(entry, tuple):
            # Section with sub-items: (Section, [items])
            section, children = entry
            href = (getattr(section, "href", "") or "").split("#")[0]
            if href and getattr(section, "title", None):
                titles.setdefault(href, section.title)
            for child in children:
                visit(child)

    for entry in book.toc or []:
        visit(entry)
    return titles


def _first_heading(markup: str) -> str | None:
    soup = BeautifulSoup(markup, "html.parser")
    heading = soup.find(["h1", "h2", "h3"])
    if heading is None:
        return None
    text = " ".join(heading.get_text().split())
    return text or None


def _epub_metadata(book: epub.EpubBook) -> dict[str, str | None]:
    def get_metadata(name: str) -> str | None:
        items = book.get_metadata("DC", name)
        if items:
            return items[0][0] if isinstance(items[0], tuple) else items[0]
        return None

    return {
        "title": get_metadata("title"),
        "creator": get_metadata("creator"),
        "language": get_metadata("language"),
    }


_GUTENBERG_FIELDS = {
    "title": re.compile(r"^Title:\s*(.+?)\s*$", re.M),
    "author": re.compile(r"^Author:\s*(.+?)\s*$", re.M),
    "language": re.compile(r"^Language:\s*(.+?)\s*$", re.M),
}

_LANGUAGE_NAMES = {"english": "en", "french": "fr", "german": "de", "spanish": "es"}


def _gutenberg_header_fields(text: str) -> dict[str, str | None]:
    """Read Title/Author/Language lines from a Gutenberg header."""
    header = text[:5000]
    fields: dict[str, str | None] = {}
    for key, pattern in _GUTENBERG_FIELDS.items():
        match = pattern.search(header)
        fields[key] = match.group(1) if match else None
    return fields


def detect_language(text: str) -> str | None:
    """Detect language of text using langdetect.

    Returns:
        ISO 639-1 language code or None if detection fails
    """
    sample = text[:10000]
    if not sample.strip():
        return None
    try:
        return detect(sample)
    except Exception as e:
        logger.debug("source_normalizer.language_detection_failed", error=str(e))
        return None


def load_source(path: Path) -> LoadedSource:
    """Load a .txt or .epub file into normalized source text.

    Plain text is kept raw (boilerplate removal happens during cleanup).
    EPUBs are annotated and assembled into one document.

    Raises:
        FileNotFoundError: If the file does not exist
        UnsupportedFormatError: For other extensions
        InvalidSourceError: For unreadable EPUBs
    """
    if not path.exists():
        raise FileNotFoundError(f"Source file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".txt":
        text = read_plain_sections(path)[0].raw_markup
        fields = _gutenberg_header_fields(text)
        language = _LANGUAGE_NAMES.get((fields["language"] or "").lower())
        return LoadedSource(
            text=text,
            source_format="gutenberg_txt",
            title=fields["title"],
            author=fields["author"],
            language=language or detect_language(text),
        )

    if suffix == ".epub":
        book = _open_epub(path)
        sections = _spine_sections(book, path)
        document = build_document(sections)
        metadata = _epub_metadata(book)
        return LoadedSource(
            text=document.full_text,
            source_format="markdown",
            title=metadata["title"],
            author=metadata["creator"],
            language=metadata["language"] or detect_language(document.full_text),
            section_count=len(sections),
        )

    raise UnsupportedFormatError(path)
