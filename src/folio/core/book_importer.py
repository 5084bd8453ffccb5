"""Book import orchestrator.

Responsibilities:
- Load a .txt or .epub source through the source normalizer
- Calculate SHA256 of the normalized source text for deduplication
- Store the source text in the blob store
- Register the book in SQLite under a readable slug
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path

import structlog

from folio.core.source_normalizer import LoadedSource, load_source
from folio.db.blob_store import BlobStore, sha256_text
from folio.db.books_repository import (
    BookRecord,
    get_all_book_ids,
    get_book_by_id,
    get_book_by_sha256,
    insert_book,
)

logger = structlog.get_logger(__name__)

SOURCE_FORMATS = ("gutenberg_txt", "markdown")


@dataclass
class ImportResult:
    """Result of book import operation."""

    book_id: str
    title: str
    author: str | None
    language: str | None
    source_format: str
    sha256: str
    size_bytes: int


class BookImportError(Exception):
    """Base exception for book import errors."""

    pass


class DuplicateBookError(BookImportError):
    """Raised when trying to import a source that already exists."""

    def __init__(self, sha256: str, existing_book_id: str):
        self.sha256 = sha256
        self.existing_book_id = existing_book_id
        super().__init__(f"Source already imported as '{existing_book_id}'")


class BookNotFoundError(BookImportError):
    """Raised when a book_id does not exist."""

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book not found: {book_id}")


def register_book(
    title: str,
    author: str | None,
    source_text: str,
    source_format: str,
    blob_store: BlobStore,
    language: str | None = None,
    source_file: str | None = None,
) -> ImportResult:
    """Store a source text and register it as a new book.

    Args:
        title: Book title
        author: Author name
        source_text: Normalized source text
        source_format: 'gutenberg_txt' or 'markdown' (annotated EPUB text)
        blob_store: Where the source body is written
        language: ISO 639-1 code, if known
        source_file: Original filename, if any

    Returns:
        ImportResult with the new book_id

    Raises:
        ValueError: If source_format is unknown
        DuplicateBookError: If the same source text was already imported
    """
    if source_format not in SOURCE_FORMATS:
        raise ValueError(f"Unknown source format: {source_format}")

    sha256 = sha256_text(source_text)
    existing = get_book_by_sha256(sha256)
    if existing:
        raise DuplicateBookError(sha256, existing.book_id)

    book_id = _ensure_unique_book_id(
        _generate_book_id(author or "unknown", title), get_all_book_ids()
    )
    blob = blob_store.put_text(source_text)

    insert_book(
        book_id=book_id,
        title=title,
        author=author,
        language=language,
        source_format=source_format,
        source_file=source_file,
        source_blob_id=blob.blob_id,
        source_size=blob.size_bytes,
        sha256=sha256,
    )

    logger.info("import_book.registered", book_id=book_id, source_format=source_format)

    return ImportResult(
        book_id=book_id,
        title=title,
        author=author,
        language=language,
        source_format=source_format,
        sha256=sha256,
        size_bytes=blob.size_bytes,
    )


def import_source(
    file_path: Path,
    blob_store: BlobStore,
    title: str | None = None,
    author: str | None = None,
) -> ImportResult:
    """Load a .txt or .epub file and register it.

    Title and author fall back to the file's own metadata, then to the
    filename.

    Raises:
        FileNotFoundError: If source file doesn't exist
        UnsupportedFormatError: If format is not .txt or .epub
        InvalidSourceError: If the EPUB cannot be read
        DuplicateBookError: If the source was already imported
    """
    file_path = Path(file_path).resolve()
    logger.info("import_book.start", file=str(file_path))

    loaded: LoadedSource = load_source(file_path)

    return register_book(
        title=title or loaded.title or file_path.stem,
        author=author or loaded.author,
        source_text=loaded.text,
        source_format=loaded.source_format,
        blob_store=blob_store,
        language=loaded.language,
        source_file=file_path.name,
    )


def require_book(book_id: str) -> BookRecord:
    """Get a book or raise BookNotFoundError."""
    book = get_book_by_id(book_id)
    if book is None:
        raise BookNotFoundError(book_id)
    return book


def _generate_book_id(author: str, title: str) -> str:
    """Generate slug: author-title.

    Normalized: lowercase, no accents, only alphanumeric and hyphens.

    Args:
        author: Author name (uses last word)
        title: Book title

    Returns:
        Normalized slug like "austen-pride-and-prejudice"
    """

    def normalize(text: str) -> str:
        text = unicodedata.normalize("NFKD", text)
        text = "".join(c for c in text if not unicodedata.combining(c))
        text = text.lower()
        text = re.sub(r"[^a-z0-9]+", "-", text)
        return text.strip("-")

    words = author.split()
    author_slug = normalize(words[-1]) if words else "unknown"
    title_slug = normalize(title)[:50].rstrip("-") or "untitled"

    return f"{author_slug or 'unknown'}-{title_slug}"


def _ensure_unique_book_id(book_id: str, existing_ids: list[str]) -> str:
    """Append -2, -3, ... until the slug is free."""
    taken = set(existing_ids)
    if book_id not in taken:
        return book_id

    counter = 2
    while f"{book_id}-{counter}" in taken:
        counter += 1
    return f"{book_id}-{counter}"
