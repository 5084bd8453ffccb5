"""AI-assisted revision step.

Runs on demand against a finished deterministic revision and produces a
new ``ai`` revision whose parent is the input. The input revision is never
modified. Chapter boundaries and boundary flags of the new revision come
from the deterministic chapter detector, not from the model.

Chapters are sent to the corrector one at a time, in order. A chapter
longer than ``ai.max_chunk_chars`` is split on paragraph boundaries and
its chunks are corrected in order and joined again. Text outside any
chapter (front matter before the first heading) is carried over
unchanged.
"""

from __future__ import annotations

import bisect
import re
import threading
from dataclasses import dataclass, replace
from typing import Protocol

import structlog

from folio.config.app_config import load_app_config
from folio.config.cleanup_config import CleanupConfig
from folio.core.book_importer import require_book
from folio.core.cleanup_job import StageFailure
from folio.core.revision_store import (
    assert_reviewable,
    create_revision,
    get_chapters,
    get_revision_text,
)
from folio.core.text_cleanup import CleanupState, run_stage
from folio.db.blob_store import BlobStore

logger = structlog.get_logger(__name__)

AI_STAGE = "ai_processing"

_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n\s*")


@dataclass(frozen=True)
class CleanupChunk:
    """A span of chapter text sent to the corrector in one call."""

    start: int
    end: int
    text: str


class TextCorrector(Protocol):
    """Anything that can correct a span of book text."""

    def correct(self, text: str, instructions: str) -> str: ...


class AiCleanupError(Exception):
    """Base exception for the AI revision step."""

    pass


class AlreadyAiAssistedError(AiCleanupError):
    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(f"Revision {revision_id} is already AI-assisted")


class AiCleanupCancelled(AiCleanupError):
    """Raised when the cancel event is set between corrector calls."""

    def __init__(self, revision_id: str, chapters_done: int):
        self.revision_id = revision_id
        self.chapters_done = chapters_done
        super().__init__(
            f"AI revision of {revision_id} cancelled after {chapters_done} chapter(s)"
        )


def run_ai_revision(
    revision_id: str,
    corrector: TextCorrector,
    *,
    blob_store: BlobStore,
    actor: str = "ai",
    instructions: str | None = None,
    cancel_event: threading.Event | None = None,
    config: CleanupConfig | None = None,
    max_chunk_chars: int | None = None,
) -> str:
    """Create an AI-assisted revision from a deterministic one.

    Args:
        revision_id: Revision to correct
        corrector: Text corrector (e.g. LLMTextCorrector)
        blob_store: Blob store holding revision bodies
        actor: Recorded as the new revision's creator
        instructions: Corrector instructions (defaults to ai.instructions)
        cancel_event: Checked before every corrector call
        config: Engine config for re-detecting chapters
        max_chunk_chars: Longest span per corrector call (defaults to
            ai.max_chunk_chars)

    Returns:
        The new revision_id

    Raises:
        AlreadyAiAssistedError: If the input is already AI-assisted
        RevisionLockedError: While a cleanup job still targets the input
        AiCleanupCancelled: If cancel_event was set
        StageFailure: If the corrector failed
    """
    revision = assert_reviewable(revision_id)
    if revision.is_ai_assisted:
        raise AlreadyAiAssistedError(revision_id)

    app_config = load_app_config()
    instructions = instructions or app_config.ai.instructions
    max_chunk_chars = max_chunk_chars or app_config.ai.max_chunk_chars
    if config is None:
        book = require_book(revision.book_id)
        config = app_config.cleanup_config(locale=book.language)
    config = replace(config, preserve_archaic=revision.preserve_archaic)

    body = get_revision_text(revision_id, blob_store)
    chapters = get_chapters(revision_id)

    logger.info("ai_cleanup.started", revision_id=revision_id, chapters=len(chapters))

    pieces: list[str] = []
    position = 0
    for done, chapter in enumerate(chapters):
        pieces.append(body[position : chapter.start_offset])
        chunks = plan_cleanup_chunks(
            body[chapter.start_offset : chapter.end_offset], max_chunk_chars
        )
        if len(chunks) > 1:
            logger.debug(
                "ai_cleanup.chapter_split",
                revision_id=revision_id,
                chapter_number=chapter.chapter_number,
                chunks=len(chunks),
            )

        for chunk in chunks:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("ai_cleanup.cancelled", revision_id=revision_id, chapters_done=done)
                raise AiCleanupCancelled(revision_id, done)
            try:
                pieces.append(_correct_chunk(corrector, chunk.text, instructions))
            except Exception as e:
                logger.error(
                    "ai_cleanup.corrector_failed",
                    revision_id=revision_id,
                    chapter_number=chapter.chapter_number,
                    chunk_start=chunk.start,
                    error=str(e),
                )
                raise StageFailure(
                    AI_STAGE, f"chapter {chapter.chapter_number}: {type(e).__name__}: {e}"
                ) from e
        position = chapter.end_offset
    pieces.append(body[position:])

    new_body = "".join(pieces)
    state = run_stage("chapter_detection", CleanupState(text=new_body), config)

    new_revision_id = create_revision(
        revision.book_id,
        "ai",
        state.chapters,
        blob_store=blob_store,
        body=new_body,
        parent_revision_id=revision_id,
        preserve_archaic=revision.preserve_archaic,
        flags=state.flags,
        created_by=actor,
    )

    logger.info(
        "ai_cleanup.revision_created",
        revision_id=new_revision_id,
        parent_revision_id=revision_id,
        chapters=len(state.chapters),
        flags=len(state.flags),
    )
    return new_revision_id


def plan_cleanup_chunks(text: str, max_chunk_chars: int) -> list[CleanupChunk]:
    """Split text into contiguous chunks of at most max_chunk_chars.

    Cuts fall after the last paragraph break that fits. A paragraph longer
    than the limit is cut after its last fitting whitespace, or at the
    limit when it has none. Joining the chunk texts gives back ``text``.

    Args:
        text: Chapter text
        max_chunk_chars: Largest chunk length

    Returns:
        Chunks in text order (empty for empty text)

    Raises:
        ValueError: If max_chunk_chars is not a positive integer
    """
    if not isinstance(max_chunk_chars, int) or max_chunk_chars <= 0:
        raise ValueError(f"max_chunk_chars must be a positive integer, got {max_chunk_chars!r}")
    if not text:
        return []

    breaks = [m.end() for m in _PARAGRAPH_BREAK_RE.finditer(text)]
    chunks: list[CleanupChunk] = []
    start = 0
    while len(text) - start > max_chunk_chars:
        limit = start + max_chunk_chars
        index = bisect.bisect_right(breaks, limit) - 1
        if index >= 0 and breaks[index] > start:
            cut = breaks[index]
        else:
            space = max(text.rfind(" ", start + 1, limit), text.rfind("\n", start + 1, limit))
            cut = space + 1 if space > start else limit
        chunks.append(CleanupChunk(start=start, end=cut, text=text[start:cut]))
        start = cut
    chunks.append(CleanupChunk(start=start, end=len(text), text=text[start:]))
    return chunks


def _correct_chunk(corrector: TextCorrector, chunk: str, instructions: str) -> str:
    """Correct the core of a chunk, keeping its surrounding whitespace."""
    core = chunk.strip()
    if not core:
        return chunk
    lead = chunk[: len(chunk) - len(chunk.lstrip())]
    trail = chunk[len(chunk.rstrip()) :]
    return lead + corrector.correct(core, instructions).strip() + trail
