"""Data types shared by the cleanup engine stages.

Chapter and flag candidates are what the engine proposes. They become
Chapter and Flag records only when a revision is created from them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

FLAG_TYPES = (
    "unlabeled_boundary_candidate",
    "low_confidence_cleanup",
    "ocr_corruption_detected",
    "ambiguous_punctuation",
    "chapter_boundary_disputed",
)

# Conditions recorded on flags that stand in for non-fatal error kinds
CONDITION_NO_BOILERPLATE_MARKERS = "no_boilerplate_markers"
CONDITION_MISSING_START_MARKER = "missing_start_marker"
CONDITION_MISSING_END_MARKER = "missing_end_marker"
CONDITION_SHORT_LINE_JOIN = "short_line_join"
CONDITION_AMBIGUOUS_BOUNDARY = "ambiguous_boundary"
CONDITION_AMBIGUOUS_PUNCTUATION = "ambiguous_punctuation"
CONDITION_OCR_CORRUPTION = "ocr_corruption"

CONTEXT_WINDOW = 60


@dataclass
class FlagCandidate:
    """A reviewable ambiguity raised by a cleanup stage."""

    flag_type: str
    start_offset: int
    end_offset: int
    context_text: str
    condition: str
    suggested_action: str | None = None
    chapter_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlagCandidate:
        return cls(**data)


@dataclass
class ChapterCandidate:
    """A chapter span proposed by boundary detection."""

    chapter_number: int
    title: str
    section_type: str
    start_offset: int
    end_offset: int
    detected_heading: str | None = None
    confidence: float = 1.0
    is_ocr_corrupted: bool = False
    is_user_confirmed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChapterCandidate:
        return cls(**data)


def context_around(text: str, start: int, end: int, window: int = CONTEXT_WINDOW) -> str:
    """Verbatim text surrounding a span, for display to reviewers."""
    return text[max(0, start - window) : min(len(text), end + window)]
