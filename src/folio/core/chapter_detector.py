"""Chapter and section boundary detection.

Responsibilities:
- Classify heading-like lines against the configured heading patterns
- Score each candidate (pattern confidence plus an isolation bonus)
- Commit candidates at or above the threshold as chapter boundaries
- Raise boundary flags for candidates below it
- Normalize chapter titles

Detection never rewrites text: it only proposes spans over the text it is
given.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

import structlog

from folio.config.cleanup_config import CleanupConfig, HeadingPattern
from folio.core.cleanup_models import (
    CONDITION_AMBIGUOUS_BOUNDARY,
    CONDITION_OCR_CORRUPTION,
    ChapterCandidate,
    FlagCandidate,
    context_around,
)

logger = structlog.get_logger(__name__)

BODY_TITLE = "Body"

_ROMAN_RE = re.compile(
    r"^(?=[ivxlcdm])m{0,3}(?:cm|cd|d?c{0,3})(?:xc|xl|l?x{0,3})(?:ix|iv|v?i{0,3})$",
    re.IGNORECASE,
)
_ABBREVIATION_RE = re.compile(r"^(?:chap|ch)\.?\s+", re.IGNORECASE)
_SECTION_KEYWORDS = (
    ("preface", "preface"),
    ("foreword", "preface"),
    ("introduction", "introduction"),
    ("footnotes", "notes"),
    ("notes", "notes"),
    ("appendix", "appendix"),
    ("appendices", "appendix"),
)


@dataclass
class HeadingCandidate:
    """A line classified as a possible heading."""

    line_start: int
    line_end: int
    line_text: str
    pattern: HeadingPattern
    confidence: float
    title: str | None
    section_type: str


def iter_lines(text: str) -> Iterator[tuple[int, int, str]]:
    """Yield (start, end, line) for each line, end excluding the newline."""
    position = 0
    length = len(text)
    while position <= length:
        newline = text.find("\n", position)
        if newline == -1:
            if position < length:
                yield position, length, text[position:]
            return
        yield position, newline, text[position:newline]
        position = newline + 1


def classify_line(
    line: str, config: CleanupConfig
) -> tuple[HeadingPattern, re.Match[str]] | None:
    """Return the first heading pattern matching a line, if any."""
    stripped = line.strip()
    if not stripped or len(stripped) > config.max_heading_length:
        return None

    for pattern in config.heading_patterns:
        match = pattern.compiled.match(stripped)
        if match:
            return pattern, match
    return None


def is_heading_line(line: str, config: CleanupConfig) -> bool:
    """Check whether a line is heading-like (section breaks included)."""
    return classify_line(line, config) is not None


def normalize_chapter_title(title: str) -> str:
    """Normalize free-form heading text.

    Collapses whitespace, expands "Chap."/"Ch." and title-cases all-caps
    text. Mixed-case text keeps its spelling.
    """
    normalized = " ".join(title.split())
    normalized = _ABBREVIATION_RE.sub("Chapter ", normalized)
    if normalized.isupper():
        normalized = " ".join(_title_word(w) for w in normalized.split(" "))
    return normalized


def _title_word(word: str) -> str:
    if _ROMAN_RE.match(word.strip(".:,;")):
        return word.upper()
    return word[:1].upper() + word[1:].lower()


def _format_numeral(numeral: str) -> str:
    if _ROMAN_RE.match(numeral) or len(numeral) == 1:
        return numeral.upper()
    if numeral.isdigit():
        return numeral
    return "-".join(part.capitalize() for part in re.split(r"[- ]", numeral))


def build_title(pattern: HeadingPattern, match: re.Match[str]) -> str | None:
    """Build a normalized title from a heading match.

    Returns None for section breaks, which carry no title.
    """
    if pattern.section_break:
        return None

    groups = match.groupdict()
    if groups.get("title"):
        return " ".join(groups["title"].split())

    keyword = pattern.keyword or (groups.get("kw") or "").capitalize()
    if not keyword:
        return normalize_chapter_title(match.group(0))

    label = keyword
    if groups.get("num"):
        label = f"{keyword} {_format_numeral(groups['num'])}"

    subtitle = groups.get("sub")
    if subtitle:
        return f"{label}: {normalize_chapter_title(subtitle)}"
    return label


def infer_section_type(title: str, default: str = "chapter") -> str:
    """Infer the section type from explicit heading text."""
    lowered = title.lower()
    for keyword, section_type in _SECTION_KEYWORDS:
        if lowered.startswith(keyword):
            return section_type
    return default


def find_heading_candidates(
    text: str, config: CleanupConfig
) -> list[HeadingCandidate]:
    """Classify every line of the text, in order."""
    lines = list(iter_lines(text))
    candidates: list[HeadingCandidate] = []

    for index, (start, end, line) in enumerate(lines):
        classified = classify_line(line, config)
        if classified is None:
            continue
        pattern, match = classified

        blank_before = index == 0 or not lines[index - 1][2].strip()
        blank_after = index == len(lines) - 1 or not lines[index + 1][2].strip()
        confidence = pattern.confidence
        if blank_before and blank_after:
            confidence = min(1.0, confidence + config.isolation_bonus)

        title = build_title(pattern, match)
        section_type = pattern.section_type
        if title and match.groupdict().get("title"):
            section_type = infer_section_type(title, pattern.section_type)

        # Leading whitespace is not part of the heading span
        offset = len(line) - len(line.lstrip())
        candidates.append(
            HeadingCandidate(
                line_start=start + offset,
                line_end=start + len(line.rstrip()),
                line_text=line.strip(),
                pattern=pattern,
                confidence=round(confidence, 4),
                title=title,
                section_type=section_type,
            )
        )

    return candidates


def detect_chapters(
    text: str, config: CleanupConfig
) -> tuple[list[ChapterCandidate], list[FlagCandidate]]:
    """Detect chapter boundaries in text.

    Committed chapters run from their heading to the next committed heading
    (or the end of text). Text before the first heading is left as a gap.
    Without any committed heading, non-empty text becomes a single body
    chapter.

    Args:
        text: Unwrapped text to scan
        config: Cleanup configuration (patterns and threshold)

    Returns:
        Tuple of (chapters in order, flags in emission order)
    """
    candidates = find_heading_candidates(text, config)
    threshold = config.boundary_confidence_threshold

    committed = [c for c in candidates if c.confidence >= threshold]
    uncommitted = [c for c in candidates if c.confidence < threshold]

    chapters: list[ChapterCandidate] = []
    for index, candidate in enumerate(committed):
        end = (
            committed[index + 1].line_start
            if index + 1 < len(committed)
            else len(text)
        )
        number = index + 1
        chapters.append(
            ChapterCandidate(
                chapter_number=number,
                title=candidate.title or f"Section {number}",
                section_type=candidate.section_type,
                start_offset=candidate.line_start,
                end_offset=end,
                detected_heading=candidate.line_text,
                confidence=candidate.confidence,
                is_ocr_corrupted=candidate.pattern.ocr_corrupted,
            )
        )

    if not chapters and text.strip():
        chapters.append(
            ChapterCandidate(
                chapter_number=1,
                title=BODY_TITLE,
                section_type="body",
                start_offset=0,
                end_offset=len(text),
                detected_heading=None,
                confidence=1.0,
            )
        )

    flags: list[FlagCandidate] = []
    for candidate in committed:
        if not candidate.pattern.ocr_corrupted:
            continue
        flags.append(
            FlagCandidate(
                flag_type="ocr_corruption_detected",
                start_offset=candidate.line_start,
                end_offset=candidate.line_end,
                context_text=context_around(
                    text, candidate.line_start, candidate.line_end
                ),
                condition=CONDITION_OCR_CORRUPTION,
                suggested_action=f"Verify heading text; read as '{candidate.title}'",
                chapter_number=containing_chapter_number(
                    chapters, candidate.line_start
                ),
            )
        )

    for candidate in uncommitted:
        if candidate.pattern.section_break:
            action = "Review section break as a possible unlabeled chapter boundary"
        else:
            action = f"Promote to chapter boundary '{candidate.title}'"
        flags.append(
            FlagCandidate(
                flag_type="unlabeled_boundary_candidate",
                start_offset=candidate.line_start,
                end_offset=candidate.line_end,
                context_text=context_around(
                    text, candidate.line_start, candidate.line_end
                ),
                condition=CONDITION_AMBIGUOUS_BOUNDARY,
                suggested_action=action,
                chapter_number=containing_chapter_number(
                    chapters, candidate.line_start
                ),
            )
        )

    flags.sort(key=lambda f: (f.start_offset, f.end_offset, f.flag_type))

    logger.debug(
        "chapter_detector.detected",
        candidates=len(candidates),
        chapters=len(chapters),
        boundary_flags=len(uncommitted),
    )
    return chapters, flags


def containing_chapter_number(
    chapters: list[ChapterCandidate], offset: int
) -> int | None:
    """Number of the chapter whose span contains offset, if any."""
    for chapter in chapters:
        if chapter.start_offset <= offset < chapter.end_offset:
            return chapter.chapter_number
    return None
