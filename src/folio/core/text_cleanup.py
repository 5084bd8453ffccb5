"""Deterministic text cleanup engine.

Responsibilities:
- Strip license boilerplate outside START/END markers
- Unwrap hard line-wraps inside paragraphs
- Detect chapter boundaries (see chapter_detector)
- Normalize typographer punctuation to a canonical set
- Carry every flag and chapter span through each stage's offset map so
  the final spans refer to the final normalized text

IMPORTANT: This module is pure. Identical (text, config) input produces
byte-identical output: no clocks, no randomness, no unordered iteration.
Ambiguities never raise; they become flags.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Callable

import structlog

from folio.config.cleanup_config import CleanupConfig
from folio.core.chapter_detector import (
    containing_chapter_number,
    detect_chapters,
    is_heading_line,
    iter_lines,
)
from folio.core.cleanup_models import (
    CONDITION_AMBIGUOUS_PUNCTUATION,
    CONDITION_MISSING_END_MARKER,
    CONDITION_MISSING_START_MARKER,
    CONDITION_NO_BOILERPLATE_MARKERS,
    CONDITION_SHORT_LINE_JOIN,
    ChapterCandidate,
    FlagCandidate,
    context_around,
)
from folio.core.offsets import OffsetMap, TextEdit

logger = structlog.get_logger(__name__)

STAGE_SEQUENCE = (
    "boilerplate_removal",
    "paragraph_unwrap",
    "chapter_detection",
    "punctuation_normalization",
)

# Span of the flag raised when no boilerplate markers are found
MARKER_FLAG_SPAN = 100

START_MARKERS = [
    re.compile(r"^\*{3}\s*START OF (?:THIS|THE) PROJECT GUTENBERG[^\n]*$", re.I | re.M),
    re.compile(r"^\*{3}\s*START OF [^\n]*?\*{3}[ \t]*$", re.I | re.M),
    re.compile(r"^START OF (?:THIS|THE) PROJECT GUTENBERG EBOOK[^\n]*$", re.I | re.M),
]

END_MARKERS = [
    re.compile(r"^\*{3}\s*END OF (?:THIS|THE) PROJECT GUTENBERG[^\n]*$", re.I | re.M),
    re.compile(r"^\*{3}\s*END OF [^\n]*?\*{3}[ \t]*$", re.I | re.M),
    re.compile(r"^END OF (?:THIS|THE) PROJECT GUTENBERG EBOOK[^\n]*$", re.I | re.M),
    re.compile(r"^[ \t]*End of (?:the )?Project Gutenberg[^\n]*$", re.I | re.M),
]

DOUBLE_QUOTES = "\u201c\u201d\u201e\u201f\u2033"
SINGLE_QUOTES = "\u2018\u2019\u201a\u201b\u2032"


class TextCleanupError(Exception):
    """Base exception for cleanup engine errors."""

    pass


class UnknownStageError(TextCleanupError):
    """Raised when asked to run a stage the engine does not know."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(
            f"Unknown cleanup stage '{stage}'. Expected one of: {', '.join(STAGE_SEQUENCE)}"
        )


@dataclass
class CleanupState:
    """Text plus the chapters and flags accumulated so far."""

    text: str
    chapters: list[ChapterCandidate] = field(default_factory=list)
    flags: list[FlagCandidate] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "chapters": [c.to_dict() for c in self.chapters],
            "flags": [f.to_dict() for f in self.flags],
            "stats": dict(sorted(self.stats.items())),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CleanupState:
        return cls(
            text=data["text"],
            chapters=[ChapterCandidate.from_dict(c) for c in data.get("chapters", [])],
            flags=[FlagCandidate.from_dict(f) for f in data.get("flags", [])],
            stats=dict(data.get("stats", {})),
        )

    @classmethod
    def from_json(cls, payload: str | bytes) -> CleanupState:
        return cls.from_dict(json.loads(payload))


@dataclass
class CleanupResult:
    """Output contract of a full deterministic run."""

    chapters: list[ChapterCandidate]
    flags: list[FlagCandidate]
    normalized_text: str
    stats: dict[str, int] = field(default_factory=dict)


@dataclass
class StageOutput:
    """What one text-rewriting stage produces.

    ``flags`` are expressed against the stage's input text.
    """

    text: str
    offset_map: OffsetMap
    flags: list[FlagCandidate] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)


# =============================================================================
# STAGE: BOILERPLATE REMOVAL
# =============================================================================


def _first_match(patterns: list[re.Pattern[str]], text: str, pos: int = 0) -> re.Match[str] | None:
    matches = [m for m in (p.search(text, pos) for p in patterns) if m]
    if not matches:
        return None
    return min(matches, key=lambda m: (m.start(), -m.end()))


def strip_boilerplate(text: str) -> StageOutput:
    """Keep only the content between the START and END marker lines.

    With neither marker present the text is returned unchanged and a
    low_confidence_cleanup flag is raised instead.

    Args:
        text: Raw source text

    Returns:
        StageOutput with the stripped text
    """
    length = len(text)
    start_match = _first_match(START_MARKERS, text)
    keep_start = 0
    if start_match:
        keep_start = start_match.end()
        if keep_start < length and text[keep_start] == "\n":
            keep_start += 1

    end_match = _first_match(END_MARKERS, text, keep_start)
    keep_end = end_match.start() if end_match else length

    if not start_match and not end_match:
        flags = []
        if length:
            span_end = min(MARKER_FLAG_SPAN, length)
            flags.append(
                FlagCandidate(
                    flag_type="low_confidence_cleanup",
                    start_offset=0,
                    end_offset=span_end,
                    context_text=text[:span_end],
                    condition=CONDITION_NO_BOILERPLATE_MARKERS,
                    suggested_action=(
                        "No license markers found; check for front or back "
                        "matter that should be removed"
                    ),
                )
            )
        logger.warning("text_cleanup.no_boilerplate_markers", chars=length)
        return StageOutput(
            text=text,
            offset_map=OffsetMap.identity(length),
            flags=flags,
            stats={"boilerplate_chars_removed": 0},
        )

    # Trim whitespace around the kept content
    kept = text[keep_start:keep_end]
    keep_end = keep_start + len(kept.rstrip())
    keep_start = keep_start + (len(kept) - len(kept.lstrip()))
    keep_end = max(keep_start, keep_end)

    edits = []
    if keep_start > 0:
        edits.append(TextEdit(0, keep_start, 0))
    if keep_end < length:
        edits.append(TextEdit(keep_end, length, 0))

    flags = []
    if keep_end > keep_start:
        if not start_match:
            span_end = min(keep_start + MARKER_FLAG_SPAN, keep_end)
            flags.append(
                FlagCandidate(
                    flag_type="low_confidence_cleanup",
                    start_offset=keep_start,
                    end_offset=span_end,
                    context_text=text[keep_start:span_end],
                    condition=CONDITION_MISSING_START_MARKER,
                    suggested_action="No START marker found; check the opening for license text",
                )
            )
        if not end_match:
            span_start = max(keep_end - MARKER_FLAG_SPAN, keep_start)
            flags.append(
                FlagCandidate(
                    flag_type="low_confidence_cleanup",
                    start_offset=span_start,
                    end_offset=keep_end,
                    context_text=text[span_start:keep_end],
                    condition=CONDITION_MISSING_END_MARKER,
                    suggested_action="No END marker found; check the ending for license text",
                )
            )

    removed = length - (keep_end - keep_start)
    logger.debug(
        "text_cleanup.boilerplate_stripped",
        start_marker=bool(start_match),
        end_marker=bool(end_match),
        chars_removed=removed,
    )
    return StageOutput(
        text=text[keep_start:keep_end],
        offset_map=OffsetMap(edits, length),
        flags=flags,
        stats={"boilerplate_chars_removed": removed},
    )


# =============================================================================
# STAGE: PARAGRAPH UNWRAP
# =============================================================================


def unwrap_paragraphs(text: str, config: CleanupConfig) -> StageOutput:
    """Join hard-wrapped lines inside paragraphs with single spaces.

    Blank-line paragraph breaks and heading lines stay verbatim. Blocks
    with suspiciously short lines (verse, letters, lists) are still joined
    but flagged for review.

    Args:
        text: Text after boilerplate removal
        config: Cleanup configuration

    Returns:
        StageOutput with the unwrapped text
    """
    length = len(text)
    if not config.unwrap_paragraphs:
        return StageOutput(text=text, offset_map=OffsetMap.identity(length))

    lines = list(iter_lines(text))
    edits: list[TextEdit] = []
    flags: list[FlagCandidate] = []

    # Consecutive joinable lines, as indexes into `lines`
    block: list[int] = []

    def close_block() -> None:
        if len(block) > 1:
            _flag_short_lines(text, lines, block, config, flags)
        block.clear()

    for index, (start, _end, line) in enumerate(lines):
        if not line.strip() or is_heading_line(line, config):
            close_block()
            continue

        if block:
            prev_start, _prev_end, prev_line = lines[block[-1]]
            content_end = prev_start + len(prev_line.rstrip())
            next_content = start + (len(line) - len(line.lstrip()))
            edits.append(TextEdit(content_end, next_content, 1))
        block.append(index)

    close_block()

    pieces = []
    cursor = 0
    for edit in edits:
        pieces.append(text[cursor : edit.start])
        pieces.append(" ")
        cursor = edit.end
    pieces.append(text[cursor:])

    logger.debug("text_cleanup.paragraphs_unwrapped", joins=len(edits))
    return StageOutput(
        text="".join(pieces),
        offset_map=OffsetMap(edits, length),
        flags=flags,
        stats={"lines_joined": len(edits)},
    )


def _flag_short_lines(
    text: str,
    lines: list[tuple[int, int, str]],
    block: list[int],
    config: CleanupConfig,
    flags: list[FlagCandidate],
) -> None:
    widths = [len(lines[i][2].strip()) for i in block]
    longest = max(widths)
    short = [
        i for i, width in zip(block[:-1], widths[:-1])
        if width < config.short_line_ratio * longest
    ]
    if not short:
        return

    block_start = lines[block[0]][0]
    block_end = lines[block[-1]][1]
    flags.append(
        FlagCandidate(
            flag_type="low_confidence_cleanup",
            start_offset=block_start,
            end_offset=block_end,
            context_text=text[block_start:block_end],
            condition=CONDITION_SHORT_LINE_JOIN,
            suggested_action=(
                f"{len(short)} short line(s) were joined; restore line breaks "
                "if this is verse, a letter or a list"
            ),
        )
    )


# =============================================================================
# STAGE: PUNCTUATION NORMALIZATION
# =============================================================================


@lru_cache(maxsize=32)
def _punctuation_pattern(
    archaic_patterns: tuple[str, ...], kept_quotes: str
) -> re.Pattern[str]:
    alternatives = [r"(?P<rule>^[ \t]*(?:[-*_~#][ \t]*){3,}$)"]
    if archaic_patterns:
        joined = "|".join(f"(?:{p})" for p in archaic_patterns)
        alternatives.append(f"(?P<archaic>{joined})")

    double_quotes = "".join(c for c in DOUBLE_QUOTES if c not in kept_quotes)
    single_quotes = "".join(c for c in SINGLE_QUOTES if c not in kept_quotes)
    if double_quotes:
        alternatives.append(f"(?P<dquote>[{double_quotes}])")
    if single_quotes:
        alternatives.append(f"(?P<squote>[{single_quotes}])")

    alternatives.extend(
        [
            r"(?P<dash>(?<!-)-{2,3}(?!-)|\u2015)",
            r"(?P<hyphen>[\u2010\u2011])",
            r"(?P<soft>\u00ad)",
            r"(?P<ellipsis>\.\.\.(?!\.)|\. \. \.(?! \.))",
            r"(?P<spaces>(?<=[.!?])[ \t]{2,})",
        ]
    )
    return re.compile("|".join(alternatives), re.IGNORECASE | re.MULTILINE)


_REPLACEMENTS: dict[str, str] = {
    "dquote": '"',
    "squote": "'",
    "dash": "—",
    "hyphen": "-",
    "soft": "",
    "ellipsis": "…",
    "spaces": " ",
}


def normalize_punctuation(text: str, config: CleanupConfig) -> StageOutput:
    """Map typographer variants to the canonical punctuation set.

    One left-to-right scan: replacements never overlap and never cross a
    newline. Archaic forms on the allowlist are copied verbatim and flagged
    when preserve_archaic is set.

    Args:
        text: Unwrapped text
        config: Cleanup configuration (archaic flag, locale)

    Returns:
        StageOutput with the normalized text
    """
    length = len(text)
    if not config.normalize_punctuation:
        return StageOutput(text=text, offset_map=OffsetMap.identity(length))

    archaic = config.archaic_patterns if config.preserve_archaic else ()
    pattern = _punctuation_pattern(tuple(archaic), config.kept_quotes)

    pieces: list[str] = []
    edits: list[TextEdit] = []
    flags: list[FlagCandidate] = []
    cursor = 0

    for match in pattern.finditer(text):
        kind = match.lastgroup
        if kind == "rule":
            continue
        if kind == "archaic":
            flags.append(
                FlagCandidate(
                    flag_type="ambiguous_punctuation",
                    start_offset=match.start(),
                    end_offset=match.end(),
                    context_text=context_around(text, match.start(), match.end()),
                    condition=CONDITION_AMBIGUOUS_PUNCTUATION,
                    suggested_action=f"Archaic form '{match.group(0)}' kept as written",
                )
            )
            continue

        replacement = _REPLACEMENTS[kind]
        if replacement == match.group(0):
            continue
        pieces.append(text[cursor : match.start()])
        pieces.append(replacement)
        edits.append(TextEdit(match.start(), match.end(), len(replacement)))
        cursor = match.end()

    pieces.append(text[cursor:])

    logger.debug(
        "text_cleanup.punctuation_normalized",
        replacements=len(edits),
        archaic_preserved=len(flags),
    )
    return StageOutput(
        text="".join(pieces),
        offset_map=OffsetMap(edits, length),
        flags=flags,
        stats={
            "punctuation_replacements": len(edits),
            "archaic_forms_preserved": len(flags),
        },
    )


# =============================================================================
# DRIVER
# =============================================================================


def _remap_flags(flags: list[FlagCandidate], offset_map: OffsetMap) -> list[FlagCandidate]:
    if offset_map.is_identity:
        return list(flags)

    remapped = []
    for flag in flags:
        span = offset_map.map_span(flag.start_offset, flag.end_offset)
        if span is None:
            logger.warning(
                "text_cleanup.flag_dropped_empty_text",
                flag_type=flag.flag_type,
                condition=flag.condition,
            )
            continue
        remapped.append(
            FlagCandidate(
                flag_type=flag.flag_type,
                start_offset=span[0],
                end_offset=span[1],
                context_text=flag.context_text,
                condition=flag.condition,
                suggested_action=flag.suggested_action,
                chapter_number=flag.chapter_number,
            )
        )
    return remapped


def _remap_chapters(
    chapters: list[ChapterCandidate], offset_map: OffsetMap
) -> list[ChapterCandidate]:
    if offset_map.is_identity:
        return list(chapters)

    remapped = []
    for chapter in chapters:
        # Same side for both ends keeps adjacent chapters adjacent
        start = offset_map.map_position(chapter.start_offset, "left")
        end = offset_map.map_position(chapter.end_offset, "left")
        remapped.append(
            ChapterCandidate(
                chapter_number=chapter.chapter_number,
                title=chapter.title,
                section_type=chapter.section_type,
                start_offset=start,
                end_offset=end,
                detected_heading=chapter.detected_heading,
                confidence=chapter.confidence,
                is_ocr_corrupted=chapter.is_ocr_corrupted,
                is_user_confirmed=chapter.is_user_confirmed,
            )
        )
    return remapped


def _merge_stats(base: dict[str, int], extra: dict[str, int]) -> dict[str, int]:
    merged = dict(base)
    for key, value in extra.items():
        merged[key] = merged.get(key, 0) + value
    return merged


_TEXT_STAGES: dict[str, Callable[[str, CleanupConfig], StageOutput]] = {
    "boilerplate_removal": lambda text, _config: strip_boilerplate(text),
    "paragraph_unwrap": unwrap_paragraphs,
    "punctuation_normalization": normalize_punctuation,
}


def run_stage(stage: str, state: CleanupState, config: CleanupConfig) -> CleanupState:
    """Run one cleanup stage over a state.

    Args:
        stage: Stage name from STAGE_SEQUENCE
        state: Output of the previous stage (or the raw text)
        config: Cleanup configuration

    Returns:
        New CleanupState; the input state is not modified

    Raises:
        UnknownStageError: If stage is not a cleanup stage
    """
    if stage == "chapter_detection":
        chapters, new_flags = detect_chapters(state.text, config)
        flags = list(state.flags) + new_flags
        stats = _merge_stats(state.stats, {"chapters_detected": len(chapters)})
        return CleanupState(
            text=state.text,
            chapters=chapters,
            flags=_assign_chapters(flags, chapters),
            stats=stats,
        )

    if stage not in _TEXT_STAGES:
        raise UnknownStageError(stage)

    output = _TEXT_STAGES[stage](state.text, config)
    flags = _remap_flags(list(state.flags) + output.flags, output.offset_map)
    chapters = _remap_chapters(state.chapters, output.offset_map)

    return CleanupState(
        text=output.text,
        chapters=chapters,
        flags=_assign_chapters(flags, chapters),
        stats=_merge_stats(state.stats, output.stats),
    )


def _assign_chapters(
    flags: list[FlagCandidate], chapters: list[ChapterCandidate]
) -> list[FlagCandidate]:
    if not chapters:
        return flags
    return [
        flag
        if flag.chapter_number is not None
        else replace(
            flag,
            chapter_number=containing_chapter_number(chapters, flag.start_offset),
        )
        for flag in flags
    ]


def run_deterministic_cleanup(
    text: str, config: CleanupConfig | None = None
) -> CleanupResult:
    """Run every cleanup stage in order.

    Args:
        text: Normalized source text
        config: Cleanup configuration (defaults to CleanupConfig())

    Returns:
        CleanupResult whose chapter and flag spans refer to normalized_text
    """
    config = config or CleanupConfig()
    state = CleanupState(text=text)
    for stage in STAGE_SEQUENCE:
        state = run_stage(stage, state, config)

    logger.info(
        "text_cleanup.completed",
        input_chars=len(text),
        output_chars=len(state.text),
        chapters=len(state.chapters),
        flags=len(state.flags),
    )
    return CleanupResult(
        chapters=state.chapters,
        flags=state.flags,
        normalized_text=state.text,
        stats=state.stats,
    )
