"""Cleanup engine configuration.

Holds the tunables of the deterministic cleanup engine: archaic-form
preservation, locale punctuation profile, heading patterns and the
confidence threshold that separates committed chapter boundaries from
boundary flags.

Usage:
    from folio.config.cleanup_config import CleanupConfig

    config = CleanupConfig(preserve_archaic=False)
    config = CleanupConfig.from_dict({"locale": "fr"})
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any

SECTION_TYPES = ("chapter", "preface", "introduction", "notes", "appendix", "body")

# Spelled-out chapter numbers ("Chapter Twenty-One")
_NUMBER_WORDS = (
    r"(?:one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|"
    r"thirteen|fourteen|fifteen|sixteen|seventeen|eighteen|nineteen|twenty|"
    r"thirty|forty|fifty|sixty|seventy|eighty|ninety|hundred)"
    r"(?:[- ](?:one|two|three|four|five|six|seven|eight|nine))?"
)
_NUMERAL = rf"(?P<num>[ivxlcdm]+|\d+|{_NUMBER_WORDS}|[a-z])"
_SUBTITLE = r"(?:[.:)]?\s*(?:[-—:.]\s*)?(?P<sub>\S.*?))?[.:]?"
# Keyword-only headings need punctuation before a subtitle ("Preface: ...")
_KEYWORD_SUBTITLE = r"\b(?:\s*[.:)\-—]\s*(?P<sub>\S.*?))?[.:]?"


@dataclass(frozen=True)
class HeadingPattern:
    """A lexical pattern classifying a line as a heading.

    The regex is matched against the stripped line. Named groups ``num``
    and ``sub`` (numeral and subtitle) and ``title`` (explicit title) feed
    title normalization.
    """

    name: str
    regex: str
    section_type: str
    confidence: float
    keyword: str = ""
    ignore_case: bool = True
    ocr_corrupted: bool = False
    section_break: bool = False

    @property
    def compiled(self) -> re.Pattern[str]:
        return _compile(self.regex, self.ignore_case)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@lru_cache(maxsize=None)
def _compile(regex: str, ignore_case: bool) -> re.Pattern[str]:
    return re.compile(regex, re.IGNORECASE if ignore_case else 0)


# Order matters: the first matching pattern classifies the line.
DEFAULT_HEADING_PATTERNS: tuple[HeadingPattern, ...] = (
    HeadingPattern(
        name="markdown_heading",
        regex=r"^#{1,3}\s+(?P<title>\S.*?)\s*#*$",
        section_type="chapter",
        confidence=0.95,
    ),
    HeadingPattern(
        name="chapter_numbered",
        regex=rf"^(?:chapter|chap\.?)\s+{_NUMERAL}\b{_SUBTITLE}$",
        section_type="chapter",
        confidence=0.95,
        keyword="Chapter",
    ),
    HeadingPattern(
        name="book_or_part",
        regex=rf"^(?P<kw>book|part)\s+{_NUMERAL}\b{_SUBTITLE}$",
        section_type="chapter",
        confidence=0.9,
    ),
    HeadingPattern(
        name="preface",
        regex=rf"^(?:preface|prefece|foreword){_KEYWORD_SUBTITLE}$",
        section_type="preface",
        confidence=0.9,
        keyword="Preface",
    ),
    HeadingPattern(
        name="introduction",
        regex=rf"^(?:introduction|introdution){_KEYWORD_SUBTITLE}$",
        section_type="introduction",
        confidence=0.9,
        keyword="Introduction",
    ),
    HeadingPattern(
        name="appendix",
        regex=rf"^(?:appendix|appendices)(?:\s+(?P<num>[ivxlcdm]+|\d+|[a-z]))?{_KEYWORD_SUBTITLE}$",
        section_type="appendix",
        confidence=0.9,
        keyword="Appendix",
    ),
    HeadingPattern(
        name="notes",
        regex=rf"^(?:notes|note|footnotes|end\s*notes){_KEYWORD_SUBTITLE}$",
        section_type="notes",
        confidence=0.9,
        keyword="Notes",
    ),
    HeadingPattern(
        name="prologue_epilogue",
        regex=rf"^(?P<kw>prologue|epilogue|afterword){_KEYWORD_SUBTITLE}$",
        section_type="chapter",
        confidence=0.9,
    ),
    HeadingPattern(
        name="ocr_chapter",
        regex=(
            r"^(?!chapter\b)(?:ch[a-z0-9]?pt[a-z0-9]?r|ch[a-z0-9]{1,3}er|chap[a-z0-9]?er)"
            r"\s+(?P<num>[ivxlcdm]+|\d+)\b.*$"
        ),
        section_type="chapter",
        confidence=0.8,
        keyword="Chapter",
        ocr_corrupted=True,
    ),
    HeadingPattern(
        name="roman_numeral",
        regex=r"^(?P<num>[IVXLCDM]+)\.?$",
        section_type="chapter",
        confidence=0.7,
        keyword="Chapter",
        ignore_case=False,
    ),
    HeadingPattern(
        name="all_caps_line",
        regex=r"^(?=(?:.*[A-Z]){2})[A-Z0-9][A-Z0-9 ,.'’:;!?&-]{1,58}[A-Z0-9.!?]$",
        section_type="chapter",
        confidence=0.5,
        ignore_case=False,
    ),
    HeadingPattern(
        name="section_break",
        regex=r"^(?:(?:\*\s*){3,}|(?:-\s*){3,}|(?:_\s*){3,}|#{3,}|(?:~\s*){3,})$",
        section_type="chapter",
        confidence=0.4,
        section_break=True,
    ),
)

# Elided and archaic forms kept verbatim when preserve_archaic is set.
DEFAULT_ARCHAIC_PATTERNS: tuple[str, ...] = (
    r"\b(?:o|e|ne)['’]er\b",
    r"\be['’]en\b",
    r"['’]t(?:is|was|were|would|will)\b",
    r"\bheav['’]n(?:s|ly)?\b",
    r"\bth['’](?=\s*[a-z])",
    r"\b(?!(?:I|you|he|she|we|they|it|who|that|there|what|how|where|why|when)['’])[a-z]{2,}['’](?:d|st)\b",
)

# Punctuation kept as-is per locale: quote characters that are typographic
# conventions in that language rather than variants to fold.
LOCALE_KEEP_QUOTES: dict[str, str] = {
    "en": "",
    "fr": "«»‹›",
    "de": "„“‚‘»«",
}


@dataclass(frozen=True)
class CleanupConfig:
    """Configuration of one deterministic cleanup run."""

    preserve_archaic: bool = True
    locale: str = "en"
    unwrap_paragraphs: bool = True
    normalize_punctuation: bool = True
    boundary_confidence_threshold: float = 0.75
    isolation_bonus: float = 0.1
    short_line_ratio: float = 0.6
    max_heading_length: int = 80
    heading_patterns: tuple[HeadingPattern, ...] = field(
        default=DEFAULT_HEADING_PATTERNS
    )
    archaic_patterns: tuple[str, ...] = field(default=DEFAULT_ARCHAIC_PATTERNS)

    def __post_init__(self) -> None:
        if not 0.0 <= self.boundary_confidence_threshold <= 1.0:
            raise ValueError(
                f"boundary_confidence_threshold must be in [0, 1], "
                f"got {self.boundary_confidence_threshold}"
            )
        for pattern in self.heading_patterns:
            if pattern.section_type not in SECTION_TYPES:
                raise ValueError(
                    f"Unknown section type {pattern.section_type!r} "
                    f"in heading pattern {pattern.name!r}"
                )

    @property
    def kept_quotes(self) -> str:
        """Quote characters the locale profile leaves untouched."""
        return LOCALE_KEEP_QUOTES.get(self.locale.split("-")[0].lower(), "")

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence on a job record."""
        data = asdict(self)
        data["heading_patterns"] = [p.to_dict() for p in self.heading_patterns]
        data["archaic_patterns"] = list(self.archaic_patterns)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CleanupConfig:
        """Build a config from a (possibly partial) mapping.

        Unknown keys are ignored so YAML files can carry comments-as-keys
        from older versions.
        """
        if not data:
            return cls()

        kwargs: dict[str, Any] = {}
        for key in (
            "preserve_archaic",
            "locale",
            "unwrap_paragraphs",
            "normalize_punctuation",
            "boundary_confidence_threshold",
            "isolation_bonus",
            "short_line_ratio",
            "max_heading_length",
        ):
            if key in data and data[key] is not None:
                kwargs[key] = data[key]

        if data.get("heading_patterns"):
            kwargs["heading_patterns"] = tuple(
                HeadingPattern(**p) for p in data["heading_patterns"]
            )
        if data.get("archaic_patterns"):
            kwargs["archaic_patterns"] = tuple(data["archaic_patterns"])

        return cls(**kwargs)
