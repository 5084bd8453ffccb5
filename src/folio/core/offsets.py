"""Offset remapping between successive cleanup stage outputs.

Each stage rewrites the text through a list of non-overlapping edits. Spans
recorded against a stage's input (flags from earlier stages, detected
chapters) are carried into its output through an OffsetMap, so every span
in the final result refers to the final normalized text.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, Literal

Side = Literal["left", "right"]


@dataclass(frozen=True)
class TextEdit:
    """Replacement of ``source[start:end]`` by ``replacement_length`` chars."""

    start: int
    end: int
    replacement_length: int


class OffsetMap:
    """Maps positions in a stage's input text to positions in its output."""

    def __init__(self, edits: Iterable[TextEdit], source_length: int):
        self._edits = sorted(edits, key=lambda e: (e.start, e.end))
        self.source_length = source_length

        self._ends: list[int] = []
        # _deltas[k] = cumulative length change of the first k edits
        self._deltas: list[int] = [0]
        previous_end = 0
        for edit in self._edits:
            if edit.start < previous_end or edit.end < edit.start:
                raise ValueError(f"Overlapping or inverted edit: {edit}")
            previous_end = edit.end
            self._ends.append(edit.end)
            self._deltas.append(
                self._deltas[-1] + edit.replacement_length - (edit.end - edit.start)
            )

        self.target_length = source_length + self._deltas[-1]

    @classmethod
    def identity(cls, length: int) -> OffsetMap:
        return cls([], length)

    @property
    def is_identity(self) -> bool:
        return not self._edits

    def map_position(self, position: int, side: Side = "left") -> int:
        """Map one position.

        A position strictly inside a replaced region snaps to the start
        (``left``) or end (``right``) of the replacement.
        """
        position = max(0, min(position, self.source_length))
        k = bisect_right(self._ends, position)
        if k < len(self._edits):
            edit = self._edits[k]
            if edit.start < position:
                base = edit.start + self._deltas[k]
                return base if side == "left" else base + edit.replacement_length
        return position + self._deltas[k]

    def map_span(self, start: int, end: int) -> tuple[int, int] | None:
        """Map a half-open span, keeping it non-empty.

        Returns None only when the target text is empty.
        """
        if self.target_length == 0:
            return None
        new_start = self.map_position(start, "left")
        new_end = self.map_position(end, "right")
        if new_end <= new_start:
            # Span content was deleted; keep a one-char anchor at the seam.
            new_start = min(new_start, self.target_length - 1)
            new_end = new_start + 1
        return new_start, new_end
