"""ID helpers.

ID conventions:
- book_id: "author-title" normalized (lowercase, hyphens, no special chars)
- Hierarchical IDs append ``:kind:value`` pairs to their parent ID:
  "book_id:orig:SHA12", "book_id:rev:N", "book_id:rev:N:approval:M",
  "book_id:job:HEX8"

Functions:
- resolve_book_id(prefix, candidates) -> str: Resolve prefix to unique book_id
- child_id(parent_id, kind, value) -> str: Build a hierarchical ID
- parse_id(entity_id) -> dict: Decompose hierarchical ID
- get_book_id(entity_id) -> str: Extract book_id from any hierarchical ID
"""

from folio.core.book_importer import BookNotFoundError

# ID segment -> (parsed key, numeric)
ID_KINDS: dict[str, tuple[str, bool]] = {
    "orig": ("original", False),
    "rev": ("revision", True),
    "approval": ("approval", True),
    "job": ("job", False),
}


class AmbiguousBookIdError(Exception):
    """Raised when a book_id prefix matches multiple books."""

    def __init__(self, prefix: str, candidates: list[str]):
        self.prefix = prefix
        self.candidates = candidates
        super().__init__(
            f"Prefix '{prefix}' is ambiguous. Candidates:\n"
            + "\n".join(f"  - {c}" for c in candidates)
        )


def resolve_book_id(prefix: str, candidates: list[str]) -> str:
    """Resolve a book_id prefix to a unique full book_id.

    Args:
        prefix: Partial or full book_id (e.g., "austen" or "austen-emma")
        candidates: List of all available book_ids

    Returns:
        The unique matching book_id

    Raises:
        BookNotFoundError: If no candidates match the prefix
        AmbiguousBookIdError: If multiple candidates match the prefix
    """
    if prefix in candidates:
        return prefix

    matches = [c for c in candidates if c.startswith(prefix)]
    if not matches:
        raise BookNotFoundError(prefix)
    if len(matches) > 1:
        raise AmbiguousBookIdError(prefix, matches)
    return matches[0]


def child_id(parent_id: str, kind: str, value: int | str) -> str:
    """Append a ``kind:value`` segment to a parent ID.

    Raises:
        ValueError: For unknown kinds or values of the wrong shape
    """
    if kind not in ID_KINDS:
        raise ValueError(f"Unknown ID kind: {kind!r}")
    numeric = ID_KINDS[kind][1]
    if numeric and not (isinstance(value, int) and value >= 1):
        raise ValueError(f"'{kind}' IDs take a positive integer, got {value!r}")
    if not numeric and (not str(value) or ":" in str(value)):
        raise ValueError(f"Invalid '{kind}' value: {value!r}")
    return f"{parent_id}:{kind}:{value}"


def parse_id(entity_id: str) -> dict:
    """Parse a hierarchical entity ID into components.

    Examples:
        "austen-emma" -> {"book_id": "austen-emma"}
        "austen-emma:rev:3" -> {"book_id": "austen-emma", "revision": 3}
        "austen-emma:rev:3:approval:2" -> {"book_id": "...", "revision": 3, "approval": 2}
        "austen-emma:job:1f2e3d4c" -> {"book_id": "austen-emma", "job": "1f2e3d4c"}

    Raises:
        ValueError: If the ID has a dangling segment, an unknown kind or a
            non-numeric revision/approval number
    """
    book_id, *segments = entity_id.split(":")
    if len(segments) % 2:
        raise ValueError(f"Malformed ID: {entity_id!r}")

    result: dict = {"book_id": book_id}
    for kind, value in zip(segments[::2], segments[1::2]):
        if kind not in ID_KINDS:
            raise ValueError(f"Unknown ID kind {kind!r} in {entity_id!r}")
        key, numeric = ID_KINDS[kind]
        if numeric and not value.isdigit():
            raise ValueError(f"Malformed ID: {entity_id!r}")
        result[key] = int(value) if numeric else value
    return result


def get_book_id(entity_id: str) -> str:
    """Extract book_id from any hierarchical ID."""
    return entity_id.split(":")[0]
