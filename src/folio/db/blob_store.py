"""Content-addressed blob store and content references.

Bodies (originals, revisions, stage outputs) are stored as files named by
their SHA256 under the blobs directory. Records hold references.

Content access goes through a tagged union so callers never branch on
where a body lives:

    ref = content_from_row(row)          # InlineContent | BlobContent
    text = resolve_text(ref, blob_store)
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger(__name__)


class BlobStoreError(Exception):
    """Base exception for blob store errors."""

    pass


class BlobNotFoundError(BlobStoreError):
    """Raised when a referenced blob is missing."""

    def __init__(self, blob_id: str):
        self.blob_id = blob_id
        super().__init__(f"Blob not found: {blob_id}")


class BlobIntegrityError(BlobStoreError):
    """Raised when a blob's bytes do not match its address."""

    def __init__(self, blob_id: str, actual: str):
        self.blob_id = blob_id
        self.actual = actual
        super().__init__(f"Blob {blob_id} is corrupted (content hash {actual})")


@dataclass(frozen=True)
class InlineContent:
    """Legacy body stored inline in the record row."""

    text: str

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass(frozen=True)
class BlobContent:
    """Body stored in the blob store."""

    blob_id: str
    size_bytes: int


ContentRef = Union[InlineContent, BlobContent]


def sha256_text(text: str) -> str:
    """SHA256 hex digest of UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class BlobStore:
    """Filesystem blob store addressed by SHA256."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, blob_id: str) -> Path:
        return self.root / blob_id[:2] / blob_id

    def put_bytes(self, data: bytes) -> BlobContent:
        """Store bytes; identical content is stored once."""
        blob_id = hashlib.sha256(data).hexdigest()
        path = self._path(blob_id)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            logger.debug("blob_store.stored", blob_id=blob_id, size=len(data))
        return BlobContent(blob_id=blob_id, size_bytes=len(data))

    def put_text(self, text: str) -> BlobContent:
        return self.put_bytes(text.encode("utf-8"))

    def get_bytes(self, blob_id: str) -> bytes:
        """Read a blob, verifying its address.

        Raises:
            BlobNotFoundError: If the blob does not exist
            BlobIntegrityError: If the content hash does not match
        """
        path = self._path(blob_id)
        if not path.exists():
            raise BlobNotFoundError(blob_id)
        data = path.read_bytes()
        actual = hashlib.sha256(data).hexdigest()
        if actual != blob_id:
            raise BlobIntegrityError(blob_id, actual)
        return data

    def get_text(self, blob_id: str) -> str:
        return self.get_bytes(blob_id).decode("utf-8")

    def exists(self, blob_id: str) -> bool:
        return self._path(blob_id).exists()


def content_from_row(row, content_column: str = "content", blob_column: str = "blob_id") -> ContentRef:
    """Build a content reference from a record row."""
    blob_id = row[blob_column]
    if blob_id:
        return BlobContent(blob_id=blob_id, size_bytes=row["size_bytes"])
    return InlineContent(text=row[content_column] or "")


def resolve_text(ref: ContentRef, blob_store: BlobStore) -> str:
    """Resolve any content reference to text."""
    if isinstance(ref, InlineContent):
        return ref.text
    return blob_store.get_text(ref.blob_id)
