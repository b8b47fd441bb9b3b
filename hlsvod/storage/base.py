"""Storage backend protocol and shared value types."""

from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Protocol, Union

DEFAULT_CHUNK_SIZE = 64 * 1024

VIDEO_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
}

HLS_MIME_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}

Body = Union[bytes, BinaryIO]


def guess_content_type(name: str) -> str:
    """Content type for an object name, by extension."""
    ext = os.path.splitext(name)[1].lower()
    if ext in HLS_MIME_TYPES:
        return HLS_MIME_TYPES[ext]
    if ext in VIDEO_MIME_TYPES:
        return VIDEO_MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def is_video_file(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in VIDEO_MIME_TYPES


@dataclass(frozen=True)
class ObjectMetadata:
    """Snapshot of an object's metadata, taken at call time."""

    name: str
    size: int
    content_type: str
    last_modified: Optional[datetime]
    etag: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "filename": self.name.rsplit("/", 1)[-1],
            "size": self.size,
            "mimeType": self.content_type,
            "lastModified": self.last_modified.isoformat() if self.last_modified else None,
            "etag": self.etag,
            "supportsRangeRequests": True,
        }


class ObjectReader:
    """An opened byte stream plus the metadata captured when it was opened.

    ``length`` is the number of body bytes the reader yields; for a range read
    it differs from ``metadata.size``.
    """

    def __init__(
        self,
        metadata: ObjectMetadata,
        chunks: Iterator[bytes],
        length: int,
        close: Optional[Callable[[], None]] = None,
        start: int = 0,
    ):
        self.metadata = metadata
        self.length = length
        self.start = start
        self._chunks = chunks
        self._close = close
        self._closed = False

    @property
    def end(self) -> int:
        return self.start + self.length - 1

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def read_all(self) -> bytes:
        try:
            return b"".join(self._chunks)
        finally:
            self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            self._close()

    def __enter__(self) -> "ObjectReader":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class StorageBackend(Protocol):
    """Capability set every storage backend implements."""

    name: str

    def stat(self, name: str) -> ObjectMetadata:
        """Metadata for ``name``; raises NotFoundError when absent."""

    def open_range(self, name: str, start: int, end: int) -> ObjectReader:
        """Open exactly ``end - start + 1`` bytes starting at ``start``."""

    def open_full(self, name: str) -> ObjectReader:
        """Open the whole object."""

    def put(self, name: str, data: Body, content_type: Optional[str] = None) -> str:
        """Write or overwrite ``name`` and return its etag."""

    def list(self, prefix: str = "") -> List[ObjectMetadata]:
        """Every object whose name starts with ``prefix``, recursively."""

    def list_dirs(self, prefix: str = "") -> List[str]:
        """Names of the immediate "directories" under ``prefix`` (no trailing slash)."""

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix`` and return how many were removed."""


__all__ = [
    "Body",
    "DEFAULT_CHUNK_SIZE",
    "ObjectMetadata",
    "ObjectReader",
    "StorageBackend",
    "guess_content_type",
    "is_video_file",
]
