"""HLS stream catalog.

Streams are not indexed anywhere: every query re-inspects the storage backend.
A stream exists as soon as its master playlist does, which includes streams
that are still being packaged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..errors import InvalidNameError, NotFoundError
from ..storage.base import StorageBackend
from ..transcode.playlist import parse_master_playlist
from ..transcode.rendition import (
    SEGMENT_EXTENSION,
    RenditionSpec,
    StreamRendition,
    master_playlist_key,
    media_playlist_key,
)

logger = logging.getLogger(__name__)


def _is_valid_name(name: str) -> bool:
    return bool(name) and not any(bad in name for bad in ("/", "\\", "..", "\x00"))


@dataclass
class Stream:
    name: str
    master_playlist_path: str
    renditions: List[StreamRendition] = field(default_factory=list)
    created_at: Optional[datetime] = None
    total_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "masterPlaylist": self.master_playlist_path,
            "qualities": [r.name for r in self.renditions],
            "renditions": [r.to_dict() for r in self.renditions],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "totalSize": self.total_size,
        }


class StreamCatalog:
    """Read/delete view over packaged streams in one storage backend."""

    def __init__(self, backend: StorageBackend, rendition_specs: Optional[Sequence[RenditionSpec]] = None):
        self.backend = backend
        self.rendition_specs = {spec.name: spec for spec in (rendition_specs or [])}

    def check_name(self, name: str) -> str:
        if not _is_valid_name(name):
            raise InvalidNameError(f"Invalid stream name: {name!r}")
        return name

    def _key(self, stream_name: str, *parts: str) -> str:
        return "/".join((stream_name,) + parts)

    def list_streams(self) -> List[str]:
        """Names of all streams whose master playlist exists, sorted.

        Lists only the top level, then stats each candidate's master playlist.
        """
        names = []
        for candidate in self.backend.list_dirs(""):
            if not _is_valid_name(candidate):
                continue
            if self.exists(candidate):
                names.append(candidate)
        return sorted(names)

    def exists(self, name: str) -> bool:
        self.check_name(name)
        try:
            self.backend.stat(master_playlist_key(name))
            return True
        except NotFoundError:
            return False

    def qualities(self, name: str) -> List[StreamRendition]:
        """Renditions listed in the master playlist whose media playlist exists.

        Raises:
            NotFoundError: the stream has no master playlist
        """
        self.check_name(name)
        with self.backend.open_full(master_playlist_key(name)) as reader:
            text = reader.read_all().decode("utf-8", errors="replace")

        renditions = []
        for entry in parse_master_playlist(text):
            playlist_key = media_playlist_key(name, entry.name)
            try:
                self.backend.stat(playlist_key)
            except NotFoundError:
                continue

            spec = self.rendition_specs.get(entry.name)
            if spec is not None:
                video_bitrate, audio_bitrate = spec.video_bitrate, spec.audio_bitrate
            else:
                video_bitrate, audio_bitrate = entry.bandwidth, 0
            renditions.append(StreamRendition(
                name=entry.name,
                width=entry.width,
                height=entry.height,
                video_bitrate=video_bitrate,
                audio_bitrate=audio_bitrate,
                media_playlist_path=playlist_key,
                segment_directory=self._key(name, entry.name),
            ))
        return renditions

    def total_size(self, name: str) -> int:
        self.check_name(name)
        return sum(
            item.size for item in self.backend.list(name + "/")
            if item.name.endswith(SEGMENT_EXTENSION)
        )

    def get_stream(self, name: str) -> Stream:
        self.check_name(name)
        master_key = master_playlist_key(name)
        metadata = self.backend.stat(master_key)
        return Stream(
            name=name,
            master_playlist_path=master_key,
            renditions=self.qualities(name),
            created_at=metadata.last_modified,
            total_size=self.total_size(name),
        )

    def delete(self, name: str) -> int:
        """Remove every object under ``<name>/``.

        Raises:
            NotFoundError: nothing is stored under the stream's prefix
        """
        self.check_name(name)
        prefix = name + "/"
        if not self.backend.list(prefix):
            raise NotFoundError(f"Stream '{name}' not found")
        removed = self.backend.delete_prefix(prefix)
        logger.info(f"Deleted stream {name} ({removed} objects)")
        return removed
