"""Local filesystem storage backend.

Every object name is resolved under a single base directory; names that are
absolute or would escape that directory are rejected before any I/O.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat as stat_module
import tempfile
from datetime import datetime, timezone
from typing import BinaryIO, Iterator, List, Optional

from ..errors import BackendError, InvalidNameError, InvalidRangeError, NotFoundError
from .base import DEFAULT_CHUNK_SIZE, Body, ObjectMetadata, ObjectReader, guess_content_type

logger = logging.getLogger(__name__)

# 写入中的临时文件，列举时跳过
TEMP_PREFIX = ".partial-"


class LocalStorageBackend:
    """Objects are files below ``base_dir``; names use ``/`` separators."""

    name = "local"

    def __init__(self, base_dir: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE, create: bool = True):
        self.base_dir = os.path.realpath(base_dir)
        self.chunk_size = chunk_size
        if create:
            os.makedirs(self.base_dir, exist_ok=True)

    def __repr__(self) -> str:
        return f"LocalStorageBackend({self.base_dir!r})"

    # ------------------------------------------------------------------ names

    def normalize_name(self, name: str, *, allow_root: bool = False) -> str:
        """Validate ``name`` and return its normalised relative form."""
        if not isinstance(name, str) or "\x00" in name:
            raise InvalidNameError(f"Invalid object name: {name!r}")

        candidate = name.replace("\\", "/")
        if candidate.startswith("/") or os.path.isabs(name) or (len(candidate) > 1 and candidate[1] == ":"):
            raise InvalidNameError(f"Absolute object names are not allowed: {name!r}")

        normalized = posixpath.normpath(candidate) if candidate else "."
        if normalized == ".." or normalized.startswith("../"):
            raise InvalidNameError(f"Object name escapes storage root: {name!r}")
        if normalized == "." and not allow_root:
            raise InvalidNameError("Empty object name")
        return "" if normalized == "." else normalized

    def local_path(self, name: str, *, allow_root: bool = False) -> str:
        """Filesystem path for ``name``, guaranteed to stay below ``base_dir``."""
        relative = self.normalize_name(name, allow_root=allow_root)
        path = os.path.realpath(os.path.join(self.base_dir, *relative.split("/"))) if relative else self.base_dir
        # 符号链接也不能指向根目录之外
        if os.path.commonpath([self.base_dir, path]) != self.base_dir:
            raise InvalidNameError(f"Object name escapes storage root: {name!r}")
        return path

    # --------------------------------------------------------------- metadata

    def _metadata(self, name: str, st: os.stat_result) -> ObjectMetadata:
        mtime_ms = int(st.st_mtime * 1000)
        return ObjectMetadata(
            name=name,
            size=st.st_size,
            content_type=guess_content_type(name),
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            etag=f'"{st.st_size}-{mtime_ms}"',
        )

    def stat(self, name: str) -> ObjectMetadata:
        path = self.local_path(name)
        try:
            st = os.stat(path)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise NotFoundError(f"Object '{name}' not found") from e
        except OSError as e:
            raise BackendError(f"Failed to stat '{name}': {e}") from e
        if not stat_module.S_ISREG(st.st_mode):
            raise NotFoundError(f"Object '{name}' not found")
        return self._metadata(self.normalize_name(name), st)

    def exists(self, name: str) -> bool:
        try:
            self.stat(name)
            return True
        except NotFoundError:
            return False

    # ------------------------------------------------------------------ reads

    def _open(self, name: str):
        path = self.local_path(name)
        try:
            handle = open(path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise NotFoundError(f"Object '{name}' not found") from e
        except OSError as e:
            raise BackendError(f"Failed to open '{name}': {e}") from e

        # 元数据取自已打开的文件描述符，与数据流一致
        st = os.fstat(handle.fileno())
        if not stat_module.S_ISREG(st.st_mode):
            handle.close()
            raise NotFoundError(f"Object '{name}' not found")
        return handle, self._metadata(self.normalize_name(name), st)

    def _iter_file(self, handle: BinaryIO, length: int, name: str) -> Iterator[bytes]:
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(self.chunk_size, remaining))
            if not chunk:
                raise BackendError(f"'{name}' was truncated while streaming ({remaining} bytes missing)")
            remaining -= len(chunk)
            yield chunk

    def open_range(self, name: str, start: int, end: int) -> ObjectReader:
        handle, metadata = self._open(name)
        if start < 0 or end < start or end >= metadata.size:
            handle.close()
            raise InvalidRangeError(metadata.size)

        length = end - start + 1
        try:
            handle.seek(start)
        except OSError as e:
            handle.close()
            raise BackendError(f"Failed to seek '{name}': {e}") from e
        return ObjectReader(metadata, self._iter_file(handle, length, name), length, close=handle.close, start=start)

    def open_full(self, name: str) -> ObjectReader:
        handle, metadata = self._open(name)
        return ObjectReader(metadata, self._iter_file(handle, metadata.size, name), metadata.size, close=handle.close)

    # ----------------------------------------------------------------- writes

    def put(self, name: str, data: Body, content_type: Optional[str] = None) -> str:
        path = self.local_path(name)
        directory = os.path.dirname(path)
        try:
            os.makedirs(directory, exist_ok=True)
            # 先写临时文件再替换，读者不会看到写了一半的文件
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=TEMP_PREFIX)
            try:
                with os.fdopen(fd, "wb") as out:
                    if isinstance(data, (bytes, bytearray, memoryview)):
                        out.write(data)
                    else:
                        shutil.copyfileobj(data, out, self.chunk_size)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise BackendError(f"Failed to write '{name}': {e}") from e

        metadata = self.stat(name)
        logger.info(f"Stored {name} ({metadata.size} bytes) in {self.base_dir}")
        return metadata.etag

    def list(self, prefix: str = "") -> List[ObjectMetadata]:
        relative_prefix = prefix.replace("\\", "/").lstrip("/") if prefix else ""
        # 从前缀中最深的目录开始遍历
        directory = relative_prefix.rsplit("/", 1)[0] if "/" in relative_prefix else ""
        root = self.local_path(directory, allow_root=True)
        if not os.path.isdir(root):
            return []

        results = []
        try:
            for current, dirnames, filenames in os.walk(root):
                dirnames.sort()
                for filename in sorted(filenames):
                    if filename.startswith(TEMP_PREFIX):
                        continue
                    full_path = os.path.join(current, filename)
                    name = os.path.relpath(full_path, self.base_dir).replace(os.sep, "/")
                    if not name.startswith(relative_prefix):
                        continue
                    try:
                        st = os.stat(full_path)
                    except FileNotFoundError:
                        # 遍历期间被删除
                        continue
                    if stat_module.S_ISREG(st.st_mode):
                        results.append(self._metadata(name, st))
        except OSError as e:
            raise BackendError(f"Failed to list '{prefix}': {e}") from e
        return results

    def list_dirs(self, prefix: str = "") -> List[str]:
        root = self.local_path(prefix, allow_root=True)
        try:
            entries = sorted(os.listdir(root))
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise BackendError(f"Failed to list '{prefix}': {e}") from e
        return [entry for entry in entries if os.path.isdir(os.path.join(root, entry))]

    def delete_prefix(self, prefix: str) -> int:
        relative = self.normalize_name(prefix)
        items = self.list(prefix)
        try:
            if prefix.endswith("/"):
                directory = self.local_path(relative)
                if os.path.isdir(directory):
                    shutil.rmtree(directory)
            else:
                for item in items:
                    os.remove(self.local_path(item.name))
        except OSError as e:
            raise BackendError(f"Failed to delete '{prefix}': {e}") from e

        if items:
            logger.info(f"Deleted {len(items)} objects under {prefix} from {self.base_dir}")
        return len(items)
