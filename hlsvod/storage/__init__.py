"""存储后端入口。

提供统一的工厂方法，根据配置返回本地文件系统或 R2 对象存储实现。
"""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import InvalidInputError
from .base import ObjectMetadata, ObjectReader, StorageBackend, guess_content_type, is_video_file
from .local import LocalStorageBackend
from .r2 import MAX_PRESIGN_EXPIRY, R2StorageBackend

LOCAL = "local"
R2 = "r2"


def get_backend(
    config: dict,
    kind: str,
    *,
    base_dir: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> StorageBackend:
    """根据配置返回存储后端。

    Args:
        config: 全局配置字典
        kind: "local" 或 "r2"
        base_dir: 本地后端的根目录（local 必填）
        logger: 日志记录器

    Returns:
        StorageBackend 实现
    """
    logger = logger or logging.getLogger(__name__)
    kind = (kind or LOCAL).lower()

    if kind == LOCAL:
        if not base_dir:
            raise InvalidInputError("Local storage backend requires a base directory")
        logger.info("使用本地存储: %s", base_dir)
        return LocalStorageBackend(base_dir)

    if kind == R2:
        section = config.get("r2", {}) if isinstance(config, dict) else {}
        backend = R2StorageBackend.from_config(section or {})
        logger.info("使用 R2 存储: bucket=%s endpoint=%s", backend.bucket, backend.endpoint or "<default>")
        return backend

    raise InvalidInputError(f"Unknown storage backend: {kind}")


def r2_configured(config: dict) -> bool:
    section = config.get("r2", {}) if isinstance(config, dict) else {}
    return bool(section and section.get("bucket"))


__all__ = [
    "LOCAL",
    "R2",
    "MAX_PRESIGN_EXPIRY",
    "LocalStorageBackend",
    "R2StorageBackend",
    "ObjectMetadata",
    "ObjectReader",
    "StorageBackend",
    "get_backend",
    "guess_content_type",
    "is_video_file",
    "r2_configured",
]
