"""
Range 感知的对象响应

把 Range 解析与存储后端组合成 HTTP 响应：
404（对象不存在，由错误处理器渲染）、200 完整内容、206 部分内容、416 无法满足。
"""

import logging
from typing import Iterator, Optional

from flask import Response
from werkzeug.http import http_date

from ..errors import InvalidRangeError
from ..storage.base import ObjectMetadata, ObjectReader, StorageBackend
from .ranges import RangeSpec, resolve_range, unsatisfiable_content_range

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CONTROL = "public, max-age=3600"


def _base_headers(metadata: ObjectMetadata, cache_control: str) -> dict:
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Type": metadata.content_type,
        "Cache-Control": cache_control,
    }
    if metadata.last_modified is not None:
        headers["Last-Modified"] = http_date(metadata.last_modified)
    if metadata.etag:
        headers["ETag"] = metadata.etag
    return headers


def unsatisfiable_response(total_size: int) -> Response:
    """416 响应：Content-Range: bytes */<size>，无正文"""
    return Response(
        status=416,
        headers={
            "Content-Range": unsatisfiable_content_range(total_size),
            "Accept-Ranges": "bytes",
        },
    )


def _stream_body(reader: ObjectReader, name: str) -> Iterator[bytes]:
    sent = 0
    try:
        for chunk in reader:
            sent += len(chunk)
            yield chunk
    except Exception as e:
        # 响应头已经发出，状态码无法再改变，只能中断连接
        logger.error(f"Aborting stream of {name} after {sent}/{reader.length} bytes: {e}")
        raise
    finally:
        reader.close()


def _body_response(reader: ObjectReader, name: str, status: int, headers: dict) -> Response:
    response = Response(
        _stream_body(reader, name),
        status=status,
        headers=headers,
        direct_passthrough=True,
    )
    # 生成器可能从未被迭代（如客户端提前断开）
    response.call_on_close(reader.close)
    return response


def serve_object(
    backend: StorageBackend,
    name: str,
    range_header: Optional[str] = None,
    *,
    head: bool = False,
    cache_control: str = DEFAULT_CACHE_CONTROL,
) -> Response:
    """按 Range 语义响应一个存储对象

    Args:
        backend: 存储后端
        name: 对象名称
        range_header: Range 请求头
        head: 是否为 HEAD 请求（只返回响应头）
        cache_control: Cache-Control 响应头

    Returns:
        Flask Response

    Raises:
        NotFoundError: 对象不存在
        BackendError: 存储后端错误
    """
    metadata = backend.stat(name)

    try:
        byte_range = resolve_range(range_header, metadata.size)
    except InvalidRangeError:
        logger.info(f"Unsatisfiable range {range_header!r} for {name} ({metadata.size} bytes)")
        return unsatisfiable_response(metadata.size)

    if head:
        return _head_response(metadata, byte_range, cache_control)

    if byte_range is None:
        reader = backend.open_full(name)
        headers = _base_headers(reader.metadata, cache_control)
        headers["Content-Length"] = str(reader.length)
        logger.info(f"Streaming entire file {name} ({reader.length} bytes)")
        return _body_response(reader, name, 200, headers)

    try:
        reader = backend.open_range(name, byte_range.start, byte_range.end)
    except InvalidRangeError as e:
        # 对象在 stat 与 open 之间变短
        return unsatisfiable_response(e.total_size or metadata.size)

    headers = _base_headers(reader.metadata, cache_control)
    headers["Content-Range"] = byte_range.content_range(reader.metadata.size)
    headers["Content-Length"] = str(reader.length)
    logger.info(f"Streaming range {byte_range.start}-{byte_range.end}/{reader.metadata.size} for {name}")
    return _body_response(reader, name, 206, headers)


def _head_response(metadata: ObjectMetadata, byte_range: Optional[RangeSpec], cache_control: str) -> Response:
    headers = _base_headers(metadata, cache_control)
    if byte_range is None:
        headers["Content-Length"] = str(metadata.size)
        return Response(status=200, headers=headers)

    headers["Content-Range"] = byte_range.content_range(metadata.size)
    headers["Content-Length"] = str(byte_range.length)
    return Response(status=206, headers=headers)
