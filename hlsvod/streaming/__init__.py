"""
Range 感知的内容服务与 HLS 流目录
"""

from .ranges import RangeSpec, resolve_range
from .server import serve_object
from .catalog import Stream, StreamCatalog

__all__ = [
    'RangeSpec',
    'resolve_range',
    'serve_object',
    'Stream',
    'StreamCatalog',
]
