"""
Range 请求头解析（RFC 7233 的单一字节范围子集）

只支持 "bytes=<start>-<end>" 与 "bytes=<start>-"。
多范围（逗号分隔）与后缀范围（bytes=-500）一律视为无法满足。
"""

import re
from dataclasses import dataclass
from typing import Optional

from ..errors import InvalidRangeError

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$", re.ASCII)


@dataclass(frozen=True)
class RangeSpec:
    """闭区间字节范围，满足 0 <= start <= end < total_size"""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{total_size}"


def resolve_range(range_header: Optional[str], total_size: int) -> Optional[RangeSpec]:
    """解析 Range 请求头

    Args:
        range_header: Range 请求头，可能为空
        total_size: 对象总字节数

    Returns:
        RangeSpec；没有 Range 头时返回 None（应返回完整内容）

    Raises:
        InvalidRangeError: 格式错误或超出范围（应返回 416）
    """
    if range_header is None or not range_header.strip():
        return None

    match = _RANGE_RE.match(range_header.strip())
    if not match:
        raise InvalidRangeError(total_size, f"Unsupported or malformed range: {range_header!r}")

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_size - 1

    if start >= total_size or end >= total_size or start > end:
        raise InvalidRangeError(total_size)

    return RangeSpec(start, end)


def unsatisfiable_content_range(total_size: int) -> str:
    return f"bytes */{total_size}"
