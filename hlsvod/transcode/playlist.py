"""
HLS 播放列表生成器

生成多码率主播放列表（master.m3u8），并将 FFmpeg 输出的媒体播放列表定稿为 VOD。
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..errors import InvalidInputError
from .rendition import MEDIA_PLAYLIST_NAME

ENDLIST_TAG = "#EXT-X-ENDLIST"
STREAM_INF_TAG = "#EXT-X-STREAM-INF:"

# 属性值可能是带逗号的引号字符串，如 CODECS="avc1.4d401f,mp4a.40.2"
_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')


@dataclass(frozen=True)
class VariantEntry:
    """主播放列表中的一个 #EXT-X-STREAM-INF 条目"""

    name: str
    uri: str
    bandwidth: int
    width: int = 0
    height: int = 0


def build_master_playlist(renditions: Sequence, stream_name: str) -> str:
    """生成主播放列表

    条目顺序与输入顺序一致（约定从高到低排列，但不强制）。
    带宽为宣告值：视频码率 + 音频码率。

    Args:
        renditions: RenditionSpec 或 StreamRendition 列表
        stream_name: 流名称

    Returns:
        m3u8 内容
    """
    if not renditions:
        raise InvalidInputError(f"No renditions to describe for stream {stream_name!r}")

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
    ]
    for rendition in renditions:
        bandwidth = rendition.video_bitrate + rendition.audio_bitrate
        lines.append(
            f"{STREAM_INF_TAG}BANDWIDTH={bandwidth},RESOLUTION={rendition.width}x{rendition.height}"
        )
        lines.append(f"{rendition.name}/{MEDIA_PLAYLIST_NAME}")

    return "\n".join(lines) + "\n"


def finalize_media_playlist(playlist: str) -> str:
    """为媒体播放列表追加 #EXT-X-ENDLIST

    幂等：已包含该标签的播放列表原样返回。

    Args:
        playlist: 媒体播放列表内容

    Returns:
        定稿后的内容
    """
    if has_endlist(playlist):
        return playlist
    if playlist and not playlist.endswith("\n"):
        playlist += "\n"
    return f"{playlist}{ENDLIST_TAG}\n"


def has_endlist(playlist: str) -> bool:
    return any(line.strip() == ENDLIST_TAG for line in playlist.splitlines())


def parse_master_playlist(playlist: str) -> List[VariantEntry]:
    """解析主播放列表中的码率条目

    Args:
        playlist: master.m3u8 内容

    Returns:
        按文件顺序排列的 VariantEntry 列表
    """
    entries: List[VariantEntry] = []
    pending: Optional[Dict[str, str]] = None

    for raw_line in playlist.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith(STREAM_INF_TAG):
            pending = _parse_attributes(line[len(STREAM_INF_TAG):])
            continue
        if line.startswith("#"):
            continue
        if pending is None:
            continue

        width, height = _parse_resolution(pending.get("RESOLUTION", ""))
        try:
            bandwidth = int(pending.get("BANDWIDTH", "0"))
        except ValueError:
            bandwidth = 0
        entries.append(VariantEntry(
            name=_rendition_name_from_uri(line),
            uri=line,
            bandwidth=bandwidth,
            width=width,
            height=height,
        ))
        pending = None

    return entries


def _parse_attributes(text: str) -> Dict[str, str]:
    return {key: value.strip('"') for key, value in _ATTRIBUTE_RE.findall(text)}


def _parse_resolution(value: str):
    try:
        width, height = value.lower().split("x", 1)
        return int(width), int(height)
    except ValueError:
        return 0, 0


def _rendition_name_from_uri(uri: str) -> str:
    parts = uri.split("/")
    if len(parts) >= 2:
        return parts[-2]
    return parts[0].rsplit(".", 1)[0]
