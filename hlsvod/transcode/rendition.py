"""
码率档位数据模型

RenditionSpec 描述一次编码请求的参数；StreamRendition 描述已经打包好的一个档位。
"""

import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Union

from ..errors import InvalidInputError

MASTER_PLAYLIST_NAME = "master.m3u8"
MEDIA_PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_EXTENSION = ".ts"
SEGMENT_PATTERN = "segment_%03d.ts"

_BITRATE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def parse_bitrate(value: Union[str, int, float]) -> int:
    """将码率配置转换为 bits/s

    Args:
        value: 如 "2500k"、"2.5M"、2500000

    Returns:
        整数码率（bits/s）
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid bitrate: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise InvalidInputError(f"Invalid bitrate: {value!r}")
        return int(value)

    match = _BITRATE_RE.match(str(value or ""))
    if not match:
        raise InvalidInputError(f"Invalid bitrate: {value!r}")

    number = float(match.group(1))
    unit = match.group(2).lower()
    multiplier = {"": 1, "k": 1000, "m": 1000 * 1000}[unit]
    bps = int(round(number * multiplier))
    if bps <= 0:
        raise InvalidInputError(f"Invalid bitrate: {value!r}")
    return bps


@dataclass(frozen=True)
class RenditionSpec:
    """单个码率档位的编码参数"""

    name: str
    width: int
    height: int
    video_bitrate: int  # bits/s
    audio_bitrate: int  # bits/s

    def __post_init__(self):
        if not _NAME_RE.match(self.name or ""):
            raise InvalidInputError(f"Invalid rendition name: {self.name!r}")
        if self.width <= 0 or self.height <= 0:
            raise InvalidInputError(f"Invalid resolution for {self.name}: {self.width}x{self.height}")

    @property
    def bandwidth(self) -> int:
        """宣告带宽：视频码率 + 音频码率"""
        return self.video_bitrate + self.audio_bitrate

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RenditionSpec":
        """从配置字典创建

        兼容两种写法：video_bitrate/audio_bitrate 或 bitrate/audioBitrate。

        Args:
            data: 档位配置

        Returns:
            RenditionSpec 实例
        """
        if not isinstance(data, dict):
            raise InvalidInputError(f"Invalid rendition definition: {data!r}")
        try:
            video = data.get("video_bitrate", data.get("bitrate"))
            audio = data.get("audio_bitrate", data.get("audioBitrate"))
            return cls(
                name=str(data["name"]),
                width=int(data["width"]),
                height=int(data["height"]),
                video_bitrate=parse_bitrate(video),
                audio_bitrate=parse_bitrate(audio),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid rendition definition {data!r}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StreamRendition:
    """已打包的码率档位（目录布局的只读视图）"""

    name: str
    width: int
    height: int
    video_bitrate: int
    audio_bitrate: int
    media_playlist_path: str  # 相对路径，如 "movie/720p/playlist.m3u8"
    segment_directory: str  # 相对路径，如 "movie/720p"

    @property
    def bandwidth(self) -> int:
        return self.video_bitrate + self.audio_bitrate

    @classmethod
    def from_spec(cls, spec: RenditionSpec, stream_name: str) -> "StreamRendition":
        return cls(
            name=spec.name,
            width=spec.width,
            height=spec.height,
            video_bitrate=spec.video_bitrate,
            audio_bitrate=spec.audio_bitrate,
            media_playlist_path=media_playlist_key(stream_name, spec.name),
            segment_directory=f"{stream_name}/{spec.name}",
        )

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["bandwidth"] = self.bandwidth
        result["resolution"] = f"{self.width}x{self.height}"
        return result


DEFAULT_RENDITIONS: List[Dict[str, Any]] = [
    {"name": "720p", "width": 1280, "height": 720, "video_bitrate": "2500k", "audio_bitrate": "128k"},
    {"name": "480p", "width": 854, "height": 480, "video_bitrate": "1000k", "audio_bitrate": "96k"},
    {"name": "360p", "width": 640, "height": 360, "video_bitrate": "600k", "audio_bitrate": "64k"},
]


def parse_renditions(items: Any) -> List[RenditionSpec]:
    """解析档位列表，保持输入顺序，拒绝重名"""
    if not isinstance(items, (list, tuple)) or not items:
        raise InvalidInputError("At least one rendition is required")

    specs = [item if isinstance(item, RenditionSpec) else RenditionSpec.from_dict(item) for item in items]
    names = [spec.name for spec in specs]
    if len(set(names)) != len(names):
        raise InvalidInputError(f"Duplicate rendition names: {names}")
    return specs


def master_playlist_key(stream_name: str) -> str:
    return f"{stream_name}/{MASTER_PLAYLIST_NAME}"


def media_playlist_key(stream_name: str, rendition_name: str) -> str:
    return f"{stream_name}/{rendition_name}/{MEDIA_PLAYLIST_NAME}"
