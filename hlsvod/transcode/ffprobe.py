"""
输入探测

打包前用 ffprobe 确认输入是带视频流的容器文件，避免为无效输入启动多个编码进程。
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    pass


@dataclass
class MediaInfo:
    """ffprobe 结果中打包关心的部分"""

    container: str = ""
    duration: float = 0.0
    video_codec: Optional[str] = None
    width: int = 0
    height: int = 0
    audio_codec: Optional[str] = None

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None

    @classmethod
    def from_probe(cls, data: Dict[str, Any]) -> "MediaInfo":
        fmt = data.get("format") or {}
        try:
            duration = float(fmt.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0.0
        info = cls(container=fmt.get("format_name", ""), duration=duration)

        for stream in data.get("streams") or []:
            kind = stream.get("codec_type")
            # 内嵌封面图同样以 video 流出现
            if kind == "video" and (stream.get("disposition") or {}).get("attached_pic") == 1:
                continue
            if kind == "video" and info.video_codec is None:
                info.video_codec = stream.get("codec_name", "")
                info.width = int(stream.get("width") or 0)
                info.height = int(stream.get("height") or 0)
            elif kind == "audio" and info.audio_codec is None:
                info.audio_codec = stream.get("codec_name", "")
        return info


class FFprobeRunner:
    """用 ffprobe 读取输入文件的容器与流信息"""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    def build_command(self, input_path: str) -> list:
        return [
            self.ffprobe_path,
            "-hide_banner",
            "-loglevel", "error",
            "-show_format",
            "-show_streams",
            "-print_format", "json",
            input_path,
        ]

    def probe(self, input_path: str, timeout: int = 30) -> MediaInfo:
        """探测输入文件

        Args:
            input_path: 输入文件路径
            timeout: 超时时间（秒）

        Returns:
            MediaInfo

        Raises:
            ProbeError: ffprobe 无法运行、超时、退出码非零或输出无法解析
        """
        try:
            completed = subprocess.run(
                self.build_command(input_path),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timeout ({timeout}s)") from e
        except FileNotFoundError as e:
            raise ProbeError("ffprobe not found") from e
        except OSError as e:
            raise ProbeError(f"Failed to run ffprobe: {e}") from e

        if completed.returncode != 0:
            raise ProbeError(f"ffprobe failed: {completed.stderr.strip() or 'unknown error'}")

        try:
            return MediaInfo.from_probe(json.loads(completed.stdout))
        except ValueError as e:
            raise ProbeError(f"Unreadable ffprobe output: {e}") from e

    def check_video_input(self, input_path: str, timeout: int = 30) -> Tuple[bool, Optional[str]]:
        """确认输入可被打包

        Returns:
            (是否可打包, 错误信息)
        """
        try:
            info = self.probe(input_path, timeout)
        except ProbeError as e:
            logger.warning(f"Probe of {input_path} failed: {e}")
            return False, str(e)

        if not info.has_video:
            return False, f"No video stream found in {input_path}"
        logger.info(f"Probed {input_path}: {info.video_codec} {info.width}x{info.height}, {info.duration:.1f}s")
        return True, None
