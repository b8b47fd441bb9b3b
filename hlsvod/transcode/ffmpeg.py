"""
FFmpeg 进程管理模块

负责为每个码率档位构建并启动 FFmpeg HLS 编码命令。
"""

import os
import shlex
import subprocess
import logging
from typing import List, Optional

from .config import TranscodeConfig
from .rendition import RenditionSpec, MEDIA_PLAYLIST_NAME, SEGMENT_PATTERN

logger = logging.getLogger(__name__)

ENCODER_LOG_NAME = "transcode.log"


class FFmpegRunner:
    """FFmpeg 进程管理器

    每个档位一条命令：缩放到目标分辨率、按目标码率编码、HLS 切片输出。
    """

    def __init__(self, config: TranscodeConfig):
        """初始化 FFmpeg 运行器

        Args:
            config: 转码配置
        """
        self.config = config
        self.ffmpeg_path = config.ffmpeg_path

    def build_command(
        self,
        input_path: str,
        rendition: RenditionSpec,
        rendition_dir: str,
        segment_duration: Optional[int] = None
    ) -> List[str]:
        """构建 FFmpeg 命令

        Args:
            input_path: 输入文件路径
            rendition: 档位编码参数
            rendition_dir: 档位输出目录
            segment_duration: 切片时长（秒），默认使用配置值

        Returns:
            FFmpeg 命令列表
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", self.config.loglevel,
            "-i", input_path,
        ]

        # 视频编码参数
        cmd.extend(self._get_video_params(rendition))

        # 音频编码参数
        cmd.extend(self._get_audio_params(rendition))

        # 输出参数
        cmd.extend([
            "-map_metadata", "-1",  # 去除全局元数据
            "-map_chapters", "-1",   # 去除章节
        ])

        # HLS 输出参数
        cmd.extend(self._get_hls_params(rendition_dir, segment_duration or self.config.segment_duration))

        # 媒体播放列表
        cmd.extend(["-y", os.path.join(rendition_dir, MEDIA_PLAYLIST_NAME)])

        return cmd

    def _get_video_params(self, rendition: RenditionSpec) -> List[str]:
        """获取视频编码参数"""
        params = ["-c:v", self.config.video_encoder]

        if "x264" in self.config.video_encoder.lower():
            params.extend(["-preset", self.config.preset])

        # 目标码率，maxrate/bufsize 限制峰值
        params.extend([
            "-b:v", str(rendition.video_bitrate),
            "-maxrate", str(int(rendition.video_bitrate * 1.07)),
            "-bufsize", str(rendition.video_bitrate * 2),
        ])

        # 缩放到目标分辨率
        params.extend(["-vf", f"scale={rendition.width}:{rendition.height}"])

        # 固定 GOP，保证切片边界对齐
        params.extend(["-g", str(self.config.gop_size)])
        params.extend(["-keyint_min", str(self.config.gop_size)])
        params.extend(["-sc_threshold", "0"])
        params.extend(["-pix_fmt", "yuv420p"])

        return params

    def _get_audio_params(self, rendition: RenditionSpec) -> List[str]:
        """获取音频编码参数"""
        return [
            "-c:a", self.config.audio_encoder,
            "-b:a", str(rendition.audio_bitrate),
        ]

    def _get_hls_params(self, rendition_dir: str, segment_duration: int) -> List[str]:
        """获取 HLS 输出参数

        Args:
            rendition_dir: 档位输出目录
            segment_duration: 切片时长（秒）

        Returns:
            HLS 参数列表
        """
        return [
            "-f", "hls",
            "-hls_playlist_type", "vod",
            # 0 表示保留所有切片（不是直播滑动窗口）
            "-hls_list_size", "0",
            "-hls_time", str(segment_duration),
            "-hls_segment_type", "mpegts",
            "-start_number", "0",
            "-hls_segment_filename", os.path.join(rendition_dir, SEGMENT_PATTERN),
        ]

    def start_process(
        self,
        command: List[str],
        rendition_dir: str
    ) -> Optional[subprocess.Popen]:
        """启动 FFmpeg 进程

        Args:
            command: FFmpeg 命令
            rendition_dir: 档位输出目录（日志写在这里）

        Returns:
            subprocess.Popen 对象，失败返回 None
        """
        try:
            os.makedirs(rendition_dir, exist_ok=True)

            log_path = os.path.join(rendition_dir, ENCODER_LOG_NAME)
            with open(log_path, "w") as log_file:
                # 子进程持有自己的文件描述符副本
                process = subprocess.Popen(
                    command,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )

            logger.info(f"Started FFmpeg process with PID {process.pid}")
            return process

        except OSError as e:
            logger.error(f"Failed to start FFmpeg: {e}")
            return None

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）"""
        return shlex.join(command)

    def read_log_tail(self, rendition_dir: str, max_chars: int = 500) -> str:
        """读取编码日志末尾，用于错误信息"""
        log_path = os.path.join(rendition_dir, ENCODER_LOG_NAME)
        try:
            with open(log_path, "r", errors="replace") as f:
                return f.read()[-max_chars:].strip()
        except OSError:
            return ""
