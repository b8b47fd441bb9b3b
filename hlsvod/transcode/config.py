"""
转码配置模块

定义 HLS 打包相关的配置参数和默认值。
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field

from .rendition import (
    DEFAULT_RENDITIONS,
    MASTER_PLAYLIST_NAME,
    MEDIA_PLAYLIST_NAME,
    RenditionSpec,
    parse_renditions,
)


@dataclass
class TranscodeConfig:
    """转码配置

    从全局配置的 "hls" 段读取参数，提供默认值。
    """

    # 基础配置
    work_dir: str = "hls"
    segment_duration: int = 10  # 切片时长（秒）
    renditions: List[RenditionSpec] = field(default_factory=lambda: parse_renditions(DEFAULT_RENDITIONS))

    # 可执行文件
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # 编码器配置
    video_encoder: str = "libx264"
    audio_encoder: str = "aac"
    preset: str = "fast"
    gop_size: int = 48  # GOP 大小（帧数）

    # FFmpeg 日志级别
    loglevel: str = "warning"

    # 输入探测
    probe_input: bool = True
    probe_timeout: int = 30  # ffprobe 探测超时时间（秒）

    # 并发限制
    max_concurrent_jobs: int = 2  # 最大并发打包任务数

    # 进程监控
    poll_interval: float = 0.5  # 轮询编码进程的间隔（秒）
    kill_timeout: int = 5  # terminate 之后等待多久再 kill（秒）

    # 任务清理
    job_retention: int = 3600  # 已结束任务保留时间（秒）
    cleanup_interval: int = 300  # 清理间隔（秒）

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'TranscodeConfig':
        """从应用配置创建 TranscodeConfig

        Args:
            app_config: 全局配置字典

        Returns:
            TranscodeConfig 实例
        """
        hls_config = app_config.get("hls", {}) or {}

        # 合并默认值
        config = cls()

        # 更新基础配置
        if "work_dir" in hls_config:
            config.work_dir = hls_config["work_dir"]
        if "segment_duration" in hls_config:
            config.segment_duration = int(hls_config["segment_duration"] or 10)
        if hls_config.get("renditions"):
            config.renditions = parse_renditions(hls_config["renditions"])

        # 更新可执行文件路径
        if "ffmpeg_path" in hls_config:
            config.ffmpeg_path = hls_config["ffmpeg_path"] or "ffmpeg"
        if "ffprobe_path" in hls_config:
            config.ffprobe_path = hls_config["ffprobe_path"] or "ffprobe"

        # 更新编码器配置
        if "video_encoder" in hls_config:
            config.video_encoder = hls_config["video_encoder"]
        if "audio_encoder" in hls_config:
            config.audio_encoder = hls_config["audio_encoder"]
        if "preset" in hls_config:
            config.preset = str(hls_config["preset"])
        if "gop_size" in hls_config:
            config.gop_size = int(hls_config["gop_size"] or 48)
        if "loglevel" in hls_config:
            config.loglevel = hls_config["loglevel"]

        # 更新探测配置
        if "probe_input" in hls_config:
            config.probe_input = bool(hls_config["probe_input"])
        if "probe_timeout" in hls_config:
            config.probe_timeout = int(hls_config["probe_timeout"] or 30)

        # 更新并发与监控
        if "max_concurrent_jobs" in hls_config:
            config.max_concurrent_jobs = int(hls_config["max_concurrent_jobs"] or 2)
        if "poll_interval" in hls_config:
            config.poll_interval = float(hls_config["poll_interval"] or 0.5)
        if "kill_timeout" in hls_config:
            config.kill_timeout = int(hls_config["kill_timeout"] or 5)

        # 更新清理配置
        if "job_retention" in hls_config:
            config.job_retention = int(hls_config["job_retention"] or 3600)
        if "cleanup_interval" in hls_config:
            config.cleanup_interval = int(hls_config["cleanup_interval"] or 300)

        return config

    def get_output_dir(self, output_name: str) -> str:
        """获取打包输出目录

        Args:
            output_name: 输出名称（流名称）

        Returns:
            输出目录路径
        """
        return os.path.join(self.work_dir, output_name)

    def get_rendition_dir(self, output_name: str, rendition_name: str) -> str:
        return os.path.join(self.get_output_dir(output_name), rendition_name)

    def get_master_playlist_path(self, output_name: str) -> str:
        return os.path.join(self.get_output_dir(output_name), MASTER_PLAYLIST_NAME)

    def get_media_playlist_path(self, output_name: str, rendition_name: str) -> str:
        return os.path.join(self.get_rendition_dir(output_name, rendition_name), MEDIA_PLAYLIST_NAME)

    def find_rendition(self, name: str) -> Optional[RenditionSpec]:
        for spec in self.renditions:
            if spec.name == name:
                return spec
        return None


def get_transcode_config(app_config: dict) -> TranscodeConfig:
    """获取转码配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        TranscodeConfig 实例
    """
    return TranscodeConfig.from_app_config(app_config)
