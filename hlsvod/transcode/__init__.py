"""
HLS 多码率打包模块

每个码率档位一个 FFmpeg 进程并行编码，生成 VOD 主播放列表与媒体播放列表。

核心特性：
- 主播放列表先于所有编码写入
- 每个档位完成前先写入 #EXT-X-ENDLIST
- 任一档位失败即终止其余档位，已完成的输出保留
- 可选发布到 R2，主播放列表最后上传
"""

from .config import TranscodeConfig, get_transcode_config
from .rendition import RenditionSpec, StreamRendition, DEFAULT_RENDITIONS, parse_renditions
from .task import TranscodeJob, TranscodeResult, JobStatus
from .playlist import build_master_playlist, finalize_media_playlist, parse_master_playlist
from .ffprobe import FFprobeRunner
from .ffmpeg import FFmpegRunner
from .manager import TranscodeManager, get_transcode_manager

__all__ = [
    'TranscodeConfig',
    'get_transcode_config',
    'RenditionSpec',
    'StreamRendition',
    'DEFAULT_RENDITIONS',
    'parse_renditions',
    'TranscodeJob',
    'TranscodeResult',
    'JobStatus',
    'build_master_playlist',
    'finalize_media_playlist',
    'parse_master_playlist',
    'FFprobeRunner',
    'FFmpegRunner',
    'TranscodeManager',
    'get_transcode_manager',
]
