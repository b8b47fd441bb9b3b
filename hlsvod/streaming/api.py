"""
视频与 HLS 流 API 端点

- /api/video/...：本地与 R2 的渐进式视频，支持 Range 请求
- /api/hls/...：打包好的 HLS 流（主播放列表、媒体播放列表、切片）与流管理
"""

import logging
from typing import Optional
from urllib.parse import quote

from flask import jsonify, request

from ..errors import BackendError, InvalidInputError, NotFoundError
from ..storage.base import StorageBackend, is_video_file
from ..transcode.api import default_output_name
from ..transcode.rendition import MEDIA_PLAYLIST_NAME, SEGMENT_EXTENSION, master_playlist_key
from .catalog import StreamCatalog
from .server import serve_object

logger = logging.getLogger(__name__)

# 在 webserver.py 中初始化
VIDEO_BACKEND: Optional[StorageBackend] = None
R2_BACKEND: Optional[StorageBackend] = None
HLS_CATALOG: Optional[StreamCatalog] = None

MASTER_CACHE_CONTROL = "no-cache"
MEDIA_CACHE_CONTROL = "public, max-age=10"
SEGMENT_CACHE_CONTROL = "public, max-age=31536000, immutable"
VIDEO_CACHE_CONTROL = "public, max-age=3600"

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000

STREAM_INFO_PRESIGN_EXPIRY = 3600
LARGE_FILE_THRESHOLD = 100 * 1024 * 1024  # 超过 100MB 建议客户端直接走预签名 URL


def init_streaming(video_backend, r2_backend=None, catalog=None):
    """初始化视频与 HLS 存储

    Args:
        video_backend: 本地视频目录的存储后端
        r2_backend: R2 存储后端（未配置时为 None）
        catalog: HLS 流目录
    """
    global VIDEO_BACKEND, R2_BACKEND, HLS_CATALOG
    VIDEO_BACKEND = video_backend
    R2_BACKEND = r2_backend
    HLS_CATALOG = catalog
    hls_backend = catalog.backend if catalog else None
    logger.info(
        f"Streaming initialized (local={video_backend!r}, r2={'on' if r2_backend else 'off'}, hls={hls_backend!r})"
    )


def _require_video(name: str):
    if not is_video_file(name):
        raise InvalidInputError(f"Not a video file: {name}")


def _require_r2() -> StorageBackend:
    if R2_BACKEND is None:
        raise BackendError("R2 storage is not configured")
    return R2_BACKEND


def _require_catalog() -> StreamCatalog:
    if HLS_CATALOG is None:
        raise BackendError("HLS catalog is not configured")
    return HLS_CATALOG


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidInputError(f"Invalid {name}: {value!r}")


def _serve(backend: StorageBackend, name: str, cache_control: str):
    return serve_object(
        backend,
        name,
        request.headers.get("Range"),
        head=request.method == "HEAD",
        cache_control=cache_control,
    )


def register_routes(app):
    """注册视频与 HLS 路由

    Args:
        app: Flask 应用实例
    """

    # ------------------------------------------------------------ 本地视频

    @app.route('/api/video/local/<filename>', methods=['GET', 'HEAD'])
    def video_local(filename):
        """本地视频流（支持 Range）"""
        _require_video(filename)
        return _serve(VIDEO_BACKEND, filename, VIDEO_CACHE_CONTROL)

    @app.route('/api/video/local/<filename>/metadata', methods=['GET'])
    def video_local_metadata(filename):
        _require_video(filename)
        return jsonify(VIDEO_BACKEND.stat(filename).to_dict())

    @app.route('/api/video/list', methods=['GET'])
    def video_list():
        """列出本地视频"""
        videos = [item.to_dict() for item in VIDEO_BACKEND.list("") if is_video_file(item.name)]
        return jsonify({"videos": videos, "count": len(videos)})

    # ------------------------------------------------------------ R2 视频

    @app.route('/api/video/r2/<path:key>', methods=['GET', 'HEAD'])
    def video_r2(key):
        """R2 视频流（支持 Range）"""
        _require_video(key)
        return _serve(_require_r2(), key, VIDEO_CACHE_CONTROL)

    @app.route('/api/video/r2/<path:key>/metadata', methods=['GET'])
    def video_r2_metadata(key):
        _require_video(key)
        return jsonify(_require_r2().stat(key).to_dict())

    @app.route('/api/video/r2/<path:key>/presigned', methods=['GET'])
    def video_r2_presigned(key):
        """生成预签名 URL，客户端可直接从 R2 读取"""
        _require_video(key)
        backend = _require_r2()
        expires_in = _int_arg('expires', 3600)
        # 对象不存在时返回 404，而不是签出一个无效 URL
        backend.stat(key)
        url = backend.presigned_url(key, expires_in)
        return jsonify({"url": url, "key": key, "expiresIn": expires_in})

    @app.route('/api/video/r2/<path:key>/stream-info', methods=['GET'])
    def video_r2_stream_info(key):
        """元数据、1 小时预签名 URL 与播放建议"""
        _require_video(key)
        backend = _require_r2()
        metadata = backend.stat(key)
        presigned = backend.presigned_url(key, STREAM_INFO_PRESIGN_EXPIRY)

        hls_playlist = None
        stream_name = default_output_name(key)
        if HLS_CATALOG is not None and HLS_CATALOG.exists(stream_name):
            hls_playlist = f"/api/hls/{stream_name}/master.m3u8"

        info = metadata.to_dict()
        info["streamingOptions"] = {
            "directStream": f"/api/video/r2/{quote(key)}",
            "presignedUrl": presigned,
            "presignedExpiresIn": STREAM_INFO_PRESIGN_EXPIRY,
            "hlsPlaylist": hls_playlist,
            "supportsRangeRequests": True,
        }
        info["clientRecommendations"] = {
            "usePresignedForLargeFiles": metadata.size > LARGE_FILE_THRESHOLD,
        }
        return jsonify(info)

    @app.route('/api/video/r2-list', methods=['GET'])
    def video_r2_list():
        """列出 R2 中的视频"""
        backend = _require_r2()
        prefix = request.args.get('prefix', '')
        limit = _int_arg('limit', DEFAULT_LIST_LIMIT)
        if limit <= 0 or limit > MAX_LIST_LIMIT:
            raise InvalidInputError(f"limit must be between 1 and {MAX_LIST_LIMIT}")

        items = backend.list(prefix, max_keys=limit)
        videos = [item.to_dict() for item in items if is_video_file(item.name)]
        return jsonify({"videos": videos, "count": len(videos), "prefix": prefix})

    # ------------------------------------------------------------ HLS

    @app.route('/api/hls/streams', methods=['GET'])
    def hls_streams():
        """列出所有 HLS 流"""
        catalog = _require_catalog()
        streams = []
        for name in catalog.list_streams():
            try:
                streams.append(catalog.get_stream(name).to_dict())
            except NotFoundError:
                # 列出之后被删除
                continue
        return jsonify({"streams": streams, "count": len(streams)})

    @app.route('/api/hls/<stream>/info', methods=['GET'])
    def hls_stream_info(stream):
        catalog = _require_catalog()
        info = catalog.get_stream(stream).to_dict()
        info["masterPlaylistUrl"] = f"/api/hls/{stream}/master.m3u8"
        return jsonify(info)

    @app.route('/api/hls/<stream>/master.m3u8', methods=['GET', 'HEAD'])
    def hls_master_playlist(stream):
        catalog = _require_catalog()
        catalog.check_name(stream)
        return _serve(catalog.backend, master_playlist_key(stream), MASTER_CACHE_CONTROL)

    @app.route('/api/hls/<stream>/<quality>/playlist.m3u8', methods=['GET', 'HEAD'])
    def hls_media_playlist(stream, quality):
        catalog = _require_catalog()
        catalog.check_name(stream)
        catalog.check_name(quality)
        return _serve(catalog.backend, f"{stream}/{quality}/{MEDIA_PLAYLIST_NAME}", MEDIA_CACHE_CONTROL)

    @app.route('/api/hls/<stream>/<quality>/<segment>', methods=['GET', 'HEAD'])
    def hls_segment(stream, quality, segment):
        catalog = _require_catalog()
        catalog.check_name(stream)
        catalog.check_name(quality)
        if not segment.endswith(SEGMENT_EXTENSION):
            raise InvalidInputError(f"Invalid segment name: {segment}")
        catalog.check_name(segment)
        return _serve(catalog.backend, f"{stream}/{quality}/{segment}", SEGMENT_CACHE_CONTROL)

    @app.route('/api/hls/<stream>', methods=['DELETE'])
    def hls_delete_stream(stream):
        """删除 HLS 流的全部文件"""
        catalog = _require_catalog()
        removed = catalog.delete(stream)
        return jsonify({"success": True, "stream": stream, "deleted": removed})
