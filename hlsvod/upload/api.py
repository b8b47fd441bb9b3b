"""
视频上传 API 端点

上传到本地目录或 R2，可选地提交 HLS 打包任务。
"""

import os
import re
import time
import random
import logging
import tempfile
from typing import Optional

from flask import jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from ..errors import BackendError, InvalidInputError, StreamingError
from ..storage.base import StorageBackend
from ..transcode.api import default_output_name, job_response, request_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 500 * 1024 * 1024
ALLOWED_EXTENSIONS = ('.mp4', '.avi', '.mov', '.mkv', '.webm')
UPLOAD_FIELD = 'video'

_SIZE_UNITS = {
    'B': 1,
    'KB': 1024,
    'MB': 1024 ** 2,
    'GB': 1024 ** 3,
    'TB': 1024 ** 4,
}
_SIZE_RE = re.compile(r'^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)?$')

# 在 webserver.py 中初始化
UPLOADS_BACKEND = None
VIDEOS_BACKEND = None
R2_BACKEND: Optional[StorageBackend] = None
TRANSCODE_MANAGER = None
MAX_FILE_SIZE = DEFAULT_MAX_FILE_SIZE
MAX_FILE_SIZE_LABEL = "500MB"


def parse_file_size(value) -> int:
    """解析带单位的文件大小

    Args:
        value: 如 "1GB"、"500MB"、"1048576"

    Returns:
        字节数；无法解析时返回默认值 500MB
    """
    if value is None or value == "":
        return DEFAULT_MAX_FILE_SIZE
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value) if value > 0 else DEFAULT_MAX_FILE_SIZE

    match = _SIZE_RE.match(str(value).strip().upper())
    if not match:
        logger.warning(f"Invalid max file size {value!r}, using default")
        return DEFAULT_MAX_FILE_SIZE
    size = int(float(match.group(1)) * _SIZE_UNITS[match.group(2) or 'B'])
    return size or DEFAULT_MAX_FILE_SIZE


def init_upload(uploads_backend, videos_backend, r2_backend=None, manager=None, max_file_size="500MB"):
    """初始化上传配置

    Args:
        uploads_backend: 上传目录的本地存储后端
        videos_backend: 视频目录的本地存储后端
        r2_backend: R2 存储后端（未配置时为 None）
        manager: TranscodeManager 实例
        max_file_size: 最大文件大小（带单位）
    """
    global UPLOADS_BACKEND, VIDEOS_BACKEND, R2_BACKEND, TRANSCODE_MANAGER, MAX_FILE_SIZE, MAX_FILE_SIZE_LABEL
    UPLOADS_BACKEND = uploads_backend
    VIDEOS_BACKEND = videos_backend
    R2_BACKEND = r2_backend
    TRANSCODE_MANAGER = manager
    MAX_FILE_SIZE = parse_file_size(max_file_size)
    MAX_FILE_SIZE_LABEL = str(max_file_size or "500MB")
    logger.info(f"Upload initialized (max size {MAX_FILE_SIZE} bytes, r2={'on' if r2_backend else 'off'})")


def _form_flag(name: str) -> bool:
    return str(request.form.get(name, '')).lower() in ('true', '1', 'yes')


def _get_upload():
    file = request.files.get(UPLOAD_FIELD)
    if file is None or not file.filename:
        raise InvalidInputError("No file uploaded", details={"hint": "Please select a video file to upload"})

    extension = os.path.splitext(file.filename)[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise InvalidInputError("Invalid file type. Only video files are allowed.")
    return file, extension


def _generate_filename(extension: str) -> str:
    # 与原始文件名无关，避免冲突与非法字符
    return f"{UPLOAD_FIELD}-{int(time.time() * 1000)}-{random.randint(0, 10 ** 9)}{extension}"


def _start_hls(submit):
    """提交打包任务；提交失败不影响上传结果"""
    if TRANSCODE_MANAGER is None:
        return {"error": "Transcode manager not initialized"}
    try:
        job = submit()
    except StreamingError as e:
        logger.warning(f"HLS conversion was not started: {e.message}")
        return {"error": e.message}
    return job_response(job)


def register_routes(app):
    """注册上传 API 路由

    Args:
        app: Flask 应用实例
    """

    @app.errorhandler(RequestEntityTooLarge)
    def upload_too_large(error):
        return jsonify({
            "error": "File too large",
            "message": "File size exceeds the maximum allowed limit",
            "maxFileSize": MAX_FILE_SIZE_LABEL,
        }), 413

    @app.route('/api/upload/local', methods=['POST'])
    def upload_local():
        """上传视频到本地

        表单字段：
            video: 视频文件
            moveToVideos: "true" 时存入 videos 目录（可通过 /api/video/local 播放）
            convertToHLS: "true" 时提交打包任务
        """
        file, extension = _get_upload()
        filename = _generate_filename(extension)
        move_to_videos = _form_flag('moveToVideos')
        backend = VIDEOS_BACKEND if move_to_videos else UPLOADS_BACKEND

        backend.put(filename, file.stream)
        metadata = backend.stat(filename)
        local_path = backend.local_path(filename)
        logger.info(f"Uploaded {file.filename} as {filename} ({metadata.size} bytes)")

        hls = None
        if _form_flag('convertToHLS'):
            output_name = default_output_name(filename)
            hls = _start_hls(lambda: TRANSCODE_MANAGER.convert(local_path, output_name))

        return jsonify({
            "message": "File uploaded successfully",
            "file": {
                "originalName": file.filename,
                "filename": filename,
                "size": metadata.size,
                "streamUrl": f"/api/video/local/{filename}" if move_to_videos else None,
                "metadataUrl": f"/api/video/local/{filename}/metadata" if move_to_videos else None,
            },
            "hls": hls,
        })

    @app.route('/api/upload/r2', methods=['POST'])
    def upload_r2():
        """上传视频到 R2

        表单字段：
            video: 视频文件
            key: 可选，R2 对象键，默认 videos/<时间戳>-<文件名>
            convertToHLS: "true" 时提交打包任务（结果发布回 R2）
        """
        if R2_BACKEND is None:
            raise BackendError("R2 storage is not configured")

        file, extension = _get_upload()
        original_name = secure_filename(file.filename) or f"upload{extension}"
        key = request.form.get('key') or f"videos/{int(time.time() * 1000)}-{original_name}"

        # 先落盘，再交给 boto3 的分块上传
        fd, tmp_path = tempfile.mkstemp(suffix=extension, dir=UPLOADS_BACKEND.base_dir if UPLOADS_BACKEND else None)
        os.close(fd)
        try:
            file.save(tmp_path)
            size = os.path.getsize(tmp_path)
            R2_BACKEND.upload_file(tmp_path, key, content_type=file.mimetype or None)
        finally:
            os.remove(tmp_path)

        metadata = R2_BACKEND.stat(key)
        logger.info(f"Uploaded {file.filename} to R2 as {key} ({size} bytes)")

        hls = None
        if _form_flag('convertToHLS'):
            output_name = default_output_name(original_name)
            hls = _start_hls(lambda: TRANSCODE_MANAGER.convert_remote(R2_BACKEND, key, output_name))

        return jsonify({
            "message": "File uploaded to R2 successfully",
            "file": {
                "originalName": file.filename,
                "key": key,
                "size": size,
                "etag": metadata.etag,
                "streamUrl": f"/api/video/r2/{key}",
                "metadataUrl": f"/api/video/r2/{key}/metadata",
                "presignedUrl": f"/api/video/r2/{key}/presigned",
            },
            "hls": hls,
        })

    @app.route('/api/upload/r2/<path:key>/convert-hls', methods=['POST'])
    def upload_r2_convert_hls(key):
        """将 R2 中的视频打包为 HLS 并发布回 R2（立即返回 202）"""
        if R2_BACKEND is None:
            raise BackendError("R2 storage is not configured")
        if TRANSCODE_MANAGER is None:
            return jsonify({"error": "Transcode manager not initialized"}), 500

        data = request_json()
        output_name = data.get('output_name') or data.get('outputName') or default_output_name(key)
        job = TRANSCODE_MANAGER.convert_remote(
            R2_BACKEND,
            key,
            output_name,
            renditions=data.get('renditions') or data.get('qualities'),
            segment_duration=data.get('segment_duration') or data.get('segmentDuration'),
        )
        response = job_response(job)
        response["key"] = key
        return jsonify(response), 202

    @app.route('/api/upload/info', methods=['GET'])
    def upload_info():
        """上传配置与限制"""
        return jsonify({
            "maxFileSize": MAX_FILE_SIZE_LABEL,
            "maxFileSizeBytes": MAX_FILE_SIZE,
            "allowedFormats": [ext.lstrip('.') for ext in ALLOWED_EXTENSIONS],
            "supportedFeatures": {
                "localUpload": True,
                "r2Upload": R2_BACKEND is not None,
                "hlsConversion": TRANSCODE_MANAGER is not None,
                "multipleQualities": True,
            },
            "endpoints": {
                "local": "/api/upload/local",
                "r2": "/api/upload/r2",
                "info": "/api/upload/info",
            },
        })
