"""
HLS 打包 API 端点

提交打包任务、查询任务状态、取消任务。
"""

import os
from typing import Dict, List, Optional

from flask import jsonify, request
import logging

from ..errors import InvalidInputError, NotFoundError
from ..storage.base import StorageBackend, is_video_file
from ..storage.local import LocalStorageBackend

logger = logging.getLogger(__name__)

# 全局打包管理器实例（在 webserver.py 中初始化）
TRANSCODE_MANAGER = None

# 允许作为打包输入的本地目录（按顺序查找）
SOURCE_BACKENDS: List[LocalStorageBackend] = []

# 可发布的目标后端（名称 -> 后端）
PUBLISH_BACKENDS: Dict[str, StorageBackend] = {}


def init_transcode_manager(manager, source_backends=None, publish_backends=None):
    """初始化打包管理器

    Args:
        manager: TranscodeManager 实例
        source_backends: 输入文件所在的本地存储后端列表
        publish_backends: 可发布的目标后端字典
    """
    global TRANSCODE_MANAGER, SOURCE_BACKENDS, PUBLISH_BACKENDS
    TRANSCODE_MANAGER = manager
    SOURCE_BACKENDS = list(source_backends or [])
    PUBLISH_BACKENDS = dict(publish_backends or {})
    logger.info("Transcode manager initialized")


def resolve_input_path(filename: str) -> str:
    """在允许的本地目录中查找输入文件，名称不能越出目录"""
    if not filename:
        raise InvalidInputError("Input filename is required")
    if not isinstance(filename, str):
        raise InvalidInputError(f"Invalid input filename: {filename!r}")
    if not is_video_file(filename):
        raise InvalidInputError(f"Not a video file: {filename}")
    for backend in SOURCE_BACKENDS:
        if backend.exists(filename):
            return backend.local_path(filename)
    raise NotFoundError(f"Input file '{filename}' not found")


def request_json() -> Dict:
    """请求体必须是 JSON 对象（可以为空）"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return data


def default_output_name(filename: str) -> str:
    stem = os.path.splitext(os.path.basename(filename.replace("\\", "/")))[0]
    return stem.replace(" ", "_").replace("..", "_").lstrip(".") or "stream"


def job_response(job) -> Dict:
    return {
        "success": True,
        "job": job.to_dict(),
        "statusUrl": f"/api/hls/jobs/{job.job_id}",
        "masterPlaylistUrl": f"/api/hls/{job.output_name}/master.m3u8",
    }


def _publish_backend(name: Optional[str]) -> Optional[StorageBackend]:
    if not name:
        return None
    backend = PUBLISH_BACKENDS.get(str(name).lower())
    if backend is None:
        raise InvalidInputError(f"Publish target '{name}' is not configured")
    return backend


def register_routes(app):
    """注册打包 API 路由

    Args:
        app: Flask 应用实例
    """

    @app.route('/api/hls/convert', methods=['POST'])
    def hls_convert():
        """提交打包任务（立即返回 202）

        请求体：
        {
            "input": "movie.mp4",          // videos/uploads 目录中的文件
            "output_name": "movie",        // 可选，默认取文件名
            "renditions": [...],           // 可选，默认使用配置
            "segment_duration": 10,        // 可选
            "publish": "r2"                // 可选，打包后发布到 R2
        }
        """
        if TRANSCODE_MANAGER is None:
            return jsonify({"error": "Transcode manager not initialized"}), 500

        data = request_json()
        filename = data.get('input') or data.get('filename') or ''
        input_path = resolve_input_path(filename)
        output_name = data.get('output_name') or data.get('outputName') or default_output_name(filename)

        job = TRANSCODE_MANAGER.convert(
            input_path,
            output_name,
            renditions=data.get('renditions'),
            segment_duration=data.get('segment_duration'),
            publish_backend=_publish_backend(data.get('publish')),
        )
        return jsonify(job_response(job)), 202

    @app.route('/api/hls/jobs', methods=['GET'])
    def hls_jobs():
        """获取所有打包任务"""
        if TRANSCODE_MANAGER is None:
            return jsonify({"error": "Transcode manager not initialized"}), 500

        return jsonify({
            "success": True,
            "jobs": TRANSCODE_MANAGER.get_all_jobs(),
            "summary": TRANSCODE_MANAGER.get_status_summary(),
        })

    @app.route('/api/hls/jobs/<job_id>', methods=['GET'])
    def hls_job_status(job_id):
        """获取打包任务状态"""
        if TRANSCODE_MANAGER is None:
            return jsonify({"error": "Transcode manager not initialized"}), 500

        job = TRANSCODE_MANAGER.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job '{job_id}' not found")

        response = job_response(job)
        if job.status.value == "completed":
            response["result"] = job.get_result().to_dict()
        return jsonify(response)

    @app.route('/api/hls/jobs/<job_id>/cancel', methods=['POST'])
    def hls_job_cancel(job_id):
        """取消打包任务"""
        if TRANSCODE_MANAGER is None:
            return jsonify({"error": "Transcode manager not initialized"}), 500

        job = TRANSCODE_MANAGER.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job '{job_id}' not found")

        cancelled = TRANSCODE_MANAGER.cancel_job(job_id, reason="manual")
        return jsonify({
            "success": cancelled,
            "message": "Job cancelled" if cancelled else "Job already finished",
            "job": job.to_dict(),
        })
