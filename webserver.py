#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import copy
import json
import time
import logging
import traceback
from logging.handlers import TimedRotatingFileHandler

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from hlsvod import __version__
from hlsvod.errors import StreamingError
from hlsvod.storage import LOCAL, R2, get_backend, r2_configured
from hlsvod.streaming import api as streaming_api
from hlsvod.streaming.catalog import StreamCatalog
from hlsvod.transcode import api as transcode_api
from hlsvod.transcode import get_transcode_config, get_transcode_manager
from hlsvod.upload import api as upload_api

# Configuration file path
CONFIG_FILE = "config/config.json"
LOG_DIR = "logs"

DEFAULT_CONFIG = {
    "port": 8080,
    "storage": {
        "videos_dir": "videos",
        "uploads_dir": "uploads",
        "catalog_backend": "local",
    },
    "hls": {
        "work_dir": "hls",
        "segment_duration": 10,
        "renditions": [
            {"name": "720p", "width": 1280, "height": 720, "video_bitrate": "2500k", "audio_bitrate": "128k"},
            {"name": "480p", "width": 854, "height": 480, "video_bitrate": "1000k", "audio_bitrate": "96k"},
            {"name": "360p", "width": 640, "height": 360, "video_bitrate": "600k", "audio_bitrate": "64k"},
        ],
        "video_encoder": "libx264",
        "audio_encoder": "aac",
        "preset": "fast",
        "gop_size": 48,
        "loglevel": "warning",
        "ffmpeg_path": "ffmpeg",
        "ffprobe_path": "ffprobe",
        "probe_input": True,
        "probe_timeout": 30,
        "max_concurrent_jobs": 2,
        "poll_interval": 0.5,
        "kill_timeout": 5,
        "job_retention": 3600,
        "cleanup_interval": 300,
    },
    "r2": {
        "endpoint": "",
        "access_key_id": "",
        "secret_access_key": "",
        "bucket": "",
        "region": "auto",
        "max_presign_expiry": 604800,
    },
    "upload": {
        "max_file_size": "500MB",
    },
    "cors": {
        "allowed_origins": "*",
    },
}

# 环境变量 -> (配置段, 键)
ENV_OVERRIDES = {
    "HLS_DIR": ("hls", "work_dir"),
    "HLS_SEGMENT_DURATION": ("hls", "segment_duration"),
    "FFMPEG_PATH": ("hls", "ffmpeg_path"),
    "FFPROBE_PATH": ("hls", "ffprobe_path"),
    "VIDEOS_DIR": ("storage", "videos_dir"),
    "UPLOADS_DIR": ("storage", "uploads_dir"),
    "R2_ENDPOINT": ("r2", "endpoint"),
    "R2_ACCESS_KEY_ID": ("r2", "access_key_id"),
    "R2_SECRET_ACCESS_KEY": ("r2", "secret_access_key"),
    "R2_BUCKET_NAME": ("r2", "bucket"),
    "MAX_FILE_SIZE": ("upload", "max_file_size"),
    "ALLOWED_ORIGINS": ("cors", "allowed_origins"),
}


def setup_logging(log_dir=LOG_DIR):
    """Configure console and daily rotating file logging"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # 配置较少日志输出的模块
    for module in ['urllib3', 'werkzeug', 'botocore', 'boto3', 's3transfer']:
        logging.getLogger(module).setLevel(logging.WARNING)

    os.makedirs(log_dir, exist_ok=True)

    # 添加按日期滚动的文件处理器
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'webserver.log'),
        when='midnight',
        interval=1,
        backupCount=3  # 保留3天日志
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.INFO)
    logging.getLogger().addHandler(file_handler)


def merge_config(base, loaded):
    """Merge a loaded config over the defaults, one level deep for sections"""
    config = copy.deepcopy(base)
    for key, value in (loaded or {}).items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value
    return config


def apply_env_overrides(config, environ=None):
    """Environment variables take precedence over the configuration file"""
    environ = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = value
            logging.info(f"Using {section}.{key} from environment variable {env_name}")
    if environ.get("PORT"):
        config["port"] = int(environ["PORT"])
    return config


def load_config(config_file=CONFIG_FILE, environ=None):
    """Load configuration file"""
    config = copy.deepcopy(DEFAULT_CONFIG)
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                config = merge_config(DEFAULT_CONFIG, json.load(f))
                logging.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
            # Save default config
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {config_file}")
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    return apply_env_overrides(config, environ)


def _allowed_origins(config):
    origins = config.get("cors", {}).get("allowed_origins") or "*"
    if isinstance(origins, str) and origins != "*":
        origins = [origin.strip() for origin in origins.split(",") if origin.strip()]
    return origins


def create_app(config=None, manager=None):
    """Build the Flask application

    Args:
        config: configuration dict, defaults to load_config()
        manager: TranscodeManager to use instead of creating one
    """
    config = config if config is not None else load_config()

    app = Flask(__name__)
    CORS(app, origins=_allowed_origins(config))  # Enable CORS

    upload_config = config.get("upload", {})
    app.config["MAX_CONTENT_LENGTH"] = upload_api.parse_file_size(upload_config.get("max_file_size"))

    storage_config = config.get("storage", {})
    transcode_config = get_transcode_config(config)

    videos = get_backend(config, LOCAL, base_dir=storage_config.get("videos_dir") or "videos")
    uploads = get_backend(config, LOCAL, base_dir=storage_config.get("uploads_dir") or "uploads")
    hls_local = get_backend(config, LOCAL, base_dir=transcode_config.work_dir)
    r2 = get_backend(config, R2) if r2_configured(config) else None

    catalog_kind = (storage_config.get("catalog_backend") or LOCAL).lower()
    if catalog_kind == R2 and r2 is None:
        logging.warning("HLS catalog is configured for R2 but R2 is not configured, using local storage")
    catalog_backend = r2 if catalog_kind == R2 and r2 is not None else hls_local
    catalog = StreamCatalog(catalog_backend, transcode_config.renditions)

    if manager is None:
        manager = get_transcode_manager(transcode_config)

    streaming_api.init_streaming(videos, r2, catalog)
    transcode_api.init_transcode_manager(manager, [videos, uploads], {R2: r2} if r2 is not None else {})
    upload_api.init_upload(uploads, videos, r2, manager, upload_config.get("max_file_size"))

    streaming_api.register_routes(app)
    transcode_api.register_routes(app)
    upload_api.register_routes(app)

    app.extensions["transcode_manager"] = manager
    app.extensions["stream_catalog"] = catalog

    @app.errorhandler(StreamingError)
    def handle_streaming_error(e):
        """Render package errors as JSON with their HTTP status"""
        if e.status_code >= 500:
            app.logger.error(f"{e.error}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({"error": e.name, "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle uncaught exceptions"""
        app.logger.error(f"Uncaught exception: {str(e)}")
        app.logger.error(traceback.format_exc())
        return jsonify({"error": "Internal server error", "message": str(e)}), 500

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({
            "status": "ok",
            "version": __version__,
            "timestamp": time.time(),
            "r2": r2 is not None,
            "catalog": catalog_backend.name,
            "jobs": manager.get_status_summary(),
        })

    return app


# Start the server
if __name__ == '__main__':
    setup_logging()
    CURRENT_CONFIG = load_config()
    app = create_app(CURRENT_CONFIG)
    app.run(host='0.0.0.0', port=int(CURRENT_CONFIG.get("port") or 8080), debug=False, threaded=True)
