"""
打包任务管理器

负责多码率 HLS 打包任务的生命周期管理：
- 校验输入并创建任务
- 每个档位启动一个 FFmpeg 进程，并行编码
- 首个失败即终止其余档位
- 可选：将结果发布到存储后端（如 R2）
- 任务清理
"""

import os
import time
import uuid
import threading
import logging
import subprocess
import tempfile
from typing import Dict, Optional, List, Any, Sequence, Tuple
from subprocess import Popen

from ..errors import CapacityError, InvalidInputError, InvalidNameError, StreamingError
from ..storage.base import StorageBackend, is_video_file
from ..storage.local import TEMP_PREFIX
from .config import TranscodeConfig
from .task import TranscodeJob, JobStatus
from .playlist import build_master_playlist, finalize_media_playlist
from .rendition import (
    MASTER_PLAYLIST_NAME,
    MEDIA_PLAYLIST_NAME,
    SEGMENT_EXTENSION,
    RenditionSpec,
    StreamRendition,
    parse_renditions,
)
from .ffprobe import FFprobeRunner
from .ffmpeg import FFmpegRunner

logger = logging.getLogger(__name__)

SOURCE_CACHE_DIR = ".sources"


def validate_output_name(output_name: str) -> str:
    """输出名称即流名称，只能是单层目录名"""
    if not output_name or not isinstance(output_name, str):
        raise InvalidInputError("Output name is required")
    if "/" in output_name or "\\" in output_name or ".." in output_name or "\x00" in output_name:
        raise InvalidNameError(f"Invalid output name: {output_name!r}")
    if output_name.startswith(".") or output_name.strip() != output_name:
        raise InvalidNameError(f"Invalid output name: {output_name!r}")
    return output_name


def write_text_atomic(path: str, text: str):
    """写临时文件再替换，读者看到的要么是旧内容要么是完整的新内容"""
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=TEMP_PREFIX)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class TranscodeManager:
    """打包任务管理器

    任务注册表由一把 RLock 保护；编码进程的等待与后端 I/O 都在锁外进行。
    """

    def __init__(
        self,
        config: TranscodeConfig,
        ffmpeg_runner: Optional[FFmpegRunner] = None,
        ffprobe_runner: Optional[FFprobeRunner] = None,
        start_cleanup: bool = True,
    ):
        """初始化打包管理器

        Args:
            config: 转码配置
            ffmpeg_runner: FFmpeg 运行器，默认按配置创建
            ffprobe_runner: FFprobe 运行器，默认按配置创建
            start_cleanup: 是否启动后台清理线程
        """
        self.config = config
        self.jobs: Dict[str, TranscodeJob] = {}
        self.lock = threading.RLock()
        self.ffmpeg_runner = ffmpeg_runner or FFmpegRunner(config)
        self.ffprobe_runner = ffprobe_runner or FFprobeRunner(config.ffprobe_path)

        # 启动清理线程
        self._cleanup_thread = None
        self._stop_cleanup = threading.Event()
        if start_cleanup:
            self._start_cleanup_thread()

    def _start_cleanup_thread(self):
        """启动清理线程"""
        if self._cleanup_thread is None or not self._cleanup_thread.is_alive():
            self._stop_cleanup.clear()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                daemon=True,
                name="TranscodeCleanup"
            )
            self._cleanup_thread.start()

    def _cleanup_loop(self):
        """清理循环"""
        while not self._stop_cleanup.is_set():
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")
            self._stop_cleanup.wait(self.config.cleanup_interval)

    def stop(self):
        """停止管理器，取消所有活跃任务"""
        self._stop_cleanup.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=5)

        with self.lock:
            active = [job for job in self.jobs.values() if job.is_active()]
        for job in active:
            self._cancel(job, "shutdown")

    # ------------------------------------------------------------------ 提交

    def convert(
        self,
        input_path: str,
        output_name: str,
        renditions: Optional[Sequence] = None,
        segment_duration: Optional[int] = None,
        publish_backend: Optional[StorageBackend] = None,
    ) -> TranscodeJob:
        """提交一个打包任务（非阻塞）

        Args:
            input_path: 本地输入文件路径
            output_name: 输出名称（流名称）
            renditions: 档位列表（RenditionSpec 或配置字典），默认使用配置中的档位
            segment_duration: 切片时长（秒），默认使用配置值
            publish_backend: 打包成功后发布到的存储后端

        Returns:
            TranscodeJob，可调用 job.wait() 等待结果

        Raises:
            InvalidInputError: 输入文件不存在、名称非法或档位为空
            CapacityError: 超过最大并发任务数
        """
        if not input_path or not os.path.isfile(input_path):
            raise InvalidInputError(f"Input file not found: {input_path}")
        job = self._create_job(input_path, output_name, renditions, segment_duration, publish_backend)
        self._start_job(job, publish_backend)
        return job

    def convert_remote(
        self,
        backend: StorageBackend,
        key: str,
        output_name: str,
        renditions: Optional[Sequence] = None,
        segment_duration: Optional[int] = None,
    ) -> TranscodeJob:
        """打包存储后端中的视频对象，并把结果发布回同一后端

        源对象先下载到工作目录，任务结束后删除本地副本。

        Raises:
            NotFoundError: 源对象不存在
            InvalidInputError: 不是视频文件、名称非法
            CapacityError: 超过最大并发任务数
        """
        if not is_video_file(key):
            raise InvalidInputError(f"Not a video file: {key}")
        # 同步检查，源对象不存在时直接返回 404
        backend.stat(key)

        ext = os.path.splitext(key)[1].lower()
        local_path = os.path.join(self.config.work_dir, SOURCE_CACHE_DIR, f"{uuid.uuid4().hex}{ext}")
        job = self._create_job(local_path, output_name, renditions, segment_duration, backend)
        self._start_job(job, backend, source=(backend, key))
        return job

    def _create_job(
        self,
        input_path: str,
        output_name: str,
        renditions: Optional[Sequence],
        segment_duration: Optional[int],
        publish_backend: Optional[StorageBackend],
    ) -> TranscodeJob:
        validate_output_name(output_name)
        specs = self._resolve_renditions(renditions)
        duration = self._resolve_segment_duration(segment_duration)

        job = TranscodeJob(
            job_id=uuid.uuid4().hex,
            input_path=input_path,
            output_name=output_name,
            renditions=specs,
            output_dir=self.config.get_output_dir(output_name),
            segment_duration=duration,
            publish_target=getattr(publish_backend, "name", None) if publish_backend else None,
        )

        with self.lock:
            if self._get_active_count() >= self.config.max_concurrent_jobs:
                raise CapacityError("Maximum concurrent jobs reached")
            for other in self.jobs.values():
                if other.is_active() and other.output_name == output_name:
                    raise InvalidInputError(f"Stream '{output_name}' is already being packaged")
            self.jobs[job.job_id] = job

        logger.info(
            f"Created job {job.job_id}: {input_path} -> {output_name} "
            f"({', '.join(spec.name for spec in specs)}, {duration}s segments)"
        )
        return job

    def _resolve_segment_duration(self, segment_duration) -> int:
        """切片时长必须是正整数秒；"6" 这样的整数字符串也接受"""
        if segment_duration is None:
            return self.config.segment_duration
        if isinstance(segment_duration, bool):
            raise InvalidInputError(f"Invalid segment duration: {segment_duration!r}")
        try:
            value = float(segment_duration)
        except (TypeError, ValueError):
            raise InvalidInputError(f"Invalid segment duration: {segment_duration!r}")
        if value != value or value <= 0 or not value.is_integer():
            raise InvalidInputError(f"Invalid segment duration: {segment_duration!r}")
        return int(value)

    def _resolve_renditions(self, renditions: Optional[Sequence]) -> List[RenditionSpec]:
        """档位可以是完整定义，也可以是配置中已有档位的名称（如 "720p"）"""
        if renditions is None:
            return list(self.config.renditions)
        if isinstance(renditions, (str, bytes)) or not isinstance(renditions, (list, tuple)):
            raise InvalidInputError(f"Invalid renditions: {renditions!r}")

        items = []
        for item in renditions:
            if isinstance(item, str):
                spec = self.config.find_rendition(item)
                if spec is None:
                    raise InvalidInputError(f"Unknown rendition: {item}")
                items.append(spec)
            else:
                items.append(item)
        return parse_renditions(items)

    def _start_job(
        self,
        job: TranscodeJob,
        publish_backend: Optional[StorageBackend],
        source: Optional[Tuple[StorageBackend, str]] = None,
    ):
        thread = threading.Thread(
            target=self._run_job,
            args=(job, publish_backend, source),
            daemon=True,
            name=f"TranscodeJob-{job.job_id[:8]}"
        )
        thread.start()

    # ------------------------------------------------------------------ 执行

    def _run_job(
        self,
        job: TranscodeJob,
        publish_backend: Optional[StorageBackend],
        source: Optional[Tuple[StorageBackend, str]],
    ):
        job.mark_running()
        try:
            if job.cancel_event.is_set():
                return
            try:
                self._encode(job, source)
            finally:
                # 编码结束后即删除下载的源文件副本
                if source is not None:
                    self._remove_source_copy(job.input_path)

            if job.status != JobStatus.RUNNING:
                logger.warning(f"Job {job.job_id} ended as {job.status.value}: {job.error}")
                return

            if publish_backend is not None:
                job.published_prefix = self._publish(job, publish_backend)

            job.mark_completed()
            logger.info(f"Job {job.job_id} completed in {job.get_elapsed_time():.1f}s")

        except StreamingError as e:
            logger.error(f"Job {job.job_id} failed: {e.message}")
            job.mark_failed(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.job_id}")
            job.mark_failed(str(e))

    def _encode(self, job: TranscodeJob, source: Optional[Tuple[StorageBackend, str]]):
        """下载（如需要）、探测、写主播放列表，然后并行编码所有档位"""
        if source is not None:
            backend, key = source
            logger.info(f"Downloading {key} from {backend.name} for job {job.job_id}")
            backend.download_file(key, job.input_path)

        if self.config.probe_input:
            ok, error = self.ffprobe_runner.check_video_input(job.input_path, timeout=self.config.probe_timeout)
            if not ok:
                logger.error(f"Job {job.job_id} input rejected: {error}")
                job.mark_failed(f"Input rejected: {error}")
                return

        self._prepare_output(job)
        if job.cancel_event.is_set():
            return

        threads = [
            threading.Thread(
                target=self._run_rendition,
                args=(job, spec),
                daemon=True,
                name=f"Transcode-{job.job_id[:8]}-{spec.name}"
            )
            for spec in job.renditions
        ]
        for thread in threads:
            thread.start()
        # 全部档位结束（成功、失败或被终止）后才继续
        for thread in threads:
            thread.join()

    def _prepare_output(self, job: TranscodeJob):
        """创建输出目录并写入主播放列表（先于任何编码进程）"""
        try:
            for spec in job.renditions:
                os.makedirs(self.config.get_rendition_dir(job.output_name, spec.name), exist_ok=True)
            master_path = self.config.get_master_playlist_path(job.output_name)
            write_text_atomic(master_path, build_master_playlist(job.renditions, job.output_name))
        except OSError as e:
            raise StreamingError(f"Failed to prepare output directory {job.output_dir}: {e}") from e
        logger.info(f"Wrote master playlist for {job.output_name}")

    def _run_rendition(self, job: TranscodeJob, spec: RenditionSpec):
        """编码单个档位；成功时先定稿媒体播放列表再记录完成"""
        if job.cancel_event.is_set():
            return

        rendition_dir = self.config.get_rendition_dir(job.output_name, spec.name)
        try:
            command = self.ffmpeg_runner.build_command(job.input_path, spec, rendition_dir, job.segment_duration)
            logger.info(f"Starting FFmpeg for {job.output_name}/{spec.name}: "
                        f"{self.ffmpeg_runner.get_command_line_string(command)}")

            process = self.ffmpeg_runner.start_process(command, rendition_dir)
            if process is None:
                self._fail_rendition(job, spec.name, "Failed to start FFmpeg process")
                return

            with self.lock:
                job.processes[spec.name] = process

            while process.poll() is None:
                if job.cancel_event.wait(self.config.poll_interval):
                    self._terminate(process, f"{job.output_name}/{spec.name}")
                    return

            return_code = process.returncode
            if return_code != 0:
                tail = self.ffmpeg_runner.read_log_tail(rendition_dir)
                message = f"FFmpeg exited with code {return_code}"
                if tail:
                    message = f"{message}: {tail}"
                self._fail_rendition(job, spec.name, message)
                return

            self._finalize_rendition(job, spec)

        except Exception as e:
            logger.exception(f"Error encoding {job.output_name}/{spec.name}")
            self._fail_rendition(job, spec.name, str(e))
        finally:
            with self.lock:
                job.processes.pop(spec.name, None)

    def _finalize_rendition(self, job: TranscodeJob, spec: RenditionSpec):
        playlist_path = self.config.get_media_playlist_path(job.output_name, spec.name)
        try:
            with open(playlist_path, "r") as f:
                content = f.read()
        except OSError as e:
            self._fail_rendition(job, spec.name, f"Media playlist missing after encode: {e}")
            return

        write_text_atomic(playlist_path, finalize_media_playlist(content))

        all_done = job.mark_rendition_completed(StreamRendition.from_spec(spec, job.output_name))
        logger.info(f"Rendition {job.output_name}/{spec.name} completed"
                    f"{' (all renditions done)' if all_done else ''}")

    def _fail_rendition(self, job: TranscodeJob, rendition_name: str, error: str):
        if job.mark_rendition_failed(rendition_name, error):
            logger.error(f"Job {job.job_id} failed on rendition {rendition_name}: {error}")
            # cancel_event 已置位，其余档位线程会终止各自的进程

    def _terminate(self, process: Popen, label: str):
        """终止编码进程：先 terminate，超时后 kill"""
        if process.poll() is not None:
            return
        try:
            process.terminate()
            try:
                process.wait(timeout=self.config.kill_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            logger.info(f"Stopped FFmpeg process for {label}")
        except OSError as e:
            logger.error(f"Error stopping FFmpeg process for {label}: {e}")

    def _publish(self, job: TranscodeJob, backend: StorageBackend) -> str:
        """上传打包结果：切片与媒体播放列表在前，主播放列表最后"""
        prefix = f"{job.output_name}/"
        uploads: List[Tuple[str, str]] = []
        for spec in job.renditions:
            rendition_dir = self.config.get_rendition_dir(job.output_name, spec.name)
            segments = sorted(
                name for name in os.listdir(rendition_dir) if name.endswith(SEGMENT_EXTENSION)
            )
            for name in segments + [MEDIA_PLAYLIST_NAME]:
                uploads.append((os.path.join(rendition_dir, name), f"{prefix}{spec.name}/{name}"))
        uploads.append((self.config.get_master_playlist_path(job.output_name), f"{prefix}{MASTER_PLAYLIST_NAME}"))

        for local_path, key in uploads:
            if job.cancel_event.is_set():
                raise StreamingError(f"Publishing of {job.output_name} interrupted")
            self._upload(backend, local_path, key)

        logger.info(f"Published {len(uploads)} objects for {job.output_name} to {backend.name}")
        return prefix

    def _upload(self, backend: StorageBackend, local_path: str, key: str):
        upload_file = getattr(backend, "upload_file", None)
        if upload_file is not None:
            upload_file(local_path, key)
            return
        with open(local_path, "rb") as f:
            backend.put(key, f)

    def _remove_source_copy(self, path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove downloaded source {path}: {e}")

    # ------------------------------------------------------------------ 查询与管理

    def get_job(self, job_id: str) -> Optional[TranscodeJob]:
        with self.lock:
            return self.jobs.get(job_id)

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        """获取所有任务信息（按创建时间倒序）"""
        with self.lock:
            jobs = sorted(self.jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [job.to_dict() for job in jobs]

    def cancel_job(self, job_id: str, reason: str = "manual") -> bool:
        """取消任务

        Returns:
            任务是否存在且被取消（已结束的任务返回 False）
        """
        job = self.get_job(job_id)
        if job is None:
            return False
        return self._cancel(job, reason)

    def _cancel(self, job: TranscodeJob, reason: str) -> bool:
        if not job.mark_cancelled(reason):
            return False
        with self.lock:
            processes = list(job.processes.items())
        # 档位线程也会响应 cancel_event，这里直接终止以缩短等待
        for name, process in processes:
            self._terminate(process, f"{job.output_name}/{name}")
        logger.info(f"Cancelled job {job.job_id} ({reason})")
        return True

    def cleanup(self) -> int:
        """清理超过保留时间的已结束任务

        Returns:
            清理的任务数
        """
        with self.lock:
            expired = [
                job_id for job_id, job in self.jobs.items()
                if job.is_idle(self.config.job_retention)
            ]
            for job_id in expired:
                del self.jobs[job_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} finished jobs")
        return len(expired)

    def _get_active_count(self) -> int:
        with self.lock:
            return sum(1 for job in self.jobs.values() if job.is_active())

    def get_status_summary(self) -> Dict[str, Any]:
        """获取状态摘要"""
        with self.lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self.jobs.values():
                counts[job.status.value] += 1

            return {
                "total_jobs": len(self.jobs),
                "active_jobs": counts[JobStatus.PENDING.value] + counts[JobStatus.RUNNING.value],
                "max_concurrent": self.config.max_concurrent_jobs,
                "by_status": counts,
            }


def get_transcode_manager(config: TranscodeConfig) -> TranscodeManager:
    """获取打包管理器实例

    Args:
        config: 转码配置

    Returns:
        TranscodeManager 实例
    """
    return TranscodeManager(config)
