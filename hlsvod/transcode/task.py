"""
打包任务数据模型

定义一次多码率打包任务的数据结构和状态管理。
"""

import time
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from subprocess import Popen

from ..errors import TranscodeFailureError
from .rendition import RenditionSpec, StreamRendition, master_playlist_key


class JobStatus(Enum):
    """任务状态枚举"""
    PENDING = "pending"      # 已创建，尚未开始编码
    RUNNING = "running"      # 编码中
    COMPLETED = "completed"  # 所有档位完成
    FAILED = "failed"        # 任一档位失败
    CANCELLED = "cancelled"  # 已取消


@dataclass
class TranscodeResult:
    """打包成功的结果"""

    master_playlist_path: str
    output_dir: str
    completed_renditions: List[StreamRendition]
    published_prefix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "master_playlist": self.master_playlist_path,
            "output_dir": self.output_dir,
            "renditions": [r.to_dict() for r in self.completed_renditions],
        }
        if self.published_prefix is not None:
            result["published_prefix"] = self.published_prefix
        return result


@dataclass
class TranscodeJob:
    """打包任务

    每个档位一个编码进程；全部完成才算成功，首个失败即判定整个任务失败。
    """

    # 基本信息
    job_id: str
    input_path: str
    output_name: str
    renditions: List[RenditionSpec]

    # 输出信息
    output_dir: str = ""
    segment_duration: int = 10
    publish_target: Optional[str] = None  # 发布目标后端名称（如 "r2"）

    # 状态信息
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    failed_rendition: Optional[str] = None
    completed: Dict[str, StreamRendition] = field(default_factory=dict)
    published_prefix: Optional[str] = None

    # 进程信息（档位名 -> 进程）
    processes: Dict[str, Popen] = field(default_factory=dict)

    # 时间戳
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # 同步原语
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def mark_running(self):
        """标记为编码中"""
        with self._lock:
            if self.status == JobStatus.PENDING:
                self.status = JobStatus.RUNNING
            self.updated_at = time.time()
            if self.started_at is None:
                self.started_at = time.time()

    def mark_rendition_completed(self, rendition: StreamRendition) -> bool:
        """记录一个档位完成

        Args:
            rendition: 已定稿的档位

        Returns:
            是否所有档位都已完成
        """
        with self._lock:
            self.completed[rendition.name] = rendition
            self.updated_at = time.time()
            return len(self.completed) == len(self.renditions)

    def mark_rendition_failed(self, rendition_name: str, error: str) -> bool:
        """记录一个档位失败

        Args:
            rendition_name: 档位名称
            error: 错误信息

        Returns:
            是否为该任务的首个失败（首个失败决定任务的错误信息）
        """
        with self._lock:
            if self.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                return False
            self.status = JobStatus.FAILED
            self.error = error
            self.failed_rendition = rendition_name
            self.updated_at = time.time()
            self.completed_at = time.time()
        self.cancel_event.set()
        self.done_event.set()
        return True

    def mark_failed(self, error: str):
        """标记为失败（与具体档位无关的错误，如目录创建失败）"""
        self.mark_rendition_failed(None, error)

    def mark_completed(self):
        """标记为已完成"""
        with self._lock:
            if self.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                return
            self.status = JobStatus.COMPLETED
            self.updated_at = time.time()
            self.completed_at = time.time()
        self.done_event.set()

    def mark_cancelled(self, reason: str = "manual") -> bool:
        """标记为已取消

        Returns:
            状态是否发生变化
        """
        with self._lock:
            if self.is_finished():
                return False
            self.status = JobStatus.CANCELLED
            self.error = f"Cancelled ({reason})"
            self.updated_at = time.time()
            self.completed_at = time.time()
        self.cancel_event.set()
        self.done_event.set()
        return True

    def is_active(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RUNNING)

    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def is_idle(self, idle_seconds: int) -> bool:
        """判断已结束的任务是否超过保留时间"""
        if not self.is_finished() or self.completed_at is None:
            return False
        return (time.time() - self.completed_at) > idle_seconds

    def completed_in_order(self) -> List[StreamRendition]:
        """按请求顺序返回已完成的档位"""
        with self._lock:
            return [self.completed[spec.name] for spec in self.renditions if spec.name in self.completed]

    def get_result(self) -> TranscodeResult:
        return TranscodeResult(
            master_playlist_path=master_playlist_key(self.output_name),
            output_dir=self.output_dir,
            completed_renditions=self.completed_in_order(),
            published_prefix=self.published_prefix,
        )

    def wait(self, timeout: Optional[float] = None) -> TranscodeResult:
        """阻塞等待任务结束

        Args:
            timeout: 超时时间（秒），None 表示一直等待

        Returns:
            TranscodeResult

        Raises:
            TranscodeFailureError: 任务失败、被取消或等待超时
        """
        if not self.done_event.wait(timeout):
            raise TranscodeFailureError(f"Timed out waiting for job {self.job_id}")
        if self.status != JobStatus.COMPLETED:
            raise TranscodeFailureError(self.error or "Transcode failed", rendition=self.failed_rendition)
        return self.get_result()

    def get_elapsed_time(self) -> float:
        if self.started_at is None:
            return 0
        end_time = self.completed_at or time.time()
        return end_time - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）"""
        result = {
            "id": self.job_id,
            "input": self.input_path,
            "output_name": self.output_name,
            "status": self.status.value,
            "segment_duration": self.segment_duration,
            "renditions": [spec.name for spec in self.renditions],
            "completed_renditions": [r.name for r in self.completed_in_order()],
            "master_playlist": master_playlist_key(self.output_name),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "elapsed": round(self.get_elapsed_time(), 3),
        }

        if self.started_at:
            result["started_at"] = self.started_at
        if self.completed_at:
            result["completed_at"] = self.completed_at
        if self.error:
            result["error"] = self.error
        if self.failed_rendition:
            result["failed_rendition"] = self.failed_rendition
        if self.publish_target:
            result["publish_target"] = self.publish_target
        if self.published_prefix is not None:
            result["published_prefix"] = self.published_prefix

        return result
