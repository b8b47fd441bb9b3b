"""Shared fixtures: temporary storage roots and a fake encoder."""

import os
import shutil
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hlsvod.storage.local import LocalStorageBackend
from hlsvod.transcode.config import TranscodeConfig
from hlsvod.transcode.ffmpeg import ENCODER_LOG_NAME
from hlsvod.transcode.manager import TranscodeManager
from hlsvod.transcode.rendition import MASTER_PLAYLIST_NAME, MEDIA_PLAYLIST_NAME


class FakeProcess:
    """Stands in for subprocess.Popen; finishes immediately unless ``hang``."""

    _next_pid = 1000

    def __init__(self, returncode=0, hang=False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.hang = hang
        self.returncode = None if hang else returncode
        self.terminated = threading.Event()
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.returncode = -15
        self.terminated.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self.terminated.set()

    def wait(self, timeout=None):
        return self.returncode


class FakeFFmpegRunner:
    """Writes what ffmpeg would write, per rendition behaviour.

    behaviours: rendition name -> "ok" | "fail" | "hang" (default "ok"), or
    "fail-after:<name>", which fails only once rendition <name> has been finalized.
    """

    def __init__(self, behaviours=None, segments=2, segment_bytes=188 * 10, barrier=None):
        self.behaviours = behaviours or {}
        self.segments = segments
        self.segment_bytes = segment_bytes
        self.started = []
        self.processes = {}
        self.master_seen_at_start = []
        self.lock = threading.Lock()
        # all renditions must have started before any of them returns
        self.barrier = barrier

    def build_command(self, input_path, rendition, rendition_dir, segment_duration=None):
        return ["ffmpeg", "-i", input_path, "-hls_time", str(segment_duration), rendition_dir]

    def get_command_line_string(self, command):
        return " ".join(command)

    def start_process(self, command, rendition_dir):
        name = os.path.basename(rendition_dir)
        master = os.path.join(os.path.dirname(rendition_dir), MASTER_PLAYLIST_NAME)
        behaviour = self.behaviours.get(name, "ok")
        with self.lock:
            self.started.append(name)
            self.master_seen_at_start.append(os.path.exists(master))

        if behaviour == "ok":
            lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10", "#EXT-X-PLAYLIST-TYPE:VOD"]
            for i in range(self.segments):
                segment = f"segment_{i:03d}.ts"
                with open(os.path.join(rendition_dir, segment), "wb") as f:
                    f.write(b"\x47" * self.segment_bytes)
                lines += ["#EXTINF:10.000000,", segment]
            with open(os.path.join(rendition_dir, MEDIA_PLAYLIST_NAME), "w") as f:
                f.write("\n".join(lines) + "\n")
            process = FakeProcess(0)
        elif behaviour.startswith("fail-after:"):
            self._wait_for_endlist(os.path.join(os.path.dirname(rendition_dir), behaviour.split(":", 1)[1]))
            with open(os.path.join(rendition_dir, ENCODER_LOG_NAME), "w") as f:
                f.write("Conversion failed!\n")
            process = FakeProcess(1)
        elif behaviour == "fail":
            with open(os.path.join(rendition_dir, ENCODER_LOG_NAME), "w") as f:
                f.write("Error while opening encoder\n")
            process = FakeProcess(1)
        else:
            process = FakeProcess(hang=True)

        with self.lock:
            self.processes[name] = process
        if self.barrier is not None:
            self.barrier.wait()
        return process

    def _wait_for_endlist(self, sibling_dir, timeout=10):
        playlist = os.path.join(sibling_dir, MEDIA_PLAYLIST_NAME)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if os.path.exists(playlist):
                with open(playlist) as f:
                    if "#EXT-X-ENDLIST" in f.read():
                        return
            time.sleep(0.01)
        raise AssertionError(f"{playlist} was never finalized")

    def read_log_tail(self, rendition_dir, max_chars=500):
        try:
            with open(os.path.join(rendition_dir, ENCODER_LOG_NAME)) as f:
                return f.read()[-max_chars:].strip()
        except OSError:
            return ""


class FakeProbe:
    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error

    def check_video_input(self, input_path, timeout=30):
        return self.ok, self.error


class RecordingBackend(LocalStorageBackend):
    """Local backend that remembers write order and can act as a remote source."""

    name = "recording"

    def __init__(self, base_dir):
        super().__init__(base_dir)
        self.writes = []

    def put(self, name, data, content_type=None):
        self.writes.append(name)
        return super().put(name, data, content_type)

    def download_file(self, name, local_path):
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
        shutil.copyfile(self.local_path(name), local_path)


@pytest.fixture
def transcode_config(tmp_path):
    return TranscodeConfig(
        work_dir=str(tmp_path / "hls"),
        probe_input=False,
        poll_interval=0.01,
        kill_timeout=1,
        max_concurrent_jobs=4,
    )


@pytest.fixture
def make_manager(transcode_config):
    managers = []

    def factory(runner=None, probe=None, config=None):
        manager = TranscodeManager(
            config or transcode_config,
            ffmpeg_runner=runner or FakeFFmpegRunner(),
            ffprobe_runner=probe or FakeProbe(),
            start_cleanup=False,
        )
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.stop()


@pytest.fixture
def input_video(tmp_path):
    path = tmp_path / "videos" / "movie.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1000)
    return str(path)
