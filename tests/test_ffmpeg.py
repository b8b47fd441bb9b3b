import os
import subprocess

from hlsvod.transcode.config import TranscodeConfig
from hlsvod.transcode.ffmpeg import ENCODER_LOG_NAME, FFmpegRunner
from hlsvod.transcode.ffprobe import FFprobeRunner, MediaInfo
from hlsvod.transcode.rendition import RenditionSpec

SPEC = RenditionSpec("720p", 1280, 720, 2500000, 128000)


def value_after(command, flag):
    return command[command.index(flag) + 1]


class TestBuildCommand:

    def test_rendition_parameters(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig(ffmpeg_path="/opt/ffmpeg"))
        out = str(tmp_path / "movie" / "720p")
        command = runner.build_command("in.mp4", SPEC, out)

        assert command[0] == "/opt/ffmpeg"
        assert value_after(command, "-i") == "in.mp4"
        assert value_after(command, "-vf") == "scale=1280:720"
        assert value_after(command, "-b:v") == "2500000"
        assert value_after(command, "-b:a") == "128000"
        assert value_after(command, "-preset") == "fast"
        assert value_after(command, "-c:a") == "aac"

    def test_vod_segmenting(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig(segment_duration=10))
        out = str(tmp_path / "720p")
        command = runner.build_command("in.mp4", SPEC, out, segment_duration=6)

        assert value_after(command, "-hls_time") == "6"
        assert value_after(command, "-hls_playlist_type") == "vod"
        assert value_after(command, "-hls_list_size") == "0"
        assert value_after(command, "-hls_segment_filename") == os.path.join(out, "segment_%03d.ts")
        assert command[-1] == os.path.join(out, "playlist.m3u8")
        # 输入参数必须位于输出参数之前
        assert command.index("-i") < command.index("-f")

    def test_default_segment_duration(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig(segment_duration=4))
        command = runner.build_command("in.mp4", SPEC, str(tmp_path))
        assert value_after(command, "-hls_time") == "4"

    def test_preset_only_for_x264(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig(video_encoder="h264_nvenc"))
        command = runner.build_command("in.mp4", SPEC, str(tmp_path))
        assert "-preset" not in command
        assert value_after(command, "-c:v") == "h264_nvenc"


class TestProcess:

    def test_missing_executable(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig(ffmpeg_path=str(tmp_path / "no-ffmpeg")))
        command = runner.build_command("in.mp4", SPEC, str(tmp_path / "720p"))
        assert runner.start_process(command, str(tmp_path / "720p")) is None

    def test_read_log_tail(self, tmp_path):
        runner = FFmpegRunner(TranscodeConfig())
        (tmp_path / ENCODER_LOG_NAME).write_text("x" * 1000 + "Conversion failed!\n")
        assert runner.read_log_tail(str(tmp_path), max_chars=20).endswith("Conversion failed!")
        assert runner.read_log_tail(str(tmp_path / "missing")) == ""


class TestProbe:

    def test_missing_ffprobe(self, tmp_path):
        ok, error = FFprobeRunner(str(tmp_path / "no-ffprobe")).check_video_input("in.mp4")
        assert not ok
        assert error == "ffprobe not found"

    def test_audio_only_input_is_rejected(self, monkeypatch):
        stdout = '{"format": {"format_name": "mp3", "duration": "3.5"}, "streams": [{"codec_type": "audio"}]}'

        def fake_run(command, **kwargs):
            return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        ok, error = FFprobeRunner().check_video_input("song.mp3")
        assert not ok
        assert "No video stream" in error

    def test_cover_art_is_not_video(self):
        info = MediaInfo.from_probe({
            "format": {"format_name": "mov,mp4", "duration": "12.0"},
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {"codec_type": "video", "codec_name": "mjpeg", "disposition": {"attached_pic": 1}},
            ],
        })
        assert info.has_audio
        assert not info.has_video
        assert info.duration == 12.0
