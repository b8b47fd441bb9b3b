import io
from datetime import datetime, timezone

import boto3
import pytest
from botocore.config import Config
from botocore.stub import Stubber

from hlsvod.storage.r2 import R2StorageBackend
from hlsvod.streaming import api as streaming_api
from webserver import DEFAULT_CONFIG, create_app, merge_config

from conftest import FakeFFmpegRunner

WAIT = 10
MODIFIED = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture
def app_config(tmp_path, transcode_config):
    return merge_config(DEFAULT_CONFIG, {
        "storage": {
            "videos_dir": str(tmp_path / "videos"),
            "uploads_dir": str(tmp_path / "uploads"),
        },
        "hls": {"work_dir": transcode_config.work_dir, "probe_input": False},
        "upload": {"max_file_size": "1MB"},
    })


@pytest.fixture
def make_client(app_config, make_manager):
    def factory(runner=None):
        manager = make_manager(runner or FakeFFmpegRunner())
        app = create_app(app_config, manager=manager)
        app.config["TESTING"] = True
        return app.test_client(), manager

    return factory


@pytest.fixture
def client(make_client):
    return make_client()[0]


def convert(client, manager, name="movie.mp4", **body):
    body.setdefault("input", name)
    response = client.post("/api/hls/convert", json=body)
    assert response.status_code == 202, response.get_json()
    job = manager.get_job(response.get_json()["job"]["id"])
    job.wait(WAIT)
    return job


class TestLocalVideo:

    def test_full_and_partial(self, client, input_video):
        with open(input_video, "rb") as f:
            data = f.read()

        response = client.get("/api/video/local/movie.mp4")
        assert response.status_code == 200
        assert response.data == data
        assert response.headers["Accept-Ranges"] == "bytes"
        assert response.headers["Cache-Control"] == "public, max-age=3600"

        response = client.get("/api/video/local/movie.mp4", headers={"Range": "bytes=0-99"})
        assert response.status_code == 206
        assert response.headers["Content-Range"] == f"bytes 0-99/{len(data)}"
        assert response.data == data[:100]

    def test_unsatisfiable_range(self, client, input_video):
        response = client.get("/api/video/local/movie.mp4", headers={"Range": "bytes=99999-"})
        assert response.status_code == 416
        assert response.headers["Content-Range"].startswith("bytes */")

    def test_head(self, client, input_video):
        response = client.head("/api/video/local/movie.mp4")
        assert response.status_code == 200
        assert response.headers["Content-Length"] == "1012"
        assert response.data == b""

    def test_missing_video_is_json_404(self, client):
        response = client.get("/api/video/local/missing.mp4")
        assert response.status_code == 404
        assert response.get_json()["error"] == "Not found"

    def test_non_video_is_rejected(self, client):
        response = client.get("/api/video/local/notes.txt")
        assert response.status_code == 400

    def test_metadata_and_list(self, client, input_video):
        metadata = client.get("/api/video/local/movie.mp4/metadata").get_json()
        assert metadata["filename"] == "movie.mp4"
        assert metadata["mimeType"] == "video/mp4"
        assert metadata["supportsRangeRequests"] is True

        listing = client.get("/api/video/list").get_json()
        assert listing["count"] == 1
        assert listing["videos"][0]["name"] == "movie.mp4"

    def test_r2_routes_without_r2(self, client):
        response = client.get("/api/video/r2/videos/movie.mp4")
        assert response.status_code == 500
        assert "R2" in response.get_json()["message"]


class TestHlsRoutes:

    def test_convert_then_serve(self, make_client, input_video):
        client, manager = make_client()
        job = convert(client, manager, output_name="movie")
        assert job.status.value == "completed"

        status = client.get(f"/api/hls/jobs/{job.job_id}").get_json()
        assert status["job"]["status"] == "completed"
        assert [r["name"] for r in status["result"]["renditions"]] == ["720p", "480p", "360p"]

        master = client.get("/api/hls/movie/master.m3u8")
        assert master.status_code == 200
        assert master.headers["Content-Type"] == "application/vnd.apple.mpegurl"
        assert master.headers["Cache-Control"] == "no-cache"
        assert b"720p/playlist.m3u8" in master.data

        media = client.get("/api/hls/movie/480p/playlist.m3u8")
        assert media.status_code == 200
        assert media.headers["Cache-Control"] == "public, max-age=10"
        assert media.data.rstrip().endswith(b"#EXT-X-ENDLIST")

        segment = client.get("/api/hls/movie/360p/segment_000.ts", headers={"Range": "bytes=0-187"})
        assert segment.status_code == 206
        assert segment.headers["Content-Type"] == "video/mp2t"
        assert "immutable" in segment.headers["Cache-Control"]
        assert len(segment.data) == 188

    def test_stream_info_list_and_delete(self, make_client, input_video):
        client, manager = make_client()
        convert(client, manager, output_name="movie", renditions=["720p", "360p"])

        info = client.get("/api/hls/movie/info").get_json()
        assert info["qualities"] == ["720p", "360p"]
        assert info["masterPlaylistUrl"] == "/api/hls/movie/master.m3u8"

        streams = client.get("/api/hls/streams").get_json()
        assert [s["name"] for s in streams["streams"]] == ["movie"]

        response = client.delete("/api/hls/movie")
        assert response.status_code == 200
        assert response.get_json()["success"] is True
        assert client.get("/api/hls/movie/master.m3u8").status_code == 404
        assert client.delete("/api/hls/movie").status_code == 404

    def test_segment_must_be_ts(self, client):
        assert client.get("/api/hls/movie/720p/secrets.txt").status_code == 400

    def test_missing_stream(self, client):
        assert client.get("/api/hls/nothing/info").status_code == 404
        assert client.get("/api/hls/nothing/720p/playlist.m3u8").status_code == 404


class TestJobRoutes:

    def test_convert_missing_input(self, client):
        response = client.post("/api/hls/convert", json={"input": "missing.mp4"})
        assert response.status_code == 404

    def test_convert_rejects_bad_output_name(self, client, input_video):
        response = client.post("/api/hls/convert", json={"input": "movie.mp4", "output_name": "../up"})
        assert response.status_code == 400

    def test_convert_unknown_publish_target(self, client, input_video):
        response = client.post("/api/hls/convert", json={"input": "movie.mp4", "publish": "r2"})
        assert response.status_code == 400

    @pytest.mark.parametrize("duration", ["abc", 2.5, True, 0, -4, [10]])
    def test_convert_rejects_bad_segment_duration(self, client, input_video, duration):
        response = client.post("/api/hls/convert", json={"input": "movie.mp4", "segment_duration": duration})
        assert response.status_code == 400
        assert "segment duration" in response.get_json()["message"]

    @pytest.mark.parametrize("body", [["movie.mp4"], "movie.mp4", 42])
    def test_convert_requires_json_object(self, client, input_video, body):
        response = client.post("/api/hls/convert", json=body)
        assert response.status_code == 400
        assert response.get_json()["message"] == "Request body must be a JSON object"

    def test_convert_rejects_non_string_input(self, client):
        response = client.post("/api/hls/convert", json={"input": ["movie.mp4"]})
        assert response.status_code == 400

    def test_failed_job_status(self, make_client, input_video):
        client, manager = make_client(FakeFFmpegRunner({"720p": "fail"}))
        response = client.post("/api/hls/convert", json={"input": "movie.mp4", "renditions": ["720p"]})
        job = manager.get_job(response.get_json()["job"]["id"])
        job.done_event.wait(WAIT)

        status = client.get(f"/api/hls/jobs/{job.job_id}").get_json()
        assert status["job"]["status"] == "failed"
        assert status["job"]["failed_rendition"] == "720p"
        assert "result" not in status

    def test_list_and_cancel(self, make_client, input_video):
        client, manager = make_client(FakeFFmpegRunner({"720p": "hang", "480p": "hang", "360p": "hang"}))
        response = client.post("/api/hls/convert", json={"input": "movie.mp4"})
        job_id = response.get_json()["job"]["id"]

        jobs = client.get("/api/hls/jobs").get_json()
        assert jobs["jobs"][0]["id"] == job_id
        assert jobs["summary"]["total_jobs"] == 1

        cancelled = client.post(f"/api/hls/jobs/{job_id}/cancel").get_json()
        assert cancelled["success"] is True
        assert cancelled["job"]["status"] == "cancelled"

        again = client.post(f"/api/hls/jobs/{job_id}/cancel").get_json()
        assert again["success"] is False

    def test_unknown_job(self, client):
        assert client.get("/api/hls/jobs/nope").status_code == 404
        assert client.post("/api/hls/jobs/nope/cancel").status_code == 404


class TestUpload:

    def test_upload_local_to_videos(self, client):
        data = {"video": (io.BytesIO(b"\x00" * 2048), "holiday clip.mp4"), "moveToVideos": "true"}
        response = client.post("/api/upload/local", data=data, content_type="multipart/form-data")
        assert response.status_code == 200

        payload = response.get_json()
        assert payload["file"]["size"] == 2048
        assert payload["file"]["filename"].startswith("video-")
        assert payload["hls"] is None

        stream = client.get(payload["file"]["streamUrl"])
        assert stream.status_code == 200
        assert len(stream.data) == 2048

    def test_upload_local_and_convert(self, make_client):
        client, manager = make_client()
        data = {"video": (io.BytesIO(b"\x00" * 512), "clip.mp4"), "convertToHLS": "true"}
        payload = client.post("/api/upload/local", data=data, content_type="multipart/form-data").get_json()

        assert payload["hls"]["success"] is True
        job = manager.get_job(payload["hls"]["job"]["id"])
        job.wait(WAIT)
        assert client.get(payload["hls"]["masterPlaylistUrl"]).status_code == 200

    def test_upload_rejects_other_types(self, client):
        data = {"video": (io.BytesIO(b"hello"), "notes.txt")}
        response = client.post("/api/upload/local", data=data, content_type="multipart/form-data")
        assert response.status_code == 400

    def test_upload_without_file(self, client):
        response = client.post("/api/upload/local", data={}, content_type="multipart/form-data")
        assert response.status_code == 400
        assert response.get_json()["message"] == "No file uploaded"

    def test_upload_too_large(self, client):
        data = {"video": (io.BytesIO(b"\x00" * (2 * 1024 * 1024)), "big.mp4")}
        response = client.post("/api/upload/local", data=data, content_type="multipart/form-data")
        assert response.status_code == 413
        assert response.get_json()["maxFileSize"] == "1MB"

    def test_upload_r2_without_r2(self, client):
        data = {"video": (io.BytesIO(b"\x00" * 16), "clip.mp4")}
        response = client.post("/api/upload/r2", data=data, content_type="multipart/form-data")
        assert response.status_code == 500

    def test_upload_info(self, client):
        info = client.get("/api/upload/info").get_json()
        assert info["maxFileSizeBytes"] == 1024 * 1024
        assert "mkv" in info["allowedFormats"]
        assert info["supportedFeatures"]["r2Upload"] is False


def test_health(client):
    health = client.get("/health").get_json()
    assert health["status"] == "ok"
    assert health["r2"] is False
    assert health["catalog"] == "local"
    assert health["jobs"]["active_jobs"] == 0


class TestR2StreamInfo:

    @pytest.fixture
    def r2(self, monkeypatch):
        s3 = boto3.client(
            "s3",
            endpoint_url="https://account.r2.cloudflarestorage.com",
            aws_access_key_id="test-key",
            aws_secret_access_key="test-secret",
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )
        backend = R2StorageBackend(s3, "videos")
        monkeypatch.setattr(streaming_api, "R2_BACKEND", backend)
        with Stubber(s3) as stubber:
            yield stubber
            stubber.assert_no_pending_responses()

    def head(self, r2, key, size):
        r2.add_response(
            "head_object",
            {"ContentLength": size, "ContentType": "video/mp4", "ETag": '"abc"', "LastModified": MODIFIED},
            {"Bucket": "videos", "Key": key},
        )

    def test_small_video(self, client, r2):
        self.head(r2, "uploads/a+b.mp4", 5 * 1024 * 1024)
        info = client.get("/api/video/r2/uploads/a+b.mp4/stream-info").get_json()

        assert info["name"] == "uploads/a+b.mp4"
        assert info["size"] == 5 * 1024 * 1024
        options = info["streamingOptions"]
        assert options["directStream"] == "/api/video/r2/uploads/a%2Bb.mp4"
        assert options["supportsRangeRequests"] is True
        assert options["presignedExpiresIn"] == 3600
        assert "X-Amz-Expires=3600" in options["presignedUrl"]
        assert options["hlsPlaylist"] is None
        assert info["clientRecommendations"]["usePresignedForLargeFiles"] is False

    def test_large_video_prefers_presigned_url(self, client, r2):
        self.head(r2, "movie.mp4", 200 * 1024 * 1024)
        info = client.get("/api/video/r2/movie.mp4/stream-info").get_json()
        assert info["clientRecommendations"]["usePresignedForLargeFiles"] is True

    def test_points_at_packaged_stream(self, client, input_video, r2):
        manager = client.application.extensions["transcode_manager"]
        convert(client, manager, output_name="movie", renditions=["360p"])
        self.head(r2, "videos/movie.mp4", 1000)
        info = client.get("/api/video/r2/videos/movie.mp4/stream-info").get_json()
        assert info["streamingOptions"]["hlsPlaylist"] == "/api/hls/movie/master.m3u8"

    def test_missing_object(self, client, r2):
        r2.add_client_error("head_object", service_error_code="NoSuchKey", http_status_code=404)
        response = client.get("/api/video/r2/missing.mp4/stream-info")
        assert response.status_code == 404
