import pytest

from hlsvod.errors import InvalidInputError
from hlsvod.transcode.rendition import (
    RenditionSpec,
    StreamRendition,
    master_playlist_key,
    media_playlist_key,
    parse_bitrate,
    parse_renditions,
)


@pytest.mark.parametrize("value, expected", [
    ("2500k", 2500000),
    ("2.5M", 2500000),
    ("128K", 128000),
    (96000, 96000),
    ("64000", 64000),
])
def test_parse_bitrate(value, expected):
    assert parse_bitrate(value) == expected


@pytest.mark.parametrize("value", ["", "fast", "-5k", 0, None, True, "10g"])
def test_parse_bitrate_rejects(value):
    with pytest.raises(InvalidInputError):
        parse_bitrate(value)


def test_from_dict_accepts_both_spellings():
    a = RenditionSpec.from_dict({"name": "720p", "width": 1280, "height": 720,
                                 "video_bitrate": "2500k", "audio_bitrate": "128k"})
    b = RenditionSpec.from_dict({"name": "720p", "width": "1280", "height": "720",
                                 "bitrate": "2500k", "audioBitrate": "128k"})
    assert a == b
    assert a.bandwidth == 2628000
    assert a.resolution == "1280x720"


@pytest.mark.parametrize("data", [
    {"name": "720p", "width": 1280, "height": 720},
    {"name": "../x", "width": 1280, "height": 720, "bitrate": "1M", "audioBitrate": "1k"},
    {"name": "720p", "width": 0, "height": 720, "bitrate": "1M", "audioBitrate": "1k"},
    "720p",
])
def test_from_dict_rejects(data):
    with pytest.raises(InvalidInputError):
        RenditionSpec.from_dict(data)


def test_parse_renditions_rejects_duplicates_and_empty():
    spec = {"name": "a", "width": 2, "height": 2, "bitrate": "1k", "audioBitrate": "1k"}
    with pytest.raises(InvalidInputError):
        parse_renditions([spec, dict(spec)])
    with pytest.raises(InvalidInputError):
        parse_renditions([])


def test_stream_rendition_layout():
    spec = RenditionSpec("480p", 854, 480, 1000000, 96000)
    rendition = StreamRendition.from_spec(spec, "movie")
    assert rendition.media_playlist_path == "movie/480p/playlist.m3u8"
    assert rendition.segment_directory == "movie/480p"
    assert rendition.to_dict()["bandwidth"] == 1096000
    assert master_playlist_key("movie") == "movie/master.m3u8"
    assert media_playlist_key("movie", "480p") == "movie/480p/playlist.m3u8"
