import pytest

from hlsvod.errors import InvalidRangeError
from hlsvod.streaming.ranges import RangeSpec, resolve_range, unsatisfiable_content_range


class TestResolveRange:

    def test_no_header_means_full_content(self):
        assert resolve_range(None, 1000) is None
        assert resolve_range("", 1000) is None
        assert resolve_range("   ", 1000) is None

    def test_closed_range(self):
        spec = resolve_range("bytes=0-499", 1000)
        assert (spec.start, spec.end, spec.length) == (0, 499, 500)
        assert spec.content_range(1000) == "bytes 0-499/1000"

    def test_open_ended_range_runs_to_last_byte(self):
        spec = resolve_range("bytes=500-", 1000)
        assert spec == RangeSpec(500, 999)
        assert spec.length == 500

    def test_single_byte(self):
        assert resolve_range("bytes=999-999", 1000).length == 1

    @pytest.mark.parametrize("header", [
        "bytes=999-2000",
        "bytes=1000-",
        "bytes=1000-1000",
        "bytes=500-100",
        "bytes=abc-def",
        "bytes=-500",
        "bytes=0-10,20-30",
        "items=0-10",
        "bytes=0x10-20",
        "bytes=１-2",
    ])
    def test_unsatisfiable(self, header):
        with pytest.raises(InvalidRangeError) as exc_info:
            resolve_range(header, 1000)
        assert exc_info.value.total_size == 1000
        assert exc_info.value.status_code == 416

    def test_empty_object_has_no_satisfiable_range(self):
        with pytest.raises(InvalidRangeError):
            resolve_range("bytes=0-", 0)

    def test_unsatisfiable_content_range(self):
        assert unsatisfiable_content_range(1000) == "bytes */1000"
