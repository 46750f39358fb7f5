import os
import stat
import pytest
from unittest.mock import patch

from stream_layout import (
    StreamLayout,
    InvalidStreamKeyError,
    validate_stream_key,
    stream_key_from_path,
)


class TestStreamKeys:
    """Test stream key validation and extraction"""

    @pytest.mark.parametrize("key", ["test1", "my_stream", "Cam-01", "a" * 64])
    def test_valid_keys(self, key):
        assert validate_stream_key(key) == key

    @pytest.mark.parametrize("key", [
        "", "..", "../etc", "a/b", "with space", "-leading", "a" * 65, "key\n", None
    ])
    def test_invalid_keys(self, key):
        with pytest.raises(InvalidStreamKeyError):
            validate_stream_key(key)

    def test_key_from_ingest_path(self):
        assert stream_key_from_path("/live/test1") == "test1"
        assert stream_key_from_path("live/test1") == "test1"

    @pytest.mark.parametrize("path", ["/other/test1", "/live", "/live/a/b", "", "/live/../x"])
    def test_key_from_bad_path(self, path):
        with pytest.raises(InvalidStreamKeyError):
            stream_key_from_path(path)

    def test_invalid_key_is_a_value_error(self):
        assert issubclass(InvalidStreamKeyError, ValueError)


class TestStreamLayout:
    """Test per-stream directory handling"""

    def test_paths(self, tmp_path):
        layout = StreamLayout(media_root=str(tmp_path))
        assert layout.stream_dir("test1") == os.path.join(str(tmp_path), "live", "test1")
        assert layout.manifest_path("test1").endswith(os.path.join("live", "test1", "index.m3u8"))
        assert layout.segment_pattern("test1").endswith("segment_%03d.ts")

    def test_path_rejects_traversal(self, tmp_path):
        layout = StreamLayout(media_root=str(tmp_path))
        with pytest.raises(InvalidStreamKeyError):
            layout.stream_dir("../../etc")

    def test_segment_path_filters_filenames(self, tmp_path):
        layout = StreamLayout(media_root=str(tmp_path))
        assert layout.segment_path("test1", "segment_001.ts").endswith("segment_001.ts")
        assert layout.segment_path("test1", "index.m3u8").endswith("index.m3u8")
        assert layout.segment_path("test1", "../index.m3u8") is None
        assert layout.segment_path("test1", "notes.txt") is None

    def test_ensure_creates_world_writable_directory(self, layout):
        stream_dir = layout.ensure_stream_directory("test1")
        assert os.path.isdir(stream_dir)
        assert stat.S_IMODE(os.stat(stream_dir).st_mode) == 0o777

    def test_reset_removes_previous_segments(self, layout):
        stream_dir = layout.ensure_stream_directory("test1")
        old_segment = os.path.join(stream_dir, "segment_000.ts")
        with open(old_segment, "wb") as fh:
            fh.write(b"old")
        with open(layout.manifest_path("test1"), "w") as fh:
            fh.write("#EXTM3U\n")

        layout.ensure_stream_directory("test1")

        assert os.path.isdir(stream_dir)
        assert not os.path.exists(old_segment)
        assert not layout.has_manifest("test1")

    def test_ensure_without_reset_keeps_files(self, layout):
        stream_dir = layout.ensure_stream_directory("test1")
        segment = os.path.join(stream_dir, "segment_000.ts")
        with open(segment, "wb") as fh:
            fh.write(b"data")

        layout.ensure_stream_directory("test1", reset=False)
        assert os.path.exists(segment)

    def test_filesystem_errors_are_logged_not_raised(self, layout, caplog):
        layout.ensure_stream_directory("test1")
        with patch("stream_layout.shutil.rmtree", side_effect=PermissionError("denied")):
            stream_dir = layout.ensure_stream_directory("test1")
        assert os.path.isdir(stream_dir)
        assert "Could not remove directory" in caplog.text

    def test_has_manifest_false_for_invalid_key(self, layout):
        assert layout.has_manifest("../x") is False

    def test_prepare_media_root_reset(self, tmp_path):
        layout = StreamLayout(media_root=str(tmp_path / "media"))
        layout.prepare_media_root()
        layout.ensure_stream_directory("stale")

        layout.prepare_media_root(reset=True)

        assert os.path.isdir(layout.live_root)
        assert os.listdir(layout.live_root) == []
