import os
import pytest

from stream_layout import InvalidStreamKeyError
from stream_registry import StreamRegistryQuery

PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:2
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:2.000000,
segment_000.ts
#EXTINF:2.000000,
segment_001.ts
"""


def write_manifest(layout, stream_key, content=PLAYLIST):
    layout.ensure_stream_directory(stream_key, reset=False)
    with open(layout.manifest_path(stream_key), "w") as fh:
        fh.write(content)


class TestStreamRegistryQuery:
    """Test listing of deliverable streams"""

    @pytest.fixture
    def registry(self, layout):
        return StreamRegistryQuery(layout)

    def test_empty(self, registry):
        assert registry.list_active_streams("http://localhost:3000/") == []

    def test_missing_live_root(self, tmp_path):
        from stream_layout import StreamLayout
        registry = StreamRegistryQuery(StreamLayout(media_root=str(tmp_path / "nothing")))
        assert registry.list_stream_keys() == []

    def test_stream_listed_only_once_manifest_exists(self, registry, layout):
        layout.ensure_stream_directory("test1")
        assert registry.list_stream_keys() == []

        write_manifest(layout, "test1")
        assert registry.list_stream_keys() == ["test1"]

    def test_ignores_files_and_invalid_names(self, registry, layout):
        write_manifest(layout, "test1")
        with open(os.path.join(layout.live_root, "stray.txt"), "w") as fh:
            fh.write("x")
        os.makedirs(os.path.join(layout.live_root, "bad name"))

        assert registry.list_stream_keys() == ["test1"]

    def test_describe_stream(self, registry):
        description = registry.describe_stream("test1", "http://example.com:3000/", "example.com")

        assert description.to_dict() == {
            "name": "test1",
            "url": "/live/test1/index.m3u8",
            "rtmp": "rtmp://example.com:1935/live/test1",
            "hls_url": "http://example.com:3000/live/test1/index.m3u8",
            "embed_url": "http://example.com:3000/embed/test1",
            "iframe_embed": (
                '<iframe src="http://example.com:3000/embed/test1" width="640" '
                'height="360" frameborder="0" allowfullscreen></iframe>'
            ),
        }

    def test_describe_stream_under_root_path(self, registry, layout):
        write_manifest(layout, "test1")

        description = registry.describe_stream(
            "test1", "http://example.com/relay/", "example.com", root_path="/relay")
        listed = registry.list_active_streams("http://example.com/relay/", root_path="/relay")

        assert description.url == "/relay/live/test1/index.m3u8"
        assert description.hls_url == "http://example.com/relay/live/test1/index.m3u8"
        assert listed[0].url == "/relay/live/test1/index.m3u8"

    def test_describe_rejects_invalid_key(self, registry):
        with pytest.raises(InvalidStreamKeyError):
            registry.describe_stream("../x", "http://example.com/")

    def test_list_active_streams(self, registry, layout):
        write_manifest(layout, "b")
        write_manifest(layout, "a")

        streams = registry.list_active_streams("http://example.com/", "example.com")

        assert [s.name for s in streams] == ["a", "b"]
        assert streams[0].hls_url == "http://example.com/live/a/index.m3u8"

    def test_manifest_summary(self, registry, layout):
        write_manifest(layout, "test1")

        summary = registry.manifest_summary("test1")

        assert summary["segment_count"] == 2
        assert summary["target_duration"] == 2
        assert summary["last_segment"] == "segment_001.ts"
        assert summary["ended"] is False

    def test_manifest_summary_missing(self, registry):
        assert registry.manifest_summary("test1") is None
