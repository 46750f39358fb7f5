"""
Read-only view of deliverable streams.

A stream counts as active when its index.m3u8 exists on disk, whether or
not an encoder is still writing to it. A stream whose encoder died keeps
being listed until its directory is reset by the next publish.
"""

import os
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import m3u8

from config import settings
from stream_layout import StreamLayout, InvalidStreamKeyError, validate_stream_key

logger = logging.getLogger(__name__)


@dataclass
class StreamDescription:
    """Delivery URLs for one stream, as returned by /api/streams."""
    name: str
    url: str
    rtmp: str
    hls_url: str
    embed_url: str
    iframe_embed: str

    def to_dict(self) -> Dict:
        return asdict(self)


class StreamRegistryQuery:
    def __init__(self, layout: StreamLayout):
        self.layout = layout

    def is_deliverable(self, stream_key: str) -> bool:
        return self.layout.has_manifest(stream_key)

    def list_stream_keys(self) -> List[str]:
        """Stream keys with a manifest on disk, sorted by name."""
        try:
            entries = os.listdir(self.layout.live_root)
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Could not list {self.layout.live_root}: {e}")
            return []

        keys = []
        for name in sorted(entries):
            try:
                validate_stream_key(name)
            except InvalidStreamKeyError:
                continue
            if self.layout.has_manifest(name):
                keys.append(name)
        return keys

    def list_active_streams(
        self, base_url: str, rtmp_host: Optional[str] = None, root_path: str = ""
    ) -> List[StreamDescription]:
        return [
            self.describe_stream(name, base_url, rtmp_host, root_path)
            for name in self.list_stream_keys()
        ]

    def describe_stream(
        self, stream_key: str, base_url: str, rtmp_host: Optional[str] = None, root_path: str = ""
    ) -> StreamDescription:
        """
        Build delivery URLs from configuration. Does not check liveness.

        base_url already carries the mount prefix; root_path is prepended to
        the relative url.
        """
        validate_stream_key(stream_key)
        base_url = base_url.rstrip("/")
        rtmp_host = settings.PUBLIC_RTMP_HOST or rtmp_host or "localhost"
        embed_url = f"{base_url}/embed/{stream_key}"

        return StreamDescription(
            name=stream_key,
            url=f"{root_path}/live/{stream_key}/index.m3u8",
            rtmp=f"rtmp://{rtmp_host}:{settings.RTMP_PORT}/{settings.INGEST_APP}/{stream_key}",
            hls_url=f"{base_url}/live/{stream_key}/index.m3u8",
            embed_url=embed_url,
            iframe_embed=(
                f'<iframe src="{embed_url}" width="{settings.EMBED_WIDTH}" '
                f'height="{settings.EMBED_HEIGHT}" frameborder="0" allowfullscreen></iframe>'
            ),
        )

    def manifest_summary(self, stream_key: str) -> Optional[Dict]:
        """Parse the stream manifest. None if it is missing or unreadable."""
        if not self.is_deliverable(stream_key):
            return None

        try:
            with open(self.layout.manifest_path(stream_key), "r", encoding="utf-8", errors="ignore") as fh:
                playlist = m3u8.loads(fh.read())
        except Exception as e:
            logger.warning(f"Could not parse manifest for {stream_key}: {e}")
            return None

        last_segment = playlist.segments[-1] if playlist.segments else None
        return {
            "segment_count": len(playlist.segments),
            "target_duration": playlist.target_duration,
            "media_sequence": playlist.media_sequence,
            "ended": playlist.is_endlist,
            "last_segment": last_segment.uri if last_segment else None,
        }
