"""
Filesystem layout for live HLS output.

Every stream key owns <media_root>/live/<stream_key>/ containing index.m3u8
and segment_NNN.ts files written by FFmpeg.
"""

import os
import re
import shutil
import logging
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

MANIFEST_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
SERVABLE_EXTENSIONS = (".m3u8", ".ts")


class InvalidStreamKeyError(ValueError):
    """Stream key is empty, too long or contains characters unsafe for a path."""


def validate_stream_key(stream_key: str, pattern: Optional[str] = None) -> str:
    if not isinstance(stream_key, str) or not re.fullmatch(
            pattern or settings.STREAM_KEY_PATTERN, stream_key):
        raise InvalidStreamKeyError(f"Invalid stream key: {stream_key!r}")
    return stream_key


def stream_key_from_path(stream_path: str, app_name: Optional[str] = None) -> str:
    """
    Extract the stream key from an ingest path such as "/live/<key>".

    The first segment must be the ingest application name.
    """
    app_name = app_name or settings.INGEST_APP
    parts = [p for p in (stream_path or "").split("/") if p]
    if len(parts) != 2 or parts[0] != app_name:
        raise InvalidStreamKeyError(f"Invalid stream path: {stream_path!r}")
    return validate_stream_key(parts[1])


class StreamLayout:
    """Builds and prepares per-stream output directories."""

    def __init__(self, media_root: Optional[str] = None, dir_mode: Optional[int] = None):
        self.media_root = os.path.abspath(media_root or settings.MEDIA_ROOT)
        self.live_root = os.path.join(self.media_root, "live")
        self.dir_mode = settings.STREAM_DIR_MODE if dir_mode is None else dir_mode

    def stream_dir(self, stream_key: str) -> str:
        return os.path.join(self.live_root, validate_stream_key(stream_key))

    def manifest_path(self, stream_key: str) -> str:
        return os.path.join(self.stream_dir(stream_key), MANIFEST_NAME)

    def segment_pattern(self, stream_key: str) -> str:
        return os.path.join(self.stream_dir(stream_key), SEGMENT_PATTERN)

    def segment_path(self, stream_key: str, filename: str) -> Optional[str]:
        """Resolve a servable file inside a stream directory, or None."""
        # Sanitize filename to prevent directory traversal
        safe_filename = os.path.basename(filename)
        if safe_filename != filename or not safe_filename.endswith(SERVABLE_EXTENSIONS):
            return None
        return os.path.join(self.stream_dir(stream_key), safe_filename)

    def has_manifest(self, stream_key: str) -> bool:
        try:
            return os.path.isfile(self.manifest_path(stream_key))
        except InvalidStreamKeyError:
            return False

    def ensure_stream_directory(self, stream_key: str, reset: bool = True) -> str:
        """
        Create the output directory for a stream.

        With reset=True an existing directory is removed first so no segments
        from a previous session survive. Best effort: failures are logged and
        the directory is left in whatever state resulted.
        """
        stream_dir = self.stream_dir(stream_key)
        self._setup_directory(stream_dir, reset=reset)
        return stream_dir

    def prepare_media_root(self, reset: bool = False) -> None:
        """Create the live root at startup, optionally wiping previous output."""
        self._setup_directory(self.media_root, reset=False)
        self._setup_directory(self.live_root, reset=reset)
        logger.info(f"📁 Media root: {self.media_root}")

    def _setup_directory(self, path: str, reset: bool) -> None:
        if reset and os.path.exists(path):
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning(f"⚠️ Could not remove directory {path}: {e}")
        try:
            os.makedirs(path, exist_ok=True)
            os.chmod(path, self.dir_mode)
        except OSError as e:
            logger.warning(
                f"⚠️ Could not set up directory {path}: {e}")
