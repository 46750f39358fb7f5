from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "info"
    ROOT_PATH: str = ""
    DOCS_URL: Optional[str] = "/docs"
    OPENAPI_URL: str = "/openapi.json"

    # API Authentication for control endpoints (ingest hooks, sessions).
    # Playback and listing endpoints are always public.
    API_TOKEN: Optional[str] = None

    # Media layout
    # Each stream gets <MEDIA_ROOT>/live/<stream_key>/
    MEDIA_ROOT: str = "./media"
    # Optional static web interface served at "/"
    PUBLIC_ROOT: str = "./public"
    # Wipe <MEDIA_ROOT>/live on startup so stale manifests are not listed
    RESET_MEDIA_ON_STARTUP: bool = True
    STREAM_DIR_MODE: int = 0o777
    # Allowed stream keys. Keys are used verbatim as directory names.
    STREAM_KEY_PATTERN: str = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$"

    # RTMP ingest server (external)
    INGEST_APP: str = "live"
    # Address FFmpeg pulls from
    RTMP_HOST: str = "localhost"
    RTMP_PORT: int = 1935
    # Host advertised to publishers in /api/streams. Defaults to the request host.
    PUBLIC_RTMP_HOST: Optional[str] = None

    # Encoder profile
    FFMPEG_PATH: str = "ffmpeg"
    VIDEO_CODEC: str = "libx264"
    VIDEO_PRESET: str = "veryfast"
    VIDEO_TUNE: str = "zerolatency"
    VIDEO_CRF: int = 23
    AUDIO_CODEC: str = "aac"
    AUDIO_BITRATE: str = "128k"
    RECONNECT_DELAY_MAX: int = 2
    HLS_SEGMENT_DURATION: int = 2
    # 0 keeps every segment in the playlist
    HLS_LIST_SIZE: int = 0

    # Encoder lifecycle
    # Seconds to wait after SIGTERM before sending SIGKILL
    ENCODER_STOP_TIMEOUT: float = 5.0
    # Manifest existence check, diagnostic only
    OUTPUT_CHECK_INTERVAL: float = 1.0
    OUTPUT_CHECK_MAX_ATTEMPTS: int = 60

    # Embed player
    PLAYER_SCRIPT_URL: str = "https://cdn.jsdelivr.net/npm/hls.js@1.0.0/dist/hls.min.js"
    EMBED_WIDTH: int = 640
    EMBED_HEIGHT: int = 360

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
