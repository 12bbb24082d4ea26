from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional

# Application version
VERSION = "0.4.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "info"
    APP_DEBUG: bool = False
    RELOAD: bool = False

    # Route Configuration
    # ROOT_PATH is the reverse-proxy mount point, API_PREFIX the router prefix.
    # Rewritten manifests use relative URLs built from both.
    ROOT_PATH: str = ""
    API_PREFIX: str = "/api"

    # Persistence
    CACHE_DIR: str = "data/cache"
    # JSON list of sources maintained by the source manager
    SOURCES_FILE: str = "data/sources.json"
    DEFAULT_CACHE_MAX_AGE_HOURS: int = 24

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    TRANSCODE_AUDIO_BITRATE: str = "192k"
    STREAM_CHUNK_SIZE: int = 32768

    # Upstream HTTP
    RELAY_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    DEFAULT_CONNECTION_TIMEOUT: float = 10.0
    DEFAULT_READ_TIMEOUT: float = 30.0
    # Whole-request timeout for provider API calls and playlist/EPG downloads
    UPSTREAM_TIMEOUT: float = 60.0

    # Some CDNs reject requests whose Origin does not match their own site.
    # Maps a host suffix to the origin that must be presented.
    ORIGIN_OVERRIDES: Dict[str, str] = {"pluto.tv": "https://pluto.tv"}
    # Hosts the browser can never reach directly; playback starts proxied.
    CORS_RESTRICTED_DOMAINS: List[str] = ["pluto.tv"]

    # API Authentication
    API_TOKEN: Optional[str] = None

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
