"""Resolver configuration via pydantic-settings (.env + env vars)."""

import sys
from pathlib import Path

from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import DEFAULT_CONFIDENCE_THRESHOLD

SECONDS_PER_DAY = 24 * 60 * 60

LOG_FILE_NAME = "streaming-links.log"
LOG_FORMAT = (
    "{time:YYYY-MM-DDTHH:mm:ssZ} | {level:<8} | {process} | "
    "{extra[stage]:<11} | {message}"
)


class ResolverConfig(BaseSettings):
    """All resolver configuration with layered resolution:
    .env file < environment variables < constructor kwargs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -- Spotify (source platform) --
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    spotify_requests_per_minute: int = 120
    spotify_max_retries: int = 3

    # -- Apple Music catalog (signed developer token) --
    apple_music_key_id: str = ""
    apple_music_team_id: str = ""
    apple_music_private_key: str = ""
    apple_music_private_key_path: str = ""
    apple_music_storefront: str = "us"
    apple_music_requests_per_minute: int = 300

    # -- YouTube Data API --
    youtube_api_key: str = ""

    # -- MusicBrainz enrichment --
    musicbrainz_user_agent: str = "streaming-links/0.1 (https://github.com/streaming-links)"
    musicbrainz_window_ms: int = 1100
    musicbrainz_enabled: bool = True

    # -- Matching --
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD

    # -- Caching --
    cache_db_path: str = ""
    links_cache_days: int = 30
    lookup_cache_days: int = 30

    # -- Logging --
    log_dir: Path = Path.home() / ".cache" / "streaming-links" / "logs"
    log_level: str = "INFO"
    log_to_file: bool = True
    log_rotation: str = "10 MB"
    log_retention: str = "30 days"

    @property
    def has_spotify_credentials(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)

    @property
    def has_apple_music_credentials(self) -> bool:
        return bool(
            self.apple_music_key_id
            and self.apple_music_team_id
            and (self.apple_music_private_key or self.apple_music_private_key_path)
        )

    @property
    def links_cache_ttl(self) -> int:
        return self.links_cache_days * SECONDS_PER_DAY

    @property
    def lookup_cache_ttl(self) -> int:
        return self.lookup_cache_days * SECONDS_PER_DAY

    def load_apple_private_key(self) -> str:
        """PEM text of the Apple Music signing key, inline or from a .p8 file."""
        if self.apple_music_private_key:
            # .env files usually carry the PEM with escaped newlines
            return self.apple_music_private_key.replace("\\n", "\n")
        if not self.apple_music_private_key_path:
            raise ConfigError("No Apple Music private key configured")
        path = Path(self.apple_music_private_key_path).expanduser()
        try:
            return path.read_text()
        except OSError as e:
            raise ConfigError(f"Cannot read Apple Music private key {path}: {e}") from e

    def setup_logging(self, stream=None) -> None:
        """Configure loguru: one console sink, plus a shared rotating file.

        Several resolver processes can share log_dir (they already share the
        SQLite cache), so the file sink is queued and each line carries the
        process id.
        """
        logger.remove()

        def _default_extra(record):
            record["extra"].setdefault("stage", "core")
            return True

        logger.add(
            stream or sys.stderr,
            format=LOG_FORMAT,
            level=self.log_level.upper(),
            filter=_default_extra,
        )

        if not self.log_to_file:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(self.log_dir / LOG_FILE_NAME),
            format=LOG_FORMAT,
            level="DEBUG",
            rotation=self.log_rotation,
            retention=self.log_retention,
            enqueue=True,
            filter=_default_extra,
        )
