"""CLI entry point for streaming link resolution."""

import json
import os
from pathlib import Path

import anyio
import click
import httpx
from loguru import logger

from .api.musicbrainz import MusicBrainzClient
from .api.spotify import SpotifyClient
from .config import ResolverConfig
from .errors import ConfigError, MetadataLookupError
from .models import PROVIDER_SLOTS, ResolutionResult
from .providers import build_providers
from .ratelimit import RateLimiter
from .service import StreamingLinksService
from .store import KeyValueStore, MemoryStore, open_store

log = logger.bind(stage="cli")


CONFIG_ENV_VAR = "STREAMING_LINKS_ENV"
USER_CONFIG_FILE = Path("~/.config/streaming-links/.env")


def _find_config_file() -> Path | None:
    """$STREAMING_LINKS_ENV, else .env in cwd, else the per-user config file.

    A $STREAMING_LINKS_ENV naming a missing file yields None.
    """
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit).expanduser()
        if path.is_file():
            return path
        log.warning(f"{CONFIG_ENV_VAR}={explicit} does not exist, ignoring")
        return None
    for candidate in (Path.cwd() / ".env", USER_CONFIG_FILE.expanduser()):
        if candidate.is_file():
            return candidate
    return None


def build_service(
    config: ResolverConfig,
    client: httpx.AsyncClient,
    store: KeyValueStore,
) -> StreamingLinksService:
    """Wire clients, limiters and providers from configuration."""
    if not config.has_spotify_credentials:
        raise ConfigError("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET are required")

    source = SpotifyClient(
        client,
        store,
        RateLimiter(store, "spotify", config.spotify_requests_per_minute),
        config.spotify_client_id,
        config.spotify_client_secret,
        max_retries=config.spotify_max_retries,
    )
    enrichment = None
    if config.musicbrainz_enabled:
        enrichment = MusicBrainzClient(
            client,
            store,
            RateLimiter(store, "musicbrainz", 1, window_ms=config.musicbrainz_window_ms),
            config.musicbrainz_user_agent,
            cache_ttl=config.lookup_cache_ttl,
        )
    provider_set = build_providers(config, client, store)

    return StreamingLinksService(
        store,
        provider_set.providers,
        reverse=provider_set.reverse,
        enrichment=enrichment,
        source=source,
        cache_ttl=config.links_cache_ttl,
        threshold=config.confidence_threshold,
    )


async def _resolve(config: ResolverConfig, url: str, use_cache: bool) -> ResolutionResult:
    db_path = Path(config.cache_db_path).expanduser() if config.cache_db_path else None
    store = open_store(db_path) if use_cache else MemoryStore()
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            service = build_service(config, client, store)
            return await service.resolve(url)
    finally:
        close = getattr(store, "close", None)
        if close:
            close()


def format_result(result: ResolutionResult) -> str:
    """Human-readable summary of a resolution."""
    lines = []
    if result.source:
        artists = ", ".join(result.source.artists) or "Unknown Artist"
        lines.append(f"{result.content_type}: {result.source.name} by {artists}")
    lines.append(f"status: {result.status}" + (" (cached)" if result.from_cache else ""))

    for slot in PROVIDER_SLOTS:
        provider = result.provider(slot)
        if provider.to_dict() is None:
            continue
        if provider.is_fallback:
            lines.append(f"  {slot}: {provider.url} (search fallback)")
        else:
            lines.append(f"  {slot}: {provider.url} (confidence {provider.confidence:.2f})")

    if result.songlink:
        lines.append(f"  songlink: {result.songlink}")
    return "\n".join(lines)


@click.command()
@click.argument("url")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.option("--no-cache", is_flag=True, help="Bypass the persistent cache.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory for the rotating log file.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    default=None,
    help="Path to .env file.",
)
def main(
    url: str,
    as_json: bool,
    no_cache: bool,
    verbose: bool,
    log_dir: str | None,
    config_file: str | None,
) -> None:
    """Resolve a Spotify or Apple Music URL to links on other platforms."""
    env_file = Path(config_file) if config_file else _find_config_file()

    config_kwargs: dict[str, str] = {}
    if verbose:
        config_kwargs["log_level"] = "DEBUG"
    if log_dir:
        config_kwargs["log_dir"] = log_dir

    config = ResolverConfig(_env_file=env_file, **config_kwargs)  # type: ignore[call-arg]
    config.setup_logging()
    log.debug(f"Loaded env from {env_file}" if env_file else "No .env found")

    try:
        result = anyio.run(_resolve, config, url, not no_cache)
    except (MetadataLookupError, ConfigError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(format_result(result))

    if result.status == "unresolved":
        raise SystemExit(1)
