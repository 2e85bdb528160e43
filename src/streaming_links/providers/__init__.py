"""Provider registry -- maps result slots to partner platform adapters.

Slots: appleMusic -> youtube (serialization order)

Providers:
    apple_music -- Apple Music adapters. AppleMusicCatalogProvider uses the
                   catalog API with a signed developer token and resolves
                   ISRC/UPC exactly before scoring text search results.
                   ITunesSearchProvider uses the public iTunes Search API
                   (no credentials) with scoring only. Both double as the
                   reverse lookup for Apple Music URLs.
    youtube     -- YouTube Music via the YouTube Data API. Heuristic scoring
                   on title/channel. Only registered when an API key is set.
    base        -- StreamingProvider/ReverseLookup protocols and the shared
                   pick-best/threshold/fallback helpers.

Which Apple Music variant is used is decided here from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from loguru import logger

from ..auth import AppleMusicTokenIssuer
from ..config import ResolverConfig
from ..models import APPLE_MUSIC_SLOT, YOUTUBE_SLOT
from ..ratelimit import RateLimiter
from ..store import KeyValueStore
from .apple_music import AppleMusicCatalogProvider, ITunesSearchProvider
from .base import ReverseLookup, StreamingProvider
from .youtube import YouTubeProvider

log = logger.bind(stage="providers")

# iTunes Search API allows roughly 20 calls per minute per client
ITUNES_REQUESTS_PER_MINUTE = 20

__all__ = [
    "AppleMusicCatalogProvider",
    "ITunesSearchProvider",
    "ProviderSet",
    "ReverseLookup",
    "StreamingProvider",
    "YouTubeProvider",
    "build_providers",
]


@dataclass
class ProviderSet:
    providers: dict[str, StreamingProvider]
    # Detail lookups for partner URLs, keyed by the partner's platform slot
    reverse: dict[str, ReverseLookup]


def build_providers(
    config: ResolverConfig,
    client: httpx.AsyncClient,
    store: KeyValueStore,
) -> ProviderSet:
    """Instantiate adapters for every configured partner platform."""
    apple: AppleMusicCatalogProvider | ITunesSearchProvider
    if config.has_apple_music_credentials:
        issuer = AppleMusicTokenIssuer(
            private_key=config.load_apple_private_key(),
            key_id=config.apple_music_key_id,
            team_id=config.apple_music_team_id,
        )
        apple = AppleMusicCatalogProvider(
            client,
            issuer,
            limiter=RateLimiter(
                store, "apple-music", config.apple_music_requests_per_minute
            ),
            storefront=config.apple_music_storefront,
            threshold=config.confidence_threshold,
        )
        log.debug("Apple Music: catalog API")
    else:
        apple = ITunesSearchProvider(
            client,
            limiter=RateLimiter(store, "itunes", ITUNES_REQUESTS_PER_MINUTE),
            country=config.apple_music_storefront,
            threshold=config.confidence_threshold,
        )
        log.debug("Apple Music: no credentials, using iTunes Search API")

    providers: dict[str, StreamingProvider] = {APPLE_MUSIC_SLOT: apple}
    if config.youtube_api_key:
        providers[YOUTUBE_SLOT] = YouTubeProvider(client, config.youtube_api_key)
    else:
        log.debug("YouTube: no API key, slot disabled")

    return ProviderSet(providers=providers, reverse={APPLE_MUSIC_SLOT: apple})
