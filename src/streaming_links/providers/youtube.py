"""YouTube Music adapter backed by the YouTube Data API v3 search endpoint.

Search results carry only a title and a channel name, so candidates are
scored heuristically instead of with the metadata matcher: title similarity,
artist presence, and bonuses for official channels and official uploads.
"""

from __future__ import annotations

import re

import httpx
from loguru import logger

from ..errors import RateLimitError, UpstreamError
from ..http import Timeouts, get_json
from ..matching import normalize_string, similarity
from ..models import AlbumMetadata, ProviderResult, TrackMetadata
from ..ratelimit import RateLimiter
from .base import accept_or_fallback, pick_best, search_fallback

log = logger.bind(stage="youtube")

API_BASE = "https://www.googleapis.com/youtube/v3"
MUSIC_CATEGORY_ID = "10"
MAX_RESULTS = 10
# Strictly greater than
MATCH_THRESHOLD = 0.5

WATCH_URL = "https://music.youtube.com/watch?v="
PLAYLIST_URL = "https://music.youtube.com/playlist?list="
SEARCH_URL = "https://music.youtube.com/search?q="

OFFICIAL_CHANNEL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"vevo$", r"- topic$", r"official$", r"records$", r"music$")
]
OFFICIAL_TITLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"official\s*(music\s*)?video",
        r"official\s*audio",
        r"official\s*lyric",
        r"\(audio\)",
        r"\[audio\]",
    )
]
_TOPIC_CHANNEL = re.compile(r"- topic$", re.IGNORECASE)
_FULL_ALBUM = re.compile(r"full\s*album", re.IGNORECASE)

_ADAPTER_ERRORS = (httpx.HTTPError, UpstreamError, RateLimitError, ValueError, KeyError, TypeError)


def _title_and_artist_score(name: str, artist: str, title: str, channel: str) -> float:
    norm_title = normalize_string(title)
    score = 0.4 * min(1.0, similarity(normalize_string(name), norm_title) * 1.5)

    norm_artist = normalize_string(artist)
    if norm_artist and (
        norm_artist in norm_title or norm_artist in normalize_string(channel)
    ):
        score += 0.3
    return score


def score_track_result(metadata: TrackMetadata, title: str, channel: str) -> float:
    """Heuristic 0..1 score for a video search hit."""
    score = _title_and_artist_score(metadata.name, metadata.primary_artist, title, channel)
    if any(p.search(channel) for p in OFFICIAL_CHANNEL_PATTERNS):
        score += 0.15
    if any(p.search(title) for p in OFFICIAL_TITLE_PATTERNS):
        score += 0.15
    return min(1.0, score)


def score_album_result(metadata: AlbumMetadata, title: str, channel: str) -> float:
    """Heuristic 0..1 score for a playlist search hit."""
    score = _title_and_artist_score(metadata.name, metadata.primary_artist, title, channel)
    # Topic channels host the auto-generated album playlists
    if _TOPIC_CHANNEL.search(channel):
        score += 0.2
    if _FULL_ALBUM.search(title):
        score += 0.1
    return min(1.0, score)


class YouTubeProvider:
    """Search-only adapter; no identifier lookups, no reverse resolution."""

    name = "youtube"
    uses_identifiers = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.limiter = limiter

    def fallback_track(self, metadata: TrackMetadata) -> ProviderResult:
        return search_fallback(SEARCH_URL, metadata.primary_artist, metadata.name)

    def fallback_album(self, metadata: AlbumMetadata) -> ProviderResult:
        return search_fallback(SEARCH_URL, metadata.primary_artist, metadata.name)

    async def search_track(self, metadata: TrackMetadata) -> ProviderResult:
        query = f"{metadata.primary_artist} {metadata.name}".strip()
        log.debug(f"Searching for track: {query!r}")
        try:
            items = await self._search(
                query, {"type": "video", "videoCategoryId": MUSIC_CATEGORY_ID}
            )
        except _ADAPTER_ERRORS as e:
            log.error(f"Track search error for {query!r}: {e}")
            return self.fallback_track(metadata)

        videos = [i for i in items if (i.get("id") or {}).get("videoId")]
        if not videos:
            log.info(f"No results for: {query!r}")
            return self.fallback_track(metadata)

        best, score = pick_best(
            videos,
            lambda i: score_track_result(metadata, *_title_channel(i)),
        )
        return self._accept(best, score, WATCH_URL, "videoId", self.fallback_track(metadata))

    async def search_album(self, metadata: AlbumMetadata) -> ProviderResult:
        query = f"{metadata.primary_artist} {metadata.name} full album".strip()
        log.debug(f"Searching for album: {query!r}")
        try:
            items = await self._search(query, {"type": "playlist"})
        except _ADAPTER_ERRORS as e:
            log.error(f"Album search error for {query!r}: {e}")
            return self.fallback_album(metadata)

        playlists = [i for i in items if (i.get("id") or {}).get("playlistId")]
        if not playlists:
            log.info(f"No playlist results for: {query!r}")
            return self.fallback_album(metadata)

        best, score = pick_best(
            playlists,
            lambda i: score_album_result(metadata, *_title_channel(i)),
        )
        return self._accept(
            best, score, PLAYLIST_URL, "playlistId", self.fallback_album(metadata)
        )

    def _accept(self, item, score, base_url, id_key, fallback) -> ProviderResult:
        if item is None or score <= MATCH_THRESHOLD:
            log.info(f"No high-confidence match found (best {score:.2f})")
            return fallback
        title, channel = _title_channel(item)
        return accept_or_fallback(
            "youtube",
            (f"{base_url}{item['id'][id_key]}", {"title": title, "channel": channel}),
            score,
            MATCH_THRESHOLD,
            fallback,
        )

    async def _search(self, query: str, params: dict) -> list[dict]:
        data = await get_json(
            self.client,
            f"{API_BASE}/search",
            "YouTube",
            limiter=self.limiter,
            timeout=Timeouts.FAST,
            params={
                "part": "snippet",
                "q": query,
                "maxResults": MAX_RESULTS,
                "key": self.api_key,
                **params,
            },
        )
        return data.get("items") or []


def _title_channel(item: dict) -> tuple[str, str]:
    snippet = item.get("snippet") or {}
    return snippet.get("title", ""), snippet.get("channelTitle", "")
