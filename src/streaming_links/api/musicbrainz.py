"""MusicBrainz ISRC/UPC enrichment.

Resolves an exact identifier for a track (ISRC) or album (UPC barcode)
from an artist and title. Both lookups search first, drop low-relevance
hits, rank the rest, then fetch details until one carries the identifier,
because not every MusicBrainz entry for the same recording or release has
one.

Outcomes are cached as tagged entries ({"status": "found", "value": ...}
or {"status": "not_found"}) so a confirmed absence is never confused with a
real value and never re-queried. Transport and parse errors are not cached.
"""

from __future__ import annotations

import json
import re

import httpx
from loguru import logger

from ..errors import RateLimitError, UpstreamError
from ..http import Timeouts, get_json
from ..ratelimit import RateLimiter
from ..store import KeyValueStore

log = logger.bind(stage="musicbrainz")

API_BASE = "https://musicbrainz.org/ws/2"
MIN_SCORE = 80
SEARCH_LIMIT = 5
MAX_DETAIL_LOOKUPS = 3

FOUND = "found"
NOT_FOUND = "not_found"

_LUCENE_SPECIAL = re.compile(r'([+\-&|!(){}\[\]^"~*?:\\/])')
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def escape_lucene(s: str) -> str:
    """Escape Lucene query syntax characters."""
    return _LUCENE_SPECIAL.sub(r"\\\1", s)


def normalize_for_cache_key(s: str) -> str:
    return _NON_ALNUM.sub("", s.lower().strip())


def _is_album_group(release: dict) -> bool:
    return (release.get("release-group") or {}).get("primary-type") == "Album"


def rank_recordings(recordings: list[dict]) -> list[dict]:
    """Recordings on an Album release first, then by search score."""
    return sorted(
        recordings,
        key=lambda r: (
            any(_is_album_group(rel) for rel in (r.get("releases") or [])),
            r.get("score", 0),
        ),
        reverse=True,
    )


def rank_releases(releases: list[dict]) -> list[dict]:
    """Album releases first, then releases carrying a barcode, then by score."""
    return sorted(
        releases,
        key=lambda r: (_is_album_group(r), bool(r.get("barcode")), r.get("score", 0)),
        reverse=True,
    )


class MusicBrainzClient:
    """Rate-limited MusicBrainz search with negative caching."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: KeyValueStore,
        limiter: RateLimiter,
        user_agent: str,
        cache_ttl: int = 30 * 24 * 60 * 60,
    ) -> None:
        self.client = client
        self.store = store
        self.limiter = limiter
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl

    async def lookup_track_isrc(self, artist: str, track: str) -> str | None:
        """ISRC for artist + track, or None when not found."""
        if not artist or not track:
            log.debug("Missing artist or track for ISRC lookup")
            return None
        cache_key = (
            f"musicbrainz:recording:{normalize_for_cache_key(artist)}"
            f":{normalize_for_cache_key(track)}"
        )
        return await self._cached_lookup(
            cache_key, f"{artist} - {track}", self._search_isrc, artist, track
        )

    async def lookup_album_upc(self, artist: str, album: str) -> str | None:
        """UPC/EAN barcode for artist + album, or None when not found."""
        if not artist or not album:
            log.debug("Missing artist or album for UPC lookup")
            return None
        cache_key = (
            f"musicbrainz:release:{normalize_for_cache_key(artist)}"
            f":{normalize_for_cache_key(album)}"
        )
        return await self._cached_lookup(
            cache_key, f"{artist} - {album}", self._search_upc, artist, album
        )

    async def _cached_lookup(self, cache_key: str, label: str, search, *args) -> str | None:
        cached = await self._read_outcome(cache_key)
        if cached is not None:
            status, value = cached
            if status == FOUND:
                log.debug(f"Cache hit: {value} for {label}")
                return value
            log.debug(f"Cache hit (confirmed absent): {label}")
            return None

        try:
            value = await search(*args)
        except (httpx.HTTPError, UpstreamError, RateLimitError, ValueError, KeyError) as e:
            # Transient failures stay uncached so the next request retries
            log.warning(f"Lookup failed for {label}: {e}")
            return None

        await self._write_outcome(cache_key, value)
        return value

    async def _search_isrc(self, artist: str, track: str) -> str | None:
        query = f"recording:{escape_lucene(track)} AND artist:{escape_lucene(artist)}"
        data = await self._get("/recording/", {"query": query, "limit": SEARCH_LIMIT})

        good = [r for r in data.get("recordings") or [] if r.get("score", 0) >= MIN_SCORE]
        if not good:
            log.debug(f"No recordings with score >= {MIN_SCORE} for {artist} - {track}")
            return None

        candidates = rank_recordings(good)[:MAX_DETAIL_LOOKUPS]
        for attempt, recording in enumerate(candidates, 1):
            log.debug(
                f"Looking up ISRCs for {recording['id']} "
                f"(score={recording.get('score')}, attempt {attempt}/{len(candidates)})"
            )
            detail = await self._get(f"/recording/{recording['id']}", {"inc": "isrcs"})
            isrcs = detail.get("isrcs") or []
            if isrcs:
                log.info(f"Found ISRC {isrcs[0]} for {artist} - {track}")
                return isrcs[0]

        log.debug(f"No ISRCs in {len(candidates)} recordings for {artist} - {track}")
        return None

    async def _search_upc(self, artist: str, album: str) -> str | None:
        query = f"release:{escape_lucene(album)} AND artist:{escape_lucene(artist)}"
        data = await self._get("/release/", {"query": query, "limit": SEARCH_LIMIT})

        good = [r for r in data.get("releases") or [] if r.get("score", 0) >= MIN_SCORE]
        if not good:
            log.debug(f"No releases with score >= {MIN_SCORE} for {artist} - {album}")
            return None

        ranked = rank_releases(good)
        if ranked[0].get("barcode"):
            log.info(f"Found UPC {ranked[0]['barcode']} in search for {artist} - {album}")
            return ranked[0]["barcode"]

        for release in ranked[:MAX_DETAIL_LOOKUPS]:
            detail = await self._get(f"/release/{release['id']}", {})
            if detail.get("barcode"):
                log.info(f"Found UPC {detail['barcode']} via lookup for {artist} - {album}")
                return detail["barcode"]

        log.debug(f"No barcode found for {artist} - {album}")
        return None

    async def _get(self, endpoint: str, params: dict) -> dict:
        return await get_json(
            self.client,
            f"{API_BASE}{endpoint}",
            "MusicBrainz",
            limiter=self.limiter,
            timeout=Timeouts.FAST,
            params={**params, "fmt": "json"},
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
        )

    async def _read_outcome(self, cache_key: str) -> tuple[str, str | None] | None:
        try:
            raw = await self.store.get(cache_key)
        except Exception as e:
            log.warning(f"Cache read failed for {cache_key}: {e}")
            return None
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            status = entry["status"]
        except (ValueError, KeyError, TypeError):
            log.warning(f"Ignoring malformed cache entry {cache_key}")
            return None
        if status == FOUND:
            return FOUND, entry.get("value")
        if status == NOT_FOUND:
            return NOT_FOUND, None
        return None

    async def _write_outcome(self, cache_key: str, value: str | None) -> None:
        entry = {"status": FOUND, "value": value} if value else {"status": NOT_FOUND}
        try:
            await self.store.put(cache_key, json.dumps(entry), self.cache_ttl)
        except Exception as e:
            log.warning(f"Cache write failed for {cache_key}: {e}")
