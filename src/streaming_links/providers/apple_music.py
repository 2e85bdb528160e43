"""Apple Music adapters.

Two variants share scoring and fallbacks and differ in what they can query:

    AppleMusicCatalogProvider -- Apple Music catalog API with a signed developer
                                 token. Resolves ISRC/UPC exactly before
                                 falling back to scored text search.
    ITunesSearchProvider      -- public iTunes Search/Lookup API. No credentials,
                                 no identifier filters; scored text search only.

Both also implement ReverseLookup (get_track/get_album) for resolving an
Apple Music URL back to its metadata.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
from loguru import logger

from ..auth import AppleMusicTokenIssuer
from ..errors import RateLimitError, UpstreamError
from ..http import Timeouts, fetch_with_retries, get_json
from ..matching import (
    AlbumCandidate,
    TrackCandidate,
    album_confidence,
    extract_year,
    track_confidence,
)
from ..models import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    EXACT_MATCH_CONFIDENCE,
    AlbumMetadata,
    Matched,
    PartnerAlbum,
    PartnerTrack,
    ProviderResult,
    TrackMetadata,
)
from ..ratelimit import RateLimiter
from .base import accept_or_fallback, pick_best, search_fallback

log = logger.bind(stage="apple-music")

CATALOG_API_BASE = "https://api.music.apple.com/v1/catalog"
ITUNES_API_BASE = "https://itunes.apple.com"
SEARCH_URL = "https://music.apple.com/search?term="
SEARCH_LIMIT = 10

# Failures that degrade a single lookup instead of the whole resolution
_ADAPTER_ERRORS = (httpx.HTTPError, UpstreamError, RateLimitError, ValueError, KeyError, TypeError)


class _AppleMusicProvider(ABC):
    """Scoring and fallbacks shared by both Apple Music variants."""

    name = "appleMusic"
    uses_identifiers = False

    def __init__(self, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD) -> None:
        self.threshold = threshold

    def fallback_track(self, metadata: TrackMetadata) -> ProviderResult:
        return search_fallback(SEARCH_URL, metadata.primary_artist, metadata.name)

    def fallback_album(self, metadata: AlbumMetadata) -> ProviderResult:
        return search_fallback(SEARCH_URL, metadata.primary_artist, metadata.name)

    def best_track(
        self, metadata: TrackMetadata, candidates: list[PartnerTrack]
    ) -> ProviderResult:
        best, confidence = pick_best(
            candidates,
            lambda c: track_confidence(
                metadata,
                TrackCandidate(c.artist_name, c.name, c.duration_ms, c.album_name),
            ),
        )
        return accept_or_fallback(
            "apple-music",
            (best.url, {"artist": best.artist_name, "track": best.name, "album": best.album_name})
            if best
            else None,
            confidence,
            self.threshold,
            self.fallback_track(metadata),
        )

    def best_album(
        self, metadata: AlbumMetadata, candidates: list[PartnerAlbum]
    ) -> ProviderResult:
        best, confidence = pick_best(
            candidates,
            lambda c: album_confidence(
                metadata,
                AlbumCandidate(c.artist_name, c.name, c.track_count, c.release_year),
            ),
        )
        return accept_or_fallback(
            "apple-music",
            (best.url, {"artist": best.artist_name, "album": best.name}) if best else None,
            confidence,
            self.threshold,
            self.fallback_album(metadata),
        )

    async def search_track(self, metadata: TrackMetadata) -> ProviderResult:
        query = f"{metadata.primary_artist} {metadata.name}".strip()
        log.debug(f"Searching for track: {query!r}")
        try:
            exact = await self._exact_track(metadata)
            if exact is not None:
                return exact
            candidates = await self._search_tracks(query)
        except _ADAPTER_ERRORS as e:
            log.error(f"Track search error for {query!r}: {e}")
            return self.fallback_track(metadata)

        if not candidates:
            log.info(f"No results for: {query!r}")
            return self.fallback_track(metadata)
        return self.best_track(metadata, candidates)

    async def search_album(self, metadata: AlbumMetadata) -> ProviderResult:
        query = f"{metadata.primary_artist} {metadata.name}".strip()
        log.debug(f"Searching for album: {query!r}")
        try:
            exact = await self._exact_album(metadata)
            if exact is not None:
                return exact
            candidates = await self._search_albums(query)
        except _ADAPTER_ERRORS as e:
            log.error(f"Album search error for {query!r}: {e}")
            return self.fallback_album(metadata)

        if not candidates:
            log.info(f"No results for: {query!r}")
            return self.fallback_album(metadata)
        return self.best_album(metadata, candidates)

    async def _exact_track(self, metadata: TrackMetadata) -> ProviderResult | None:
        return None

    async def _exact_album(self, metadata: AlbumMetadata) -> ProviderResult | None:
        return None

    @abstractmethod
    async def _search_tracks(self, query: str) -> list[PartnerTrack]: ...

    @abstractmethod
    async def _search_albums(self, query: str) -> list[PartnerAlbum]: ...


class AppleMusicCatalogProvider(_AppleMusicProvider):
    """Apple Music catalog API adapter with ISRC/UPC fast paths."""

    uses_identifiers = True

    def __init__(
        self,
        client: httpx.AsyncClient,
        issuer: AppleMusicTokenIssuer,
        limiter: RateLimiter | None = None,
        storefront: str = "us",
        max_retries: int = 3,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        super().__init__(threshold)
        self.client = client
        self.issuer = issuer
        self.limiter = limiter
        self.storefront = storefront
        self.max_retries = max_retries

    async def _exact_track(self, metadata: TrackMetadata) -> ProviderResult | None:
        if not metadata.isrc:
            return None
        data = await self._catalog_get("/songs", {"filter[isrc]": metadata.isrc})
        tracks = [_catalog_track(item) for item in data.get("data") or []]
        if not tracks:
            log.info(f"No catalog song for ISRC {metadata.isrc}, falling back to search")
            return None
        hit = tracks[0]
        log.info(f"ISRC match: {hit.name!r} by {hit.artist_name} ({metadata.isrc})")
        return Matched(
            url=hit.url,
            confidence=EXACT_MATCH_CONFIDENCE,
            matched_fields={
                "artist": hit.artist_name,
                "track": hit.name,
                "album": hit.album_name,
                "match": "isrc",
            },
        )

    async def _exact_album(self, metadata: AlbumMetadata) -> ProviderResult | None:
        if not metadata.upc:
            return None
        data = await self._catalog_get("/albums", {"filter[upc]": metadata.upc})
        albums = [_catalog_album(item) for item in data.get("data") or []]
        if not albums:
            log.info(f"No catalog album for UPC {metadata.upc}, falling back to search")
            return None
        hit = albums[0]
        log.info(f"UPC match: {hit.name!r} by {hit.artist_name} ({metadata.upc})")
        return Matched(
            url=hit.url,
            confidence=EXACT_MATCH_CONFIDENCE,
            matched_fields={"artist": hit.artist_name, "album": hit.name, "match": "upc"},
        )

    async def _search_tracks(self, query: str) -> list[PartnerTrack]:
        data = await self._catalog_get(
            "/search", {"term": query, "types": "songs", "limit": SEARCH_LIMIT}
        )
        items = ((data.get("results") or {}).get("songs") or {}).get("data") or []
        return [_catalog_track(item) for item in items]

    async def _search_albums(self, query: str) -> list[PartnerAlbum]:
        data = await self._catalog_get(
            "/search", {"term": query, "types": "albums", "limit": SEARCH_LIMIT}
        )
        items = ((data.get("results") or {}).get("albums") or {}).get("data") or []
        return [_catalog_album(item) for item in items]

    async def get_track(self, track_id: str) -> PartnerTrack | None:
        data = await self._catalog_get(f"/songs/{track_id}", {}, missing_ok=True)
        items = data.get("data") or []
        return _catalog_track(items[0]) if items else None

    async def get_album(self, album_id: str) -> PartnerAlbum | None:
        data = await self._catalog_get(f"/albums/{album_id}", {}, missing_ok=True)
        items = data.get("data") or []
        return _catalog_album(items[0]) if items else None

    async def _catalog_get(self, path: str, params: dict, missing_ok: bool = False) -> dict:
        """Authenticated GET; regenerates the token once on 401."""
        url = f"{CATALOG_API_BASE}/{self.storefront}{path}"
        response = None
        for _ in range(2):
            token = await self.issuer.get_token()
            response = await fetch_with_retries(
                self.client,
                "GET",
                url,
                limiter=self.limiter,
                max_retries=self.max_retries,
                timeout=Timeouts.FAST,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code != 401:
                break
            log.warning("Catalog rejected developer token, regenerating")
            self.issuer.invalidate()

        if missing_ok and response.status_code == 404:
            return {}
        if response.is_error:
            raise UpstreamError("Apple Music", response.status_code, response.text[:200])
        return response.json()


class ITunesSearchProvider(_AppleMusicProvider):
    """Public iTunes Search API adapter (no identifier filters)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
        country: str = "us",
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        super().__init__(threshold)
        self.client = client
        self.limiter = limiter
        self.country = country

    async def _search_tracks(self, query: str) -> list[PartnerTrack]:
        data = await self._get(
            "/search", {"term": query, "entity": "song", "limit": SEARCH_LIMIT}
        )
        return [_itunes_track(r) for r in data.get("results") or [] if r.get("trackId")]

    async def _search_albums(self, query: str) -> list[PartnerAlbum]:
        data = await self._get(
            "/search", {"term": query, "entity": "album", "limit": SEARCH_LIMIT}
        )
        return [
            _itunes_album(r) for r in data.get("results") or [] if r.get("collectionId")
        ]

    async def get_track(self, track_id: str) -> PartnerTrack | None:
        data = await self._get("/lookup", {"id": track_id, "entity": "song"})
        for r in data.get("results") or []:
            if r.get("wrapperType") == "track" and str(r.get("trackId")) == track_id:
                return _itunes_track(r)
        return None

    async def get_album(self, album_id: str) -> PartnerAlbum | None:
        data = await self._get("/lookup", {"id": album_id})
        for r in data.get("results") or []:
            if r.get("wrapperType") == "collection":
                return _itunes_album(r)
        return None

    async def _get(self, path: str, params: dict) -> dict:
        return await get_json(
            self.client,
            f"{ITUNES_API_BASE}{path}",
            "iTunes",
            limiter=self.limiter,
            timeout=Timeouts.FAST,
            params={**params, "country": self.country},
        )


def _catalog_track(item: dict) -> PartnerTrack:
    attrs = item.get("attributes") or {}
    return PartnerTrack(
        id=str(item["id"]),
        name=attrs.get("name", ""),
        artist_name=attrs.get("artistName", ""),
        url=attrs.get("url", ""),
        album_name=attrs.get("albumName", "") or "",
        duration_ms=int(attrs.get("durationInMillis") or 0),
        release_year=extract_year(attrs.get("releaseDate")),
        isrc=attrs.get("isrc") or None,
    )


def _catalog_album(item: dict) -> PartnerAlbum:
    attrs = item.get("attributes") or {}
    return PartnerAlbum(
        id=str(item["id"]),
        name=attrs.get("name", ""),
        artist_name=attrs.get("artistName", ""),
        url=attrs.get("url", ""),
        track_count=int(attrs.get("trackCount") or 0),
        release_year=extract_year(attrs.get("releaseDate")),
        upc=attrs.get("upc") or None,
    )


def _itunes_track(r: dict) -> PartnerTrack:
    return PartnerTrack(
        id=str(r["trackId"]),
        name=r.get("trackName", ""),
        artist_name=r.get("artistName", ""),
        url=r.get("trackViewUrl", ""),
        album_name=r.get("collectionName", "") or "",
        duration_ms=int(r.get("trackTimeMillis") or 0),
        release_year=extract_year(r.get("releaseDate")),
    )


def _itunes_album(r: dict) -> PartnerAlbum:
    return PartnerAlbum(
        id=str(r["collectionId"]),
        name=r.get("collectionName", ""),
        artist_name=r.get("artistName", ""),
        url=r.get("collectionViewUrl", ""),
        track_count=int(r.get("trackCount") or 0),
        release_year=extract_year(r.get("releaseDate")),
    )
