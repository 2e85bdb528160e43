"""Spotify Web API client (source platform).

Uses the client-credentials flow; the access token is cached in the shared
key-value store until 60 seconds before it expires, so every process on a
host reuses one token. Every request goes through fetch_with_retries and the
shared Spotify rate limiter.

Search results and detail lookups are mapped to TrackMetadata/AlbumMetadata.
Album searches prefer full albums (album_type == "album") over singles and
EPs when both are present.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Protocol

import httpx
from loguru import logger

from ..errors import AuthenticationError, UpstreamError
from ..http import Timeouts, fetch_with_retries
from ..matching import extract_year
from ..models import AlbumMetadata, TrackMetadata
from ..ratelimit import RateLimiter
from ..store import KeyValueStore

log = logger.bind(stage="spotify")

API_BASE = "https://api.spotify.com/v1"
TOKEN_URL = "https://accounts.spotify.com/api/token"
TOKEN_CACHE_KEY = "spotify:token"
TOKEN_EXPIRY_MARGIN = 60
DEFAULT_SEARCH_LIMIT = 5


class SourceClient(Protocol):
    """Metadata provider for the source platform."""

    async def search_tracks(self, query: str, limit: int = ...) -> list[TrackMetadata]: ...

    async def search_albums(self, query: str, limit: int = ...) -> list[AlbumMetadata]: ...

    async def get_track(self, track_id: str) -> TrackMetadata | None: ...

    async def get_album(self, album_id: str) -> AlbumMetadata | None: ...

    async def precise_search_tracks(
        self, artist: str, title: str, limit: int = ...
    ) -> list[TrackMetadata]: ...

    async def precise_search_albums(
        self, artist: str, title: str, limit: int = ...
    ) -> list[AlbumMetadata]: ...


def _quote_field(value: str) -> str:
    # Field filters are double-quoted; embedded quotes would end the filter early
    return value.replace('"', "")


def track_from_api(item: dict) -> TrackMetadata:
    album = item.get("album") or {}
    return TrackMetadata(
        id=item["id"],
        name=item.get("name", ""),
        artists=[a.get("name", "") for a in item.get("artists") or []],
        album=album.get("name", "") or "",
        duration_ms=int(item.get("duration_ms") or 0),
        release_year=extract_year(album.get("release_date")),
        isrc=(item.get("external_ids") or {}).get("isrc") or None,
    )


def album_from_api(item: dict) -> AlbumMetadata:
    return AlbumMetadata(
        id=item["id"],
        name=item.get("name", ""),
        artists=[a.get("name", "") for a in item.get("artists") or []],
        total_tracks=int(item.get("total_tracks") or 0),
        release_year=extract_year(item.get("release_date")),
        upc=(item.get("external_ids") or {}).get("upc") or None,
    )


def prefer_full_albums(items: list[dict]) -> list[dict]:
    full = [i for i in items if i.get("album_type") == "album"]
    return full or items


class SpotifyClient:
    """Async Spotify client implementing SourceClient."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: KeyValueStore,
        limiter: RateLimiter,
        client_id: str,
        client_secret: str,
        max_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.store = store
        self.limiter = limiter
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_retries = max_retries
        self._clock = clock

    # -- Auth --

    async def get_access_token(self) -> str:
        """Cached client-credentials token, fetched when missing or near expiry."""
        cached = await self._read_token()
        if cached:
            return cached

        log.debug("Requesting new access token")
        try:
            response = await self.client.post(
                TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                timeout=Timeouts.FAST,
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Spotify token request failed: {e}") from e
        if response.is_error:
            raise AuthenticationError(
                f"Spotify token request failed: {response.status_code} {response.text[:200]}"
            )

        data = response.json()
        token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        await self._write_token(token, expires_in)
        return token

    async def _read_token(self) -> str | None:
        try:
            raw = await self.store.get(TOKEN_CACHE_KEY)
        except Exception as e:
            log.warning(f"Token cache read failed: {e}")
            return None
        if not raw:
            return None
        try:
            entry = json.loads(raw)
            if self._clock() < entry["expires_at"] - TOKEN_EXPIRY_MARGIN:
                return entry["access_token"]
        except (ValueError, KeyError, TypeError):
            log.warning("Ignoring malformed cached token")
        return None

    async def _write_token(self, token: str, expires_in: int) -> None:
        entry = {"access_token": token, "expires_at": self._clock() + expires_in}
        ttl = max(1, expires_in - TOKEN_EXPIRY_MARGIN)
        try:
            await self.store.put(TOKEN_CACHE_KEY, json.dumps(entry), ttl)
        except Exception as e:
            log.warning(f"Token cache write failed: {e}")

    # -- Search --

    async def search_tracks(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[TrackMetadata]:
        data = await self._search(query, "track", limit)
        items = (data.get("tracks") or {}).get("items") or []
        return [track_from_api(i) for i in items if i]

    async def search_albums(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[AlbumMetadata]:
        data = await self._search(query, "album", limit)
        items = [i for i in (data.get("albums") or {}).get("items") or [] if i]
        return [album_from_api(i) for i in prefer_full_albums(items)]

    async def precise_search_tracks(
        self, artist: str, title: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[TrackMetadata]:
        """Field-filtered track search, retried as free text when it finds nothing."""
        query = f'track:"{_quote_field(title)}" artist:"{_quote_field(artist)}"'
        log.debug(f"Searching with field filters: {query}")
        results = await self.search_tracks(query, limit)
        if results:
            return results
        fallback = f"{artist} {title}".strip()
        log.debug(f"Field filter found nothing, falling back to: {fallback}")
        return await self.search_tracks(fallback, limit)

    async def precise_search_albums(
        self, artist: str, title: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[AlbumMetadata]:
        """Field-filtered album search, retried as free text when it finds nothing."""
        query = f'album:"{_quote_field(title)}" artist:"{_quote_field(artist)}"'
        log.debug(f"Searching with field filters: {query}")
        results = await self.search_albums(query, limit)
        if results:
            return results
        fallback = f"{artist} {title}".strip()
        log.debug(f"Field filter found nothing, falling back to: {fallback}")
        return await self.search_albums(fallback, limit)

    # -- Details --

    async def get_track(self, track_id: str) -> TrackMetadata | None:
        data = await self._get(f"/tracks/{track_id}")
        return track_from_api(data) if data else None

    async def get_album(self, album_id: str) -> AlbumMetadata | None:
        data = await self._get(f"/albums/{album_id}")
        return album_from_api(data) if data else None

    # -- Transport --

    async def _search(self, query: str, search_type: str, limit: int) -> dict:
        log.debug(f"Search {search_type}: {query!r}")
        return await self._get("/search", {"q": query, "type": search_type, "limit": limit}) or {}

    async def _get(self, path: str, params: dict | None = None) -> dict | None:
        """GET an API path. None for 404 and invalid ids; UpstreamError otherwise."""
        token = await self.get_access_token()
        response = await fetch_with_retries(
            self.client,
            "GET",
            f"{API_BASE}{path}",
            limiter=self.limiter,
            max_retries=self.max_retries,
            timeout=Timeouts.FAST,
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code in (400, 404) and not params:
            log.info(f"Not found: {path} ({response.status_code})")
            return None
        if response.is_error:
            raise UpstreamError("Spotify", response.status_code, response.text[:200])
        return response.json()
