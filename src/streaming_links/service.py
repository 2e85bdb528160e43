"""Resolution orchestrator -- turns a streaming URL into cross-platform links.

Forward path (source platform URL or metadata already in hand):
    cache -> source metadata -> identifier enrichment -> provider fan-out -> cache

Reverse path (partner platform URL):
    reverse cache -> partner detail lookup -> source search + scoring
    -> forward path with the found source item, or a partial result holding
    only the given link when nothing on the source platform matches.

Only a failed partner detail lookup (or, on the forward path, a failed
source metadata fetch) raises, as MetadataLookupError. Provider and cache failures degrade the
affected slot or count as a cache miss.
"""

from __future__ import annotations

import json
from dataclasses import replace

import anyio
import httpx
from loguru import logger

from .api.musicbrainz import MusicBrainzClient
from .api.spotify import SourceClient
from .errors import ConfigError, MetadataLookupError, StreamingLinksError
from .matching import (
    AlbumCandidate,
    TrackCandidate,
    album_confidence,
    track_confidence,
)
from .models import (
    APPLE_MUSIC_SLOT,
    DEFAULT_CONFIDENCE_THRESHOLD,
    SOURCE_PLATFORM,
    YOUTUBE_SLOT,
    AlbumMetadata,
    ContentType,
    Matched,
    ParsedIdentifier,
    PartnerAlbum,
    PartnerTrack,
    Platform,
    ProviderResult,
    ResolutionResult,
    ResolutionStatus,
    SourceMetadata,
    TrackMetadata,
)
from .providers import ReverseLookup, StreamingProvider
from .providers.base import pick_best
from .store import KeyValueStore
from .url_parser import build_songlink_url, build_spotify_url, parse_streaming_url

log = logger.bind(stage="service")

CACHE_PREFIX = "streaming-links"
DEFAULT_CACHE_TTL = 30 * 24 * 60 * 60
SOURCE_SEARCH_LIMIT = 5

PLATFORM_SLOTS = {
    Platform.APPLE_MUSIC: APPLE_MUSIC_SLOT,
    Platform.YOUTUBE: YOUTUBE_SLOT,
}

# Failures of a mandatory lookup that are reported as MetadataLookupError
_LOOKUP_ERRORS = (httpx.HTTPError, StreamingLinksError, ValueError, KeyError, TypeError)


def links_cache_key(content_type: ContentType | str, item_id: str) -> str:
    return f"{CACHE_PREFIX}:{content_type}:{item_id}"


def reverse_cache_key(platform: Platform | str, content_type: ContentType | str, item_id: str) -> str:
    return f"{CACHE_PREFIX}:reverse:{platform}:{content_type}:{item_id}"


def input_link(url: str) -> Matched:
    """The link the caller gave us, reported as a certain match in its own slot."""
    return Matched(url=url, confidence=1.0, matched_fields={"match": "input"})


class StreamingLinksService:
    """Resolves source or partner URLs to links on every configured platform."""

    def __init__(
        self,
        store: KeyValueStore,
        providers: dict[str, StreamingProvider],
        reverse: dict[str, ReverseLookup] | None = None,
        enrichment: MusicBrainzClient | None = None,
        source: SourceClient | None = None,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.store = store
        self.providers = providers
        self.reverse = reverse or {}
        self.enrichment = enrichment
        self.source = source
        self.cache_ttl = cache_ttl
        self.threshold = threshold

    # -- Public operations --

    async def get_track_links(
        self, metadata: TrackMetadata, input_url: str = ""
    ) -> ResolutionResult:
        """Links for a source-platform track whose metadata the caller already has."""
        cached = await self._read_cached(ContentType.TRACK, metadata.id, input_url)
        if cached:
            return cached
        return await self._build_links(metadata, input_url)

    async def get_album_links(
        self, metadata: AlbumMetadata, input_url: str = ""
    ) -> ResolutionResult:
        """Links for a source-platform album whose metadata the caller already has."""
        cached = await self._read_cached(ContentType.ALBUM, metadata.id, input_url)
        if cached:
            return cached
        return await self._build_links(metadata, input_url)

    async def resolve(self, identifier: str) -> ResolutionResult:
        """Resolve any supported URL or URI.

        Unsupported input yields an unresolved result instead of an error.
        Raises MetadataLookupError when the canonical metadata for the given
        item cannot be fetched.
        """
        parsed = parse_streaming_url(identifier)
        log.info(f"Resolving {parsed.platform}/{parsed.content_type}/{parsed.id}")

        if not parsed.is_supported or parsed.content_type not in (
            ContentType.TRACK,
            ContentType.ALBUM,
        ):
            log.info(f"Unsupported input: {identifier!r}")
            return ResolutionResult.unresolved(parsed.original_input, parsed.content_type)

        if parsed.platform == SOURCE_PLATFORM:
            return await self._resolve_forward(parsed)
        return await self._resolve_reverse(parsed)

    async def clear_cache(self, source_id: str, content_type: ContentType | str) -> None:
        """Drop the cached links for one source item."""
        key = links_cache_key(content_type, source_id)
        try:
            await self.store.delete(key)
            log.info(f"Cleared cache {key}")
        except Exception as e:
            log.warning(f"Cache delete failed for {key}: {e}")

    # -- Forward --

    async def _resolve_forward(self, parsed: ParsedIdentifier) -> ResolutionResult:
        cached = await self._read_cached(
            parsed.content_type, parsed.id, parsed.original_input
        )
        if cached:
            return cached

        metadata = await self._fetch_source(parsed.content_type, parsed.id)
        if metadata is None:
            log.info(f"Source {parsed.content_type} not found: {parsed.id}")
            return ResolutionResult.unresolved(parsed.original_input, parsed.content_type)
        return await self._build_links(metadata, parsed.original_input)

    async def _fetch_source(
        self, content_type: ContentType, item_id: str
    ) -> SourceMetadata | None:
        if self.source is None:
            raise ConfigError("No source client configured")
        try:
            if content_type == ContentType.ALBUM:
                return await self.source.get_album(item_id)
            return await self.source.get_track(item_id)
        except _LOOKUP_ERRORS as e:
            raise MetadataLookupError(SOURCE_PLATFORM, item_id, str(e)) from e

    async def _build_links(
        self, metadata: SourceMetadata, input_url: str
    ) -> ResolutionResult:
        is_album = isinstance(metadata, AlbumMetadata)
        content_type = ContentType.ALBUM if is_album else ContentType.TRACK
        log.info(
            f"Fetching links for {content_type}: {metadata.name} "
            f"by {', '.join(metadata.artists)}"
        )

        metadata = await self._enrich(metadata)
        providers = await self._query_providers(metadata)

        result = ResolutionResult(
            status=ResolutionStatus.RESOLVED,
            content_type=content_type,
            input_url=input_url,
            providers=providers,
            songlink=build_songlink_url(build_spotify_url(content_type, metadata.id)),
            source=metadata,
        )
        await self._cache_put(
            links_cache_key(content_type, metadata.id), json.dumps(result.to_dict())
        )
        return result

    async def _enrich(self, metadata: SourceMetadata) -> SourceMetadata:
        """Fill in ISRC/UPC when an adapter can use it and the source lacked it."""
        if self.enrichment is None or not any(
            p.uses_identifiers for p in self.providers.values()
        ):
            return metadata

        if isinstance(metadata, AlbumMetadata):
            if metadata.upc:
                return metadata
            upc = await self.enrichment.lookup_album_upc(metadata.primary_artist, metadata.name)
            return replace(metadata, upc=upc) if upc else metadata

        if metadata.isrc:
            return metadata
        isrc = await self.enrichment.lookup_track_isrc(metadata.primary_artist, metadata.name)
        return replace(metadata, isrc=isrc) if isrc else metadata

    async def _query_providers(self, metadata: SourceMetadata) -> dict[str, ProviderResult]:
        results: dict[str, ProviderResult] = {}

        async def run(slot: str, provider: StreamingProvider) -> None:
            results[slot] = await self._guarded_search(slot, provider, metadata)

        async with anyio.create_task_group() as tg:
            for slot, provider in self.providers.items():
                tg.start_soon(run, slot, provider)

        return {slot: results[slot] for slot in self.providers}

    async def _guarded_search(
        self, slot: str, provider: StreamingProvider, metadata: SourceMetadata
    ) -> ProviderResult:
        is_album = isinstance(metadata, AlbumMetadata)
        try:
            if is_album:
                return await provider.search_album(metadata)
            return await provider.search_track(metadata)
        except Exception as e:
            log.warning(f"Provider {slot} failed, using fallback: {e!r}")
            if is_album:
                return provider.fallback_album(metadata)
            return provider.fallback_track(metadata)

    # -- Reverse --

    async def _resolve_reverse(self, parsed: ParsedIdentifier) -> ResolutionResult:
        slot = PLATFORM_SLOTS.get(parsed.platform)
        lookup = self.reverse.get(slot) if slot else None
        if lookup is None:
            raise MetadataLookupError(
                parsed.platform, parsed.id, "no detail lookup configured"
            )

        reverse_key = reverse_cache_key(parsed.platform, parsed.content_type, parsed.id)
        source_id = await self._cache_get(reverse_key)
        if source_id:
            log.debug(f"Reverse cache hit: {parsed.id} -> {source_id}")
            try:
                result = await self._resolve_forward(
                    ParsedIdentifier(
                        SOURCE_PLATFORM,
                        parsed.content_type,
                        source_id,
                        parsed.original_input,
                    )
                )
            except MetadataLookupError as e:
                log.warning(f"Cached source {source_id} unavailable, searching again: {e}")
            else:
                if result.status != ResolutionStatus.UNRESOLVED:
                    return self._with_input_link(result, slot, parsed.original_input)

        partner = await self._fetch_partner(lookup, parsed)
        match = await self._find_source_match(partner)
        if match is None:
            log.info(f"No source match for {parsed.platform} {parsed.content_type}: {partner.name}")
            return ResolutionResult(
                status=ResolutionStatus.PARTIAL,
                content_type=parsed.content_type,
                input_url=parsed.original_input,
                providers={slot: input_link(parsed.original_input)},
                source=partner.to_metadata(),
            )

        await self._cache_put(reverse_key, match.id)
        metadata = await self._refetch_source(match)
        cached = await self._read_cached(parsed.content_type, metadata.id, parsed.original_input)
        result = cached or await self._build_links(metadata, parsed.original_input)
        return self._with_input_link(result, slot, parsed.original_input)

    async def _refetch_source(self, match: SourceMetadata) -> SourceMetadata:
        """Full metadata for a search hit (search hits omit UPCs); the hit itself if that fails."""
        content_type = ContentType.ALBUM if isinstance(match, AlbumMetadata) else ContentType.TRACK
        try:
            return await self._fetch_source(content_type, match.id) or match
        except MetadataLookupError as e:
            log.warning(f"Refetch of source {match.id} failed, using search hit: {e}")
            return match

    async def _fetch_partner(
        self, lookup: ReverseLookup, parsed: ParsedIdentifier
    ) -> PartnerTrack | PartnerAlbum:
        try:
            if parsed.content_type == ContentType.ALBUM:
                partner = await lookup.get_album(parsed.id)
            else:
                partner = await lookup.get_track(parsed.id)
        except _LOOKUP_ERRORS as e:
            raise MetadataLookupError(parsed.platform, parsed.id, str(e)) from e
        if partner is None:
            raise MetadataLookupError(parsed.platform, parsed.id, "not found")
        return partner

    async def _find_source_match(
        self, partner: PartnerTrack | PartnerAlbum
    ) -> SourceMetadata | None:
        """Best source-platform candidate for a partner item, if it clears the threshold."""
        if self.source is None:
            raise ConfigError("No source client configured")
        target = partner.to_metadata()
        try:
            if isinstance(partner, PartnerAlbum):
                candidates = await self.source.precise_search_albums(
                    partner.artist_name, partner.name, SOURCE_SEARCH_LIMIT
                )
                best, confidence = pick_best(
                    candidates,
                    lambda c: album_confidence(
                        target,
                        AlbumCandidate(c.primary_artist, c.name, c.total_tracks, c.release_year),
                    ),
                )
            else:
                candidates = await self.source.precise_search_tracks(
                    partner.artist_name, partner.name, SOURCE_SEARCH_LIMIT
                )
                best, confidence = pick_best(
                    candidates,
                    lambda c: track_confidence(
                        target,
                        TrackCandidate(c.primary_artist, c.name, c.duration_ms, c.album),
                    ),
                )
        except _LOOKUP_ERRORS as e:
            log.warning(f"Source search failed for {partner.name!r}: {e}")
            return None

        if best is None or confidence < self.threshold:
            log.info(f"Best source candidate too weak ({confidence:.2f} < {self.threshold})")
            return None
        log.info(f"Found source match {best.id}: {best.name!r} (confidence: {confidence:.2f})")
        return best

    @staticmethod
    def _with_input_link(result: ResolutionResult, slot: str, url: str) -> ResolutionResult:
        return replace(result, providers={**result.providers, slot: input_link(url)})

    # -- Cache --

    async def _read_cached(
        self, content_type: ContentType, item_id: str, input_url: str
    ) -> ResolutionResult | None:
        raw = await self._cache_get(links_cache_key(content_type, item_id))
        if not raw:
            return None
        try:
            result = ResolutionResult.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            log.warning(f"Ignoring malformed cached result for {content_type} {item_id}: {e}")
            return None
        log.info(f"Cache hit for {content_type} {item_id}")
        return replace(result, from_cache=True, input_url=input_url or result.input_url)

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self.store.get(key)
        except Exception as e:
            log.warning(f"Cache read failed for {key}: {e}")
            return None

    async def _cache_put(self, key: str, value: str) -> None:
        try:
            await self.store.put(key, value, self.cache_ttl)
        except Exception as e:
            log.warning(f"Cache write failed for {key}: {e}")
