"""Tests for service.py -- forward and reverse resolution with fake collaborators."""

import json
from dataclasses import replace

import anyio
import httpx
import pytest

from conftest import mock_client
from streaming_links.errors import ConfigError, MetadataLookupError, UpstreamError
from streaming_links.models import (
    ABSENT,
    AlbumMetadata,
    ContentType,
    Fallback,
    Matched,
    PartnerAlbum,
    PartnerTrack,
    Platform,
    ResolutionStatus,
    TrackMetadata,
)
from streaming_links.providers.apple_music import ITunesSearchProvider
from streaming_links.service import (
    StreamingLinksService,
    links_cache_key,
    reverse_cache_key,
)
from streaming_links.store import MemoryStore

TRACK_ID = "4uLU6hMCjMI75M1A2tKUQC"
ALBUM_ID = "1DFixLWuPkv3KT3TnV35m3"
TRACK_URL = f"https://open.spotify.com/track/{TRACK_ID}"
ALBUM_URL = f"https://open.spotify.com/album/{ALBUM_ID}"
APPLE_SONG_URL = "https://music.apple.com/us/song/bohemian-rhapsody/1440650428"
APPLE_ALBUM_URL = "https://music.apple.com/us/album/a-night-at-the-opera/1440650711"

TRACK = TrackMetadata(
    id=TRACK_ID,
    name="Bohemian Rhapsody",
    artists=["Queen"],
    album="A Night at the Opera",
    duration_ms=354_320,
    release_year=1975,
)
ALBUM = AlbumMetadata(
    id=ALBUM_ID, name="A Night at the Opera", artists=["Queen"], total_tracks=12, release_year=1975
)


class FakeProvider:
    """Partner adapter returning canned results and recording calls."""

    def __init__(self, name="appleMusic", result=None, uses_identifiers=False, error=None):
        self.name = name
        self.uses_identifiers = uses_identifiers
        self.result = result or Matched(f"https://{name}.example/hit", 0.95)
        self.error = error
        self.calls: list = []

    async def search_track(self, metadata):
        self.calls.append(("track", metadata))
        if self.error:
            raise self.error
        return self.result

    async def search_album(self, metadata):
        self.calls.append(("album", metadata))
        if self.error:
            raise self.error
        return self.result

    def fallback_track(self, metadata):
        return Fallback(f"https://{self.name}.example/search?q={metadata.name}")

    def fallback_album(self, metadata):
        return Fallback(f"https://{self.name}.example/search?q={metadata.name}")


class FakeSource:
    """Spotify client stand-in."""

    def __init__(self, tracks=None, albums=None, search=None, error=None):
        self.tracks = tracks if tracks is not None else {TRACK_ID: TRACK}
        self.albums = albums if albums is not None else {ALBUM_ID: ALBUM}
        self.search = search
        self.error = error
        self.fetched: list[str] = []
        self.searches: list[tuple[str, str]] = []

    async def get_track(self, track_id):
        self.fetched.append(track_id)
        if self.error:
            raise self.error
        return self.tracks.get(track_id)

    async def get_album(self, album_id):
        self.fetched.append(album_id)
        if self.error:
            raise self.error
        return self.albums.get(album_id)

    async def precise_search_tracks(self, artist, title, limit=5):
        self.searches.append((artist, title))
        if isinstance(self.search, Exception):
            raise self.search
        return self.search if self.search is not None else list(self.tracks.values())

    async def precise_search_albums(self, artist, title, limit=5):
        self.searches.append((artist, title))
        if isinstance(self.search, Exception):
            raise self.search
        return self.search if self.search is not None else list(self.albums.values())


class FakeLookup:
    """Partner catalog detail lookup."""

    def __init__(self, track=None, album=None, error=None):
        self.track = track
        self.album = album
        self.error = error
        self.calls: list[str] = []

    async def get_track(self, item_id):
        self.calls.append(item_id)
        if self.error:
            raise self.error
        return self.track

    async def get_album(self, item_id):
        self.calls.append(item_id)
        if self.error:
            raise self.error
        return self.album


class FakeEnrichment:
    def __init__(self, isrc="GBUM71029604", upc="00602547202734"):
        self.isrc = isrc
        self.upc = upc
        self.calls: list[tuple[str, str]] = []

    async def lookup_track_isrc(self, artist, title):
        self.calls.append((artist, title))
        return self.isrc

    async def lookup_album_upc(self, artist, album):
        self.calls.append((artist, album))
        return self.upc


class BrokenStore:
    async def get(self, key):
        raise OSError("disk gone")

    async def put(self, key, value, ttl_seconds):
        raise OSError("disk gone")

    async def delete(self, key):
        raise OSError("disk gone")


PARTNER_TRACK = PartnerTrack(
    id="1440650428",
    name="Bohemian Rhapsody",
    artist_name="Queen",
    url=APPLE_SONG_URL,
    album_name="A Night at the Opera",
    duration_ms=354_947,
)
PARTNER_ALBUM = PartnerAlbum(
    id="1440650711",
    name="A Night at the Opera",
    artist_name="Queen",
    url=APPLE_ALBUM_URL,
    track_count=12,
    release_year=1975,
)


def _service(store=None, providers=None, source=None, lookup=None, enrichment=None):
    providers = providers if providers is not None else {"appleMusic": FakeProvider()}
    return StreamingLinksService(
        store if store is not None else MemoryStore(),
        providers,
        reverse={"appleMusic": lookup} if lookup else None,
        enrichment=enrichment,
        source=source if source is not None else FakeSource(),
    )


class TestUnsupportedInput:
    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "url",
        [
            "",
            "https://example.com/track/123",
            "https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M",
            "https://open.spotify.com/artist/0OdUWJ0sBjDrqHygGUXeCF",
            "https://music.apple.com/us/artist/queen/3296287",
        ],
    )
    async def test_unresolved_without_lookups(self, url):
        source = FakeSource()
        provider = FakeProvider()
        service = _service(providers={"appleMusic": provider}, source=source)
        result = await service.resolve(url)
        assert result.status == ResolutionStatus.UNRESOLVED
        assert result.input_url == url
        assert source.fetched == []
        assert provider.calls == []


class TestForwardResolution:
    @pytest.mark.anyio
    async def test_track_resolved(self):
        service = _service(
            providers={
                "appleMusic": FakeProvider("appleMusic"),
                "youtube": FakeProvider("youtube", result=Fallback("https://music.youtube.com/search?q=x")),
            }
        )
        result = await service.resolve(TRACK_URL)

        assert result.status == ResolutionStatus.RESOLVED
        assert result.content_type == ContentType.TRACK
        assert result.input_url == TRACK_URL
        assert result.source == TRACK
        assert result.songlink == f"https://song.link/https://open.spotify.com/track/{TRACK_ID}"
        assert result.provider("appleMusic").confidence == 0.95
        assert result.provider("youtube").is_fallback
        assert not result.from_cache

    @pytest.mark.anyio
    async def test_album_resolved(self):
        provider = FakeProvider()
        result = await _service(providers={"appleMusic": provider}).resolve(ALBUM_URL)
        assert result.status == ResolutionStatus.RESOLVED
        assert result.content_type == ContentType.ALBUM
        assert result.source == ALBUM
        assert provider.calls[0][0] == "album"

    @pytest.mark.anyio
    async def test_unconfigured_slot_is_absent(self):
        result = await _service().resolve(TRACK_URL)
        assert result.provider("youtube") is ABSENT
        assert result.to_dict()["youtube"] is None

    @pytest.mark.anyio
    async def test_missing_source_item_is_unresolved(self):
        provider = FakeProvider()
        service = _service(providers={"appleMusic": provider}, source=FakeSource(tracks={}))
        result = await service.resolve(TRACK_URL)
        assert result.status == ResolutionStatus.UNRESOLVED
        assert provider.calls == []

    @pytest.mark.anyio
    async def test_source_failure_raises(self):
        service = _service(source=FakeSource(error=UpstreamError("Spotify", 500)))
        with pytest.raises(MetadataLookupError, match=TRACK_ID):
            await service.resolve(TRACK_URL)

    @pytest.mark.anyio
    async def test_no_source_client(self):
        service = StreamingLinksService(MemoryStore(), {"appleMusic": FakeProvider()})
        with pytest.raises(ConfigError):
            await service.resolve(TRACK_URL)

    @pytest.mark.anyio
    async def test_get_track_links_with_metadata_in_hand(self):
        source = FakeSource()
        service = _service(source=source)
        result = await service.get_track_links(TRACK)
        assert result.status == ResolutionStatus.RESOLVED
        assert result.input_url == ""
        assert source.fetched == []


class TestProviderFailure:
    @pytest.mark.anyio
    async def test_failing_provider_degrades_only_its_slot(self):
        service = _service(
            providers={
                "appleMusic": FakeProvider("appleMusic", error=UpstreamError("Apple Music", 500)),
                "youtube": FakeProvider("youtube"),
            }
        )
        result = await service.resolve(TRACK_URL)
        assert result.status == ResolutionStatus.RESOLVED
        apple = result.provider("appleMusic")
        assert isinstance(apple, Fallback)
        assert apple.confidence == 0
        assert isinstance(result.provider("youtube"), Matched)

    @pytest.mark.anyio
    async def test_unexpected_exception_degrades_slot(self):
        service = _service(providers={"appleMusic": FakeProvider(error=RuntimeError("bug"))})
        result = await service.resolve(ALBUM_URL)
        assert result.provider("appleMusic").is_fallback

    @pytest.mark.anyio
    async def test_providers_run_concurrently(self):
        # Each provider waits for the other to start; sequential execution would hang
        apple_started, youtube_started = anyio.Event(), anyio.Event()

        class Waiting(FakeProvider):
            def __init__(self, name, mine, theirs):
                super().__init__(name)
                self.mine, self.theirs = mine, theirs

            async def search_track(self, metadata):
                self.mine.set()
                await self.theirs.wait()
                return self.result

        service = _service(
            providers={
                "appleMusic": Waiting("appleMusic", apple_started, youtube_started),
                "youtube": Waiting("youtube", youtube_started, apple_started),
            }
        )
        with anyio.fail_after(2):
            result = await service.resolve(TRACK_URL)
        assert isinstance(result.provider("appleMusic"), Matched)
        assert isinstance(result.provider("youtube"), Matched)


class TestCaching:
    @pytest.mark.anyio
    async def test_second_resolution_served_from_cache(self):
        store = MemoryStore()
        provider = FakeProvider()
        source = FakeSource()
        service = _service(store=store, providers={"appleMusic": provider}, source=source)

        first = await service.resolve(TRACK_URL)
        second = await service.resolve(TRACK_URL + "?si=share")

        assert not first.from_cache
        assert second.from_cache
        assert second.input_url == TRACK_URL + "?si=share"
        assert second.provider("appleMusic") == first.provider("appleMusic")
        assert second.source == TRACK
        assert len(provider.calls) == 1
        assert source.fetched == [TRACK_ID]

    @pytest.mark.anyio
    async def test_cache_entry_shape(self):
        store = MemoryStore()
        await _service(store=store).resolve(TRACK_URL)
        cached = json.loads(await store.get(links_cache_key(ContentType.TRACK, TRACK_ID)))
        assert cached["status"] == "resolved"
        assert cached["appleMusic"]["url"] == "https://appleMusic.example/hit"
        assert cached["source"]["name"] == "Bohemian Rhapsody"

    @pytest.mark.anyio
    async def test_clear_cache(self):
        store = MemoryStore()
        provider = FakeProvider()
        service = _service(store=store, providers={"appleMusic": provider})
        await service.resolve(TRACK_URL)
        await service.clear_cache(TRACK_ID, ContentType.TRACK)
        result = await service.resolve(TRACK_URL)
        assert not result.from_cache
        assert len(provider.calls) == 2

    @pytest.mark.anyio
    async def test_malformed_cache_entry_ignored(self):
        store = MemoryStore()
        await store.put(links_cache_key(ContentType.TRACK, TRACK_ID), "{not json", 60)
        result = await _service(store=store).resolve(TRACK_URL)
        assert result.status == ResolutionStatus.RESOLVED
        assert not result.from_cache

    @pytest.mark.anyio
    async def test_broken_store_still_resolves(self):
        service = _service(store=BrokenStore())
        result = await service.resolve(TRACK_URL)
        assert result.status == ResolutionStatus.RESOLVED
        await service.clear_cache(TRACK_ID, ContentType.TRACK)


class TestEnrichment:
    @pytest.mark.anyio
    async def test_isrc_filled_for_identifier_aware_provider(self):
        provider = FakeProvider(uses_identifiers=True)
        enrichment = FakeEnrichment()
        service = _service(providers={"appleMusic": provider}, enrichment=enrichment)
        result = await service.resolve(TRACK_URL)
        assert enrichment.calls == [("Queen", "Bohemian Rhapsody")]
        assert provider.calls[0][1].isrc == "GBUM71029604"
        assert result.source.isrc == "GBUM71029604"

    @pytest.mark.anyio
    async def test_upc_filled_for_albums(self):
        provider = FakeProvider(uses_identifiers=True)
        service = _service(providers={"appleMusic": provider}, enrichment=FakeEnrichment())
        await service.resolve(ALBUM_URL)
        assert provider.calls[0][1].upc == "00602547202734"

    @pytest.mark.anyio
    async def test_skipped_when_no_provider_uses_identifiers(self):
        enrichment = FakeEnrichment()
        service = _service(providers={"appleMusic": FakeProvider()}, enrichment=enrichment)
        await service.resolve(TRACK_URL)
        assert enrichment.calls == []

    @pytest.mark.anyio
    async def test_skipped_when_source_has_isrc(self):
        enrichment = FakeEnrichment()
        source = FakeSource(tracks={TRACK_ID: replace(TRACK, isrc="USRC17607839")})
        service = _service(
            providers={"appleMusic": FakeProvider(uses_identifiers=True)},
            source=source,
            enrichment=enrichment,
        )
        result = await service.resolve(TRACK_URL)
        assert enrichment.calls == []
        assert result.source.isrc == "USRC17607839"

    @pytest.mark.anyio
    async def test_lookup_miss_keeps_metadata(self):
        provider = FakeProvider(uses_identifiers=True)
        service = _service(providers={"appleMusic": provider}, enrichment=FakeEnrichment(isrc=None))
        await service.resolve(TRACK_URL)
        assert provider.calls[0][1].isrc is None


class TestReverseResolution:
    @pytest.mark.anyio
    async def test_partner_track_found_on_source(self):
        store = MemoryStore()
        lookup = FakeLookup(track=PARTNER_TRACK)
        source = FakeSource()
        service = _service(store=store, source=source, lookup=lookup)

        result = await service.resolve(APPLE_SONG_URL)

        assert result.status == ResolutionStatus.RESOLVED
        assert result.source == TRACK
        assert lookup.calls == ["1440650428"]
        assert source.searches == [("Queen", "Bohemian Rhapsody")]
        apple = result.provider("appleMusic")
        assert apple.url == APPLE_SONG_URL
        assert apple.confidence == 1.0
        assert result.songlink.endswith(TRACK_ID)
        assert await store.get(
            reverse_cache_key(Platform.APPLE_MUSIC, ContentType.TRACK, "1440650428")
        ) == TRACK_ID

    @pytest.mark.anyio
    async def test_partner_album_found_on_source(self):
        lookup = FakeLookup(album=PARTNER_ALBUM)
        result = await _service(lookup=lookup).resolve(APPLE_ALBUM_URL)
        assert result.status == ResolutionStatus.RESOLVED
        assert result.source == ALBUM
        assert result.provider("appleMusic").url == APPLE_ALBUM_URL

    @pytest.mark.anyio
    async def test_no_source_match_is_partial(self):
        unrelated = TrackMetadata(id="zzz", name="Another One Bites the Dust", artists=["Queen"])
        service = _service(source=FakeSource(search=[unrelated]), lookup=FakeLookup(track=PARTNER_TRACK))

        result = await service.resolve(APPLE_SONG_URL)

        assert result.status == ResolutionStatus.PARTIAL
        assert result.provider("appleMusic").url == APPLE_SONG_URL
        assert result.provider("appleMusic").confidence == 1.0
        assert result.provider("youtube") is ABSENT
        assert result.source.name == "Bohemian Rhapsody"
        assert result.songlink is None

    @pytest.mark.anyio
    async def test_source_search_failure_is_partial(self):
        service = _service(
            source=FakeSource(search=UpstreamError("Spotify", 503)),
            lookup=FakeLookup(track=PARTNER_TRACK),
        )
        result = await service.resolve(APPLE_SONG_URL)
        assert result.status == ResolutionStatus.PARTIAL

    @pytest.mark.anyio
    async def test_source_refetch_failure_uses_search_hit(self):
        source = FakeSource(search=[TRACK], error=UpstreamError("Spotify", 503))
        service = _service(source=source, lookup=FakeLookup(track=PARTNER_TRACK))

        result = await service.resolve(APPLE_SONG_URL)

        assert result.status == ResolutionStatus.RESOLVED
        assert result.source == TRACK
        assert source.fetched == [TRACK_ID]
        assert result.provider("appleMusic").url == APPLE_SONG_URL

    @pytest.mark.anyio
    async def test_unavailable_cached_source_falls_back_to_partner_lookup(self):
        store = MemoryStore()
        await store.put(
            reverse_cache_key(Platform.APPLE_MUSIC, ContentType.TRACK, "1440650428"), TRACK_ID, 60
        )
        lookup = FakeLookup(track=PARTNER_TRACK)
        source = FakeSource(search=[TRACK], error=UpstreamError("Spotify", 503))
        service = _service(store=store, source=source, lookup=lookup)

        result = await service.resolve(APPLE_SONG_URL)

        assert result.status == ResolutionStatus.RESOLVED
        assert lookup.calls == ["1440650428"]
        assert source.searches == [("Queen", "Bohemian Rhapsody")]

    @pytest.mark.anyio
    async def test_partner_not_found_raises(self):
        service = _service(lookup=FakeLookup(track=None))
        with pytest.raises(MetadataLookupError, match="1440650428"):
            await service.resolve(APPLE_SONG_URL)

    @pytest.mark.anyio
    async def test_partner_lookup_error_raises(self):
        service = _service(lookup=FakeLookup(error=httpx.ConnectError("refused")))
        with pytest.raises(MetadataLookupError):
            await service.resolve(APPLE_SONG_URL)

    @pytest.mark.anyio
    async def test_no_lookup_for_platform_raises(self):
        with pytest.raises(MetadataLookupError):
            await _service().resolve(APPLE_SONG_URL)

    @pytest.mark.anyio
    async def test_reverse_cache_skips_partner_lookup(self):
        store = MemoryStore()
        lookup = FakeLookup(track=PARTNER_TRACK)
        service = _service(store=store, lookup=lookup)

        await service.resolve(APPLE_SONG_URL)
        second = await service.resolve(APPLE_SONG_URL)

        assert lookup.calls == ["1440650428"]
        assert second.from_cache
        assert second.provider("appleMusic").url == APPLE_SONG_URL

    @pytest.mark.anyio
    async def test_forward_cache_shared_with_reverse(self):
        store = MemoryStore()
        provider = FakeProvider()
        service = _service(store=store, providers={"appleMusic": provider}, lookup=FakeLookup(track=PARTNER_TRACK))

        await service.resolve(TRACK_URL)
        result = await service.resolve(APPLE_SONG_URL)

        assert result.from_cache
        assert len(provider.calls) == 1


class TestEndToEndScoring:
    @pytest.mark.anyio
    async def test_confidence_through_itunes_adapter(self):
        # Identical artist and title, 2000ms apart, no album on the source: 0.35 + 0.35 + 0.20
        source_track = TrackMetadata(
            id=TRACK_ID, name="Bohemian Rhapsody", artists=["Queen"], duration_ms=354_000
        )
        hit = {
            "wrapperType": "track",
            "trackId": 1440650428,
            "trackName": "Bohemian Rhapsody",
            "artistName": "Queen",
            "collectionName": "A Night at the Opera",
            "trackViewUrl": APPLE_SONG_URL,
            "trackTimeMillis": 356_000,
        }
        itunes = ITunesSearchProvider(
            mock_client(lambda r: httpx.Response(200, json={"resultCount": 1, "results": [hit]}))
        )
        service = _service(providers={"appleMusic": itunes})

        result = await service.get_track_links(source_track, TRACK_URL)

        apple = result.provider("appleMusic")
        assert isinstance(apple, Matched)
        assert apple.url == APPLE_SONG_URL
        assert apple.confidence == pytest.approx(0.90)
