"""Core enums, result variants, and metadata types for link resolution.

Enums:
    Platform         -- Streaming platform an identifier belongs to.
    ContentType      -- Kind of catalog item (track, album, artist).
    ResolutionStatus -- Outcome of a resolve() call (resolved, partial, unresolved).

Provider results are a tagged variant instead of a nullable struct:
    Matched  -- a real match with a confidence in (0, 1].
    Fallback -- a generic "search this platform" link, confidence always 0.
    Absent   -- the provider slot was not queried or is not configured.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class Platform(StrEnum):
    SPOTIFY = "spotify"
    APPLE_MUSIC = "apple-music"
    YOUTUBE = "youtube"
    UNKNOWN = "unknown"


class ContentType(StrEnum):
    TRACK = "track"
    ALBUM = "album"
    ARTIST = "artist"
    UNKNOWN = "unknown"


class ResolutionStatus(StrEnum):
    RESOLVED = "resolved"
    PARTIAL = "partial"
    UNRESOLVED = "unresolved"


# The platform whose ids key the result cache and the songlink URL
SOURCE_PLATFORM = Platform.SPOTIFY

# Provider slot names, in the order they appear in serialized results
APPLE_MUSIC_SLOT = "appleMusic"
YOUTUBE_SLOT = "youtube"
PROVIDER_SLOTS: tuple[str, ...] = (APPLE_MUSIC_SLOT, YOUTUBE_SLOT)

# Identifier equality is treated as ground truth
EXACT_MATCH_CONFIDENCE = 0.98
DEFAULT_CONFIDENCE_THRESHOLD = 0.8


@dataclass(frozen=True)
class ParsedIdentifier:
    """Platform, content type and id extracted from a URL or URI."""

    platform: Platform
    content_type: ContentType
    id: str | None
    original_input: str

    def __post_init__(self) -> None:
        if (self.id is None) != (self.platform == Platform.UNKNOWN):
            raise ValueError("id must be present iff platform is known")

    @property
    def is_supported(self) -> bool:
        return self.platform != Platform.UNKNOWN and self.id is not None


@dataclass
class TrackMetadata:
    id: str
    name: str
    artists: list[str]
    album: str = ""
    duration_ms: int = 0
    release_year: int = 0
    isrc: str | None = None

    @property
    def primary_artist(self) -> str:
        return self.artists[0] if self.artists else ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": ContentType.TRACK.value, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> TrackMetadata:
        return cls(
            id=data["id"],
            name=data["name"],
            artists=list(data.get("artists") or []),
            album=data.get("album", "") or "",
            duration_ms=int(data.get("duration_ms") or 0),
            release_year=int(data.get("release_year") or 0),
            isrc=data.get("isrc") or None,
        )


@dataclass
class AlbumMetadata:
    id: str
    name: str
    artists: list[str]
    total_tracks: int = 0
    release_year: int = 0
    upc: str | None = None

    @property
    def primary_artist(self) -> str:
        return self.artists[0] if self.artists else ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": ContentType.ALBUM.value, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> AlbumMetadata:
        return cls(
            id=data["id"],
            name=data["name"],
            artists=list(data.get("artists") or []),
            total_tracks=int(data.get("total_tracks") or 0),
            release_year=int(data.get("release_year") or 0),
            upc=data.get("upc") or None,
        )


SourceMetadata = TrackMetadata | AlbumMetadata


def metadata_from_dict(data: dict | None) -> SourceMetadata | None:
    """Rebuild track or album metadata from its to_dict() form."""
    if not data:
        return None
    if data.get("type") == ContentType.ALBUM:
        return AlbumMetadata.from_dict(data)
    return TrackMetadata.from_dict(data)


# -- Provider results --


@dataclass(frozen=True)
class Matched:
    """A provider match the scoring (or an exact identifier) vouches for."""

    url: str
    confidence: float
    matched_fields: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 < self.confidence <= 1:
            raise ValueError(f"Matched confidence must be in (0, 1], got {self.confidence}")

    @property
    def is_fallback(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url, "confidence": self.confidence}
        if self.matched_fields:
            data["matched"] = dict(self.matched_fields)
        return data


@dataclass(frozen=True)
class Fallback:
    """Generic search-page link returned when nothing clears the threshold."""

    url: str

    @property
    def confidence(self) -> float:
        return 0.0

    @property
    def is_fallback(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "confidence": 0.0, "fallback": True}


@dataclass(frozen=True)
class Absent:
    """Provider slot with no result at all."""

    @property
    def confidence(self) -> float:
        return 0.0

    @property
    def is_fallback(self) -> bool:
        return False

    def to_dict(self) -> None:
        return None


ABSENT = Absent()

ProviderResult = Matched | Fallback | Absent


def provider_result_from_dict(data: dict | None) -> ProviderResult:
    """Inverse of ProviderResult.to_dict(), used when reading cached results."""
    if not data:
        return ABSENT
    if data.get("fallback"):
        return Fallback(url=data["url"])
    return Matched(
        url=data["url"],
        confidence=float(data["confidence"]),
        matched_fields=dict(data.get("matched") or {}),
    )


@dataclass
class ResolutionResult:
    """Aggregated cross-platform links for one source item."""

    status: ResolutionStatus
    content_type: ContentType
    input_url: str = ""
    providers: dict[str, ProviderResult] = field(default_factory=dict)
    songlink: str | None = None
    source: SourceMetadata | None = None
    from_cache: bool = False

    @classmethod
    def unresolved(
        cls,
        input_url: str,
        content_type: ContentType = ContentType.UNKNOWN,
    ) -> ResolutionResult:
        return cls(
            status=ResolutionStatus.UNRESOLVED,
            content_type=content_type,
            input_url=input_url,
        )

    def provider(self, slot: str) -> ProviderResult:
        return self.providers.get(slot, ABSENT)

    def to_dict(self) -> dict[str, Any]:
        """JSON shape consumed by the web and bot layers."""
        data: dict[str, Any] = {
            slot: self.provider(slot).to_dict() for slot in PROVIDER_SLOTS
        }
        data.update(
            {
                "songlink": self.songlink,
                "source": self.source.to_dict() if self.source else None,
                "cached": self.from_cache,
                "status": self.status.value,
                "type": self.content_type.value,
                "input": self.input_url,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ResolutionResult:
        return cls(
            status=ResolutionStatus(data.get("status", ResolutionStatus.RESOLVED)),
            content_type=ContentType(data.get("type", ContentType.UNKNOWN)),
            input_url=data.get("input", ""),
            providers={
                slot: provider_result_from_dict(data.get(slot))
                for slot in PROVIDER_SLOTS
                if data.get(slot)
            },
            songlink=data.get("songlink"),
            source=metadata_from_dict(data.get("source")),
            from_cache=bool(data.get("cached", False)),
        )


# -- Partner catalog items (reverse lookups) --


@dataclass(frozen=True)
class PartnerTrack:
    """A track as described by a partner catalog's detail lookup."""

    id: str
    name: str
    artist_name: str
    url: str
    album_name: str = ""
    duration_ms: int = 0
    release_year: int = 0
    isrc: str | None = None

    def to_metadata(self) -> TrackMetadata:
        return TrackMetadata(
            id=self.id,
            name=self.name,
            artists=[self.artist_name] if self.artist_name else [],
            album=self.album_name,
            duration_ms=self.duration_ms,
            release_year=self.release_year,
            isrc=self.isrc,
        )


@dataclass(frozen=True)
class PartnerAlbum:
    """An album as described by a partner catalog's detail lookup."""

    id: str
    name: str
    artist_name: str
    url: str
    track_count: int = 0
    release_year: int = 0
    upc: str | None = None

    def to_metadata(self) -> AlbumMetadata:
        return AlbumMetadata(
            id=self.id,
            name=self.name,
            artists=[self.artist_name] if self.artist_name else [],
            total_tracks=self.track_count,
            release_year=self.release_year,
            upc=self.upc,
        )
