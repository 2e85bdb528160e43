"""Provider protocols and the shared best-candidate selection."""

from __future__ import annotations

from typing import Callable, Iterable, Protocol, TypeVar

from loguru import logger

from ..models import (
    AlbumMetadata,
    Fallback,
    Matched,
    PartnerAlbum,
    PartnerTrack,
    ProviderResult,
    TrackMetadata,
)
from ..url_parser import build_search_query, quote_query

C = TypeVar("C")


class StreamingProvider(Protocol):
    """A partner platform adapter. Never raises for "not found"."""

    name: str
    # True when an ISRC/UPC on the metadata lets this adapter skip scoring
    uses_identifiers: bool

    async def search_track(self, metadata: TrackMetadata) -> ProviderResult: ...

    async def search_album(self, metadata: AlbumMetadata) -> ProviderResult: ...

    def fallback_track(self, metadata: TrackMetadata) -> ProviderResult: ...

    def fallback_album(self, metadata: AlbumMetadata) -> ProviderResult: ...


class ReverseLookup(Protocol):
    """Detail lookups on a partner catalog, used to start a reverse resolution."""

    async def get_track(self, track_id: str) -> PartnerTrack | None: ...

    async def get_album(self, album_id: str) -> PartnerAlbum | None: ...


def search_fallback(base_url: str, artist: str, title: str) -> Fallback:
    """Fallback pointing at the platform's own search page."""
    return Fallback(url=f"{base_url}{quote_query(build_search_query(artist, title))}")


def pick_best(
    candidates: Iterable[C],
    score: Callable[[C], float],
) -> tuple[C | None, float]:
    """Highest-scoring candidate and its score; first wins ties."""
    best: C | None = None
    best_score = 0.0
    for candidate in candidates:
        s = score(candidate)
        if s > best_score:
            best, best_score = candidate, s
    return best, best_score


def accept_or_fallback(
    provider: str,
    best: tuple[str, dict[str, str]] | None,
    confidence: float,
    threshold: float,
    fallback: Fallback,
) -> ProviderResult:
    """Matched when the best candidate clears threshold (inclusive), else fallback.

    best is (url, matched_fields) of the winning candidate.
    """
    if best is not None and confidence >= threshold:
        url, fields = best
        logger.bind(stage=provider).info(
            f"Match found: {fields} (confidence: {confidence:.2f})"
        )
        return Matched(url=url, confidence=confidence, matched_fields=fields)

    logger.bind(stage=provider).info(
        f"Best match confidence too low: {confidence:.2f} < {threshold}"
    )
    return fallback
