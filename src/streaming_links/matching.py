"""String similarity and weighted confidence scoring for cross-platform matching.

similarity() is a length-normalized Levenshtein ratio over normalized
strings. track_confidence() and album_confidence() combine independent
signals, each bounded by its weight, into a score in [0, 1]. Name and
artist dominate; duration, track count and year only break ties.
"""

import html
import re
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from .models import AlbumMetadata, TrackMetadata

TRACK_WEIGHTS = {"artist": 0.35, "track": 0.35, "duration": 0.20, "album": 0.10}
ALBUM_WEIGHTS = {"artist": 0.40, "album": 0.40, "track_count": 0.10, "release_year": 0.10}

# Near-exact title matches earn more than linear credit
TRACK_NAME_BOOST = 1.5

DURATION_FULL_MS = 5_000
DURATION_HALF_MS = 30_000
TRACK_COUNT_FULL = 2
TRACK_COUNT_HALF = 5

_BRACKETED = re.compile(r"\s*[\(\[][^\)\]]*[\)\]]\s*")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_YEAR = re.compile(r"(\d{4})")


@dataclass(frozen=True)
class TrackCandidate:
    """A partner-catalog track as seen by the scorer."""

    artist_name: str
    track_name: str
    duration_ms: int = 0
    album_name: str = ""


@dataclass(frozen=True)
class AlbumCandidate:
    """A partner-catalog album as seen by the scorer."""

    artist_name: str
    album_name: str
    track_count: int = 0
    release_year: int = 0


def normalize_string(s: str) -> str:
    """Normalize for comparison.

    Decodes HTML entities, lowercases, drops parenthetical/bracketed
    annotations (remaster, deluxe, feat.), strips punctuation and
    collapses whitespace.
    """
    s = html.unescape(s).lower()
    s = _BRACKETED.sub(" ", s)
    s = _PUNCTUATION.sub("", s)
    return _WHITESPACE.sub(" ", s).strip()


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Similarity in [0, 1]; 1 means identical after normalization."""
    if not a or not b:
        return 0.0

    norm_a = normalize_string(a)
    norm_b = normalize_string(b)

    if norm_a == norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    distance = levenshtein_distance(norm_a, norm_b)
    return 1.0 - distance / max(len(norm_a), len(norm_b))


def extract_year(date_str: str | None) -> int:
    """Year from a date string like "2007-10-10", or 0 when absent."""
    if not date_str:
        return 0
    match = _YEAR.search(date_str)
    return int(match.group(1)) if match else 0


def track_confidence(source: TrackMetadata, candidate: TrackCandidate) -> float:
    """Weighted confidence that candidate is the same recording as source."""
    score = 0.0

    score += TRACK_WEIGHTS["artist"] * similarity(
        source.primary_artist, candidate.artist_name
    )

    track_sim = similarity(source.name, candidate.track_name)
    score += TRACK_WEIGHTS["track"] * min(1.0, track_sim * TRACK_NAME_BOOST)

    if source.duration_ms > 0 and candidate.duration_ms > 0:
        diff = abs(source.duration_ms - candidate.duration_ms)
        if diff < DURATION_FULL_MS:
            score += TRACK_WEIGHTS["duration"]
        elif diff < DURATION_HALF_MS:
            score += TRACK_WEIGHTS["duration"] * 0.5

    # Album is a bonus, never required
    if source.album and candidate.album_name:
        score += TRACK_WEIGHTS["album"] * similarity(source.album, candidate.album_name)

    return _clamp(score)


def album_confidence(source: AlbumMetadata, candidate: AlbumCandidate) -> float:
    """Weighted confidence that candidate is the same release as source."""
    score = 0.0

    score += ALBUM_WEIGHTS["artist"] * similarity(
        source.primary_artist, candidate.artist_name
    )
    score += ALBUM_WEIGHTS["album"] * similarity(source.name, candidate.album_name)

    if source.total_tracks > 0 and candidate.track_count > 0:
        diff = abs(source.total_tracks - candidate.track_count)
        if diff <= TRACK_COUNT_FULL:
            score += ALBUM_WEIGHTS["track_count"]
        elif diff <= TRACK_COUNT_HALF:
            score += ALBUM_WEIGHTS["track_count"] * 0.5

    if (
        source.release_year > 0
        and candidate.release_year > 0
        and source.release_year == candidate.release_year
    ):
        score += ALBUM_WEIGHTS["release_year"]

    return _clamp(score)


def _clamp(score: float) -> float:
    # Weighted sums drift by an ulp (0.7 + 0.1 < 0.8); round so threshold checks see exact values
    return max(0.0, min(1.0, round(score, 6)))
