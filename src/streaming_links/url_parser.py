"""Classify streaming URLs and URIs into (platform, content type, id).

Patterns are tried in a fixed order per platform. For Apple Music the
track-in-album form (``/album/<slug>/<albumId>?i=<trackId>``) is checked
before the plain album form so a nested track is never reported as its
containing album.
"""

import re
from urllib.parse import quote

from .models import ContentType, ParsedIdentifier, Platform

_SPOTIFY_URI = re.compile(r"^spotify:(track|album|artist):([a-zA-Z0-9]+)$")
_SPOTIFY_URL = re.compile(
    r"open\.spotify\.com/(?:intl-[a-z]{2}(?:-[a-z]{2})?/)?(track|album|artist)/([a-zA-Z0-9]+)"
)

_APPLE_PREFIX = r"music\.apple\.com(?:/[a-z]{2})?"

# (pattern, content type, id group) in priority order
_APPLE_PATTERNS: list[tuple[re.Pattern, ContentType, int]] = [
    (
        re.compile(_APPLE_PREFIX + r"/album/[^/?#]+/(\d+)\?(?:[^#]*&)?i=(\d+)"),
        ContentType.TRACK,
        2,
    ),
    (re.compile(_APPLE_PREFIX + r"/song/[^/?#]+/(\d+)"), ContentType.TRACK, 1),
    (
        re.compile(_APPLE_PREFIX + r"/album/[^/?#]+/(\d+)(?:[?#]|$)"),
        ContentType.ALBUM,
        1,
    ),
    (re.compile(_APPLE_PREFIX + r"/artist/[^/?#]+/(\d+)"), ContentType.ARTIST, 1),
]


def parse_streaming_url(url: str) -> ParsedIdentifier:
    """Parse any supported streaming URL or URI. Never raises."""
    normalized = (url or "").strip()

    spotify = parse_spotify_url(normalized)
    if spotify:
        return ParsedIdentifier(Platform.SPOTIFY, spotify[0], spotify[1], normalized)

    apple = parse_apple_music_url(normalized)
    if apple:
        return ParsedIdentifier(Platform.APPLE_MUSIC, apple[0], apple[1], normalized)

    return ParsedIdentifier(Platform.UNKNOWN, ContentType.UNKNOWN, None, normalized)


def parse_spotify_url(url: str) -> tuple[ContentType, str] | None:
    """Parse ``spotify:<type>:<id>`` URIs and open.spotify.com URLs."""
    match = _SPOTIFY_URI.match(url) or _SPOTIFY_URL.search(url)
    if match:
        return ContentType(match.group(1)), match.group(2)
    return None


def parse_apple_music_url(url: str) -> tuple[ContentType, str] | None:
    """Parse music.apple.com song, album, track-in-album and artist URLs.

    Apple Music ids are numeric; the storefront segment (``/us``) is optional.
    """
    if "music.apple.com" not in url:
        return None

    for pattern, content_type, group in _APPLE_PATTERNS:
        match = pattern.search(url)
        if match:
            return content_type, match.group(group)
    return None


def is_supported_url(url: str) -> bool:
    return parse_streaming_url(url).is_supported


def build_spotify_url(content_type: ContentType, item_id: str) -> str:
    return f"https://open.spotify.com/{content_type}/{item_id}"


def build_apple_music_url(content_type: ContentType, item_id: str) -> str:
    """Geo-agnostic Apple Music URL; the slug is a placeholder, the id resolves."""
    segment = "song" if content_type == ContentType.TRACK else str(content_type)
    return f"https://music.apple.com/{segment}/-/{item_id}"


def build_songlink_url(spotify_url: str) -> str:
    return f"https://song.link/{spotify_url}"


def build_search_query(artist: str, title: str) -> str:
    """Free-text "artist title" query used by every search fallback."""
    return f"{artist} {title}".strip()


def quote_query(query: str) -> str:
    return quote(query, safe="")
