"""External API clients for source metadata and identifier enrichment.

Submodules:
    spotify     -- Spotify Web API client (source platform metadata, field-filtered search)
    musicbrainz -- MusicBrainz ISRC/UPC lookups with negative caching
"""
