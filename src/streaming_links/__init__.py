"""Streaming Links -- resolve a track or album URL to its links on other streaming platforms.

Core modules:
    config     -- Resolver configuration via pydantic-settings (.env + env vars) and
                  loguru setup
    cli        -- Click CLI entry point. Resolves one URL, prints a summary or JSON.
    service    -- Resolution orchestrator: forward (source URL) and reverse (partner
                  URL) paths, provider fan-out, result caching
    url_parser -- Spotify and Apple Music URL/URI parsing and link builders. Never raises.
    matching   -- String normalization, Levenshtein similarity, weighted track/album
                  confidence scores
    models     -- Enums, metadata types and the Matched/Fallback/Absent result variants
    ratelimit  -- Distributed sliding-window rate limiter over the key-value store
    http       -- Retrying fetch wrapper (429 cooldown, 502/503 backoff with jitter)
    store      -- Key-value stores with TTL (in-memory, SQLite WAL)
    auth       -- Apple Music developer token issuer (ES256 JWT)
    errors     -- Exception hierarchy

Subpackages:
    api       -- Upstream metadata clients (Spotify source, MusicBrainz ISRC/UPC)
    providers -- Partner platform adapters (Apple Music, YouTube Music)
"""
