"""Exception hierarchy for streaming link resolution."""


class StreamingLinksError(Exception):
    """Base exception for all resolver errors."""


class ConfigError(StreamingLinksError):
    """Invalid or missing configuration."""


class AuthenticationError(StreamingLinksError):
    """A signed credential or access token could not be produced."""


class UpstreamError(StreamingLinksError):
    """An upstream API answered with a non-success status."""

    def __init__(self, service: str, status: int, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"{service} API error {status}{detail}")
        self.service = service
        self.status = status


class RateLimitError(StreamingLinksError):
    """The rate limiter could not admit a request within its retry budget."""

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        msg = f"Rate limit exceeded for {service}"
        if retry_after is not None:
            msg += f" (retry after {retry_after:.0f}s)"
        super().__init__(msg)
        self.service = service
        self.retry_after = retry_after


class MetadataLookupError(StreamingLinksError):
    """Canonical metadata for the requested item could not be fetched.

    This is the only failure that aborts a whole resolution.
    """

    def __init__(self, platform: str, item_id: str, message: str) -> None:
        super().__init__(f"{platform} lookup failed for {item_id}: {message}")
        self.platform = platform
        self.item_id = item_id
