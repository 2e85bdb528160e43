"""Timeout-bounded, rate-limited HTTP requests with retry and backoff.

fetch_with_retries() is the caller side of the distributed rate limiter:
it acquires a slot before every attempt, reports 429s to the limiter so all
processes cool down together, and retries transient 502/503 answers with
exponential backoff plus jitter. After the retry budget is spent the last
response is handed back for the caller to treat as an error.
"""

from __future__ import annotations

import random
from typing import Any, Awaitable, Callable

import anyio
import httpx
from loguru import logger

from .errors import UpstreamError
from .ratelimit import RateLimiter

log = logger.bind(stage="http")


class Timeouts:
    """Timeout presets in seconds."""

    FAST = 10.0  # metadata and search APIs
    SLOW = 30.0  # slow upstreams and bulk calls
    VERY_SLOW = 60.0


RETRYABLE_STATUSES = frozenset({429, 502, 503})
DEFAULT_RETRY_AFTER = 5
MAX_RETRY_WAIT = 10.0
BACKOFF_BASE = 1.0
MAX_JITTER = 1.0


def parse_retry_after(value: str | None, default: int = DEFAULT_RETRY_AFTER) -> int:
    """Seconds from a Retry-After header; HTTP dates fall back to default."""
    if not value:
        return default
    try:
        return max(0, int(float(value)))
    except ValueError:
        return default


def backoff_delay(attempt: int, rand: Callable[[], float] = random.random) -> float:
    """Exponential backoff for transient errors: 1s, 2s, 4s, 8s, capped at 10s, plus jitter."""
    return min(BACKOFF_BASE * (2**attempt), MAX_RETRY_WAIT) + rand() * MAX_JITTER


async def fetch_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    limiter: RateLimiter | None = None,
    max_retries: int = 3,
    timeout: float = Timeouts.FAST,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    rand: Callable[[], float] = random.random,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, absorbing upstream rate limiting and transient failures.

    Network errors and timeouts propagate as httpx exceptions; they are not
    retried here.
    """
    service = limiter.name if limiter else httpx.URL(url).host

    for attempt in range(max_retries + 1):
        if limiter:
            await limiter.acquire()

        response = await client.request(method, url, timeout=timeout, **kwargs)

        if response.status_code not in RETRYABLE_STATUSES:
            return response

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if limiter:
                await limiter.record_rate_limit_response(retry_after)
            if attempt == max_retries:
                log.error(f"[{service}] Max retries ({max_retries}) exceeded for {url}: 429")
                return response
            wait = min(float(retry_after), MAX_RETRY_WAIT)
            log.info(f"[{service}] 429 retry {attempt + 1}/{max_retries} after {wait:.1f}s")
            await sleep(wait)
            continue

        # 502/503
        if attempt == max_retries:
            log.error(
                f"[{service}] Max retries ({max_retries}) exceeded for {url}: "
                f"{response.status_code}"
            )
            return response
        wait = backoff_delay(attempt, rand)
        log.info(
            f"[{service}] {response.status_code} retry {attempt + 1}/{max_retries} "
            f"after {wait:.2f}s"
        )
        await sleep(wait)

    raise AssertionError("unreachable: retry loop always returns")


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    service: str,
    **kwargs: Any,
) -> Any:
    """GET through fetch_with_retries and decode JSON, raising UpstreamError on failure."""
    response = await fetch_with_retries(client, "GET", url, **kwargs)
    if response.is_error:
        raise UpstreamError(service, response.status_code, response.text[:200])
    return response.json()
