"""Distributed sliding-window rate limiter backed by a shared key-value store.

Every process that talks to a rate-limited upstream (Spotify, the Apple
Music catalog, MusicBrainz) shares one RateLimitState per upstream in the
store. State is read, modified and written back without a lock, so
concurrent callers can under-count; the upstream still enforces its hard
limit and answers 429, which puts every caller into a shared cooldown.
"""

from __future__ import annotations

import json
import math
import random
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

import anyio
from loguru import logger

from .errors import RateLimitError
from .store import KeyValueStore

log = logger.bind(stage="ratelimit")

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_SLEEP_MS = 10_000
DEFAULT_STATE_TTL = 120
DEFAULT_MAX_ITERATIONS = 60
MAX_JITTER_MS = 1_000
WARN_RATIO = 0.8


@dataclass
class RateLimitState:
    request_count: int = 0
    window_start: float = 0.0
    cooldown_until: float | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> RateLimitState:
        data = json.loads(raw)
        return cls(
            request_count=int(data.get("request_count", 0)),
            window_start=float(data.get("window_start", 0.0)),
            cooldown_until=data.get("cooldown_until"),
        )


class RateLimiter:
    """Shared request budget of max_requests per window_ms for one upstream.

    Clock, sleep and random source are injectable so tests can run the
    wait loop on a fake timeline.
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        max_requests: int,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_sleep_ms: int = DEFAULT_MAX_SLEEP_MS,
        state_ttl: int = DEFAULT_STATE_TTL,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.store = store
        self.name = name
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.max_sleep_ms = max_sleep_ms
        self.state_ttl = state_ttl
        self.max_iterations = max_iterations
        self.cache_key = f"{name}:ratelimit:state"
        self._clock = clock
        self._sleep = sleep
        self._rand = rand

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def acquire(self) -> None:
        """Wait until the shared window admits one more request.

        Raises RateLimitError if no slot opens within max_iterations waits.
        """
        for _ in range(self.max_iterations):
            now = self._now_ms()
            state = await self._get_state()

            if state.cooldown_until and now < state.cooldown_until:
                wait_ms = min(state.cooldown_until - now, self.max_sleep_ms)
                log.info(f"[{self.name}] Cooldown after 429, waiting {wait_ms:.0f}ms")
                await self._sleep(wait_ms / 1000)
                continue

            if now - state.window_start >= self.window_ms:
                await self._set_state(RateLimitState(request_count=1, window_start=now))
                return

            if state.request_count >= self.max_requests:
                remaining = self.window_ms - (now - state.window_start)
                wait_ms = min(remaining, self.max_sleep_ms) + self._rand() * MAX_JITTER_MS
                log.info(
                    f"[{self.name}] Local limit reached "
                    f"({state.request_count}/{self.max_requests}), waiting {wait_ms:.0f}ms"
                )
                await self._sleep(wait_ms / 1000)
                continue

            if state.request_count >= self.max_requests * WARN_RATIO:
                log.warning(
                    f"[{self.name}] Approaching limit: "
                    f"{state.request_count}/{self.max_requests} in window"
                )

            state.request_count += 1
            await self._set_state(state)
            return

        raise RateLimitError(self.name)

    async def record_rate_limit_response(self, retry_after_seconds: float) -> None:
        """Enter a shared cooldown after the upstream answered 429."""
        log.warning(f"[{self.name}] 429 received, cooling down for {retry_after_seconds}s")
        now = self._now_ms()
        await self._set_state(
            RateLimitState(
                request_count=0,
                window_start=now,
                cooldown_until=now + retry_after_seconds * 1000,
            )
        )

    async def get_stats(self) -> dict:
        """Current window usage for monitoring."""
        state = await self._get_state()
        now = self._now_ms()
        return {
            "request_count": state.request_count,
            "max_requests": self.max_requests,
            "window_remaining_ms": max(0.0, self.window_ms - (now - state.window_start)),
            "in_cooldown": bool(state.cooldown_until and now < state.cooldown_until),
        }

    async def _get_state(self) -> RateLimitState:
        try:
            raw = await self.store.get(self.cache_key)
        except Exception as e:
            log.warning(f"[{self.name}] Rate limit state read failed: {e}")
            raw = None
        if raw is None:
            # Stale window: the first acquire() starts a fresh one
            return RateLimitState(window_start=0.0)
        try:
            return RateLimitState.from_json(raw)
        except (ValueError, TypeError) as e:
            log.warning(f"[{self.name}] Discarding corrupt rate limit state: {e}")
            return RateLimitState(window_start=0.0)

    def _state_ttl(self, state: RateLimitState) -> int:
        """Keep the entry alive at least until a pending cooldown ends plus one window."""
        if not state.cooldown_until:
            return self.state_ttl
        remaining_ms = max(0.0, state.cooldown_until - self._now_ms())
        return max(self.state_ttl, math.ceil((remaining_ms + self.window_ms) / 1000))

    async def _set_state(self, state: RateLimitState) -> None:
        try:
            await self.store.put(self.cache_key, state.to_json(), self._state_ttl(state))
        except Exception as e:
            log.warning(f"[{self.name}] Rate limit state write failed: {e}")
