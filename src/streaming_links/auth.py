"""Signed developer tokens for the Apple Music catalog API.

Tokens are ES256 JWTs with the key id in the header and the team id as
issuer. Apple accepts much longer lifetimes, but tokens here are valid for
at most one hour and are regenerated ten minutes before they expire, so a
cached token is reused for up to 50 minutes.
"""

from __future__ import annotations

import time
from typing import Callable

import anyio
import jwt
from loguru import logger

from .errors import AuthenticationError

log = logger.bind(stage="auth")

MAX_TOKEN_LIFETIME = 3600
REFRESH_MARGIN = 600


class AppleMusicTokenIssuer:
    """Owns one cached developer token and refreshes it before expiry.

    Refresh is single-writer: concurrent callers wait on the same lock and
    reuse the token the first caller generated.
    """

    def __init__(
        self,
        private_key: str,
        key_id: str,
        team_id: str,
        lifetime: int = MAX_TOKEN_LIFETIME,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.private_key = private_key
        self.key_id = key_id
        self.team_id = team_id
        self.lifetime = min(lifetime, MAX_TOKEN_LIFETIME)
        self._clock = clock
        self._token: str | None = None
        self._refresh_at = 0.0
        self._lock = anyio.Lock()

    def generate(self) -> str:
        """Sign a new token without touching the cache."""
        issued_at = int(self._clock())
        payload = {
            "iss": self.team_id,
            "iat": issued_at,
            "exp": issued_at + self.lifetime,
        }
        try:
            return jwt.encode(
                payload,
                self.private_key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(f"Failed to sign Apple Music token: {e}") from e

    async def get_token(self) -> str:
        """Cached token, regenerated once it is within REFRESH_MARGIN of expiry."""
        if self._token and self._clock() < self._refresh_at:
            return self._token

        async with self._lock:
            now = self._clock()
            if self._token and now < self._refresh_at:
                return self._token
            self._token = self.generate()
            self._refresh_at = now + self.lifetime - REFRESH_MARGIN
            log.debug(f"Generated Apple Music token (kid={self.key_id})")
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the catalog answered 401."""
        self._token = None
        self._refresh_at = 0.0
