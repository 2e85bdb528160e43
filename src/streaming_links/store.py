"""Key-value stores with per-key TTL, shared by caches and rate limiters.

KeyValueStore is the async get/put/delete protocol the engine consumes.
MemoryStore keeps entries in process memory. SqliteStore keeps them in a
WAL-mode SQLite file so every process on a host shares one view (rate
limiter state included); blocking SQLite calls run in worker threads,
each with its own connection.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Protocol

import anyio.to_thread
from loguru import logger

log = logger.bind(stage="store")

_SCHEMA = """\
PRAGMA journal_mode=WAL;
PRAGMA busy_timeout=5000;

CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv(expires_at);
"""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store. Expired keys are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class SqliteStore:
    """SQLite-backed store shared across processes on one host.

    Thread-safe: each worker thread gets its own connection via
    threading.local(). All of them are tracked so close() can release every
    worker's connection. Expired rows are ignored on read and purged on write.
    """

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self._local = threading.local()
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create a per-thread SQLite connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Only the owning thread queries it; close() may run elsewhere
            conn = sqlite3.connect(str(self.db_path), timeout=10.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def _init_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    # -- Blocking primitives (run in worker threads) --

    def get_sync(self, key: str) -> str | None:
        row = self._get_conn().execute(
            "SELECT value FROM kv WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        ).fetchone()
        return row[0] if row else None

    def put_sync(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        conn = self._get_conn()
        conn.execute("DELETE FROM kv WHERE expires_at <= ?", (now,))
        conn.execute(
            "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, now + ttl_seconds),
        )
        conn.commit()

    def delete_sync(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        conn.commit()

    # -- KeyValueStore protocol --

    async def get(self, key: str) -> str | None:
        return await anyio.to_thread.run_sync(self.get_sync, key)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await anyio.to_thread.run_sync(self.put_sync, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await anyio.to_thread.run_sync(self.delete_sync, key)


def open_store(db_path: Path | None) -> KeyValueStore:
    """SqliteStore at db_path, or a MemoryStore when no path is configured."""
    if db_path:
        log.debug(f"Using SQLite store at {db_path}")
        return SqliteStore(Path(db_path))
    log.debug("Using in-memory store")
    return MemoryStore()
