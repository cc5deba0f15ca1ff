"""Fingerprint-keyed result cache that fails open.

A cache problem never breaks a retrieval: reads that fail are misses, writes
that fail are dropped, and both are logged as warnings.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Protocol, Tuple

from docrag.errors import CacheError
from docrag.utils.text import normalize_query

LOGGER = logging.getLogger(__name__)

SEARCH_PREFIX = "search:"
DOCUMENTS_PREFIX = "documents:"
DEFAULT_TTL = 3600


def fingerprint(
    query: str,
    *,
    limit: int,
    threshold: float,
    document_id: str | None = None,
    mode: str = "vector",
) -> str:
    """Stable cache key for a query and its retrieval options."""
    payload = {
        "query": normalize_query(query),
        "limit": int(limit),
        "threshold": float(threshold),
        "document_id": document_id,
        "mode": mode,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return SEARCH_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CacheTransport(Protocol):
    """Key-value store with per-key expiry holding serialized strings."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int | None) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...


class NullCacheTransport:
    """Used when caching is disabled: stores nothing."""

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int | None) -> None:
        return None

    def delete_prefix(self, prefix: str) -> int:
        return 0


class MemoryCacheTransport:
    """Process-local transport; last writer wins."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteCacheTransport:
    """Transport persisted in a SQLite table, shareable across processes."""

    def __init__(self, db_path: Path | str, *, timeout: float = 2.0, clock=time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
            with self._conn:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        expires_at REAL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise CacheError("Unable to open cache database", context={"db_path": str(db_path)}, cause=exc) from exc

    def close(self) -> None:
        self._conn.close()

    def get(self, key: str) -> str | None:
        now = self._clock()
        try:
            with self._lock, self._conn:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
                if row is None:
                    return None
                value, expires_at = row
                if expires_at is not None and expires_at <= now:
                    self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    return None
                return value
        except sqlite3.Error as exc:
            raise CacheError("Cache read failed", context={"key": key}, cause=exc) from exc

    def set(self, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO cache_entries(key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        expires_at = excluded.expires_at
                    """,
                    (key, value, expires_at),
                )
        except sqlite3.Error as exc:
            raise CacheError("Cache write failed", context={"key": key}, cause=exc) from exc

    def delete_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM cache_entries WHERE key LIKE ? ESCAPE '\\'", (escaped + "%",)
                )
                self._conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (self._clock(),),
                )
        except sqlite3.Error as exc:
            raise CacheError("Cache invalidation failed", context={"prefix": prefix}, cause=exc) from exc
        return cursor.rowcount


class ResultCache:
    """JSON cache in front of retrieval calls that swallows every failure."""

    def __init__(self, transport: CacheTransport, *, default_ttl: int | None = DEFAULT_TTL) -> None:
        self.transport = transport
        self.default_ttl = default_ttl

    def get(self, key: str) -> Any | None:
        try:
            raw = self.transport.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            LOGGER.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            return None

    def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        try:
            self.transport.set(key, json.dumps(value), ttl)
            return True
        except Exception as exc:
            LOGGER.warning("Cache write failed for %s: %s", key, exc)
            return False

    def put_forever(self, key: str, value: Any) -> bool:
        """Store without expiry; used for entries swept on every mutation."""
        try:
            self.transport.set(key, json.dumps(value), None)
            return True
        except Exception as exc:
            LOGGER.warning("Cache write failed for %s: %s", key, exc)
            return False

    def invalidate_documents(self) -> bool:
        """Sweep every query result and document listing.

        Keys are opaque hashes, so a change to any document clears them all.
        Returns ``False`` when the sweep could not be completed.
        """
        ok = True
        for prefix in (SEARCH_PREFIX, DOCUMENTS_PREFIX):
            try:
                self.transport.delete_prefix(prefix)
            except Exception as exc:
                LOGGER.warning("Cache invalidation failed for prefix %s: %s", prefix, exc)
                ok = False
        return ok
