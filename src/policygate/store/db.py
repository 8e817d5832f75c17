"""
SQLite cache backend for policygate.

Persists engine state (ACL rules, permission overrides) in a single SQLite
file so it survives process restarts and can be shared by CLI invocations.

Design Principles:
    - One table of JSON values keyed by cache key
    - Expiry stored as an absolute wall-clock timestamp; NULL never expires
    - Expired rows are treated as misses and removed lazily on read
    - Every write commits immediately (last writer wins)

Tables:
    - schema_version: Applied schema version
    - cache_entries: key, JSON value, expiry, last update time
"""

import json
import sqlite3
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from policygate.errors import StorageConnectionError, StorageReadError, StorageWriteError
from policygate.store.cache import Cache

# Schema version for migrations
SCHEMA_VERSION = 1

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Cache entries: one JSON value per key
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at REAL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at ON cache_entries(expires_at);
"""


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class SqliteCache(Cache):
    """
    SQLite-backed cache with TTL support.

    Usage:
        cache = SqliteCache("policygate.db")
        cache.set("acl_rules", {...})
        value, hit = cache.get("acl_rules")
        cache.close()

    Or use as context manager:
        with SqliteCache("policygate.db") as cache:
            ...
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Will be created if it doesn't exist.
            clock: Wall-clock time source in seconds, injectable for tests
        """
        self.db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to cache database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = cursor.fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SqliteCache":
        """Enter context manager."""
        return self

    # =========================================================================
    # Cache Operations
    # =========================================================================

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT value_json, expires_at FROM cache_entries WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return None, False

                if row["expires_at"] is not None and self._clock() >= row["expires_at"]:
                    self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    self._conn.commit()
                    return None, False

                return json.loads(row["value_json"]), True
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="get",
                    underlying_error=str(e),
                ) from e

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = None if ttl is None else self._clock() + ttl
        try:
            value_json = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StorageWriteError(
                operation="set",
                underlying_error=f"value for '{key}' is not JSON-compatible: {e}",
            ) from e

        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO cache_entries (key, value_json, expires_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        expires_at = excluded.expires_at,
                        updated_at = excluded.updated_at
                    """,
                    (key, value_json, expires_at, now_iso()),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="set",
                    underlying_error=str(e),
                ) from e

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                cursor = self._conn.execute(
                    "DELETE FROM cache_entries WHERE key = ?",
                    (key,),
                )
                self._conn.commit()
                return cursor.rowcount > 0
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="delete",
                    underlying_error=str(e),
                ) from e

    def purge_expired(self) -> int:
        """
        Delete every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            try:
                cursor = self._conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (self._clock(),),
                )
                self._conn.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="purge_expired",
                    underlying_error=str(e),
                ) from e

    def keys(self, prefix: str = "") -> list[str]:
        """
        List live keys, optionally filtered by prefix.

        Args:
            prefix: Only return keys starting with this string

        Returns:
            Sorted list of keys
        """
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """
                    SELECT key FROM cache_entries
                    WHERE (expires_at IS NULL OR expires_at > ?)
                    ORDER BY key
                    """,
                    (self._clock(),),
                )
                return [row["key"] for row in cursor if row["key"].startswith(prefix)]
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="keys",
                    underlying_error=str(e),
                ) from e
