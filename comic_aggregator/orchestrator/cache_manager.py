"""
Cache management for the Comic Aggregator.

SQLite-based key-value cache with per-entry TTL, hit statistics and
orjson serialization. Any object satisfying ``CacheStore`` can replace it.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Union

import orjson

from comic_aggregator.config import CacheConfig
from comic_aggregator.utils.exceptions import CacheError

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


class CacheStore(Protocol):
    """Minimal cache interface used by the orchestrator."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        ...


class CacheManager:
    """
    SQLite-based cache manager with TTL and statistics tracking.

    Features:
    - Per-entry TTL (defaults to CacheConfig.TTL_SECONDS)
    - Expired rows are invisible to reads and purged by ``clear_expired``
    - Hit count and last access time per entry
    - Prefix invalidation (e.g. every key of one source)
    - Thread-safe operations

    Attributes:
        db_path: Path to SQLite database file, or ``":memory:"``
        ttl_seconds: Default time-to-live for cache entries

    Example:
        >>> with CacheManager(db_path=Path("data/cache.db")) as cache:
        ...     cache.set("scrape_aqua:latest:1", {"data": []}, ttl_seconds=180)
        ...     cache.get("scrape_aqua:latest:1")
        {'data': []}
    """

    def __init__(
        self,
        db_path: Optional[Union[Path, str]] = None,
        ttl_seconds: Optional[int] = None
    ):
        """
        Initialize cache manager.

        Args:
            db_path: Path to SQLite database (defaults to CacheConfig.DB_PATH)
            ttl_seconds: Default TTL in seconds (defaults to CacheConfig.TTL_SECONDS)
        """
        if db_path == IN_MEMORY:
            self.db_path: Union[Path, str] = IN_MEMORY
        else:
            self.db_path = Path(db_path) if db_path else CacheConfig.DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.ttl_seconds = ttl_seconds or CacheConfig.TTL_SECONDS
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        self._initialize_database()

        logger.info(
            f"CacheManager initialized: db={self.db_path}, ttl={self.ttl_seconds}s"
        )

    def _initialize_database(self) -> None:
        """Create database schema if it doesn't exist."""
        try:
            with self._lock:
                cursor = self._get_connection().cursor()
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS cache (
                        cache_key TEXT PRIMARY KEY,
                        data BLOB NOT NULL,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        hit_count INTEGER DEFAULT 0,
                        last_accessed TEXT
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_expires_at
                    ON cache(expires_at)
                """)
            logger.debug("Database schema initialized successfully")

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to initialize database: {e}",
                operation="initialize",
                db_path=str(self.db_path)
            )

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # Maintenance runs on a scheduler thread
                isolation_level=None  # Autocommit
            )
            self._connection.row_factory = sqlite3.Row
        return self._connection

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve a value if present and not expired.

        Args:
            key: Cache key

        Returns:
            Cached value, or None on miss

        Raises:
            CacheError: If cache read operation fails
        """
        try:
            with self._lock:
                cursor = self._get_connection().cursor()
                now = self._now().isoformat()

                cursor.execute("""
                    SELECT data, hit_count
                    FROM cache
                    WHERE cache_key = ?
                    AND expires_at > ?
                """, (key, now))
                row = cursor.fetchone()

                if row is None:
                    logger.debug(f"Cache miss: {key}")
                    return None

                cursor.execute("""
                    UPDATE cache
                    SET hit_count = hit_count + 1,
                        last_accessed = ?
                    WHERE cache_key = ?
                """, (now, key))

            value = orjson.loads(row["data"])
            logger.debug(f"Cache hit: {key} (hits={row['hit_count'] + 1})")
            return value

        except (sqlite3.Error, orjson.JSONDecodeError) as e:
            raise CacheError(
                f"Failed to read from cache: {e}",
                operation="read",
                cache_key=key
            )

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Store a JSON-compatible value.

        Args:
            key: Cache key
            value: Value to cache
            ttl_seconds: Entry TTL (defaults to the manager's TTL)

        Returns:
            True once stored

        Raises:
            CacheError: If the value cannot be serialized or stored
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds

        try:
            created_at = self._now()
            expires_at = created_at + timedelta(seconds=ttl)
            payload = orjson.dumps(value, option=orjson.OPT_NON_STR_KEYS)

            with self._lock:
                self._get_connection().execute("""
                    INSERT OR REPLACE INTO cache (
                        cache_key, data, created_at, expires_at, hit_count, last_accessed
                    ) VALUES (?, ?, ?, ?, 0, NULL)
                """, (key, payload, created_at.isoformat(), expires_at.isoformat()))

            logger.debug(f"Cached: {key} (expires: {expires_at.isoformat()})")
            return True

        except (sqlite3.Error, orjson.JSONEncodeError, TypeError) as e:
            raise CacheError(
                f"Failed to write to cache: {e}",
                operation="write",
                cache_key=key
            )

    def invalidate(self, key: str) -> bool:
        """
        Delete one entry.

        Returns:
            True if entry was deleted, False if not found
        """
        try:
            with self._lock:
                cursor = self._get_connection().execute(
                    "DELETE FROM cache WHERE cache_key = ?", (key,)
                )
                deleted = cursor.rowcount

            if deleted > 0:
                logger.info(f"Invalidated cache: {key}")
                return True
            logger.debug(f"Cache entry not found: {key}")
            return False

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to invalidate cache: {e}",
                operation="delete",
                cache_key=key
            )

    def invalidate_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with ``prefix``."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            with self._lock:
                cursor = self._get_connection().execute(
                    "DELETE FROM cache WHERE cache_key LIKE ? ESCAPE '\\'", (escaped + "%",)
                )
                deleted = cursor.rowcount
            logger.info(f"Invalidated {deleted} cache entries with prefix {prefix!r}")
            return deleted

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to invalidate cache prefix: {e}",
                operation="delete",
                cache_key=prefix
            )

    def clear_expired(self) -> int:
        """
        Remove all expired cache entries.

        Returns:
            Number of entries removed
        """
        try:
            with self._lock:
                cursor = self._get_connection().execute(
                    "DELETE FROM cache WHERE expires_at <= ?", (self._now().isoformat(),)
                )
                deleted = cursor.rowcount

            if deleted > 0:
                logger.info(f"Cleared {deleted} expired cache entries")
            else:
                logger.debug("No expired cache entries to clear")
            return deleted

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to clear expired entries: {e}",
                operation="clear_expired"
            )

    def get_statistics(self) -> dict:
        """
        Get cache statistics.

        Returns:
            Dictionary containing entry counts (total/expired/valid), hit
            totals, the five most accessed keys, database size and TTL
        """
        try:
            with self._lock:
                cursor = self._get_connection().cursor()
                now = self._now().isoformat()

                cursor.execute("SELECT COUNT(*) as count FROM cache")
                total_entries = cursor.fetchone()["count"]

                cursor.execute(
                    "SELECT COUNT(*) as count FROM cache WHERE expires_at <= ?", (now,)
                )
                expired_entries = cursor.fetchone()["count"]

                cursor.execute("""
                    SELECT
                        SUM(hit_count) as total_hits,
                        AVG(hit_count) as avg_hits
                    FROM cache
                """)
                hit_stats = cursor.fetchone()

                cursor.execute("""
                    SELECT cache_key, hit_count, last_accessed
                    FROM cache
                    WHERE expires_at > ?
                    ORDER BY hit_count DESC
                    LIMIT 5
                """, (now,))
                most_accessed = [
                    {
                        "cache_key": row["cache_key"],
                        "hit_count": row["hit_count"],
                        "last_accessed": row["last_accessed"],
                    }
                    for row in cursor.fetchall()
                ]

            if isinstance(self.db_path, Path) and self.db_path.exists():
                cache_size_bytes = self.db_path.stat().st_size
            else:
                cache_size_bytes = 0

            return {
                "total_entries": total_entries,
                "expired_entries": expired_entries,
                "valid_entries": total_entries - expired_entries,
                "total_hits": hit_stats["total_hits"] or 0,
                "average_hits": round(hit_stats["avg_hits"] or 0.0, 2),
                "most_accessed": most_accessed,
                "cache_size_bytes": cache_size_bytes,
                "ttl_seconds": self.ttl_seconds,
                "db_path": str(self.db_path),
            }

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to retrieve statistics: {e}",
                operation="statistics"
            )

    def clear_all(self, confirm: bool = False) -> int:
        """
        Delete all cache entries.

        Args:
            confirm: Must be True, guards against accidental wipes

        Returns:
            Number of entries deleted

        Raises:
            CacheError: If not confirmed or the delete fails
        """
        if not confirm:
            raise CacheError(
                "clear_all requires explicit confirmation (confirm=True)",
                operation="clear_all"
            )

        try:
            with self._lock:
                cursor = self._get_connection().cursor()
                cursor.execute("SELECT COUNT(*) as count FROM cache")
                total_entries = cursor.fetchone()["count"]
                cursor.execute("DELETE FROM cache")
                cursor.execute("VACUUM")

            logger.warning(f"Cleared ALL {total_entries} cache entries")
            return total_entries

        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to clear all cache entries: {e}",
                operation="clear_all"
            )

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                    logger.debug("Cache database connection closed")
                except sqlite3.Error as e:
                    logger.error(f"Error closing database connection: {e}")
                finally:
                    self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"CacheManager(db_path={self.db_path}, ttl_seconds={self.ttl_seconds})"
