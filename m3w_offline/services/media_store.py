"""
Persistent media cache storage.
Named caches (one per generation, e.g. "m3w-media-v1") holding whole
responses keyed by resource key. Writes replace a key in one transaction,
so readers see either the complete old bytes or the complete new bytes.
"""
import logging
import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.models import CachedMediaEntry
from m3w_offline.services.storage import (
    QuotaExceededError,
    open_database,
    wrap_sqlite_error,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS caches (
        name TEXT PRIMARY KEY,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        cache_name TEXT NOT NULL,
        key TEXT NOT NULL,
        body BLOB NOT NULL,
        content_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        inserted_at REAL NOT NULL,
        accessed_at REAL NOT NULL,
        expires_at REAL,
        PRIMARY KEY (cache_name, key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entries_lru ON entries (cache_name, accessed_at)",
)


class MediaStore:
    def __init__(
        self,
        db_path: Optional[Path] = None,
        quota_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._path = db_path or settings.db_path(settings.MEDIA_DB_NAME)
        self._quota_bytes = quota_bytes
        self._clock = clock

    def _connect(self):
        return open_database(self._path, _SCHEMA_VERSION, _SCHEMA)

    # ── Cache generations ────────────────────────────────────────────────────

    async def open(self, cache_name: str) -> None:
        async with self._connect() as db:
            try:
                await db.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (cache_name, self._clock()),
                )
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to open cache {cache_name}") from exc

    async def cache_names(self) -> list[str]:
        async with self._connect() as db:
            try:
                async with db.execute("SELECT name FROM caches ORDER BY created_at") as cursor:
                    return [row[0] for row in await cursor.fetchall()]
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, "Failed to list caches") from exc

    async def delete_cache(self, cache_name: str) -> bool:
        async with self._connect() as db:
            try:
                await db.execute("DELETE FROM entries WHERE cache_name = ?", (cache_name,))
                cursor = await db.execute("DELETE FROM caches WHERE name = ?", (cache_name,))
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to delete cache {cache_name}") from exc
        return cursor.rowcount > 0

    # ── Entries ──────────────────────────────────────────────────────────────

    async def put(self, cache_name: str, entry: CachedMediaEntry) -> None:
        async with self._connect() as db:
            try:
                if self._quota_bytes is not None:
                    async with db.execute(
                        "SELECT COALESCE(SUM(size), 0) FROM entries WHERE NOT (cache_name = ? AND key = ?)",
                        (cache_name, entry.key),
                    ) as cursor:
                        (used,) = await cursor.fetchone()
                    if used + entry.size > self._quota_bytes:
                        raise QuotaExceededError(
                            f"Storing {entry.key} ({entry.size} bytes) exceeds quota "
                            f"({used}/{self._quota_bytes} bytes used)"
                        )
                await db.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (cache_name, self._clock()),
                )
                await db.execute(
                    """
                    INSERT OR REPLACE INTO entries
                        (cache_name, key, body, content_type, size, inserted_at, accessed_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        cache_name,
                        entry.key,
                        entry.body,
                        entry.content_type,
                        entry.size,
                        entry.inserted_at,
                        entry.accessed_at,
                        entry.expires_at,
                    ),
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to store {entry.key}") from exc

    async def match(
        self, cache_name: str, key: str, touch: bool = True
    ) -> Optional[CachedMediaEntry]:
        async with self._connect() as db:
            try:
                async with db.execute(
                    """
                    SELECT key, body, content_type, inserted_at, accessed_at, expires_at
                    FROM entries WHERE cache_name = ? AND key = ?
                    """,
                    (cache_name, key),
                ) as cursor:
                    row = await cursor.fetchone()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to read {key}") from exc
            if row is None:
                return None
            entry = CachedMediaEntry(
                key=row[0],
                body=bytes(row[1]),
                content_type=row[2],
                inserted_at=row[3],
                accessed_at=row[4],
                expires_at=row[5],
            )
            if touch:
                entry.accessed_at = self._clock()
                try:
                    await db.execute(
                        "UPDATE entries SET accessed_at = ? WHERE cache_name = ? AND key = ?",
                        (entry.accessed_at, cache_name, key),
                    )
                    await db.commit()
                except sqlite3.Error as exc:
                    # A stale LRU timestamp is harmless; the read still succeeds.
                    logger.warning("Failed to touch entry", extra={"key": key, "error": str(exc)})
            return entry

    async def contains(self, cache_name: str, key: str) -> bool:
        return await self.entry_size(cache_name, key) is not None

    async def entry_size(self, cache_name: str, key: str) -> Optional[int]:
        """Stored size of key in bytes, or None when absent. The body is not loaded."""
        async with self._connect() as db:
            try:
                async with db.execute(
                    "SELECT size FROM entries WHERE cache_name = ? AND key = ?",
                    (cache_name, key),
                ) as cursor:
                    row = await cursor.fetchone()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to check {key}") from exc
        return int(row[0]) if row else None

    async def delete(self, cache_name: str, key: str) -> bool:
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    "DELETE FROM entries WHERE cache_name = ? AND key = ?",
                    (cache_name, key),
                )
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to delete {key}") from exc
        return cursor.rowcount > 0

    async def keys(self, cache_name: str) -> list[str]:
        async with self._connect() as db:
            try:
                async with db.execute(
                    "SELECT key FROM entries WHERE cache_name = ? ORDER BY inserted_at, key",
                    (cache_name,),
                ) as cursor:
                    return [row[0] for row in await cursor.fetchall()]
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to list {cache_name}") from exc

    async def lru_keys(self, cache_name: str) -> list[tuple[str, int]]:
        """(key, size) pairs, least recently accessed first."""
        async with self._connect() as db:
            try:
                async with db.execute(
                    """
                    SELECT key, size FROM entries WHERE cache_name = ?
                    ORDER BY accessed_at, inserted_at, key
                    """,
                    (cache_name,),
                ) as cursor:
                    return [(row[0], row[1]) for row in await cursor.fetchall()]
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to list {cache_name}") from exc

    async def total_size(self, cache_name: Optional[str] = None) -> int:
        if cache_name is None:
            query, params = "SELECT COALESCE(SUM(size), 0) FROM entries", ()
        else:
            query = "SELECT COALESCE(SUM(size), 0) FROM entries WHERE cache_name = ?"
            params = (cache_name,)
        async with self._connect() as db:
            try:
                async with db.execute(query, params) as cursor:
                    (total,) = await cursor.fetchone()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, "Failed to measure cache size") from exc
        return int(total)

    async def clear(self, cache_name: str) -> int:
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    "DELETE FROM entries WHERE cache_name = ?", (cache_name,)
                )
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to clear {cache_name}") from exc
        return cursor.rowcount
