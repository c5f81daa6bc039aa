"""
Local metadata records (libraries, playlists, songs), per-entity sync state,
each song's cached state, and the queue of offline mutations.
"""
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.models import (
    EntityKind,
    MutationOperation,
    PendingMutation,
    SongCacheState,
    SyncState,
)
from m3w_offline.services.storage import open_database, wrap_sqlite_error

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS entities (
        kind TEXT NOT NULL,
        id TEXT NOT NULL,
        parent_id TEXT,
        position INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL,
        PRIMARY KEY (kind, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entities_parent ON entities (kind, parent_id)",
    """
    CREATE TABLE IF NOT EXISTS playlist_songs (
        playlist_id TEXT NOT NULL,
        song_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (playlist_id, song_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        kind TEXT NOT NULL,
        id TEXT NOT NULL,
        last_synced_at REAL,
        revision TEXT,
        pending INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (kind, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS song_cache_state (
        song_id TEXT PRIMARY KEY,
        is_cached INTEGER NOT NULL,
        cache_size INTEGER,
        checked_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mutations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        data TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_at REAL NOT NULL
    )
    """,
)


class MetadataStore:
    def __init__(self, db_path: Optional[Path] = None):
        self._path = db_path or settings.db_path(settings.METADATA_DB_NAME)

    def _connect(self):
        return open_database(self._path, _SCHEMA_VERSION, _SCHEMA)

    async def _fetch_all(self, query: str, params: tuple, action: str) -> list[tuple]:
        async with self._connect() as db:
            try:
                async with db.execute(query, params) as cursor:
                    return list(await cursor.fetchall())
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, action) from exc

    # ── Entities ─────────────────────────────────────────────────────────────

    async def get_entity(self, kind: EntityKind, entity_id: str) -> Optional[dict[str, Any]]:
        rows = await self._fetch_all(
            "SELECT payload FROM entities WHERE kind = ? AND id = ?",
            (kind.value, entity_id),
            f"Failed to read {kind.value} {entity_id}",
        )
        return json.loads(rows[0][0]) if rows else None

    async def list_entities(self, kind: EntityKind) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            "SELECT payload FROM entities WHERE kind = ? ORDER BY id",
            (kind.value,),
            f"Failed to list {kind.value} records",
        )
        return [json.loads(row[0]) for row in rows]

    async def library_song_ids(self, library_id: str) -> list[str]:
        rows = await self._fetch_all(
            "SELECT id FROM entities WHERE kind = ? AND parent_id = ? ORDER BY position, id",
            (EntityKind.SONG.value, library_id),
            f"Failed to list songs of library {library_id}",
        )
        return [row[0] for row in rows]

    async def playlist_song_ids(self, playlist_id: str) -> list[str]:
        rows = await self._fetch_all(
            "SELECT song_id FROM playlist_songs WHERE playlist_id = ? ORDER BY position",
            (playlist_id,),
            f"Failed to list songs of playlist {playlist_id}",
        )
        return [row[0] for row in rows]

    async def apply_synced(
        self,
        kind: EntityKind,
        entity_id: str,
        payload: Optional[dict[str, Any]],
        revision: str,
        synced_at: float,
        parent_id: Optional[str] = None,
        position: Optional[int] = None,
    ) -> None:
        """
        Record a successful fetch. When payload is None the local record is
        already current and only the sync state moves. Data and state commit together.
        A None parent_id or position keeps the stored placement.
        """
        async with self._connect() as db:
            try:
                if payload is not None:
                    await db.execute(
                        """
                        INSERT INTO entities (kind, id, parent_id, position, payload)
                        VALUES (?, ?, ?, COALESCE(?, 0), ?)
                        ON CONFLICT (kind, id) DO UPDATE SET
                            payload = excluded.payload,
                            parent_id = COALESCE(excluded.parent_id, entities.parent_id),
                            position = COALESCE(?, entities.position)
                        """,
                        (
                            kind.value,
                            entity_id,
                            parent_id,
                            position,
                            json.dumps(payload, sort_keys=True),
                            position,
                        ),
                    )
                elif parent_id is not None or position is not None:
                    await db.execute(
                        """
                        UPDATE entities SET
                            parent_id = COALESCE(?, parent_id),
                            position = COALESCE(?, position)
                        WHERE kind = ? AND id = ?
                        """,
                        (parent_id, position, kind.value, entity_id),
                    )
                await db.execute(
                    """
                    INSERT OR REPLACE INTO sync_state (kind, id, last_synced_at, revision, pending)
                    VALUES (?, ?, ?, ?, 0)
                    """,
                    (kind.value, entity_id, synced_at, revision),
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to apply {kind.value} {entity_id}") from exc

    async def delete_entity(self, kind: EntityKind, entity_id: str) -> bool:
        """Drop the record and its sync state (and playlist links when kind is PLAYLIST)."""
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    "DELETE FROM entities WHERE kind = ? AND id = ?", (kind.value, entity_id)
                )
                await db.execute(
                    "DELETE FROM sync_state WHERE kind = ? AND id = ?", (kind.value, entity_id)
                )
                if kind is EntityKind.PLAYLIST:
                    await db.execute(
                        "DELETE FROM playlist_songs WHERE playlist_id = ?", (entity_id,)
                    )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to delete {kind.value} {entity_id}") from exc
        return cursor.rowcount > 0

    async def replace_playlist_songs(self, playlist_id: str, song_ids: Iterable[str]) -> None:
        async with self._connect() as db:
            try:
                await db.execute(
                    "DELETE FROM playlist_songs WHERE playlist_id = ?", (playlist_id,)
                )
                await db.executemany(
                    "INSERT OR REPLACE INTO playlist_songs (playlist_id, song_id, position) VALUES (?, ?, ?)",
                    [(playlist_id, song_id, i) for i, song_id in enumerate(song_ids)],
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to store playlist {playlist_id} songs") from exc

    # ── Sync state ───────────────────────────────────────────────────────────

    async def get_sync_state(self, kind: EntityKind, entity_id: str) -> Optional[SyncState]:
        rows = await self._fetch_all(
            "SELECT last_synced_at, revision, pending FROM sync_state WHERE kind = ? AND id = ?",
            (kind.value, entity_id),
            f"Failed to read sync state of {kind.value} {entity_id}",
        )
        if not rows:
            return None
        last_synced_at, revision, pending = rows[0]
        return SyncState(
            kind=kind,
            entity_id=entity_id,
            last_synced_at=last_synced_at,
            revision=revision,
            pending=bool(pending),
        )

    async def mark_pending(self, kind: EntityKind, entity_ids: Iterable[str]) -> None:
        """Flag entities as awaiting sync, creating state rows lazily."""
        rows = [(kind.value, entity_id) for entity_id in entity_ids]
        if not rows:
            return
        async with self._connect() as db:
            try:
                await db.executemany(
                    """
                    INSERT INTO sync_state (kind, id, pending) VALUES (?, ?, 1)
                    ON CONFLICT (kind, id) DO UPDATE SET pending = 1
                    """,
                    rows,
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, "Failed to mark entities pending") from exc

    async def pending(self, kind: Optional[EntityKind] = None) -> list[tuple[EntityKind, str]]:
        if kind is None:
            query, params = "SELECT kind, id FROM sync_state WHERE pending = 1 ORDER BY kind, id", ()
        else:
            query = "SELECT kind, id FROM sync_state WHERE pending = 1 AND kind = ? ORDER BY id"
            params = (kind.value,)
        rows = await self._fetch_all(query, params, "Failed to list pending entities")
        return [(EntityKind(row[0]), row[1]) for row in rows]

    # ── Song cache state ─────────────────────────────────────────────────────

    async def get_cache_state(self, song_id: str) -> Optional[SongCacheState]:
        rows = await self._fetch_all(
            "SELECT is_cached, cache_size, checked_at FROM song_cache_state WHERE song_id = ?",
            (song_id,),
            f"Failed to read cache state of {song_id}",
        )
        if not rows:
            return None
        is_cached, cache_size, checked_at = rows[0]
        return SongCacheState(
            song_id=song_id,
            is_cached=bool(is_cached),
            cache_size=cache_size,
            checked_at=checked_at,
        )

    async def update_cache_state(self, state: SongCacheState) -> bool:
        """Store state. Returns True when is_cached or cache_size changed (no row reads as not cached)."""
        async with self._connect() as db:
            try:
                async with db.execute(
                    "SELECT is_cached, cache_size FROM song_cache_state WHERE song_id = ?",
                    (state.song_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                await db.execute(
                    """
                    INSERT OR REPLACE INTO song_cache_state (song_id, is_cached, cache_size, checked_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (state.song_id, int(state.is_cached), state.cache_size, state.checked_at),
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to store cache state of {state.song_id}") from exc
        previous = (bool(row[0]), row[1]) if row is not None else (False, None)
        return previous != (state.is_cached, state.cache_size)

    # ── Offline mutations ────────────────────────────────────────────────────

    async def enqueue_mutation(self, mutation: PendingMutation) -> int:
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO mutations (kind, entity_id, operation, data, retry_count, created_at)
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (
                        mutation.kind.value,
                        mutation.entity_id,
                        mutation.operation.value,
                        json.dumps(mutation.data) if mutation.data is not None else None,
                        mutation.created_at,
                    ),
                )
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to queue {mutation.operation.value}") from exc
        return cursor.lastrowid

    async def list_mutations(self) -> list[PendingMutation]:
        rows = await self._fetch_all(
            """
            SELECT id, kind, entity_id, operation, data, retry_count, error, created_at
            FROM mutations ORDER BY id
            """,
            (),
            "Failed to list queued mutations",
        )
        return [
            PendingMutation(
                id=row[0],
                kind=EntityKind(row[1]),
                entity_id=row[2],
                operation=MutationOperation(row[3]),
                data=json.loads(row[4]) if row[4] is not None else None,
                retry_count=row[5],
                error=row[6],
                created_at=row[7],
            )
            for row in rows
        ]

    async def delete_mutation(self, mutation_id: int) -> None:
        async with self._connect() as db:
            try:
                await db.execute("DELETE FROM mutations WHERE id = ?", (mutation_id,))
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, f"Failed to delete mutation {mutation_id}") from exc

    async def record_mutation_failure(self, mutation_id: int, error: str) -> int:
        """Bump the retry count. Returns the new count."""
        async with self._connect() as db:
            try:
                await db.execute(
                    "UPDATE mutations SET retry_count = retry_count + 1, error = ? WHERE id = ?",
                    (error[:500], mutation_id),
                )
                async with db.execute(
                    "SELECT retry_count FROM mutations WHERE id = ?", (mutation_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                raise wrap_sqlite_error(exc, f"Failed to update mutation {mutation_id}") from exc
        return row[0] if row else 0
