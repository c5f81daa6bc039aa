"""
Per-song cached state.
- CacheStateReconciler walks every known song in batches and corrects the
  recorded state against what the media cache actually holds. Runs once on
  start() and then every CACHE_STATE_INTERVAL_SECONDS.
- CacheValidator answers "is this song playable offline?" right before
  playback, remembering each answer for CACHE_VALIDATOR_EXPIRY_SECONDS.
"""
import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.media_cache import MediaCache
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.models import (
    EntityKind,
    LibraryCacheStats,
    ReconcileStats,
    SongCacheState,
)
from m3w_offline.services.storage import StorageError

logger = logging.getLogger(__name__)


class CacheStateReconciler:
    def __init__(
        self,
        media_cache: MediaCache,
        metadata: MetadataStore,
        *,
        interval_seconds: float = settings.CACHE_STATE_INTERVAL_SECONDS,
        batch_size: int = settings.CACHE_STATE_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = media_cache
        self._metadata = metadata
        self._interval = interval_seconds
        self._batch_size = max(1, batch_size)
        self._clock = clock
        self._run: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._last_run_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._run is not None and not self._run.done()

    @property
    def last_run_at(self) -> Optional[float]:
        return self._last_run_at

    async def reconcile(self) -> ReconcileStats:
        """Run a pass now, or await the one already running."""
        if self._run is None or self._run.done():
            self._run = asyncio.get_running_loop().create_task(self._reconcile())
        return await asyncio.shield(self._run)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._periodic())
            logger.info("Cache state reconciliation started", extra={"interval": self._interval})

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

    async def library_stats(self, library_id: str) -> LibraryCacheStats:
        try:
            song_ids = await self._metadata.library_song_ids(library_id)
        except StorageError as exc:
            logger.error("Failed to list library songs", extra={"library_id": library_id, "error": str(exc)})
            return LibraryCacheStats(total=0, cached=0)
        cached = 0
        for song_id in song_ids:
            if await self._cache.is_cached(song_id):
                cached += 1
        return LibraryCacheStats(total=len(song_ids), cached=cached)

    async def _periodic(self) -> None:
        while True:
            try:
                await self.reconcile()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Cache state reconciliation failed")
            await asyncio.sleep(self._interval)

    async def _reconcile(self) -> ReconcileStats:
        started = time.monotonic()
        stats = ReconcileStats()
        try:
            songs = await self._metadata.list_entities(EntityKind.SONG)
        except StorageError as exc:
            logger.error("Failed to list songs", extra={"error": str(exc)})
            stats.errors += 1
            return stats

        song_ids = [str(r["id"]) for r in songs if isinstance(r, dict) and r.get("id") is not None]
        stats.total_checked = len(song_ids)
        for start in range(0, len(song_ids), self._batch_size):
            batch = song_ids[start:start + self._batch_size]
            outcomes = await asyncio.gather(*(self._check(song_id) for song_id in batch))
            for changed in outcomes:
                if changed is None:
                    stats.errors += 1
                elif changed:
                    stats.mismatches += 1

        self._last_run_at = self._clock()
        stats.duration_seconds = time.monotonic() - started
        logger.info(
            "Cache state reconciled",
            extra={
                "checked": stats.total_checked,
                "mismatches": stats.mismatches,
                "errors": stats.errors,
                "duration": round(stats.duration_seconds, 3),
            },
        )
        return stats

    async def _check(self, song_id: str) -> Optional[bool]:
        """True when the recorded state was wrong, None when it could not be checked."""
        try:
            size = await self._cache.cached_size(song_id)
            state = SongCacheState(song_id, size is not None, size, self._clock())
            changed = await self._metadata.update_cache_state(state)
        except StorageError as exc:
            logger.warning("Cache state check failed", extra={"song_id": song_id, "error": str(exc)})
            return None
        if changed:
            logger.debug("Cache state corrected", extra={"song_id": song_id, "is_cached": state.is_cached})
        return changed


class CacheValidator:
    def __init__(
        self,
        media_cache: MediaCache,
        metadata: MetadataStore,
        *,
        expiry_seconds: float = settings.CACHE_VALIDATOR_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = media_cache
        self._metadata = metadata
        self._expiry = expiry_seconds
        self._clock = clock
        self._memory: dict[str, tuple[bool, float]] = {}

    async def is_song_cached(self, song_id: str) -> bool:
        remembered = self._memory.get(song_id)
        now = self._clock()
        if remembered is not None and now - remembered[1] < self._expiry:
            return remembered[0]
        state = await self.validate_song(song_id)
        self._memory[song_id] = (state.is_cached, now)
        return state.is_cached

    async def validate_song(self, song_id: str) -> SongCacheState:
        now = self._clock()
        try:
            size = await self._cache.cached_size(song_id)
        except StorageError as exc:
            logger.error("Cache validation failed", extra={"song_id": song_id, "error": str(exc)})
            return SongCacheState(song_id, False, None, now)

        state = SongCacheState(song_id, size is not None, size, now)
        try:
            if await self._metadata.update_cache_state(state):
                logger.debug("Cache state updated", extra={"song_id": song_id, "is_cached": state.is_cached})
        except StorageError as exc:
            logger.error("Failed to record cache state", extra={"song_id": song_id, "error": str(exc)})
        return state

    async def prevalidate(self, song_ids: Iterable[str], chunk_size: int = 10) -> dict[str, bool]:
        """Warm the memory for a queue of songs, a few at a time."""
        unique_ids = list(dict.fromkeys(song_ids))
        results: dict[str, bool] = {}
        for start in range(0, len(unique_ids), max(1, chunk_size)):
            chunk = unique_ids[start:start + max(1, chunk_size)]
            flags = await asyncio.gather(*(self.is_song_cached(song_id) for song_id in chunk))
            results.update(zip(chunk, flags))
        return results

    def invalidate(self, song_id: str) -> None:
        self._memory.pop(song_id, None)

    def clear_memory(self) -> None:
        self._memory.clear()
