"""
Background download queue.
- Songs are queued once (de-duplicated by song id) and downloaded in FIFO order.
- At most DOWNLOAD_CONCURRENCY downloads run at a time; downloads pause while offline.
- Transient failures are retried up to DOWNLOAD_MAX_RETRIES times, the n-th
  retry waiting n * DOWNLOAD_RETRY_DELAY_SECONDS. A 404 is permanent.
- Queueing after a sync obeys the auto-download policy; manual queueing
  (force=True) always goes ahead.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Iterable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.media_cache import MediaCache
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.models import (
    AutoDownloadPolicy,
    DownloadQueueStatus,
    DownloadTask,
    EntityKind,
    SongCacheState,
)
from m3w_offline.services.storage import StorageError
from m3w_offline.utils.http_client import NetworkError

logger = logging.getLogger(__name__)

SongCachedListener = Callable[[str, Optional[str]], None]

_PERMANENT_STATUSES = {404, 410}


def can_auto_download(
    policy: AutoDownloadPolicy, connectivity: Optional[ConnectivityMonitor] = None
) -> bool:
    if policy is AutoDownloadPolicy.OFF:
        return False
    if connectivity is None:
        return True
    # wifi-only blocks cellular links; an unknown link type is treated as unmetered
    if policy is AutoDownloadPolicy.WIFI_ONLY and connectivity.connection_type == "cellular":
        return False
    return connectivity.is_online


class DownloadQueue:
    def __init__(
        self,
        media_cache: MediaCache,
        metadata: MetadataStore,
        connectivity: Optional[ConnectivityMonitor] = None,
        *,
        policy: str = settings.AUTO_DOWNLOAD,
        concurrency: int = settings.DOWNLOAD_CONCURRENCY,
        max_retries: int = settings.DOWNLOAD_MAX_RETRIES,
        retry_delay: float = settings.DOWNLOAD_RETRY_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = media_cache
        self._metadata = metadata
        self._connectivity = connectivity
        self._policy = AutoDownloadPolicy(policy)
        self._concurrency = max(1, concurrency)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._clock = clock
        self._queue: "OrderedDict[str, DownloadTask]" = OrderedDict()
        self._active: dict[str, asyncio.Task] = {}
        self._retries: set[asyncio.Task] = set()
        self._listeners: list[SongCachedListener] = []
        self._idle = asyncio.Event()
        self._idle.set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

    @property
    def policy(self) -> AutoDownloadPolicy:
        return self._policy

    def set_policy(self, policy: str) -> None:
        self._policy = AutoDownloadPolicy(policy)
        logger.info("Auto-download policy changed", extra={"policy": self._policy.value})

    def subscribe(self, listener: SongCachedListener) -> Callable[[], None]:
        """listener(song_id, library_id) runs after each successful download."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        self._closed = False
        if self._connectivity is not None and self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity_change)

    async def close(self) -> None:
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._queue.clear()
        tasks = list(self._active.values()) + list(self._retries)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._active.clear()
        self._retries.clear()
        self._idle.set()

    # ── Queueing ─────────────────────────────────────────────────────────────

    async def queue_library(self, library_id: str, force: bool = False) -> int:
        """Queue every uncached song of a library. Returns how many were added."""
        if not force and not can_auto_download(self._policy, self._connectivity):
            logger.debug(
                "Auto-download not allowed",
                extra={"library_id": library_id, "policy": self._policy.value},
            )
            return 0
        try:
            song_ids = await self._metadata.library_song_ids(library_id)
        except StorageError as exc:
            logger.error("Failed to list library songs", extra={"library_id": library_id, "error": str(exc)})
            return 0

        queued = 0
        for song_id in song_ids:
            if await self._cache.is_cached(song_id):
                continue
            if self._add(DownloadTask(song_id=song_id, library_id=library_id)):
                queued += 1
        logger.info("Queued library download", extra={"library_id": library_id, "queued": queued})
        self._pump()
        return queued

    def queue_song(self, song_id: str, library_id: Optional[str] = None) -> bool:
        added = self._add(DownloadTask(song_id=song_id, library_id=library_id))
        self._pump()
        return added

    async def auto_cache_after_sync(self, library_ids: Iterable[str]) -> int:
        if not can_auto_download(self._policy, self._connectivity):
            logger.debug("Auto-download skipped after sync", extra={"policy": self._policy.value})
            return 0
        queued = 0
        for library_id in library_ids:
            queued += await self.queue_library(library_id)
        return queued

    def cancel_library(self, library_id: str) -> int:
        """Drop queued (not yet running) downloads of one library."""
        doomed = [song_id for song_id, task in self._queue.items() if task.library_id == library_id]
        for song_id in doomed:
            del self._queue[song_id]
        logger.info("Cancelled library downloads", extra={"library_id": library_id, "cancelled": len(doomed)})
        self._settle()
        return len(doomed)

    def cancel_all(self) -> int:
        cancelled = len(self._queue)
        self._queue.clear()
        logger.info("Cancelled all pending downloads", extra={"cancelled": cancelled})
        self._settle()
        return cancelled

    def status(self) -> DownloadQueueStatus:
        return DownloadQueueStatus(
            pending=len(self._queue),
            active=len(self._active),
            retrying=len(self._retries),
        )

    async def join(self) -> None:
        """Wait until nothing is running or scheduled for retry (a paused queue counts as idle)."""
        await self._idle.wait()

    # ── Processing ───────────────────────────────────────────────────────────

    def _online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._pump()
        else:
            self._settle()

    def _add(self, task: DownloadTask) -> bool:
        if self._closed or task.song_id in self._queue or task.song_id in self._active:
            return False
        self._queue[task.song_id] = task
        return True

    def _pump(self) -> None:
        if self._closed:
            return
        while self._queue and len(self._active) < self._concurrency:
            if not self._online():
                logger.debug("Offline, downloads paused", extra={"pending": len(self._queue)})
                break
            song_id, task = self._queue.popitem(last=False)
            worker = asyncio.get_running_loop().create_task(self._process(task))
            self._active[song_id] = worker
            worker.add_done_callback(lambda done, song_id=song_id: self._finished(song_id))
        self._settle()

    def _finished(self, song_id: str) -> None:
        self._active.pop(song_id, None)
        self._pump()

    def _settle(self) -> None:
        busy = self._active or self._retries or (self._queue and self._online())
        if busy and not self._closed:
            self._idle.clear()
        else:
            self._idle.set()

    async def _process(self, task: DownloadTask) -> None:
        try:
            # sync may have removed the song since it was queued
            if await self._metadata.get_entity(EntityKind.SONG, task.song_id) is None:
                logger.debug("Song no longer exists, skipping", extra={"song_id": task.song_id})
                return
            if await self._cache.is_cached(task.song_id):
                return
            size = await self._cache.download_song(task.song_id)
        except (NetworkError, StorageError) as exc:
            self._on_failure(task, exc)
            return

        try:
            await self._metadata.update_cache_state(
                SongCacheState(task.song_id, True, size, self._clock())
            )
        except StorageError as exc:
            logger.error("Failed to record cached song", extra={"song_id": task.song_id, "error": str(exc)})
        logger.debug("Song downloaded", extra={"song_id": task.song_id, "size": size})
        for listener in list(self._listeners):
            try:
                listener(task.song_id, task.library_id)
            except Exception:
                logger.exception("Download listener failed")

    def _on_failure(self, task: DownloadTask, exc: Exception) -> None:
        if isinstance(exc, NetworkError) and exc.status in _PERMANENT_STATUSES:
            logger.info("Song not available, not retrying", extra={"song_id": task.song_id, "status": exc.status})
            return
        if task.retries >= self._max_retries:
            logger.warning("Max retries reached", extra={"song_id": task.song_id, "error": str(exc)})
            return
        task.retries += 1
        delay = self._retry_delay * task.retries
        logger.warning(
            "Download failed, will retry",
            extra={"song_id": task.song_id, "attempt": task.retries, "wait": delay, "error": str(exc)},
        )
        retry = asyncio.get_running_loop().create_task(self._retry_later(task, delay))
        self._retries.add(retry)
        retry.add_done_callback(self._retry_done)

    async def _retry_later(self, task: DownloadTask, delay: float) -> None:
        await asyncio.sleep(delay)
        self._add(task)

    def _retry_done(self, retry: asyncio.Task) -> None:
        self._retries.discard(retry)
        self._pump()
