"""
Offline runtime: one instance of every component, sharing one HTTP session.
This is the surface the player UI talks to.
"""
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import aiohttp

from m3w_offline.config.settings import Settings, settings as default_settings
from m3w_offline.services.backend import BackendClient
from m3w_offline.services.cache_state import CacheStateReconciler, CacheValidator
from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.downloads import DownloadQueue
from m3w_offline.services.lifecycle import WorkerLifecycle
from m3w_offline.services.media_cache import MediaCache, ProgressCallback
from m3w_offline.services.media_store import MediaStore
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.metadata_sync import MetadataSyncEngine
from m3w_offline.services.models import (
    BulkCacheResult,
    DownloadQueueStatus,
    EntityKind,
    LibraryCacheStats,
    MediaRequest,
    MediaResponse,
    MutationOperation,
    PendingMutation,
    PlaybackState,
    QuotaLevel,
    ReconcileStats,
    ReplayResult,
    StorageQuotaSnapshot,
    SyncResult,
    Track,
)
from m3w_offline.services.mutations import MutationQueue
from m3w_offline.services.preloader import TrackPreloader
from m3w_offline.services.quota import MediaStorageEstimator, QuotaMonitor
from m3w_offline.services.storage import StorageError
from m3w_offline.services.token_store import TokenStore
from m3w_offline.services.worker import MediaWorker
from m3w_offline.utils.cancellation import CancellationToken
from m3w_offline.utils.http_client import build_session

logger = logging.getLogger(__name__)

QuotaCallback = Callable[[StorageQuotaSnapshot], Union[None, Awaitable[None]]]


class OfflineRuntime:
    def __init__(
        self,
        config: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        serve: bool = True,
    ):
        self.config = config or default_settings
        cfg = self.config
        self._owns_session = session is None
        self.session = session or build_session()
        self.playback = PlaybackState()

        self.tokens = TokenStore(cfg.db_path(cfg.AUTH_DB_NAME))
        self.media_store = MediaStore(cfg.db_path(cfg.MEDIA_DB_NAME), quota_bytes=cfg.quota_bytes)
        self.metadata_store = MetadataStore(cfg.db_path(cfg.METADATA_DB_NAME))
        self.quota = QuotaMonitor(
            MediaStorageEstimator(self.media_store, cfg.quota_bytes, cfg.DATA_DIR)
        )
        self.connectivity = ConnectivityMonitor(
            self.session,
            health_url=f"{cfg.BACKEND_URL.rstrip('/')}/health",
            probe_interval=cfg.CONNECTIVITY_PROBE_SECONDS,
        )
        self.media_cache = MediaCache(
            self.media_store,
            self.tokens,
            self.session,
            self.metadata_store,
            self.quota,
            backend_url=cfg.BACKEND_URL,
            cache_prefix=cfg.MEDIA_CACHE_PREFIX,
            cache_version=cfg.MEDIA_CACHE_VERSION,
            concurrency=cfg.BULK_CACHE_CONCURRENCY,
        )
        self.preloader = TrackPreloader(
            self._fetch_media, limit=cfg.PRELOAD_LIMIT, playback=self.playback
        )
        self.media_cache.set_protected_ids_provider(self._protected_song_ids)
        self.backend = BackendClient(self.session, self.tokens, cfg.BACKEND_URL)
        self.sync = MetadataSyncEngine(
            self.backend,
            self.metadata_store,
            self.connectivity,
            interval_seconds=cfg.SYNC_INTERVAL_SECONDS,
            batch_size=cfg.SYNC_BATCH_SIZE,
        )
        self.downloads = DownloadQueue(
            self.media_cache,
            self.metadata_store,
            self.connectivity,
            policy=cfg.AUTO_DOWNLOAD,
            concurrency=cfg.DOWNLOAD_CONCURRENCY,
            max_retries=cfg.DOWNLOAD_MAX_RETRIES,
            retry_delay=cfg.DOWNLOAD_RETRY_DELAY_SECONDS,
        )
        self.cache_state = CacheStateReconciler(
            self.media_cache,
            self.metadata_store,
            interval_seconds=cfg.CACHE_STATE_INTERVAL_SECONDS,
            batch_size=cfg.CACHE_STATE_BATCH_SIZE,
        )
        self.validator = CacheValidator(
            self.media_cache,
            self.metadata_store,
            expiry_seconds=cfg.CACHE_VALIDATOR_EXPIRY_SECONDS,
        )
        self.mutations = MutationQueue(
            self.backend,
            self.metadata_store,
            self.connectivity,
            interval_seconds=cfg.MUTATION_REPLAY_SECONDS,
            max_retries=cfg.MUTATION_MAX_RETRIES,
        )
        self.sync.subscribe(self._after_sync)
        self.downloads.subscribe(lambda song_id, library_id: self.validator.invalidate(song_id))
        self.worker = MediaWorker(
            self.media_cache,
            self.session,
            backend_url=cfg.BACKEND_URL,
            host=cfg.WORKER_HOST,
            port=cfg.WORKER_PORT,
        )
        self.lifecycle = WorkerLifecycle(
            self.worker,
            self.session,
            self.connectivity,
            manifest_url=cfg.manifest_url,
            check_interval=cfg.update_check_interval,
            serve=serve,
        )
        self._cancel_quota_watch: Optional[Callable[[], None]] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.connectivity.probe()
        self.connectivity.start()
        await self.lifecycle.start()
        self.sync.start()
        self.downloads.start()
        self.cache_state.start()
        self.mutations.start()
        self._cancel_quota_watch = self.quota.monitor(
            self._on_quota, self.config.QUOTA_POLL_SECONDS
        )
        logger.info("Offline runtime started", extra={"cache": self.media_cache.cache_name})

    async def stop(self) -> None:
        if self._cancel_quota_watch is not None:
            self._cancel_quota_watch()
            self._cancel_quota_watch = None
        await self.mutations.stop()
        await self.cache_state.stop()
        await self.downloads.close()
        await self.sync.stop()
        await self.preloader.close()
        await self.lifecycle.stop()
        await self.connectivity.stop()
        if self._owns_session:
            await self.session.close()
        logger.info("Offline runtime stopped")

    # ── Tokens ───────────────────────────────────────────────────────────────

    async def save_token(self, token: str) -> None:
        try:
            await self.tokens.save_token(token)
        except StorageError as exc:
            logger.error("Failed to persist token", extra={"error": str(exc)})

    async def clear_token(self) -> None:
        try:
            await self.tokens.clear_token()
        except StorageError as exc:
            logger.error("Failed to clear token", extra={"error": str(exc)})

    # ── Cache ────────────────────────────────────────────────────────────────

    async def is_cached(self, song_id: str) -> bool:
        return await self.media_cache.is_cached(song_id)

    async def get_cached_song_ids(self) -> list[str]:
        return await self.media_cache.get_cached_song_ids()

    async def cache_song(
        self,
        song_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        return await self.media_cache.cache_song(song_id, on_progress, cancel)

    async def cache_playlist(
        self,
        playlist_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        return await self.media_cache.cache_playlist(playlist_id, on_progress, cancel)

    async def cache_library(
        self,
        library_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        return await self.media_cache.cache_library(library_id, on_progress, cancel)

    # ── Quota ────────────────────────────────────────────────────────────────

    async def get_storage_quota(self) -> StorageQuotaSnapshot:
        return await self.quota.get_quota()

    def monitor_storage_quota(
        self, callback: QuotaCallback, interval_seconds: Optional[float] = None
    ) -> Callable[[], None]:
        return self.quota.monitor(callback, interval_seconds or self.config.QUOTA_POLL_SECONDS)

    async def _on_quota(self, snapshot: StorageQuotaSnapshot) -> None:
        if snapshot.level is QuotaLevel.CRITICAL:
            evicted = await self.media_cache.evict()
            logger.warning("Critical storage, evicted entries", extra={"evicted": len(evicted)})

    # ── Sync ─────────────────────────────────────────────────────────────────

    async def manual_sync(self) -> SyncResult:
        return await self.sync.manual_sync()

    async def _after_sync(self, result: SyncResult) -> None:
        if not result.success:
            return
        try:
            libraries = await self.metadata_store.list_entities(EntityKind.LIBRARY)
        except StorageError as exc:
            logger.error("Failed to list libraries for auto-download", extra={"error": str(exc)})
            return
        library_ids = [str(r["id"]) for r in libraries if r.get("id") is not None]
        queued = await self.downloads.auto_cache_after_sync(library_ids)
        if queued:
            logger.info("Auto-download queued after sync", extra={"queued": queued})

    # ── Background downloads ─────────────────────────────────────────────────

    async def queue_library_download(self, library_id: str) -> int:
        return await self.downloads.queue_library(library_id, force=True)

    def cancel_library_download(self, library_id: str) -> int:
        return self.downloads.cancel_library(library_id)

    def download_status(self) -> DownloadQueueStatus:
        return self.downloads.status()

    def set_auto_download(self, policy: str) -> None:
        self.downloads.set_policy(policy)

    # ── Cached state ─────────────────────────────────────────────────────────

    async def is_song_playable_offline(self, song_id: str) -> bool:
        return await self.validator.is_song_cached(song_id)

    async def prevalidate_songs(self, song_ids: Iterable[str]) -> dict[str, bool]:
        return await self.validator.prevalidate(song_ids)

    async def reconcile_cache_state(self) -> ReconcileStats:
        return await self.cache_state.reconcile()

    async def library_cache_stats(self, library_id: str) -> LibraryCacheStats:
        return await self.cache_state.library_stats(library_id)

    # ── Offline mutations ────────────────────────────────────────────────────

    async def queue_mutation(
        self,
        kind: EntityKind,
        entity_id: str,
        operation: MutationOperation,
        data: Optional[dict[str, Any]] = None,
    ) -> PendingMutation:
        return await self.mutations.enqueue(kind, entity_id, operation, data)

    async def replay_mutations(self) -> ReplayResult:
        return await self.mutations.replay()

    # ── Playback ─────────────────────────────────────────────────────────────

    def set_current_track(self, song_id: Optional[str], is_playing: bool = True) -> None:
        self.playback.current_song_id = song_id
        self.playback.is_playing = is_playing and song_id is not None

    async def prepare_track(self, track: Track) -> Track:
        return await self.preloader.prepare_track(track)

    def prime_track(self, track: Optional[Track]) -> None:
        self.preloader.prime_track(track)

    def preload_next_in_queue(self, tracks: list[Track], current_index: int) -> None:
        self.preloader.preload_next_in_queue(tracks, current_index)

    async def _fetch_media(self, url: str) -> MediaResponse:
        return await self.media_cache.handle_request(MediaRequest(url=url))

    def _protected_song_ids(self) -> set[str]:
        protected = set(self.preloader.held_track_ids())
        if self.playback.current_song_id:
            protected.add(self.playback.current_song_id)
        return protected
