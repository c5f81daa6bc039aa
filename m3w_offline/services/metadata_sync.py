"""
Metadata sync engine.
- Manual cycles on demand; a caller arriving mid-cycle shares that cycle's result.
- Automatic cycles on start, every SYNC_INTERVAL_SECONDS, and on reconnect.
- Containers (libraries, playlists) are marked pending up front and cleared
  only once their songs have been reconciled.
- Revisions are SHA-256 of the canonical JSON record; unchanged records are
  not rewritten.
"""
import asyncio
import hashlib
import inspect
import json
import logging
import time
from typing import Any, Awaitable, Callable, Iterator, Optional, Sequence, Union

from m3w_offline.config.settings import settings
from m3w_offline.services.backend import BackendClient
from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.models import EntityKind, SyncResult, SyncStatus
from m3w_offline.services.storage import StorageError
from m3w_offline.utils.http_client import AuthExpiredError, NetworkError

logger = logging.getLogger(__name__)

Container = tuple[EntityKind, dict[str, Any]]
SyncListener = Callable[[SyncResult], Union[None, Awaitable[None]]]


def compute_revision(record: dict[str, Any]) -> str:
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _entity_id(record: dict[str, Any]) -> str:
    entity_id = record.get("id") if isinstance(record, dict) else None
    if entity_id is None or entity_id == "":
        raise NetworkError(0, f"Record without id: {record!r:.100}")
    return str(entity_id)


def _chunks(items: Sequence[Container], size: int) -> Iterator[Sequence[Container]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class MetadataSyncEngine:
    def __init__(
        self,
        backend: BackendClient,
        store: MetadataStore,
        connectivity: Optional[ConnectivityMonitor] = None,
        *,
        interval_seconds: float = settings.SYNC_INTERVAL_SECONDS,
        batch_size: int = settings.SYNC_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._store = store
        self._connectivity = connectivity
        self._interval = interval_seconds
        self._batch_size = max(1, batch_size)
        self._clock = clock
        self._cycle: Optional[asyncio.Task] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: set[asyncio.Task] = set()
        self._listeners: list[SyncListener] = []
        self._listener_tasks: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_sync_at: Optional[float] = None
        self._last_result: Optional[SyncResult] = None

    # ── Public API ───────────────────────────────────────────────────────────

    async def manual_sync(self) -> SyncResult:
        """Run a cycle now, or await the one already running."""
        if self._cycle is None or self._cycle.done():
            self._cycle = asyncio.get_running_loop().create_task(self._run_cycle())
        else:
            logger.info("Sync already in progress, joining it")
        # shield: one caller being cancelled must not cancel the shared cycle
        return await asyncio.shield(self._cycle)

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """listener(result) runs after every cycle; coroutine listeners run as background tasks."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        if self._auto_task is None or self._auto_task.done():
            self._auto_task = asyncio.get_running_loop().create_task(self._auto_loop())
            logger.info("Auto sync started", extra={"interval": self._interval})
        if self._connectivity is not None and self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity_change)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._reconnect_tasks) + list(self._listener_tasks)
        if self._auto_task is not None:
            tasks.append(self._auto_task)
            self._auto_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Auto sync stopped")

    @property
    def is_syncing(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def status(self) -> SyncStatus:
        return SyncStatus(
            last_sync_at=self._last_sync_at,
            auto_sync_running=self._auto_task is not None and not self._auto_task.done(),
            is_syncing=self.is_syncing,
            last_result=self._last_result,
        )

    def should_sync(self) -> bool:
        if self._last_sync_at is None:
            return True
        return self._clock() - self._last_sync_at >= self._interval

    # ── Scheduling ───────────────────────────────────────────────────────────

    async def _auto_loop(self) -> None:
        while True:
            if self._connectivity is None or self._connectivity.is_online:
                await self._sync_quietly()
            else:
                logger.debug("Offline, skipping scheduled sync")
            await asyncio.sleep(self._interval)

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        logger.info("Back online, syncing")
        task = asyncio.get_running_loop().create_task(self._sync_quietly())
        self._reconnect_tasks.add(task)
        task.add_done_callback(self._reconnect_tasks.discard)

    async def _sync_quietly(self) -> None:
        try:
            await self.manual_sync()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Automatic sync failed")

    # ── Cycle ────────────────────────────────────────────────────────────────

    async def _run_cycle(self) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(success=False)
        logger.info("Sync started")
        try:
            await self._sync_all(result)
            result.pending = await self._pending_containers()
        except Exception as exc:
            logger.exception("Sync failed")
            result.errors.append(f"Unexpected error: {exc}")
            result.success = False
        finally:
            result.duration_seconds = time.monotonic() - started
            self._last_result = result
            if result.success:
                self._last_sync_at = self._clock()
            logger.info(
                "Sync finished",
                extra={
                    "success": result.success,
                    "updated": result.updated,
                    "unchanged": result.unchanged,
                    "failed": result.failed,
                    "pending": len(result.pending),
                    "duration": round(result.duration_seconds, 3),
                },
            )
        self._notify(result)
        return result

    def _notify(self, result: SyncResult) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(result)
            except Exception:
                logger.exception("Sync listener failed")
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.get_running_loop().create_task(self._await_listener(outcome))
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    async def _await_listener(self, outcome: Awaitable[None]) -> None:
        try:
            await outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sync listener failed")

    async def _pending_containers(self) -> list[tuple[EntityKind, str]]:
        try:
            return await self._store.pending()
        except StorageError as exc:
            logger.warning("Failed to read pending containers", extra={"error": str(exc)})
            return []

    async def _sync_all(self, result: SyncResult) -> None:
        try:
            libraries = await self._backend.list_libraries()
            playlists = await self._backend.list_playlists()
        except NetworkError as exc:
            logger.warning("Failed to fetch containers", extra={"error": str(exc)})
            result.errors.append(str(exc))
            return

        containers: list[Container] = [(EntityKind.LIBRARY, r) for r in libraries]
        containers += [(EntityKind.PLAYLIST, r) for r in playlists]
        result.libraries = len(libraries)
        result.playlists = len(playlists)

        try:
            await self._store.mark_pending(
                EntityKind.LIBRARY, [_entity_id(r) for r in libraries]
            )
            await self._store.mark_pending(
                EntityKind.PLAYLIST, [_entity_id(r) for r in playlists]
            )
        except (NetworkError, StorageError) as exc:
            logger.error("Failed to mark containers pending", extra={"error": str(exc)})
            result.errors.append(str(exc))
            return

        for chunk in _chunks(containers, self._batch_size):
            done = 0
            try:
                for kind, record in chunk:
                    await self._sync_container(kind, record, result)
                    done += 1
            except AuthExpiredError as exc:
                logger.warning("Auth expired, aborting sync", extra={"error": str(exc)})
                result.errors.append(str(exc))
                result.failed += len(chunk) - done
                return
            except (NetworkError, StorageError) as exc:
                # The rest of this chunk stays pending; the next chunk still runs.
                logger.warning(
                    "Container sync failed",
                    extra={"error": str(exc), "left_pending": len(chunk) - done},
                )
                result.errors.append(str(exc))
                result.failed += len(chunk) - done

        result.success = result.failed == 0

    async def _sync_container(
        self, kind: EntityKind, record: dict[str, Any], result: SyncResult
    ) -> None:
        container_id = _entity_id(record)
        if kind is EntityKind.LIBRARY:
            songs = await self._backend.list_library_songs(container_id)
        else:
            songs = await self._backend.list_playlist_songs(container_id)

        song_ids = []
        for position, song in enumerate(songs):
            if kind is EntityKind.LIBRARY:
                parent_id, song_position = container_id, position
            else:
                # Playlist listings keep the song's library placement intact.
                library_id = song.get("libraryId") if isinstance(song, dict) else None
                parent_id, song_position = library_id, None
            song_ids.append(
                await self._apply(EntityKind.SONG, song, result, parent_id, song_position)
            )
        if kind is EntityKind.PLAYLIST:
            await self._store.replace_playlist_songs(container_id, song_ids)
        result.songs += len(song_ids)

        await self._apply(kind, record, result)
        logger.debug(
            "Container synced",
            extra={"kind": kind.value, "id": container_id, "songs": len(song_ids)},
        )

    async def _apply(
        self,
        kind: EntityKind,
        record: dict[str, Any],
        result: SyncResult,
        parent_id: Optional[str] = None,
        position: Optional[int] = None,
    ) -> str:
        entity_id = _entity_id(record)
        revision = compute_revision(record)
        state = await self._store.get_sync_state(kind, entity_id)
        now = self._clock()
        if state is not None and state.revision == revision:
            await self._store.apply_synced(
                kind, entity_id, None, revision, now, parent_id, position
            )
            result.unchanged += 1
        else:
            await self._store.apply_synced(
                kind, entity_id, record, revision, now, parent_id, position
            )
            result.updated += 1
        return entity_id
