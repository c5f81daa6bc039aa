"""
Offline mutation queue.
Changes made while offline are stored durably and replayed in insertion order
once the backend is reachable: on start(), every MUTATION_REPLAY_SECONDS and
on each offline → online transition.
- A failing mutation stays queued and is dropped after MUTATION_MAX_RETRIES retries.
- A 401 stops the replay; the rest wait for a fresh token.
- The backend's reply is written to the metadata store, so local reads see
  the server's version (a delete removes the local record).
"""
import asyncio
import logging
import time
from typing import Any, Callable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.backend import BackendClient
from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.metadata_sync import compute_revision
from m3w_offline.services.models import (
    EntityKind,
    MutationOperation,
    PendingMutation,
    ReplayResult,
)
from m3w_offline.services.storage import StorageError
from m3w_offline.utils.http_client import AuthExpiredError, NetworkError

logger = logging.getLogger(__name__)


class MutationQueue:
    def __init__(
        self,
        backend: BackendClient,
        store: MetadataStore,
        connectivity: Optional[ConnectivityMonitor] = None,
        *,
        interval_seconds: float = settings.MUTATION_REPLAY_SECONDS,
        max_retries: int = settings.MUTATION_MAX_RETRIES,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._store = store
        self._connectivity = connectivity
        self._interval = interval_seconds
        self._max_retries = max_retries
        self._clock = clock
        self._replay: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def enqueue(
        self,
        kind: EntityKind,
        entity_id: str,
        operation: MutationOperation,
        data: Optional[dict[str, Any]] = None,
    ) -> PendingMutation:
        """Persist a change for later replay. Raises StorageError."""
        mutation = PendingMutation(
            kind=EntityKind(kind),
            entity_id=entity_id,
            operation=MutationOperation(operation),
            data=data,
            created_at=self._clock(),
        )
        mutation.id = await self._store.enqueue_mutation(mutation)
        logger.info(
            "Mutation queued",
            extra={"id": mutation.id, "kind": mutation.kind.value, "operation": mutation.operation.value},
        )
        return mutation

    async def size(self) -> int:
        return len(await self._store.list_mutations())

    @property
    def is_replaying(self) -> bool:
        return self._replay is not None and not self._replay.done()

    async def replay(self) -> ReplayResult:
        """Replay now, or await the replay already running."""
        if self._replay is None or self._replay.done():
            self._replay = asyncio.get_running_loop().create_task(self._run_replay())
        return await asyncio.shield(self._replay)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._periodic())
        if self._connectivity is not None and self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity_change)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._reconnect_tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Scheduling ───────────────────────────────────────────────────────────

    def _online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    async def _periodic(self) -> None:
        while True:
            await self._replay_quietly()
            await asyncio.sleep(self._interval)

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        task = asyncio.get_running_loop().create_task(self._replay_quietly())
        self._reconnect_tasks.add(task)
        task.add_done_callback(self._reconnect_tasks.discard)

    async def _replay_quietly(self) -> None:
        try:
            await self.replay()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Mutation replay failed")

    # ── Replay ───────────────────────────────────────────────────────────────

    async def _run_replay(self) -> ReplayResult:
        result = ReplayResult()
        try:
            items = await self._store.list_mutations()
        except StorageError as exc:
            logger.error("Failed to read queued mutations", extra={"error": str(exc)})
            result.errors.append(str(exc))
            return result
        if not items:
            return result
        if not self._online():
            logger.debug("Offline, mutation replay skipped", extra={"queued": len(items)})
            result.remaining = len(items)
            return result

        logger.info("Replaying queued mutations", extra={"queued": len(items)})
        for item in items:
            try:
                reply = await self._backend.send_mutation(
                    item.operation, item.kind, item.entity_id, item.data
                )
            except AuthExpiredError as exc:
                logger.warning("Auth expired, stopping mutation replay", extra={"id": item.id})
                result.errors.append(str(exc))
                break
            except NetworkError as exc:
                result.errors.append(str(exc))
                try:
                    await self._record_failure(item, exc, result)
                except StorageError as store_exc:
                    logger.error("Failed to record mutation failure", extra={"id": item.id, "error": str(store_exc)})
                    result.errors.append(str(store_exc))
                    break
                continue

            try:
                await self._store.delete_mutation(item.id)
                await self._apply_reply(item, reply)
            except StorageError as exc:
                logger.error("Failed to settle replayed mutation", extra={"id": item.id, "error": str(exc)})
                result.errors.append(str(exc))
                break
            result.synced += 1

        result.remaining = len(items) - result.synced - result.dropped
        logger.info(
            "Mutation replay finished",
            extra={
                "synced": result.synced,
                "failed": result.failed,
                "dropped": result.dropped,
                "remaining": result.remaining,
            },
        )
        return result

    async def _record_failure(
        self, item: PendingMutation, exc: NetworkError, result: ReplayResult
    ) -> None:
        retries = await self._store.record_mutation_failure(item.id, str(exc))
        if retries > self._max_retries:
            await self._store.delete_mutation(item.id)
            result.dropped += 1
            logger.warning(
                "Mutation dropped after retries",
                extra={"id": item.id, "operation": item.operation.value, "error": str(exc)},
            )
        else:
            result.failed += 1
            logger.warning(
                "Mutation replay failed",
                extra={"id": item.id, "retry_count": retries, "error": str(exc)},
            )

    async def _apply_reply(self, item: PendingMutation, reply: Any) -> None:
        if item.operation is MutationOperation.DELETE:
            await self._store.delete_entity(item.kind, item.entity_id)
            return
        if isinstance(reply, dict):
            entity_id = str(reply.get("id") or item.entity_id)
            parent_id = reply.get("libraryId") if item.kind is EntityKind.SONG else None
            await self._store.apply_synced(
                item.kind, entity_id, reply, compute_revision(reply), self._clock(), parent_id
            )
