"""
Worker lifecycle controller.
- Registers the media worker and reports offline readiness.
- Polls the worker manifest for updates (30s in development, 300s in production).
- A new version is staged and surfaced via need_refresh; it only activates
  when update_worker() is called.
"""
import asyncio
import logging
from typing import Callable, Optional

import aiohttp
from pydantic import ValidationError

from m3w_offline.config.settings import settings
from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.worker import MediaWorker, WorkerManifest
from m3w_offline.utils.http_client import NetworkError, fetch_json

logger = logging.getLogger(__name__)

FlagListener = Callable[[bool], None]


class ObservableFlag:
    def __init__(self, name: str, value: bool = False):
        self.name = name
        self._value = value
        self._listeners: list[FlagListener] = []

    @property
    def value(self) -> bool:
        return self._value

    def __bool__(self) -> bool:
        return self._value

    def set(self, value: bool) -> None:
        if value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Flag listener failed", extra={"flag": self.name})

    def subscribe(self, listener: FlagListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class WorkerLifecycle:
    def __init__(
        self,
        worker: MediaWorker,
        session: aiohttp.ClientSession,
        connectivity: Optional[ConnectivityMonitor] = None,
        *,
        manifest_url: Optional[str] = None,
        check_interval: Optional[float] = None,
        serve: bool = True,
    ):
        self._worker = worker
        self._session = session
        self._connectivity = connectivity
        self._manifest_url = manifest_url or settings.manifest_url
        self._interval = check_interval if check_interval is not None else settings.update_check_interval
        self._serve = serve
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self.need_refresh = ObservableFlag("need_refresh")
        self.offline_ready = ObservableFlag("offline_ready")

    @property
    def worker(self) -> MediaWorker:
        return self._worker

    def _online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    async def start(self) -> None:
        if self._started:
            return
        await self._worker.start(serve=self._serve)
        self._started = True
        self.offline_ready.set(True)
        logger.info("Worker registered, offline ready")
        if self._online():
            await self.check_for_update()
        self._task = asyncio.get_running_loop().create_task(self._update_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._worker.stop()
        self._started = False
        self.close()

    def close(self) -> None:
        self.need_refresh.set(False)
        self.offline_ready.set(False)

    async def check_for_update(self) -> bool:
        """Fetch the manifest and stage a newer version. Never raises."""
        try:
            payload = await fetch_json(self._session, self._manifest_url)
            manifest = WorkerManifest.model_validate(payload)
        except (NetworkError, ValidationError) as exc:
            logger.warning("Update check failed", extra={"error": str(exc)})
            return False
        except Exception:
            logger.exception("Update check failed")
            return False

        if self._worker.install(manifest):
            self.need_refresh.set(True)
            return True
        return False

    async def update_worker(self) -> bool:
        """Activate the waiting worker version."""
        activated = await self._worker.post_message({"kind": "SKIP_WAITING"})
        if activated:
            self.need_refresh.set(False)
        return activated

    async def _update_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._online():
                await self.check_for_update()
