"""
Connectivity monitor.
Probes the backend health endpoint and notifies listeners on
offline → online / online → offline transitions. The embedding app reports
the link type ("wifi", "ethernet", "cellular"), which auto-download policy reads.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

import aiohttp

from m3w_offline.config.settings import settings

logger = logging.getLogger(__name__)

TransitionListener = Callable[[bool], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        health_url: Optional[str] = None,
        probe_interval: float = settings.CONNECTIVITY_PROBE_SECONDS,
        initially_online: bool = True,
        connection_type: str = "unknown",
    ):
        self._session = session
        self._health_url = health_url or f"{settings.BACKEND_URL.rstrip('/')}/health"
        self._interval = probe_interval
        self._online = initially_online
        self.connection_type = connection_type
        self._listeners: list[TransitionListener] = []
        self._task: Optional[asyncio.Task] = None
        self._notify_tasks: set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_connection_type(self, connection_type: str) -> None:
        if connection_type != self.connection_type:
            logger.info("Connection type changed", extra={"connection_type": connection_type})
            self.connection_type = connection_type

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed", extra={"online": online})
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._notify_tasks.add(task)
                    task.add_done_callback(self._notify_tasks.discard)
            except Exception:
                logger.exception("Connectivity listener failed")

    async def probe(self) -> bool:
        if self._session is None:
            return self._online
        try:
            async with self._session.get(
                self._health_url, timeout=aiohttp.ClientTimeout(total=5)
            ) as resp:
                online = resp.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError):
            online = False
        self.set_online(online)
        return online

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._probe_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _probe_loop(self) -> None:
        while True:
            await self.probe()
            await asyncio.sleep(self._interval)
