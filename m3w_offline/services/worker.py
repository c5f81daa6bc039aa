"""
Intercepting media worker.
An aiohttp app that answers media requests from the content cache and
proxies everything else to the backend. Holds an active version and at
most one waiting version; a staged version only activates on SKIP_WAITING.
"""
import asyncio
import logging
from typing import Annotated, Any, Literal, Optional, Union

import aiohttp
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from m3w_offline.config.settings import settings
from m3w_offline.handlers import WORKER_KEY, routes
from m3w_offline.services.media_cache import MediaCache

logger = logging.getLogger(__name__)

_HOP_BY_HOP = {
    "connection",
    "content-encoding",
    "content-length",
    "host",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
}


class WorkerManifest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    worker_version: str
    cache_version: str


# ── Messages ─────────────────────────────────────────────────────────────────

class SkipWaitingMessage(BaseModel):
    kind: Literal["SKIP_WAITING"]


class ClearCacheMessage(BaseModel):
    kind: Literal["CLEAR_CACHE"]


WorkerMessage = Annotated[
    Union[SkipWaitingMessage, ClearCacheMessage], Field(discriminator="kind")
]
_message_adapter: TypeAdapter = TypeAdapter(WorkerMessage)


def parse_message(payload: Any) -> Optional[Union[SkipWaitingMessage, ClearCacheMessage]]:
    try:
        return _message_adapter.validate_python(payload)
    except ValidationError as exc:
        logger.warning(
            "Ignoring unknown worker message",
            extra={"payload": repr(payload)[:200], "errors": exc.error_count()},
        )
        return None


# ── Worker ───────────────────────────────────────────────────────────────────

class MediaWorker:
    def __init__(
        self,
        media_cache: MediaCache,
        session: aiohttp.ClientSession,
        *,
        backend_url: Optional[str] = None,
        host: str = settings.WORKER_HOST,
        port: int = settings.WORKER_PORT,
        version: Optional[WorkerManifest] = None,
    ):
        self.media_cache = media_cache
        self._session = session
        self._backend_url = (backend_url or settings.BACKEND_URL).rstrip("/")
        self._host = host
        self._port = port
        self.active_version = version or WorkerManifest(
            worker_version=settings.WORKER_VERSION,
            cache_version=media_cache.version,
        )
        self.waiting_version: Optional[WorkerManifest] = None
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._lock = asyncio.Lock()

    @property
    def app(self) -> web.Application:
        if self._app is None:
            app = web.Application()
            app[WORKER_KEY] = self
            app.add_routes(routes)
            self._app = app
        return self._app

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self, serve: bool = True) -> None:
        """Activate the current cache generation and, if serve, bind the HTTP listener."""
        await self.media_cache.activate(self.active_version.cache_version)
        if serve and self._runner is None:
            runner = web.AppRunner(self.app)
            await runner.setup()
            site = web.TCPSite(runner, self._host, self._port)
            await site.start()
            self._runner = runner
            logger.info(
                "Media worker listening",
                extra={"host": self._host, "port": self._port, "version": self.active_version.worker_version},
            )

    async def stop(self) -> None:
        await self.media_cache.drain()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Media worker stopped")

    def install(self, manifest: WorkerManifest) -> bool:
        """Stage manifest as the waiting version. Returns True if it is new."""
        if manifest == self.active_version or manifest == self.waiting_version:
            return False
        self.waiting_version = manifest
        logger.info(
            "New worker version waiting",
            extra={
                "active": self.active_version.worker_version,
                "waiting": manifest.worker_version,
                "cache_version": manifest.cache_version,
            },
        )
        return True

    async def post_message(self, payload: Any) -> bool:
        message = parse_message(payload)
        if message is None:
            return False
        if isinstance(message, SkipWaitingMessage):
            return await self._skip_waiting()
        await self.media_cache.clear()
        return True

    async def _skip_waiting(self) -> bool:
        async with self._lock:
            if self.waiting_version is None:
                logger.info("SKIP_WAITING with no waiting version")
                return False
            previous, self.active_version = self.active_version, self.waiting_version
            self.waiting_version = None
            deleted = await self.media_cache.activate(self.active_version.cache_version)
        logger.info(
            "Worker version activated",
            extra={
                "previous": previous.worker_version,
                "active": self.active_version.worker_version,
                "deleted_caches": deleted,
            },
        )
        return True

    def describe(self) -> dict[str, Any]:
        return {
            "active": self.active_version.model_dump(),
            "waiting": self.waiting_version.model_dump() if self.waiting_version else None,
            "cache": self.media_cache.cache_name,
            "running": self.is_running,
        }

    async def passthrough(self, request: web.Request) -> web.Response:
        url = f"{self._backend_url}{request.rel_url}"
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
        body = await request.read() if request.body_exists else None
        try:
            async with self._session.request(
                request.method, url, headers=headers, data=body, allow_redirects=False
            ) as resp:
                payload = await resp.read()
                out_headers = {
                    k: v for k, v in resp.headers.items() if k.lower() not in _HOP_BY_HOP
                }
                return web.Response(status=resp.status, body=payload, headers=out_headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Backend unreachable", extra={"url": url, "error": str(exc)})
            return web.Response(status=502, text="Backend unreachable")
