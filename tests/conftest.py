"""
Shared fixtures: an in-process fake backend and stores under tmp_path.
"""
import asyncio
from typing import Any, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from m3w_offline.services.media_cache import MediaCache
from m3w_offline.services.media_store import MediaStore
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.models import EntityKind
from m3w_offline.services.quota import MediaStorageEstimator, QuotaMonitor
from m3w_offline.services.token_store import TokenStore


class FakeBackend:
    """Just enough of the M3W REST API to drive the offline layer."""

    def __init__(self) -> None:
        self.audio: dict[str, bytes] = {}
        self.covers: dict[str, bytes] = {}
        self.libraries: list[dict[str, Any]] = []
        self.playlists: list[dict[str, Any]] = []
        self.library_songs: dict[str, list[dict[str, Any]]] = {}
        self.playlist_songs: dict[str, list[dict[str, Any]]] = {}
        self.manifest: dict[str, Any] = {"worker_version": "1", "cache_version": "v1"}
        self.fail_paths: dict[str, int] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.requests: list[tuple[str, Optional[str]]] = []
        self.mutations: list[tuple[str, str, Any]] = []

    def add_song(self, song_id: str, audio: bytes, cover: Optional[bytes] = b"cover") -> None:
        self.audio[song_id] = audio
        if cover is not None:
            self.covers[song_id] = cover

    def hits(self, path: str) -> int:
        return sum(1 for p, _ in self.requests if p == path)

    def auth_for(self, path: str) -> Optional[str]:
        return [auth for p, auth in self.requests if p == path][-1]

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_get("/api/songs/{song_id}/stream", self._stream)
        app.router.add_get("/api/songs/{song_id}/cover", self._cover)
        app.router.add_get("/api/libraries", self._list(lambda r: self.libraries))
        app.router.add_get("/api/playlists", self._list(lambda r: self.playlists))
        app.router.add_get(
            "/api/libraries/{id}/songs",
            self._list(lambda r: self.library_songs.get(r.match_info["id"], [])),
        )
        app.router.add_get(
            "/api/playlists/{id}/songs",
            self._list(lambda r: self.playlist_songs.get(r.match_info["id"], [])),
        )
        app.router.add_post("/api/{collection}", self._mutate)
        app.router.add_patch("/api/{collection}/{id}", self._mutate)
        app.router.add_delete("/api/{collection}/{id}", self._mutate)
        app.router.add_get("/api/echo", self._echo)
        app.router.add_get("/sw-manifest.json", self._manifest)
        app.router.add_get("/health", self._health)
        return app

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        self.requests.append((request.path, request.headers.get("Authorization")))
        gate = self.gates.get(request.path)
        if gate is not None:
            await gate.wait()
        status = self.fail_paths.get(request.path)
        if status is not None:
            return web.Response(status=status, text="failure")
        return await handler(request)

    def _list(self, getter):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"success": True, "data": getter(request)})

        return handler

    async def _stream(self, request: web.Request) -> web.Response:
        data = self.audio.get(request.match_info["song_id"])
        if data is None:
            raise web.HTTPNotFound()
        range_header = request.headers.get("Range")
        if range_header:
            start, _, end = range_header.removeprefix("bytes=").partition("-")
            last = int(end) if end else len(data) - 1
            return web.Response(
                status=206,
                body=data[int(start):last + 1],
                headers={"Content-Range": f"bytes {start}-{last}/{len(data)}"},
                content_type="audio/mpeg",
            )
        return web.Response(body=data, content_type="audio/mpeg")

    async def _cover(self, request: web.Request) -> web.Response:
        data = self.covers.get(request.match_info["song_id"])
        if data is None:
            raise web.HTTPNotFound()
        return web.Response(body=data, content_type="image/jpeg")

    async def _mutate(self, request: web.Request) -> web.Response:
        body = await request.json() if request.can_read_body else None
        self.mutations.append((request.method, request.path, body))
        if request.method == "DELETE":
            return web.json_response({"success": True})
        record = dict(body or {})
        record["id"] = request.match_info.get("id") or record.get("id") or f"new-{len(self.mutations)}"
        return web.json_response({"success": True, "data": record})

    async def _echo(self, request: web.Request) -> web.Response:
        return web.json_response({"path": request.path, "query": dict(request.query)})

    async def _manifest(self, request: web.Request) -> web.Response:
        return web.json_response(self.manifest)

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def backend_url(backend):
    server = TestServer(backend.app())
    await server.start_server()
    yield str(server.make_url("/")).rstrip("/")
    await server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


@pytest.fixture
def token_store(tmp_path) -> TokenStore:
    return TokenStore(tmp_path / "auth.db")


@pytest.fixture
def media_store(tmp_path) -> MediaStore:
    return MediaStore(tmp_path / "media.db")


@pytest.fixture
def metadata_store(tmp_path) -> MetadataStore:
    return MetadataStore(tmp_path / "metadata.db")


@pytest.fixture
def quota(media_store) -> QuotaMonitor:
    return QuotaMonitor(MediaStorageEstimator(media_store, quota_bytes=50_000_000))


@pytest_asyncio.fixture
async def media_cache(media_store, token_store, session, metadata_store, quota, backend_url):
    cache = MediaCache(
        media_store,
        token_store,
        session,
        metadata_store,
        quota,
        backend_url=backend_url,
        cache_version="v1",
    )
    await cache.activate()
    yield cache
    await cache.drain()


async def _seed_library(store: MetadataStore, library_id: str, song_ids: list[str]) -> None:
    for position, song_id in enumerate(song_ids):
        await store.apply_synced(
            EntityKind.SONG,
            song_id,
            {"id": song_id, "title": song_id.upper()},
            revision=f"rev-{song_id}",
            synced_at=0.0,
            parent_id=library_id,
            position=position,
        )


@pytest.fixture
def seed_library(metadata_store):
    """Local metadata for a library, as a completed sync would leave it."""

    async def seed(library_id: str, song_ids: list[str]) -> None:
        await _seed_library(metadata_store, library_id, song_ids)

    return seed
