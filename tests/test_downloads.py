"""
Tests for the background download queue.
Run with: pytest tests/
"""
import asyncio

import pytest
import pytest_asyncio

from m3w_offline.services.connectivity import ConnectivityMonitor
from m3w_offline.services.downloads import DownloadQueue, can_auto_download
from m3w_offline.services.models import AutoDownloadPolicy

AUDIO = b"ID3" + bytes(range(32))


@pytest_asyncio.fixture
async def make_queue(media_cache, metadata_store):
    queues = []

    def factory(**kwargs):
        kwargs.setdefault("retry_delay", 0.01)
        queue = DownloadQueue(media_cache, metadata_store, **kwargs)
        queue.start()
        queues.append(queue)
        return queue

    yield factory
    for queue in queues:
        await queue.close()


@pytest_asyncio.fixture
async def library(backend, seed_library):
    for song_id in ("s1", "s2", "s3"):
        backend.add_song(song_id, AUDIO)
    await seed_library("lib1", ["s1", "s2", "s3"])
    return ["s1", "s2", "s3"]


async def wait_for(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)


class TestPolicy:
    @pytest.mark.parametrize(
        "policy, online, link, allowed",
        [
            (AutoDownloadPolicy.OFF, True, "wifi", False),
            (AutoDownloadPolicy.ALWAYS, True, "cellular", True),
            (AutoDownloadPolicy.ALWAYS, False, "wifi", False),
            (AutoDownloadPolicy.WIFI_ONLY, True, "cellular", False),
            (AutoDownloadPolicy.WIFI_ONLY, True, "wifi", True),
            (AutoDownloadPolicy.WIFI_ONLY, True, "unknown", True),
            (AutoDownloadPolicy.WIFI_ONLY, False, "wifi", False),
        ],
    )
    def test_can_auto_download(self, policy, online, link, allowed):
        connectivity = ConnectivityMonitor(initially_online=online, connection_type=link)

        assert can_auto_download(policy, connectivity) is allowed

    def test_without_monitor_only_off_blocks(self):
        assert can_auto_download(AutoDownloadPolicy.WIFI_ONLY)
        assert not can_auto_download(AutoDownloadPolicy.OFF)

    def test_unknown_policy_rejected(self, media_cache, metadata_store):
        with pytest.raises(ValueError):
            DownloadQueue(media_cache, metadata_store, policy="sometimes")


class TestQueueing:
    async def test_library_is_downloaded(self, make_queue, library, media_cache, metadata_store):
        queue = make_queue()

        assert await queue.queue_library("lib1", force=True) == 3
        await queue.join()

        assert sorted(await media_cache.get_cached_song_ids()) == library
        state = await metadata_store.get_cache_state("s1")
        assert state.is_cached
        assert state.cache_size == len(AUDIO)
        assert queue.status().idle

    async def test_cached_songs_are_skipped(self, make_queue, library, media_cache, backend):
        await media_cache.cache_song("s1")
        queue = make_queue()

        assert await queue.queue_library("lib1", force=True) == 2
        await queue.join()

        assert backend.hits("/api/songs/s1/stream") == 1

    async def test_duplicates_are_ignored(self, make_queue, library, backend):
        backend.gates["/api/songs/s1/stream"] = gate = asyncio.Event()
        queue = make_queue()

        assert queue.queue_song("s1", "lib1")
        assert not queue.queue_song("s1", "lib1")
        gate.set()
        await queue.join()

        assert backend.hits("/api/songs/s1/stream") == 1

    async def test_concurrency_limit(self, make_queue, library, backend):
        gates = {}
        for song_id in library:
            gates[song_id] = backend.gates[f"/api/songs/{song_id}/stream"] = asyncio.Event()
        queue = make_queue(concurrency=2)

        await queue.queue_library("lib1", force=True)
        await asyncio.sleep(0.05)
        status = queue.status()

        assert status.active == 2
        assert status.pending == 1
        for gate in gates.values():
            gate.set()
        await queue.join()
        assert queue.status().idle

    async def test_song_without_metadata_is_skipped(self, make_queue, backend):
        backend.add_song("ghost", AUDIO)
        queue = make_queue()

        queue.queue_song("ghost")
        await queue.join()

        assert backend.hits("/api/songs/ghost/stream") == 0

    async def test_listener_notified(self, make_queue, library):
        queue = make_queue()
        seen = []
        queue.subscribe(lambda song_id, library_id: seen.append((song_id, library_id)))

        queue.queue_song("s2", "lib1")
        await queue.join()

        assert seen == [("s2", "lib1")]


class TestAutoDownload:
    async def test_off_blocks_auto_but_not_manual(self, make_queue, library):
        queue = make_queue(policy="off")

        assert await queue.auto_cache_after_sync(["lib1"]) == 0
        assert await queue.queue_library("lib1") == 0
        assert await queue.queue_library("lib1", force=True) == 3
        await queue.join()

    async def test_cellular_blocks_wifi_only(self, make_queue, library):
        connectivity = ConnectivityMonitor(connection_type="cellular")
        queue = make_queue(connectivity=connectivity, policy="wifi-only")

        assert await queue.auto_cache_after_sync(["lib1"]) == 0

        connectivity.set_connection_type("wifi")
        assert await queue.auto_cache_after_sync(["lib1"]) == 3
        await queue.join()

    async def test_set_policy(self, make_queue, library):
        queue = make_queue(policy="off")
        queue.set_policy("always")

        assert queue.policy is AutoDownloadPolicy.ALWAYS
        assert await queue.auto_cache_after_sync(["lib1"]) == 3
        await queue.join()


class TestRetries:
    async def test_transient_failure_is_retried(self, make_queue, library, backend, media_cache):
        backend.fail_paths["/api/songs/s1/stream"] = 500
        queue = make_queue(retry_delay=0.2)

        queue.queue_song("s1", "lib1")
        await wait_for(lambda: backend.hits("/api/songs/s1/stream") >= 1)
        backend.fail_paths.clear()
        await queue.join()

        assert await media_cache.is_cached("s1")
        assert backend.hits("/api/songs/s1/stream") == 2

    async def test_gives_up_after_max_retries(self, make_queue, library, backend, media_cache):
        backend.fail_paths["/api/songs/s1/stream"] = 500
        queue = make_queue(max_retries=2)

        queue.queue_song("s1", "lib1")
        await queue.join()

        assert backend.hits("/api/songs/s1/stream") == 3
        assert not await media_cache.is_cached("s1")
        assert queue.status().idle

    async def test_not_found_is_not_retried(self, make_queue, seed_library, backend):
        await seed_library("lib1", ["gone"])
        queue = make_queue()

        queue.queue_song("gone", "lib1")
        await queue.join()

        assert backend.hits("/api/songs/gone/stream") == 1


class TestPausing:
    async def test_offline_pauses_and_reconnect_resumes(self, make_queue, library, backend, media_cache):
        connectivity = ConnectivityMonitor(initially_online=False)
        queue = make_queue(connectivity=connectivity)

        assert await queue.queue_library("lib1", force=True) == 3
        await queue.join()
        assert queue.status().pending == 3
        assert backend.hits("/api/songs/s1/stream") == 0

        connectivity.set_online(True)
        await queue.join()

        assert sorted(await media_cache.get_cached_song_ids()) == library

    async def test_cancel_library(self, make_queue, library, seed_library):
        await seed_library("lib2", ["x1"])
        queue = make_queue(connectivity=ConnectivityMonitor(initially_online=False))
        await queue.queue_library("lib1", force=True)
        await queue.queue_library("lib2", force=True)

        assert queue.cancel_library("lib1") == 3
        assert queue.status().pending == 1
        assert queue.cancel_all() == 1
        assert queue.status().idle

    async def test_close_stops_everything(self, make_queue, library, backend):
        backend.gates["/api/songs/s1/stream"] = asyncio.Event()
        queue = make_queue(concurrency=1)
        await queue.queue_library("lib1", force=True)
        await asyncio.sleep(0.05)

        await queue.close()

        assert queue.status().idle
        assert not queue.queue_song("s2", "lib1")
        backend.gates["/api/songs/s1/stream"].set()
