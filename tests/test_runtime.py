"""
Tests for the offline runtime facade.
Run with: pytest tests/
"""
import asyncio

import pytest_asyncio

from m3w_offline.config.settings import Settings
from m3w_offline.services.models import EntityKind, MutationOperation, QuotaLevel, Track
from m3w_offline.services.runtime import OfflineRuntime
from m3w_offline.utils.url_parser import MediaVariant


@pytest_asyncio.fixture
async def runtime(tmp_path, backend_url, session):
    config = Settings(
        ENV="development",
        BACKEND_URL=backend_url,
        DATA_DIR=tmp_path / "data",
        STORAGE_QUOTA_MB=1,
        SYNC_INTERVAL_SECONDS=3600,
        QUOTA_POLL_SECONDS=3600,
        CONNECTIVITY_PROBE_SECONDS=3600,
        UPDATE_CHECK_DEV_SECONDS=3600,
    )
    yield OfflineRuntime(config, session, serve=False)


class TestOfflineRuntime:
    async def test_token_round_trip(self, runtime):
        await runtime.save_token("abc")
        assert await runtime.tokens.read_token() == "abc"

        await runtime.clear_token()
        assert await runtime.tokens.read_token() is None

    async def test_token_failure_is_logged_not_raised(self, runtime):
        runtime.config.db_path(runtime.config.AUTH_DB_NAME).mkdir(parents=True)

        await runtime.save_token("abc")
        await runtime.clear_token()

    async def test_prepare_track_goes_through_cache(self, runtime, backend):
        backend.add_song("s1", b"audio")
        track = Track(id="s1", title="One", audio_url="/api/songs/s1/stream")

        prepared = await runtime.prepare_track(track)
        await runtime.media_cache.drain()

        assert prepared.resolved_url is not None
        assert await runtime.is_cached("s1")
        assert await runtime.get_cached_song_ids() == ["s1"]

    async def test_playback_and_preloaded_tracks_are_protected(self, runtime, backend):
        backend.add_song("s2", b"audio")
        await runtime.prepare_track(Track(id="s2", title="Two", audio_url="/api/songs/s2/stream"))
        runtime.set_current_track("s1")

        assert runtime._protected_song_ids() == {"s1", "s2"}
        assert runtime.playback.is_playing

    async def test_cache_song(self, runtime, backend):
        backend.add_song("s1", b"audio")

        result = await runtime.cache_song("s1")

        assert result.succeeded == ["s1"]

    async def test_start_sync_and_stop(self, runtime, backend):
        backend.libraries = [{"id": "lib1", "name": "Main"}]
        backend.library_songs = {"lib1": [{"id": "s1", "title": "One"}]}
        await runtime.start()
        try:
            result = await runtime.manual_sync()
            assert result.success
            assert runtime.lifecycle.offline_ready.value
            assert runtime.connectivity.is_online
        finally:
            await runtime.stop()

        assert await runtime.metadata_store.library_song_ids("lib1") == ["s1"]
        assert not runtime.lifecycle.offline_ready.value

    async def test_critical_quota_triggers_eviction(self, runtime):
        await runtime.media_cache.cache_guest_media("a", MediaVariant.STREAM, b"x" * 500_000)
        await runtime.media_cache.cache_guest_media("b", MediaVariant.STREAM, b"x" * 500_000)
        assert (await runtime.get_storage_quota()).level is QuotaLevel.CRITICAL

        await runtime.start()
        try:
            for _ in range(100):
                if await runtime.get_cached_song_ids() == ["b"]:
                    break
                await asyncio.sleep(0.02)
        finally:
            await runtime.stop()

        assert await runtime.get_cached_song_ids() == ["b"]
        assert (await runtime.get_storage_quota()).level is QuotaLevel.NORMAL

    async def test_sync_queues_auto_download(self, runtime, backend):
        backend.add_song("s1", b"audio")
        backend.libraries = [{"id": "lib1", "name": "Main"}]
        backend.library_songs = {"lib1": [{"id": "s1", "title": "One"}]}
        await runtime.start()
        try:
            assert (await runtime.manual_sync()).success
            for _ in range(100):
                if await runtime.is_cached("s1"):
                    break
                await asyncio.sleep(0.02)
            await runtime.downloads.join()
        finally:
            await runtime.stop()

        assert await runtime.is_cached("s1")
        assert (await runtime.metadata_store.get_cache_state("s1")).is_cached

    async def test_auto_download_off_still_allows_manual_download(self, runtime, backend):
        backend.add_song("s1", b"audio")
        backend.libraries = [{"id": "lib1", "name": "Main"}]
        backend.library_songs = {"lib1": [{"id": "s1", "title": "One"}]}
        runtime.set_auto_download("off")
        await runtime.start()
        try:
            await runtime.manual_sync()
            await asyncio.sleep(0.1)
            assert not await runtime.is_cached("s1")

            assert await runtime.queue_library_download("lib1") == 1
            await runtime.downloads.join()
            assert await runtime.is_cached("s1")
            assert runtime.download_status().idle
        finally:
            await runtime.stop()

    async def test_download_refreshes_playability(self, runtime, backend):
        backend.add_song("s1", b"audio")
        await runtime.metadata_store.apply_synced(
            EntityKind.SONG, "s1", {"id": "s1"}, "rev", 0.0, parent_id="lib1", position=0
        )
        assert not await runtime.is_song_playable_offline("s1")

        runtime.downloads.queue_song("s1", "lib1")
        await runtime.downloads.join()

        assert await runtime.is_song_playable_offline("s1")
        assert await runtime.prevalidate_songs(["s1", "s2"]) == {"s1": True, "s2": False}
        assert (await runtime.library_cache_stats("lib1")).percentage == 100
        assert (await runtime.reconcile_cache_state()).total_checked == 1
        await runtime.downloads.close()

    async def test_queued_mutation_is_replayed(self, runtime, backend):
        await runtime.queue_mutation(EntityKind.PLAYLIST, "pl1", MutationOperation.UPDATE, {"name": "Road"})

        result = await runtime.replay_mutations()

        assert result.synced == 1
        assert backend.mutations == [("PATCH", "/api/playlists/pl1", {"name": "Road"})]
        assert (await runtime.metadata_store.get_entity(EntityKind.PLAYLIST, "pl1"))["name"] == "Road"
