"""
Tests for per-song cached-state reconciliation and playback validation.
Run with: pytest tests/
"""
import asyncio

import pytest

from m3w_offline.services.cache_state import CacheStateReconciler, CacheValidator
from m3w_offline.services.storage import StorageError
from m3w_offline.utils.url_parser import MediaVariant


@pytest.fixture
def reconciler(media_cache, metadata_store):
    return CacheStateReconciler(media_cache, metadata_store, interval_seconds=3600, batch_size=2)


@pytest.fixture
def now():
    return [1000.0]


@pytest.fixture
def validator(media_cache, metadata_store, now):
    return CacheValidator(media_cache, metadata_store, expiry_seconds=60, clock=lambda: now[0])


class TestReconciler:
    async def test_records_actual_state(self, reconciler, media_cache, metadata_store, seed_library):
        await seed_library("lib1", ["s1", "s2", "s3"])
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")

        stats = await reconciler.reconcile()

        assert stats.total_checked == 3
        assert stats.mismatches == 1
        assert stats.errors == 0
        s1 = await metadata_store.get_cache_state("s1")
        assert s1.is_cached and s1.cache_size == 3
        assert not (await metadata_store.get_cache_state("s2")).is_cached
        assert reconciler.last_run_at is not None

    async def test_second_pass_corrects_removed_song(self, reconciler, media_cache, metadata_store, seed_library):
        await seed_library("lib1", ["s1"])
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")
        await reconciler.reconcile()
        assert (await reconciler.reconcile()).mismatches == 0

        await media_cache.remove_song("s1")
        stats = await reconciler.reconcile()

        assert stats.mismatches == 1
        assert not (await metadata_store.get_cache_state("s1")).is_cached

    async def test_concurrent_calls_share_a_pass(self, reconciler, seed_library):
        await seed_library("lib1", ["s1", "s2"])

        first, second = await asyncio.gather(reconciler.reconcile(), reconciler.reconcile())

        assert first is second

    async def test_storage_errors_are_counted(self, reconciler, media_cache, seed_library, monkeypatch):
        await seed_library("lib1", ["s1", "s2"])

        async def broken(song_id):
            raise StorageError("disk gone")

        monkeypatch.setattr(media_cache, "cached_size", broken)

        stats = await reconciler.reconcile()

        assert stats.total_checked == 2
        assert stats.errors == 2

    async def test_start_runs_a_pass_and_stop_cancels(self, reconciler, seed_library):
        await seed_library("lib1", ["s1"])
        reconciler.start()
        try:
            for _ in range(100):
                if reconciler.last_run_at is not None:
                    break
                await asyncio.sleep(0.02)
        finally:
            await reconciler.stop()

        assert reconciler.last_run_at is not None
        assert not reconciler.is_running

    async def test_library_stats(self, reconciler, media_cache, seed_library):
        await seed_library("lib1", ["s1", "s2"])
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")

        stats = await reconciler.library_stats("lib1")

        assert (stats.total, stats.cached, stats.percentage) == (2, 1, 50)

    async def test_empty_library_stats(self, reconciler):
        assert (await reconciler.library_stats("nothing")).percentage == 0


class TestValidator:
    async def test_answer_is_remembered_until_expiry(self, validator, media_cache, now):
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")
        assert await validator.is_song_cached("s1")

        await media_cache.remove_song("s1")
        assert await validator.is_song_cached("s1")

        now[0] += 61
        assert not await validator.is_song_cached("s1")

    async def test_invalidate_forces_recheck(self, validator, media_cache):
        assert not await validator.is_song_cached("s1")
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")

        validator.invalidate("s1")

        assert await validator.is_song_cached("s1")

    async def test_clear_memory(self, validator, media_cache):
        assert not await validator.is_song_cached("s1")
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abc")

        validator.clear_memory()

        assert await validator.is_song_cached("s1")

    async def test_validate_records_state(self, validator, media_cache, metadata_store, now):
        await media_cache.cache_guest_media("s1", MediaVariant.STREAM, b"abcd")

        state = await validator.validate_song("s1")

        assert state.is_cached and state.cache_size == 4
        stored = await metadata_store.get_cache_state("s1")
        assert stored.is_cached and stored.checked_at == now[0]

    async def test_storage_error_reads_as_not_cached(self, validator, media_cache, monkeypatch):
        async def broken(song_id):
            raise StorageError("disk gone")

        monkeypatch.setattr(media_cache, "cached_size", broken)

        assert not await validator.is_song_cached("s1")

    async def test_prevalidate(self, validator, media_cache):
        await media_cache.cache_guest_media("s2", MediaVariant.STREAM, b"abc")

        result = await validator.prevalidate(["s1", "s2", "s1", "s3"], chunk_size=2)

        assert result == {"s1": False, "s2": True, "s3": False}
