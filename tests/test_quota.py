"""
Tests for storage quota classification and monitoring.
Run with: pytest tests/
"""
import asyncio

import pytest

from m3w_offline.services.models import QuotaLevel
from m3w_offline.services.quota import (
    MediaStorageEstimator,
    QuotaMonitor,
    classify,
    format_bytes,
    snapshot_from,
)


class StaticEstimator:
    def __init__(self, usage: int, quota: int):
        self.usage = usage
        self.quota = quota
        self.calls = 0

    async def estimate(self):
        self.calls += 1
        return self.usage, self.quota


class BrokenEstimator:
    async def estimate(self):
        raise OSError("storage API unavailable")


class TestClassify:
    @pytest.mark.parametrize(
        "percent, level",
        [
            (0, QuotaLevel.NORMAL),
            (79.9, QuotaLevel.NORMAL),
            (80, QuotaLevel.WARNING),
            (89.99, QuotaLevel.WARNING),
            (90, QuotaLevel.CRITICAL),
            (100, QuotaLevel.CRITICAL),
        ],
    )
    def test_thresholds(self, percent, level):
        assert classify(percent) is level

    def test_snapshot_percent(self):
        snapshot = snapshot_from(850, 1000)
        assert snapshot.percent_used == pytest.approx(85.0)
        assert snapshot.level is QuotaLevel.WARNING
        assert snapshot.free_bytes == 150

    def test_zero_quota(self):
        snapshot = snapshot_from(0, 0)
        assert snapshot.percent_used == 0.0
        assert snapshot.level is QuotaLevel.NORMAL


class TestFormatBytes:
    def test_zero(self):
        assert format_bytes(0) == "0 B"

    def test_megabytes(self):
        assert format_bytes(5 * 1024 * 1024) == "5.00 MB"


class TestQuotaMonitor:
    async def test_get_quota(self):
        snapshot = await QuotaMonitor(StaticEstimator(950, 1000)).get_quota()

        assert snapshot.available
        assert snapshot.level is QuotaLevel.CRITICAL

    async def test_estimator_failure_yields_unknown(self):
        snapshot = await QuotaMonitor(BrokenEstimator()).get_quota()

        assert not snapshot.available
        assert snapshot.used_bytes == 0 and snapshot.total_bytes == 0
        assert snapshot.level is QuotaLevel.NORMAL

    async def test_has_enough_quota(self):
        monitor = QuotaMonitor(StaticEstimator(600, 1000))

        assert await monitor.has_enough_quota(400)
        assert not await monitor.has_enough_quota(401)
        assert await monitor.available_bytes() == 400

    async def test_has_enough_quota_unknown(self):
        assert not await QuotaMonitor(BrokenEstimator()).has_enough_quota(1)

    async def test_monitor_polls_immediately_and_cancels(self):
        estimator = StaticEstimator(100, 1000)
        seen = []
        cancel = QuotaMonitor(estimator).monitor(seen.append, interval_seconds=0.01)

        await asyncio.sleep(0.05)
        cancel()
        await asyncio.sleep(0.02)
        polls = estimator.calls
        await asyncio.sleep(0.05)

        assert len(seen) >= 2
        assert seen[0].level is QuotaLevel.NORMAL
        assert estimator.calls == polls

    async def test_monitor_accepts_async_callback(self):
        seen = asyncio.Event()

        async def callback(snapshot):
            seen.set()

        cancel = QuotaMonitor(StaticEstimator(1, 10)).monitor(callback, interval_seconds=10)
        try:
            await asyncio.wait_for(seen.wait(), timeout=1)
        finally:
            cancel()

    async def test_callback_error_does_not_stop_polling(self):
        estimator = StaticEstimator(1, 10)

        def callback(snapshot):
            raise ValueError("ui gone")

        cancel = QuotaMonitor(estimator).monitor(callback, interval_seconds=0.01)
        await asyncio.sleep(0.05)
        cancel()

        assert estimator.calls >= 2


class TestMediaStorageEstimator:
    async def test_uses_configured_quota(self, media_store):
        estimator = MediaStorageEstimator(media_store, quota_bytes=4096)

        assert await estimator.estimate() == (0, 4096)

    async def test_falls_back_to_disk(self, media_store, tmp_path):
        usage, quota = await MediaStorageEstimator(media_store, data_dir=tmp_path).estimate()

        assert usage == 0
        assert quota > 0
