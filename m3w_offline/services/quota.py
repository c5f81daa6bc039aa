"""
Storage quota monitor.
- Asks a StorageEstimator for (usage, quota) and classifies the result.
- Polls on an interval without overlapping polls.
- Thresholds are fixed so every caller sees the same classification.
"""
import asyncio
import inspect
import logging
import math
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Union

from m3w_offline.config.settings import settings
from m3w_offline.services.models import QuotaLevel, StorageQuotaSnapshot

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 80
CRITICAL_THRESHOLD = 90

QuotaCallback = Callable[[StorageQuotaSnapshot], Union[None, Awaitable[None]]]


class StorageEstimator(Protocol):
    async def estimate(self) -> tuple[int, int]:
        """Return (usage_bytes, quota_bytes)."""
        ...


class SizedStore(Protocol):
    async def total_size(self) -> int:
        ...


class MediaStorageEstimator:
    """
    Usage is what the media cache holds. Quota is the configured cap or,
    when none is set, usage plus the free space on the data volume.
    """

    def __init__(
        self,
        store: SizedStore,
        quota_bytes: Optional[int] = None,
        data_dir: Optional[Path] = None,
    ):
        self._store = store
        self._quota_bytes = quota_bytes
        self._data_dir = data_dir or settings.DATA_DIR

    async def estimate(self) -> tuple[int, int]:
        usage = await self._store.total_size()
        if self._quota_bytes is not None:
            return usage, self._quota_bytes
        disk = await asyncio.to_thread(shutil.disk_usage, self._data_dir)
        return usage, usage + disk.free


def classify(percent_used: float) -> QuotaLevel:
    if percent_used >= CRITICAL_THRESHOLD:
        return QuotaLevel.CRITICAL
    if percent_used >= WARNING_THRESHOLD:
        return QuotaLevel.WARNING
    return QuotaLevel.NORMAL


def snapshot_from(usage: int, quota: int) -> StorageQuotaSnapshot:
    percent = (usage / quota) * 100 if quota > 0 else 0.0
    return StorageQuotaSnapshot(
        used_bytes=usage,
        total_bytes=quota,
        percent_used=percent,
        level=classify(percent),
    )


UNKNOWN_SNAPSHOT = StorageQuotaSnapshot(
    used_bytes=0, total_bytes=0, percent_used=0.0, level=QuotaLevel.NORMAL, available=False
)


def format_bytes(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = min(int(math.log(num_bytes, 1024)), len(units) - 1)
    return f"{num_bytes / 1024 ** i:.2f} {units[i]}"


class QuotaMonitor:
    def __init__(self, estimator: StorageEstimator):
        self._estimator = estimator

    async def get_quota(self) -> StorageQuotaSnapshot:
        """Never raises; an unavailable estimate yields UNKNOWN_SNAPSHOT."""
        try:
            usage, quota = await self._estimator.estimate()
        except Exception as exc:
            logger.error("Failed to estimate storage", extra={"error": str(exc)})
            return UNKNOWN_SNAPSHOT
        return snapshot_from(usage, quota)

    async def available_bytes(self) -> int:
        return (await self.get_quota()).free_bytes

    async def has_enough_quota(self, required_bytes: int) -> bool:
        snapshot = await self.get_quota()
        if not snapshot.available:
            return False
        return snapshot.free_bytes >= required_bytes

    def monitor(
        self,
        callback: QuotaCallback,
        interval_seconds: float = settings.QUOTA_POLL_SECONDS,
    ) -> Callable[[], None]:
        """
        Poll now and then every interval_seconds. Returns a cancel function.
        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(
            self._poll_loop(callback, interval_seconds)
        )

        def cancel() -> None:
            task.cancel()

        return cancel

    async def _poll_loop(self, callback: QuotaCallback, interval_seconds: float) -> None:
        while True:
            snapshot = await self.get_quota()
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Quota callback failed")
            if snapshot.level is not QuotaLevel.NORMAL:
                logger.warning(
                    "Storage running low",
                    extra={
                        "level": snapshot.level.value,
                        "percent_used": round(snapshot.percent_used, 1),
                        "used": format_bytes(snapshot.used_bytes),
                        "quota": format_bytes(snapshot.total_bytes),
                    },
                )
            await asyncio.sleep(interval_seconds)
