"""
Playback track preloader.
Fetches upcoming tracks through the media cache and holds their bytes
behind in-memory object URLs so playback can start without a round trip.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.models import MediaResponse, PlaybackState, Track
from m3w_offline.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

OBJECT_URL_PREFIX = "blob:m3w/"

Fetcher = Callable[[str], Awaitable[MediaResponse]]


class ObjectUrlRegistry:
    """Object URL handle -> (bytes, content type). Revoked handles resolve to None."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}

    def create(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        url = f"{OBJECT_URL_PREFIX}{uuid.uuid4()}"
        self._objects[url] = (data, content_type)
        return url

    def resolve(self, url: str) -> Optional[tuple[bytes, str]]:
        return self._objects.get(url)

    def revoke(self, url: str) -> bool:
        return self._objects.pop(url, None) is not None

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, url: object) -> bool:
        return url in self._objects


class TrackPreloader:
    def __init__(
        self,
        fetch: Fetcher,
        registry: Optional[ObjectUrlRegistry] = None,
        limit: int = settings.PRELOAD_LIMIT,
        playback: Optional[PlaybackState] = None,
    ):
        self._fetch = fetch
        self._registry = registry or ObjectUrlRegistry()
        self._limit = max(1, limit)
        self._playback = playback or PlaybackState()
        # insertion order is the eviction order
        self._urls: "OrderedDict[str, str]" = OrderedDict()
        self._inflight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._token = CancellationToken()

    @property
    def registry(self) -> ObjectUrlRegistry:
        return self._registry

    def held_track_ids(self) -> list[str]:
        return list(self._urls)

    async def prepare_track(self, track: Track) -> Track:
        """Copy of track with resolved_url set, or the track unchanged if preloading fails."""
        url = await self._ensure_preloaded(track)
        return replace(track, resolved_url=url) if url else track

    def prime_track(self, track: Optional[Track]) -> None:
        if track is None:
            return
        self._spawn(track)

    def preload_next_in_queue(self, tracks: list[Track], current_index: int) -> None:
        next_index = current_index + 1
        if 0 <= next_index < len(tracks):
            self._spawn(tracks[next_index])

    async def close(self) -> None:
        self._token.cancel("preloader closed")
        for task in list(self._background):
            task.cancel()
        self._inflight.clear()
        for url in self._urls.values():
            self._registry.revoke(url)
        released = len(self._urls)
        self._urls.clear()
        logger.info("Preloader closed", extra={"released": released})

    # ── Internals ────────────────────────────────────────────────────────────

    def _spawn(self, track: Track) -> None:
        if self._token.cancelled:
            return
        task = asyncio.get_running_loop().create_task(self._ensure_preloaded(track))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _ensure_preloaded(self, track: Track) -> Optional[str]:
        if self._token.cancelled:
            return None
        cached = self._urls.get(track.id)
        if cached:
            return cached
        task = self._inflight.get(track.id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load(track))
            self._inflight[track.id] = task
            task.add_done_callback(lambda done, track_id=track.id: self._forget(track_id, done))
        return await asyncio.shield(task)

    def _forget(self, track_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(track_id) is task:
            del self._inflight[track_id]

    async def _load(self, track: Track) -> Optional[str]:
        token = self._token
        try:
            response = await self._fetch(track.audio_url)
        except Exception:
            logger.exception("Failed to preload track", extra={"track_id": track.id})
            return None
        if not response.ok:
            logger.error(
                "Failed to preload track",
                extra={"track_id": track.id, "status": response.status},
            )
            return None
        if token.cancelled:
            # arrived after close(); nothing may be retained
            return None

        url = self._registry.create(response.body, response.content_type)
        previous = self._urls.pop(track.id, None)
        if previous:
            self._registry.revoke(previous)
        self._urls[track.id] = url
        self._evict_over_limit(track.id)
        logger.debug("Track preloaded", extra={"track_id": track.id, "size": len(response.body)})
        return url

    def _evict_over_limit(self, inserted_id: str) -> None:
        while len(self._urls) > self._limit:
            victim = next(
                (
                    track_id
                    for track_id in self._urls
                    if track_id != inserted_id and track_id != self._playback.current_song_id
                ),
                None,
            )
            if victim is None:
                return
            self._registry.revoke(self._urls.pop(victim))
            logger.debug("Evicted preloaded track", extra={"track_id": victim})
