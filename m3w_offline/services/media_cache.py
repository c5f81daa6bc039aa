"""
Content cache engine.
- Cache-first read path for audio/cover requests (media bytes are immutable,
  so hits are served without revalidation).
- Guest misses are fatal: guest media has no backend origin.
- Authenticated misses fetch with the bridged token; failures degrade to 503.
- Bulk caching for songs, playlists and libraries with per-item progress.
- LRU eviction under quota pressure, skipping media that playback needs.
- Versioned cache generations; activation drops stale generations.
"""
import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional, Union

import aiohttp

from m3w_offline.config.settings import settings
from m3w_offline.services.metadata_store import MetadataStore
from m3w_offline.services.media_store import MediaStore
from m3w_offline.services.models import (
    BulkCacheResult,
    CachedMediaEntry,
    CacheStats,
    MediaRequest,
    MediaResponse,
    QuotaLevel,
    ResourceState,
)
from m3w_offline.services.quota import QuotaMonitor, classify
from m3w_offline.services.storage import QuotaExceededError, StorageError
from m3w_offline.services.token_store import TokenStore
from m3w_offline.utils.cancellation import CancellationToken, is_cancelled
from m3w_offline.utils.http_client import FetchedBytes, NetworkError, bearer_headers, fetch_bytes
from m3w_offline.utils.url_parser import (
    MediaResource,
    MediaVariant,
    RangeNotSatisfiable,
    api_path,
    guest_path,
    parse_media_url,
    parse_range,
    parse_resource_key,
    resource_key,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], Union[None, Awaitable[None]]]

_SONG_VARIANTS = (MediaVariant.STREAM, MediaVariant.COVER)
_DEFAULT_TYPES = {MediaVariant.STREAM: "audio/mpeg", MediaVariant.COVER: "image/jpeg"}


class NotFoundError(Exception):
    """Guest media missing from the cache. No recovery path exists."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"{key} not available offline (guest mode)")


class MediaCache:
    def __init__(
        self,
        store: MediaStore,
        token_store: TokenStore,
        session: aiohttp.ClientSession,
        metadata: MetadataStore,
        quota: QuotaMonitor,
        *,
        backend_url: Optional[str] = None,
        cache_prefix: str = settings.MEDIA_CACHE_PREFIX,
        cache_version: str = settings.MEDIA_CACHE_VERSION,
        concurrency: int = settings.BULK_CACHE_CONCURRENCY,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._tokens = token_store
        self._session = session
        self._metadata = metadata
        self._quota = quota
        self._backend_url = (backend_url or settings.BACKEND_URL).rstrip("/")
        self._prefix = cache_prefix
        self._version = cache_version
        self._concurrency = max(1, concurrency)
        self._clock = clock
        self._fetching: dict[str, int] = {}
        self._background: set[asyncio.Task] = set()
        self._protected: Callable[[], Iterable[str]] = lambda: ()

    @property
    def cache_name(self) -> str:
        return f"{self._prefix}{self._version}"

    @property
    def version(self) -> str:
        return self._version

    def set_protected_ids_provider(self, provider: Callable[[], Iterable[str]]) -> None:
        """provider() returns song ids that eviction must leave alone."""
        self._protected = provider

    # ── Generations ──────────────────────────────────────────────────────────

    async def activate(self, version: Optional[str] = None) -> list[str]:
        """Switch to `version` (or re-open the current one) and drop stale generations."""
        await self.drain()
        if version:
            self._version = version
        await self._store.open(self.cache_name)
        deleted = []
        for name in await self._store.cache_names():
            if name != self.cache_name and name.startswith(self._prefix):
                await self._store.delete_cache(name)
                deleted.append(name)
                logger.info("Deleted stale cache", extra={"cache": name})
        logger.info("Media cache active", extra={"cache": self.cache_name})
        return deleted

    # ── Read path ────────────────────────────────────────────────────────────

    async def handle_request(self, request: MediaRequest) -> MediaResponse:
        """Intercepted media request. Never raises."""
        resource = parse_media_url(request.url)
        if resource is None:
            return _text_response(404, "Not a media resource")
        try:
            return await self.fetch_resource(resource, request.range_header)
        except NotFoundError as exc:
            logger.error(
                "Guest media missing from cache",
                extra={"key": exc.key, "song_id": resource.song_id},
            )
            return _text_response(404, "File not available offline (Guest mode)")

    async def fetch_resource(
        self, resource: MediaResource, range_header: Optional[str] = None
    ) -> MediaResponse:
        """Like handle_request, but a guest miss raises NotFoundError."""
        entry = await self._lookup(resource.key)
        if entry is not None:
            logger.debug("Cache hit", extra={"key": resource.key})
            return _serve_entry(entry, range_header)
        if resource.guest:
            raise NotFoundError(resource.key)
        return await self._fetch_and_cache(resource, range_header)

    async def resource_state(self, key: str) -> ResourceState:
        if self._fetching.get(key):
            return ResourceState.FETCHING
        if await self._store.contains(self.cache_name, key):
            return ResourceState.CACHED
        return ResourceState.ABSENT

    async def _lookup(self, key: str) -> Optional[CachedMediaEntry]:
        try:
            return await self._store.match(self.cache_name, key)
        except StorageError as exc:
            logger.error("Cache lookup failed", extra={"key": key, "error": str(exc)})
            return None

    async def _fetch_and_cache(
        self, resource: MediaResource, range_header: Optional[str]
    ) -> MediaResponse:
        key = resource.key
        self._begin_fetch(key)
        writing = False
        try:
            fetched = await self._fetch_remote(resource.song_id, resource.variant, range_header)
            # Only whole-file responses are cached; a 206 would be served truncated later.
            if fetched.status == 200 and range_header is None:
                self._schedule_write(key, resource.variant, fetched)
                writing = True
        except NetworkError as exc:
            logger.warning(
                "Media fetch failed",
                extra={"key": key, "status": exc.status, "error": str(exc)},
            )
            return _text_response(503, "Network error")
        finally:
            # the background write ends the fetch once stored
            if not writing:
                self._end_fetch(key)
        return MediaResponse(
            status=fetched.status,
            body=fetched.body,
            headers=_passthrough_headers(fetched, resource.variant),
        )

    async def _fetch_remote(
        self,
        song_id: str,
        variant: MediaVariant,
        range_header: Optional[str] = None,
    ) -> FetchedBytes:
        token = await self._tokens.read_token()
        extra = {"Range": range_header} if range_header else None
        return await fetch_bytes(
            self._session,
            f"{self._backend_url}{api_path(song_id, variant)}",
            headers=bearer_headers(token, extra),
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    def _begin_fetch(self, key: str) -> None:
        self._fetching[key] = self._fetching.get(key, 0) + 1

    def _end_fetch(self, key: str) -> None:
        remaining = self._fetching.get(key, 0) - 1
        if remaining > 0:
            self._fetching[key] = remaining
        else:
            self._fetching.pop(key, None)

    def _schedule_write(self, key: str, variant: MediaVariant, fetched: FetchedBytes) -> None:
        task = asyncio.get_running_loop().create_task(
            self._write_in_background(key, variant, fetched)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_in_background(
        self, key: str, variant: MediaVariant, fetched: FetchedBytes
    ) -> None:
        try:
            await self._store_entry(key, fetched.body, _content_type(fetched, variant))
            logger.info("Cached from backend", extra={"key": key, "size": len(fetched.body)})
        except StorageError as exc:
            logger.error("Failed to cache", extra={"key": key, "error": str(exc)})
        finally:
            self._end_fetch(key)

    async def _store_entry(self, key: str, body: bytes, content_type: str) -> None:
        now = self._clock()
        entry = CachedMediaEntry(
            key=key,
            body=body,
            content_type=content_type,
            inserted_at=now,
            accessed_at=now,
        )
        try:
            await self._store.put(self.cache_name, entry)
        except QuotaExceededError:
            logger.warning("Storage quota exceeded, evicting", extra={"key": key})
            await self.evict(reserve_bytes=entry.size)
            await self._store.put(self.cache_name, entry)

    async def drain(self) -> None:
        """Wait for pending background cache writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cache_guest_media(
        self,
        song_id: str,
        variant: MediaVariant,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """Seed guest content at creation time. Returns the guest URL path."""
        variant = MediaVariant(variant)
        await self._store_entry(
            resource_key(song_id, variant), data, content_type or _DEFAULT_TYPES[variant]
        )
        logger.info("Cached guest media", extra={"song_id": song_id, "variant": variant.value})
        return guest_path(song_id, variant)

    # ── Bulk caching ─────────────────────────────────────────────────────────

    async def cache_song(
        self,
        song_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        return await self._cache_many([song_id], on_progress, cancel)

    async def cache_playlist(
        self,
        playlist_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        try:
            song_ids = await self._metadata.playlist_song_ids(playlist_id)
        except StorageError as exc:
            logger.error("Failed to list playlist songs", extra={"playlist_id": playlist_id, "error": str(exc)})
            return BulkCacheResult(error=str(exc))
        logger.info("Caching playlist", extra={"playlist_id": playlist_id, "songs": len(song_ids)})
        return await self._cache_many(song_ids, on_progress, cancel)

    async def cache_library(
        self,
        library_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BulkCacheResult:
        try:
            song_ids = await self._metadata.library_song_ids(library_id)
        except StorageError as exc:
            logger.error("Failed to list library songs", extra={"library_id": library_id, "error": str(exc)})
            return BulkCacheResult(error=str(exc))
        logger.info("Caching library", extra={"library_id": library_id, "songs": len(song_ids)})
        return await self._cache_many(song_ids, on_progress, cancel)

    async def download_song(self, song_id: str) -> int:
        """
        Cache audio and cover of one song. Raises the audio failure
        (NetworkError or StorageError); a cover failure is only logged.
        Returns the cached audio size in bytes.
        """
        audio_error, cover_error = await self._cache_song_resources(song_id)
        if audio_error is not None:
            raise audio_error
        if cover_error is not None:
            logger.warning("Cover not cached", extra={"song_id": song_id, "error": str(cover_error)})
        return await self.cached_size(song_id) or 0

    async def _cache_many(
        self,
        song_ids: Iterable[str],
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> BulkCacheResult:
        unique_ids = list(dict.fromkeys(song_ids))
        result = BulkCacheResult(total=len(unique_ids))
        semaphore = asyncio.Semaphore(self._concurrency)
        completed = 0

        async def run(song_id: str) -> None:
            nonlocal completed
            async with semaphore:
                if is_cancelled(cancel):
                    result.skipped.append(song_id)
                    return
                audio_error, cover_error = await self._cache_song_resources(song_id)
                if audio_error:
                    result.failed.append(song_id)
                    result.errors[song_id] = str(audio_error)
                elif cover_error:
                    result.partial.append(song_id)
                    result.errors[song_id] = str(cover_error)
                else:
                    result.succeeded.append(song_id)
                completed += 1
                await _notify_progress(on_progress, completed, result.total, song_id)

        await asyncio.gather(*(run(song_id) for song_id in unique_ids))
        result.cancelled = is_cancelled(cancel)
        if result.cancelled:
            logger.info(
                "Bulk caching cancelled",
                extra={"reason": cancel.reason, "skipped": len(result.skipped)},
            )
        logger.info(
            "Bulk caching finished",
            extra={
                "total": result.total,
                "succeeded": len(result.succeeded),
                "partial": len(result.partial),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
            },
        )
        return result

    async def _cache_song_resources(
        self, song_id: str
    ) -> tuple[Optional[Exception], Optional[Exception]]:
        """Cache audio then cover. Returns (audio_error, cover_error)."""
        errors: dict[MediaVariant, Optional[Exception]] = {}
        for variant in _SONG_VARIANTS:
            errors[variant] = await self._cache_resource(song_id, variant)
        return errors[MediaVariant.STREAM], errors[MediaVariant.COVER]

    async def _cache_resource(self, song_id: str, variant: MediaVariant) -> Optional[Exception]:
        key = resource_key(song_id, variant)
        try:
            if await self._store.contains(self.cache_name, key):
                return None
        except StorageError as exc:
            return exc

        self._begin_fetch(key)
        try:
            fetched = await self._fetch_remote(song_id, variant)
            await self._store_entry(key, fetched.body, _content_type(fetched, variant))
        except (NetworkError, StorageError) as exc:
            logger.warning(
                "Failed to cache resource",
                extra={"song_id": song_id, "variant": variant.value, "error": str(exc)},
            )
            return exc
        finally:
            self._end_fetch(key)
        return None

    # ── Views ────────────────────────────────────────────────────────────────

    async def is_cached(self, song_id: str) -> bool:
        try:
            return await self._store.contains(
                self.cache_name, resource_key(song_id, MediaVariant.STREAM)
            )
        except StorageError as exc:
            logger.error("Cache check failed", extra={"song_id": song_id, "error": str(exc)})
            return False

    async def cached_size(self, song_id: str) -> Optional[int]:
        """Size of the cached audio, or None when not cached. Raises StorageError."""
        return await self._store.entry_size(
            self.cache_name, resource_key(song_id, MediaVariant.STREAM)
        )

    async def get_cached_song_ids(self) -> list[str]:
        try:
            keys = await self._store.keys(self.cache_name)
        except StorageError as exc:
            logger.error("Failed to list cached songs", extra={"error": str(exc)})
            return []
        song_ids = []
        for key in keys:
            parsed = parse_resource_key(key)
            if parsed and parsed[1] is MediaVariant.STREAM:
                song_ids.append(parsed[0])
        return song_ids

    async def remove_song(self, song_id: str) -> bool:
        removed = False
        for variant in _SONG_VARIANTS:
            removed |= await self._store.delete(self.cache_name, resource_key(song_id, variant))
        if removed:
            logger.info("Removed cached song", extra={"song_id": song_id})
        return removed

    async def clear(self) -> int:
        await self.drain()
        count = await self._store.clear(self.cache_name)
        logger.info("Media cache cleared", extra={"cache": self.cache_name, "entries": count})
        return count

    async def stats(self) -> CacheStats:
        keys = await self._store.keys(self.cache_name)
        return CacheStats(
            total_entries=len(keys),
            total_bytes=await self._store.total_size(self.cache_name),
            song_ids=await self.get_cached_song_ids(),
        )

    # ── Eviction ─────────────────────────────────────────────────────────────

    async def evict(self, reserve_bytes: int = 0) -> list[str]:
        """
        Delete least recently used entries until usage (plus reserve_bytes)
        is below the warning threshold. Media of protected songs is kept.
        """
        snapshot = await self._quota.get_quota()
        if not snapshot.available:
            logger.warning("Storage estimate unavailable, skipping eviction")
            return []

        protected = set(self._protected())
        evicted: list[str] = []
        for key, _size in await self._store.lru_keys(self.cache_name):
            if _below_warning(snapshot.used_bytes + reserve_bytes, snapshot.total_bytes):
                break
            parsed = parse_resource_key(key)
            if parsed and parsed[0] in protected:
                continue
            if await self._store.delete(self.cache_name, key):
                evicted.append(key)
            snapshot = await self._quota.get_quota()

        logger.info(
            "Eviction finished",
            extra={
                "evicted": len(evicted),
                "percent_used": round(snapshot.percent_used, 1),
                "protected": len(protected),
            },
        )
        return evicted


def _below_warning(used: int, total: int) -> bool:
    if total <= 0:
        return True
    return classify(used / total * 100) is QuotaLevel.NORMAL


def _serve_entry(entry: CachedMediaEntry, range_header: Optional[str]) -> MediaResponse:
    total = entry.size
    if range_header:
        try:
            start, end = parse_range(range_header, total)
        except RangeNotSatisfiable as exc:
            logger.warning("Unsatisfiable range", extra={"key": entry.key, "error": str(exc)})
            return MediaResponse(
                status=416,
                body=b"Range Not Satisfiable",
                headers={"Content-Range": f"bytes */{total}"},
                from_cache=True,
            )
        chunk = entry.body[start:end + 1]
        return MediaResponse(
            status=206,
            body=chunk,
            headers={
                "Content-Type": entry.content_type,
                "Content-Length": str(len(chunk)),
                "Content-Range": f"bytes {start}-{end}/{total}",
                "Accept-Ranges": "bytes",
            },
            from_cache=True,
        )
    return MediaResponse(
        status=200,
        body=entry.body,
        headers={
            "Content-Type": entry.content_type,
            "Content-Length": str(total),
            "Accept-Ranges": "bytes",
        },
        from_cache=True,
    )


def _content_type(fetched: FetchedBytes, variant: MediaVariant) -> str:
    return fetched.headers.get("Content-Type") or _DEFAULT_TYPES[variant]


def _passthrough_headers(fetched: FetchedBytes, variant: MediaVariant) -> dict[str, str]:
    headers = {"Content-Type": _content_type(fetched, variant)}
    for name in ("Content-Range", "Accept-Ranges", "Cache-Control", "ETag"):
        if name in fetched.headers:
            headers[name] = fetched.headers[name]
    return headers


def _text_response(status: int, message: str) -> MediaResponse:
    return MediaResponse(
        status=status,
        body=message.encode(),
        headers={"Content-Type": "text/plain; charset=utf-8"},
    )


async def _notify_progress(
    callback: Optional[ProgressCallback], completed: int, total: int, item: str
) -> None:
    if callback is None:
        return
    try:
        result = callback(completed, total, item)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Progress callback failed")
