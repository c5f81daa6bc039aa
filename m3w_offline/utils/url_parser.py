"""
Media URL recognition, resource keys and Range header parsing.
Works on path names so dev (proxy port) and prod URLs map to the same key.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse


class MediaVariant(str, Enum):
    STREAM = "stream"
    COVER = "cover"


# ── /api/songs/{id}/stream, /guest/songs/{id}/cover, ... ─────────────────────
_MEDIA_PATH_RE = re.compile(
    r"^/(?P<prefix>api|guest)/songs/(?P<song_id>[^/]+)/(?P<variant>stream|cover)/?$"
)
_RESOURCE_KEY_RE = re.compile(r"^song:(?P<song_id>[^:]+):(?P<variant>stream|cover)$")
_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")


class RangeNotSatisfiable(ValueError):
    pass


@dataclass(frozen=True)
class MediaResource:
    song_id: str
    variant: MediaVariant
    guest: bool = False

    @property
    def key(self) -> str:
        return resource_key(self.song_id, self.variant)

    @property
    def api_path(self) -> str:
        return api_path(self.song_id, self.variant)


def resource_key(song_id: str, variant: MediaVariant) -> str:
    """Stable cache key: kind + id + variant."""
    return f"song:{song_id}:{MediaVariant(variant).value}"


def parse_resource_key(key: str) -> Optional[tuple[str, MediaVariant]]:
    match = _RESOURCE_KEY_RE.match(key)
    if not match:
        return None
    return match.group("song_id"), MediaVariant(match.group("variant"))


def api_path(song_id: str, variant: MediaVariant) -> str:
    return f"/api/songs/{song_id}/{MediaVariant(variant).value}"


def guest_path(song_id: str, variant: MediaVariant) -> str:
    return f"/guest/songs/{song_id}/{MediaVariant(variant).value}"


def parse_media_url(url: str) -> Optional[MediaResource]:
    """Return the MediaResource for an audio/cover URL, or None if not a media request."""
    path = _path_of(url)
    if path is None:
        return None
    match = _MEDIA_PATH_RE.match(path)
    if not match:
        return None
    return MediaResource(
        song_id=match.group("song_id"),
        variant=MediaVariant(match.group("variant")),
        guest=match.group("prefix") == "guest",
    )


def is_media_url(url: str) -> bool:
    return parse_media_url(url) is not None


def parse_range(header: str, total_size: int) -> tuple[int, int]:
    """
    Parse "bytes=start-end" / "bytes=start-" against a body of total_size.
    Returns an inclusive (start, end) pair or raises RangeNotSatisfiable.
    """
    match = _RANGE_RE.match(header.strip())
    if not match:
        raise RangeNotSatisfiable(f"Invalid Range header: {header!r}")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_size - 1
    if start >= total_size or end >= total_size or start > end:
        raise RangeNotSatisfiable(
            f"Range {start}-{end} out of bounds for {total_size} bytes"
        )
    return start, end


def _path_of(url: str) -> Optional[str]:
    if url.startswith("/"):
        return url.split("?", 1)[0]
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.netloc:
        return None
    return parsed.path
