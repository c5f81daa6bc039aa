from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class EntityKind(str, Enum):
    SONG = "song"
    LIBRARY = "library"
    PLAYLIST = "playlist"


class QuotaLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class ResourceState(str, Enum):
    ABSENT = "absent"
    FETCHING = "fetching"
    CACHED = "cached"


class AutoDownloadPolicy(str, Enum):
    OFF = "off"
    WIFI_ONLY = "wifi-only"
    ALWAYS = "always"


class MutationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class CachedMediaEntry:
    key: str
    body: bytes
    content_type: str
    inserted_at: float
    accessed_at: float
    expires_at: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.body)


@dataclass
class MediaRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def range_header(self) -> Optional[str]:
        for name, value in self.headers.items():
            if name.lower() == "range":
                return value
        return None


@dataclass
class MediaResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "application/octet-stream")


@dataclass
class Track:
    id: str
    title: str
    audio_url: str
    artist: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    resolved_url: Optional[str] = None


@dataclass
class PlaybackState:
    """What the player is doing right now; eviction never touches current_song_id."""
    current_song_id: Optional[str] = None
    is_playing: bool = False


@dataclass
class StorageQuotaSnapshot:
    used_bytes: int
    total_bytes: int
    percent_used: float
    level: QuotaLevel
    available: bool = True

    @property
    def free_bytes(self) -> int:
        return max(self.total_bytes - self.used_bytes, 0)


@dataclass
class SyncState:
    kind: EntityKind
    entity_id: str
    last_synced_at: Optional[float]
    revision: Optional[str]
    pending: bool


@dataclass
class SyncResult:
    success: bool
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    libraries: int = 0
    playlists: int = 0
    songs: int = 0
    errors: list[str] = field(default_factory=list)
    pending: list[tuple[EntityKind, str]] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class BulkCacheResult:
    total: int = 0
    succeeded: list[str] = field(default_factory=list)
    partial: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return (
            not self.failed
            and not self.partial
            and not self.cancelled
            and self.error is None
        )


@dataclass
class CacheStats:
    total_entries: int
    total_bytes: int
    song_ids: list[str]


@dataclass
class SyncStatus:
    last_sync_at: Optional[float]
    auto_sync_running: bool
    is_syncing: bool
    last_result: Optional[SyncResult] = None


@dataclass
class SongCacheState:
    song_id: str
    is_cached: bool
    cache_size: Optional[int]
    checked_at: float


@dataclass
class ReconcileStats:
    total_checked: int = 0
    mismatches: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


@dataclass
class LibraryCacheStats:
    total: int
    cached: int

    @property
    def percentage(self) -> int:
        return round(self.cached / self.total * 100) if self.total else 0


@dataclass
class DownloadTask:
    song_id: str
    library_id: Optional[str] = None
    retries: int = 0


@dataclass
class DownloadQueueStatus:
    pending: int
    active: int
    retrying: int

    @property
    def idle(self) -> bool:
        return not (self.pending or self.active or self.retrying)


@dataclass
class PendingMutation:
    kind: EntityKind
    entity_id: str
    operation: MutationOperation
    data: Optional[dict] = None
    id: Optional[int] = None
    retry_count: int = 0
    error: Optional[str] = None
    created_at: float = 0.0


@dataclass
class ReplayResult:
    synced: int = 0
    failed: int = 0
    dropped: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)
