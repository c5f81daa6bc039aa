"""
Environment-based configuration using pydantic-settings.
Tokens are never configured here: they arrive at runtime through the token store.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # ── Core ────────────────────────────────────────────────────────────────
    ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    BACKEND_URL: str = "http://localhost:4000"

    # ── Worker ──────────────────────────────────────────────────────────────
    WORKER_HOST: str = "127.0.0.1"
    WORKER_PORT: int = 4100
    WORKER_VERSION: str = "1"
    WORKER_MANIFEST_URL: Optional[str] = None
    UPDATE_CHECK_DEV_SECONDS: int = 30
    UPDATE_CHECK_PROD_SECONDS: int = 300

    # ── Storage ─────────────────────────────────────────────────────────────
    DATA_DIR: Path = Path("/tmp/m3w_offline")
    AUTH_DB_NAME: str = "m3w-auth.db"
    MEDIA_DB_NAME: str = "m3w-media.db"
    METADATA_DB_NAME: str = "m3w-metadata.db"
    MEDIA_CACHE_PREFIX: str = "m3w-media-"
    MEDIA_CACHE_VERSION: str = "v1"
    STORAGE_QUOTA_MB: int = 2048          # 0 → derive from free disk space
    QUOTA_POLL_SECONDS: int = 30

    # ── Bulk caching / preload ───────────────────────────────────────────────
    BULK_CACHE_CONCURRENCY: int = 1
    PRELOAD_LIMIT: int = 5

    # ── Background downloads / cached state ────────────────────────────────
    AUTO_DOWNLOAD: str = "wifi-only"     # off | wifi-only | always
    DOWNLOAD_CONCURRENCY: int = 3
    DOWNLOAD_MAX_RETRIES: int = 3
    DOWNLOAD_RETRY_DELAY_SECONDS: float = 5.0
    CACHE_STATE_INTERVAL_SECONDS: int = 300
    CACHE_STATE_BATCH_SIZE: int = 50
    CACHE_VALIDATOR_EXPIRY_SECONDS: int = 60

    # ── Metadata sync ────────────────────────────────────────────────────────
    SYNC_INTERVAL_SECONDS: int = 300
    SYNC_BATCH_SIZE: int = 50
    CONNECTIVITY_PROBE_SECONDS: int = 15
    MUTATION_REPLAY_SECONDS: int = 30
    MUTATION_MAX_RETRIES: int = 3

    # ── HTTP client ──────────────────────────────────────────────────────────
    HTTP_TIMEOUT_SECONDS: int = 30
    HTTP_MAX_REDIRECTS: int = 3
    HTTP_RETRY_ATTEMPTS: int = 3
    HTTP_RETRY_BACKOFF: float = 1.5

    @field_validator("DATA_DIR", mode="before")
    @classmethod
    def ensure_data_dir(cls, v: Path) -> Path:
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("AUTO_DOWNLOAD")
    @classmethod
    def check_auto_download(cls, v: str) -> str:
        if v not in ("off", "wifi-only", "always"):
            raise ValueError(f"AUTO_DOWNLOAD must be off, wifi-only or always, not {v!r}")
        return v

    @property
    def is_development(self) -> bool:
        return self.ENV == "development"

    @property
    def update_check_interval(self) -> int:
        if self.is_development:
            return self.UPDATE_CHECK_DEV_SECONDS
        return self.UPDATE_CHECK_PROD_SECONDS

    @property
    def quota_bytes(self) -> Optional[int]:
        if self.STORAGE_QUOTA_MB <= 0:
            return None
        return self.STORAGE_QUOTA_MB * 1024 * 1024

    @property
    def manifest_url(self) -> str:
        return self.WORKER_MANIFEST_URL or f"{self.BACKEND_URL}/sw-manifest.json"

    def db_path(self, name: str) -> Path:
        return self.DATA_DIR / name


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
