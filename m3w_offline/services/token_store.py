"""
Token bridge.
The worker cannot see the main context's session, so the current bearer
token is mirrored into a tiny durable key/value store it can read.
"""
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from m3w_offline.config.settings import settings
from m3w_offline.services.storage import StorageError, open_database, wrap_sqlite_error

logger = logging.getLogger(__name__)

TOKEN_KEY = "accessToken"
_SCHEMA_VERSION = 1
_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS tokens (key TEXT PRIMARY KEY, value TEXT NOT NULL)",
)


class TokenStore:
    def __init__(self, db_path: Optional[Path] = None):
        self._path = db_path or settings.db_path(settings.AUTH_DB_NAME)

    async def save_token(self, token: str) -> None:
        """Write the current token. Raises StorageError; callers log and continue."""
        async with open_database(self._path, _SCHEMA_VERSION, _SCHEMA) as db:
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO tokens (key, value) VALUES (?, ?)",
                    (TOKEN_KEY, token),
                )
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, "Failed to save token") from exc
        logger.debug("Token saved")

    async def clear_token(self) -> None:
        async with open_database(self._path, _SCHEMA_VERSION, _SCHEMA) as db:
            try:
                await db.execute("DELETE FROM tokens WHERE key = ?", (TOKEN_KEY,))
                await db.commit()
            except sqlite3.Error as exc:
                raise wrap_sqlite_error(exc, "Failed to clear token") from exc
        logger.debug("Token cleared")

    async def read_token(self) -> Optional[str]:
        """Worker-side read. Never raises: any failure means anonymous."""
        if not self._path.exists():
            return None
        try:
            async with open_database(self._path, _SCHEMA_VERSION, _SCHEMA) as db:
                async with db.execute(
                    "SELECT value FROM tokens WHERE key = ?", (TOKEN_KEY,)
                ) as cursor:
                    row = await cursor.fetchone()
        except (StorageError, sqlite3.Error) as exc:
            logger.error("Failed to read token", extra={"error": str(exc)})
            return None
        return row[0] if row and row[0] else None
