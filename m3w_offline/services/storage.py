"""
SQLite plumbing shared by the durable stores.
Each store opens short-lived aiosqlite connections and upgrades its schema
idempotently on first use.
"""
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Sequence

import aiosqlite

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Durable store could not be opened or a transaction aborted."""


class QuotaExceededError(StorageError):
    """Device (or configured) storage is full."""


def is_disk_full(exc: sqlite3.Error) -> bool:
    return "full" in str(exc).lower()


@asynccontextmanager
async def open_database(
    path: Path,
    schema_version: int,
    schema: Sequence[str],
) -> AsyncIterator[aiosqlite.Connection]:
    """
    Open `path`, creating tables if missing. `schema` statements must be
    create-if-missing so re-running them is harmless.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(path)
    except (OSError, sqlite3.Error) as exc:
        raise StorageError(f"Cannot open {path.name}: {exc}") from exc

    try:
        try:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            if not row or row[0] < schema_version:
                for statement in schema:
                    await db.execute(statement)
                await db.execute(f"PRAGMA user_version = {int(schema_version)}")
                await db.commit()
                logger.debug(
                    "Schema ready",
                    extra={"db": path.name, "version": schema_version},
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Schema upgrade failed for {path.name}: {exc}") from exc
        yield db
    finally:
        await db.close()


def wrap_sqlite_error(exc: sqlite3.Error, action: str) -> StorageError:
    if is_disk_full(exc):
        return QuotaExceededError(f"{action}: {exc}")
    return StorageError(f"{action}: {exc}")
