"""
Structured JSON logging.
Outputs JSON lines in production, human-readable in development.
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import json_log_formatter


class JsonFormatter(json_log_formatter.JSONFormatter):
    """JSON lines with level, logger name and any `extra=` fields."""

    def json_record(
        self,
        message: str,
        extra: dict[str, Any],
        record: logging.LogRecord,
    ) -> dict[str, Any]:
        extra["message"] = message
        extra["level"] = record.levelname
        extra["logger"] = record.name
        if "time" not in extra:
            extra["time"] = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if record.exc_info:
            extra["exc_info"] = self.formatException(record.exc_info)
        return extra


def setup_logging(level: Optional[str] = None) -> None:
    from m3w_offline.config.settings import settings

    level = level or settings.LOG_LEVEL
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)

    if settings.ENV == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Quiet noisy libraries
    for lib in ("aiohttp", "aiosqlite", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)
