"""
M3W Offline Media Layer - Main Entrypoint
Starts the media worker, metadata sync and quota watch, then serves until interrupted.
"""
import asyncio
import logging
import sys

from m3w_offline.config.settings import settings
from m3w_offline.services.runtime import OfflineRuntime
from m3w_offline.utils.logging import setup_logging


async def main() -> None:
    setup_logging()
    logger = logging.getLogger(__name__)

    runtime = OfflineRuntime(settings)
    logger.info(
        "Starting offline media layer",
        extra={"env": settings.ENV, "backend": settings.BACKEND_URL, "port": settings.WORKER_PORT},
    )
    try:
        await runtime.start()
        await asyncio.Event().wait()
    finally:
        await runtime.stop()
        logger.info("Offline media layer stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)
