"""
Script to run the ingestion job scheduler without the HTTP API
"""

import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from api.dependencies import build_services
from core.config import settings
from core.database import dispose_engine
from core.logging import setup_logging

logger = logging.getLogger(__name__)


async def run_scheduler():
    """Restore every recurring job and keep the scheduler running until interrupted"""

    services = build_services()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    logger.info(f"Starting ingestion scheduler (timezone={settings.SCHEDULER_TIMEZONE})")
    logger.info(f"{services.registry.count} connectors registered")

    try:
        await services.scheduler.start()
        await stop.wait()
    finally:
        services.scheduler.stop()
        if services.credentials is not None:
            await services.credentials.drain()
        await dispose_engine()
        logger.info("Ingestion scheduler stopped")


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        sys.exit(0)
