import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import get_engine, dispose_engine
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.job import IngestionJob
from models.data_source import DataSource
from models.credential import Credential

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = get_engine()

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info(
            f"Tables created successfully: "
            f"{', '.join(model.__tablename__ for model in (IngestionJob, DataSource, Credential))}"
        )

    await dispose_engine()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
