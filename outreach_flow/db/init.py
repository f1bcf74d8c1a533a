import logging
from typing import Optional

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from outreach_flow.config import settings
from outreach_flow.db.documents import DOCUMENT_MODELS

logger = logging.getLogger(__name__)

_database: Optional[AsyncIOMotorDatabase] = None


async def init_db():
    global _database
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)

        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        _database = client[settings.DB_NAME]
        await init_beanie(database=_database, document_models=DOCUMENT_MODELS)
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("Database not initialized, call init_db() first")
    return _database
