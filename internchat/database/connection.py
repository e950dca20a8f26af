import logging
import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    if _client is not None:
        return
    url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    # tz_aware keeps stored timestamps comparable with datetime.now(timezone.utc)
    _client = AsyncIOMotorClient(url, tz_aware=True)
    logger.info("Connected to MongoDB database %s", os.getenv("MONGODB_DB", "internchat"))


async def close_mongo_connection() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not connected; call connect_to_mongo() first")
    return _client[os.getenv("MONGODB_DB", "internchat")]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
