from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import DESCENDING

from showparser.config import settings
from showparser.review import COLLECTION

_client: AsyncIOMotorClient | None = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongodb_uri)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    return get_client()[settings.mongodb_db]


async def init_db() -> None:
    """Create indexes for the review collection."""
    db = get_db()

    # One record per job: makes create_pending idempotent across retries
    await db[COLLECTION].create_index("job_id", unique=True)
    await db[COLLECTION].create_index([("url", 1), ("status", 1)])
    await db[COLLECTION].create_index([("status", 1), ("created_at", DESCENDING)])


async def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
