import os
import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from motor.motor_asyncio import AsyncIOMotorClient
import redis.asyncio as redis
from dotenv import load_dotenv

from trustgate.store.mongo import ensure_record_indexes

load_dotenv()

logger = logging.getLogger(__name__)

# PostgreSQL: audit trail
POSTGRES_URI = os.getenv("POSTGRES_URI")
if POSTGRES_URI:
    engine = create_async_engine(POSTGRES_URI, echo=os.getenv("SQL_ECHO", "false").lower() == "true")
    AsyncSessionLocal = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )
else:
    engine = None
    AsyncSessionLocal = None

# MongoDB: verification, session, device and security event records
MONGODB_URI = os.getenv("MONGODB_URI")
if MONGODB_URI:
    mongo_client = AsyncIOMotorClient(MONGODB_URI, tz_aware=True)
    mongo_db = mongo_client.trustgate
else:
    mongo_client = None
    mongo_db = None

# Redis: risk assessment cache
REDIS_URI = os.getenv("REDIS_URI")
if REDIS_URI:
    redis_client = redis.from_url(REDIS_URI)
else:
    redis_client = None


async def get_db():
    if AsyncSessionLocal is not None:
        async with AsyncSessionLocal() as session:
            yield session
    else:
        yield None


async def ensure_mongo_indexes():
    # Motor Database objects do not implement truthiness; compare with None explicitly
    if mongo_db is None:
        return
    try:
        await ensure_record_indexes(mongo_db)
    except Exception as e:
        # Startup continues without indexes
        logger.error(f"Failed to ensure Mongo indexes: {e}")


def configured_backends() -> dict:
    return {
        "postgres": engine is not None,
        "mongodb": mongo_db is not None,
        "redis": redis_client is not None,
    }
