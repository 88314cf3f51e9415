# FastAPI dependencies: data store handles, caller identity, services
# backend/app/api/deps.py

import logging
from typing import AsyncGenerator, Optional, Tuple

import redis.asyncio as redis
from fastapi import Depends, HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.security import get_current_user_id
from app.data_access.mongo_client import RecommendationRepository
from app.services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)

# --- Process-wide clients, owned by the lifespan handler in app/server.py ---
mongo_client: Optional[AsyncIOMotorClient] = None
db_instance: Optional[AsyncIOMotorDatabase] = None
redis_client: Optional[redis.Redis] = None

async def _connect_mongo() -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    uri = settings.MONGODB_URI.get_secret_value()
    logger.info(f"Connecting to MongoDB: {uri[:15]}...") # Log partial URI safely
    timeout_ms = int(settings.DB_OPERATION_TIMEOUT_SECONDS * 1000)
    client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=timeout_ms, socketTimeoutMS=timeout_ms)
    try:
        await client.admin.command("ping")
        db = client[settings.MONGODB_DB_NAME]
        # Also creates the TTL index that reclaims expired recommendations
        await RecommendationRepository(db).ensure_indexes()
    except PyMongoError:
        client.close()
        raise
    return client, db

async def _connect_redis(url: str) -> redis.Redis:
    logger.info(f"Connecting to Redis: {url[:15]}...") # Log partial URL safely
    client = redis.from_url(url, encoding="utf-8", decode_responses=True)
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        raise
    return client

async def initialize_connections():
    """
    Opens MongoDB (required for every request) and Redis (optional cache and
    generation lock). A failed connection is logged and leaves its handle
    unset: MongoDB-backed endpoints then answer 503, and Redis features are
    skipped.
    """
    global mongo_client, db_instance, redis_client

    try:
        mongo_client, db_instance = await _connect_mongo()
        logger.info(f"MongoDB ready. Using database: '{settings.MONGODB_DB_NAME}'")
    except PyMongoError as e:
        logger.error(f"MongoDB initialization failed: {e}", exc_info=True)
        mongo_client, db_instance = None, None

    if settings.REDIS_URL is None:
        logger.info("REDIS_URL not set; similar-anime caching and the distributed generation lock are disabled.")
        return
    try:
        redis_client = await _connect_redis(settings.REDIS_URL.get_secret_value())
        logger.info("Redis ready.")
    except RedisError as e:
        logger.error(f"Redis initialization failed; continuing without it: {e}", exc_info=True)
        redis_client = None

async def close_connections():
    global mongo_client, db_instance, redis_client
    if mongo_client:
        mongo_client.close()
        logger.info("MongoDB client closed.")
    if redis_client:
        await redis_client.aclose()
        logger.info("Redis client closed.")
    mongo_client, db_instance, redis_client = None, None, None


# --- Data store dependencies ---

async def get_db() -> AsyncGenerator[AsyncIOMotorDatabase, None]:
    """
    Yields the shared MongoDB database.

    Raises:
        HTTPException 503: If MongoDB could not be reached at startup.
    """
    if db_instance is None:
        logger.critical("MongoDB database instance is not available. Check initialization.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database service not available.",
        )
    yield db_instance

async def get_optional_redis() -> AsyncGenerator[Optional[redis.Redis], None]:
    """Yields the Redis client, or None when Redis is not configured or unreachable."""
    yield redis_client


# --- Caller identity ---

async def get_current_active_user_id(
    user_id: str = Depends(get_current_user_id)
) -> str:
    return user_id


# --- Services ---

def get_recommendation_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    cache: Optional[redis.Redis] = Depends(get_optional_redis),
) -> RecommendationService:
    return RecommendationService(db=db, cache=cache)
