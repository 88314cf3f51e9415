# Redis-backed cache and locks for the recommendation engine
# backend/app/data_access/redis_client.py

import json
import logging
from typing import Any, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.asyncio.lock import Lock
from redis.exceptions import RedisError

from app.models.anime import SimilarAnime

logger = logging.getLogger(__name__)

SIMILAR_ANIME_CACHE_PREFIX = "rec:similar:"
GENERATION_LOCK_PREFIX = "rec:lock:"

def similar_anime_cache_key(anime_id: str, limit: int) -> str:
    return f"{SIMILAR_ANIME_CACHE_PREFIX}{anime_id}:{limit}"

class RecommendationCache:
    """
    Similar-anime lists cached as JSON, plus the per-user generation lock.

    The cache is best effort: Redis errors and undecodable entries are logged
    and reported as misses, so callers fall back to MongoDB.
    """
    def __init__(self, client: redis.Redis, similar_anime_ttl_seconds: int):
        self.client = client
        self.similar_anime_ttl_seconds = similar_anime_ttl_seconds

    async def _get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.error(f"Redis GET error for key {key}: {e}", exc_info=True)
            return None
        if raw is None:
            logger.debug(f"Cache miss for key: {key}")
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable cache value for key {key}.")
            return None

    async def get_similar_anime(self, anime_id: str, limit: int) -> Optional[List[SimilarAnime]]:
        key = similar_anime_cache_key(anime_id, limit)
        cached = await self._get_json(key)
        if not isinstance(cached, list):
            return None
        try:
            return [SimilarAnime.model_validate(item) for item in cached]
        except ValidationError as e:
            logger.warning(f"Invalid similar-anime data in cache key {key}: {e}")
            return None

    async def store_similar_anime(self, anime_id: str, limit: int, items: List[SimilarAnime]) -> bool:
        key = similar_anime_cache_key(anime_id, limit)
        payload = json.dumps([item.model_dump(mode="json") for item in items])
        try:
            await self.client.set(key, payload, ex=self.similar_anime_ttl_seconds)
            return True
        except RedisError as e:
            logger.error(f"Redis SET error for key {key}: {e}", exc_info=True)
            return False

    def generation_lock(self, user_id: str, timeout_seconds: float, blocking_timeout_seconds: float) -> Lock:
        """
        Lock serializing recommendation generation for one user across processes.
        It expires after `timeout_seconds` even if its holder dies.
        """
        return self.client.lock(
            f"{GENERATION_LOCK_PREFIX}{user_id}",
            timeout=timeout_seconds,
            blocking_timeout=blocking_timeout_seconds,
        )
