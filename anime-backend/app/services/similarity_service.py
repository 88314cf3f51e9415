# backend/app/services/similarity_service.py

import logging
import time
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from redis.asyncio import Redis

from app.core.config import settings
from app.data_access.mongo_client import AnimeRepository, UserRepository
from app.data_access.redis_client import RecommendationCache
from app.models.anime import AnimeInDB, SimilarAnime
from app.models.user import SimilarUser, UserInDB
from app.services.errors import AnimeNotFoundError
from app.utils.helpers import retry_read
from app.utils.scoring import composite_similarity, pearson_correlation

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_SIMILAR_LIMIT = 10
MIN_COMMON_ANIME = 3 # Fewer shared ratings are statistically unreliable
MIN_USER_SIMILARITY = 0.3 # Correlation must exceed this to count as similar

class SimilarityService:
    """
    User-user similarity (Pearson correlation over shared ratings) and
    item-item similarity (weighted genre/mood overlap plus rating proximity).
    """
    def __init__(self, db: AsyncIOMotorDatabase, cache: Optional[Redis] = None):
        self.users = UserRepository(db)
        self.anime = AnimeRepository(db)
        self.cache = (
            RecommendationCache(cache, settings.CACHE_TTL_SIMILAR_ANIME) if cache is not None else None
        )
        self.timeout_seconds = settings.DB_OPERATION_TIMEOUT_SECONDS
        self.read_retries = settings.DB_READ_RETRIES
        self.retry_backoff_seconds = settings.DB_RETRY_BACKOFF_SECONDS

    async def _read(self, factory, operation: str):
        return await retry_read(
            factory,
            timeout_seconds=self.timeout_seconds,
            operation=operation,
            retries=self.read_retries,
            backoff_seconds=self.retry_backoff_seconds,
        )

    # --- User-user ---

    def _user_similarity(
        self, target_ratings: dict, candidate: UserInDB
    ) -> Tuple[float, int]:
        """Pearson correlation between the target and one candidate, with the overlap size."""
        candidate_ratings = candidate.ratings_by_anime()
        pairs = [
            (rating, candidate_ratings[anime_id])
            for anime_id, rating in target_ratings.items()
            if anime_id in candidate_ratings
        ]
        if len(pairs) < MIN_COMMON_ANIME:
            return 0.0, len(pairs)
        return pearson_correlation(pairs), len(pairs)

    async def find_similar_users(
        self,
        user_id: str,
        limit: int = DEFAULT_SIMILAR_LIMIT,
        user: Optional[UserInDB] = None,
    ) -> List[SimilarUser]:
        """
        Finds users whose ratings correlate with the target's.

        Candidates need at least MIN_COMMON_ANIME rated anime in common with the
        target and a correlation above MIN_USER_SIMILARITY. Results are sorted by
        similarity, strongest first. An unknown user or an empty watchlist
        yields an empty list.

        Args:
            user_id: The target user.
            limit: Maximum number of similar users returned.
            user: The already-loaded target user, to skip a lookup.
        """
        start_time = time.monotonic()
        log_context = {"userId": user_id, "limit": limit, "function": "find_similar_users"}

        if user is None:
            user = await self._read(lambda: self.users.find_by_id(user_id), "find user")
        if user is None or not user.watchlist:
            logger.info({**log_context, "message": "User missing or watchlist empty; no similar users."})
            return []

        target_ratings = user.ratings_by_anime()
        if not target_ratings:
            logger.info({**log_context, "message": "User has no rated entries; no similar users."})
            return []

        candidates = await self._read(lambda: self.users.find_rated_users(user.id), "find rated users")

        similarities: List[SimilarUser] = []
        for candidate in candidates:
            try:
                similarity, common = self._user_similarity(target_ratings, candidate)
            except (ArithmeticError, ValueError, TypeError) as e:
                # One bad pair must not abort the batch: treat as no correlation
                logger.warning({**log_context, "message": "Similarity computation failed; treating as 0.", "candidateId": candidate.id, "error": str(e)})
                continue
            if common >= MIN_COMMON_ANIME and similarity > MIN_USER_SIMILARITY:
                similarities.append(SimilarUser(userId=candidate.id, similarity=similarity, commonAnime=common))

        similarities.sort(key=lambda s: s.similarity, reverse=True)
        result = similarities[:limit]

        duration = (time.monotonic() - start_time) * 1000
        logger.info({
            **log_context,
            "message": "Computed similar users.",
            "candidatesCount": len(candidates),
            "similarCount": len(result),
            "durationMs": duration,
        })
        return result

    # --- Item-item ---

    def _score_candidates(self, reference: AnimeInDB, candidates: List[AnimeInDB]) -> List[SimilarAnime]:
        scored = []
        for candidate in candidates:
            if candidate.id == reference.id:
                continue
            composite = composite_similarity(
                reference.genres, reference.moods, reference.rating,
                candidate.genres, candidate.moods, candidate.rating,
            )
            scored.append(SimilarAnime(
                anime=candidate.to_summary(),
                genreOverlap=composite.genre_overlap,
                moodOverlap=composite.mood_overlap,
                ratingGap=composite.rating_gap,
                totalScore=composite.total,
            ))
        scored.sort(key=lambda s: s.totalScore, reverse=True)
        return scored

    async def find_similar_anime(self, anime_id: str, limit: int = DEFAULT_SIMILAR_LIMIT) -> List[SimilarAnime]:
        """
        Ranks other anime by their composite similarity to `anime_id`:

            0.4 * shared genres + 0.3 * shared moods + 0.3 * (10 - |rating gap|)

        Only anime sharing at least one genre or mood are considered, and the
        reference itself is never returned.

        Raises:
            AnimeNotFoundError: If the reference anime does not exist.
        """
        start_time = time.monotonic()
        log_context = {"sourceAnimeId": anime_id, "limit": limit, "function": "find_similar_anime"}

        cached = await self.cache.get_similar_anime(anime_id, limit) if self.cache is not None else None
        if cached is not None:
            duration = (time.monotonic() - start_time) * 1000
            logger.info({**log_context, "message": "Similar anime cache hit.", "durationMs": duration, "cacheStatus": "hit", "count": len(cached)})
            return cached

        reference = await self._read(lambda: self.anime.find_by_id(anime_id), "find anime")
        if reference is None:
            logger.warning({**log_context, "message": "Reference anime not found."})
            raise AnimeNotFoundError(f"Anime not found for ID: {anime_id}")

        candidates = await self._read(lambda: self.anime.find_sharing_features(reference), "find anime sharing features")
        result = self._score_candidates(reference, candidates)[:limit]

        if self.cache is not None and result:
            stored = await self.cache.store_similar_anime(anime_id, limit, result)
            log_context["cacheStatus"] = "stored" if stored else "write_failed"

        duration = (time.monotonic() - start_time) * 1000
        logger.info({
            **log_context,
            "message": "Computed similar anime.",
            "candidatesCount": len(candidates),
            "count": len(result),
            "durationMs": duration,
        })
        return result
