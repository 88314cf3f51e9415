# backend/app/services/recommendation_service.py

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional, Set

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from app.core.config import settings
from app.data_access.mongo_client import AnimeRepository, RecommendationRepository, UserRepository
from app.data_access.redis_client import RecommendationCache
from app.models.anime import AnimeReadSummary, SimilarAnime
from app.models.recommendation import (
    RecommendationAlgorithm,
    RecommendationCreate,
    RecommendationInDB,
    RecommendationMetadata,
    RecommendationRead,
    RecommendationReason,
    RecommendationStats,
    SimilarUserWeight,
)
from app.models.user import SimilarUser, SimilarUserRead, UserInDB, UserReadSummary, WatchlistEntry
from app.services.errors import (
    AnimeNotFoundError,
    DataStoreTimeoutError,
    InsufficientHistoryError,
    RecommendationServiceError,
    UserNotFoundError,
)
from app.services.similarity_service import SimilarityService
from app.utils.helpers import retry_read, with_timeout
from app.utils.scoring import normalize_score
from app.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# --- Constants ---
SIMILAR_USERS_FOR_GENERATION = 5
MIN_RATING_FOR_LIKED = 7 # Rating at which a watchlist entry counts as 'liked'
MAX_CONTENT_SEEDS = 5 # Liked anime used as content-based seeds
SIMILAR_ANIME_PER_SEED = 10
FALLBACK_MIN_RATING = 8.0
MIN_RATED_FOR_GENERATION = 3
MAX_SIMILAR_USERS_IN_METADATA = 3

# One registry per process: concurrent generations for a user share a task
_generation_flights = SingleFlight()
# Strong references to background cleanups so they are not collected mid-run
_pending_discards: Set[asyncio.Task] = set()

class RecommendationService:
    def __init__(self, db: AsyncIOMotorDatabase, cache: Optional[Redis] = None):
        """
        Initializes the Recommendation Service.

        Args:
            db: An instance of AsyncIOMotorDatabase (Motor client).
            cache: Optional Redis client (redis-py async). Enables similar-anime
                caching and the cross-process generation lock.
        """
        self.db = db
        self.users = UserRepository(db)
        self.anime = AnimeRepository(db)
        self.recommendations = RecommendationRepository(db)
        self.cache = (
            RecommendationCache(cache, settings.CACHE_TTL_SIMILAR_ANIME) if cache is not None else None
        )
        self.similarity = SimilarityService(db, cache)
        self.flights = _generation_flights
        self.ttl = timedelta(days=settings.RECOMMENDATION_TTL_DAYS)
        self.timeout_seconds = settings.DB_OPERATION_TIMEOUT_SECONDS

    # --- Data store helpers ---

    async def _read(self, factory, operation: str):
        return await retry_read(
            factory,
            timeout_seconds=self.timeout_seconds,
            operation=operation,
            retries=settings.DB_READ_RETRIES,
            backoff_seconds=settings.DB_RETRY_BACKOFF_SECONDS,
        )

    async def _write(self, awaitable, operation: str):
        # Writes are never retried: a blind retry could duplicate records
        return await with_timeout(awaitable, self.timeout_seconds, operation)

    async def _get_user_or_raise(self, user_id: str) -> UserInDB:
        user = await self._read(lambda: self.users.find_by_id(user_id), "find user")
        if user is None:
            logger.warning(f"User {user_id} not found.")
            raise UserNotFoundError(f"User not found for ID: {user_id}")
        return user

    # --- Generation phases ---

    async def _collaborative_recommendations(
        self, user: UserInDB, similar_users: List[SimilarUser], limit: int
    ) -> List[RecommendationCreate]:
        """Anime rated highly by similar users, weighted by how similar each user is."""
        if limit <= 0:
            return []
        watched = user.watchlist_anime_ids()
        similarity_by_user = {s.userId: s.similarity for s in similar_users}
        others = await self._read(
            lambda: self.users.find_by_ids(list(similarity_by_user)), "find similar users"
        )

        scores: Dict[str, float] = {}
        contributors: Dict[str, List[SimilarUserWeight]] = {}
        # Walk users in similarity order so contributor lists come out ranked
        others.sort(key=lambda other: similarity_by_user.get(other.id, 0.0), reverse=True)
        for other in others:
            similarity = similarity_by_user[other.id]
            for entry in other.rated_entries():
                if entry.rating < MIN_RATING_FOR_LIKED or entry.animeId in watched:
                    continue
                scores[entry.animeId] = scores.get(entry.animeId, 0.0) + entry.rating * similarity
                contributors.setdefault(entry.animeId, []).append(
                    SimilarUserWeight(userId=other.id, similarity=similarity)
                )

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            RecommendationCreate(
                userId=user.id,
                animeId=anime_id,
                score=normalize_score(score),
                algorithm=RecommendationAlgorithm.COLLABORATIVE,
                reason=RecommendationReason.SIMILAR_USERS,
                metadata=RecommendationMetadata(
                    similarUsers=contributors[anime_id][:MAX_SIMILAR_USERS_IN_METADATA],
                    averageRating=score / len(similar_users),
                ),
            )
            for anime_id, score in ranked
        ]

    async def _content_based_recommendations(
        self, user: UserInDB, liked: List[WatchlistEntry], limit: int
    ) -> List[RecommendationCreate]:
        """Anime most similar, summed over the user's liked anime."""
        if limit <= 0:
            return []
        watched = user.watchlist_anime_ids()
        scores: Dict[str, float] = {}
        candidates: Dict[str, AnimeReadSummary] = {}

        for seed in liked:
            try:
                similar: List[SimilarAnime] = await self.similarity.find_similar_anime(
                    seed.animeId, SIMILAR_ANIME_PER_SEED
                )
            except AnimeNotFoundError:
                logger.warning(f"Liked anime {seed.animeId} of user {user.id} not found; skipping seed.")
                continue
            for item in similar:
                anime_id = item.anime.id
                scores[anime_id] = scores.get(anime_id, 0.0) + item.totalScore
                candidates[anime_id] = item.anime

        ranked = sorted(
            ((anime_id, score) for anime_id, score in scores.items() if anime_id not in watched),
            key=lambda item: item[1],
            reverse=True,
        )[:limit]
        return [
            RecommendationCreate(
                userId=user.id,
                animeId=anime_id,
                score=normalize_score(score),
                algorithm=RecommendationAlgorithm.CONTENT_BASED,
                reason=RecommendationReason.SIMILAR_GENRES,
                metadata=RecommendationMetadata(
                    commonGenres=candidates[anime_id].genres,
                    commonMoods=candidates[anime_id].moods,
                    averageRating=candidates[anime_id].rating,
                ),
            )
            for anime_id, score in ranked
        ]

    async def _high_rated_recommendations(self, user: UserInDB, limit: int) -> List[RecommendationCreate]:
        """Best rated anime the user has not added yet."""
        if limit <= 0:
            return []
        top_rated = await self._read(
            lambda: self.anime.find_top_rated(user.watchlist_anime_ids(), FALLBACK_MIN_RATING, limit),
            "find top rated anime",
        )
        return [
            RecommendationCreate(
                userId=user.id,
                animeId=anime.id,
                score=normalize_score(anime.rating),
                algorithm=RecommendationAlgorithm.CONTENT_BASED,
                reason=RecommendationReason.HIGH_RATED,
                metadata=RecommendationMetadata(averageRating=anime.rating),
            )
            for anime in top_rated
        ]

    async def _run_generation(self, user_id: str, limit: int) -> List[RecommendationInDB]:
        """
        Generates and stores a fresh recommendation set.

        Phases run in a fixed order: collaborative, content-based, then the
        high-rated fallback, which fills whatever slots the first two left.
        Records are not de-duplicated across phases, so one anime can be
        recommended by more than one phase.
        """
        start_time = time.monotonic()
        log_context = {"userId": user_id, "limit": limit, "function": "generate_recommendations"}

        user = await self._get_user_or_raise(user_id)
        cleared = await self._write(self.recommendations.clear_old_recommendations(user_id), "clear old recommendations")
        log_context["clearedCount"] = cleared

        generated: List[RecommendationCreate] = []
        phase_limit = limit // 2

        # 1. Collaborative filtering
        similar_users = await self.similarity.find_similar_users(user_id, SIMILAR_USERS_FOR_GENERATION, user=user)
        if similar_users:
            collaborative = await self._collaborative_recommendations(user, similar_users, phase_limit)
            generated.extend(collaborative)
            log_context["collaborativeCount"] = len(collaborative)

        # 2. Content-based filtering
        liked = [
            entry for entry in user.watchlist
            if entry.rating is not None and entry.rating >= MIN_RATING_FOR_LIKED
        ][:MAX_CONTENT_SEEDS]
        if liked:
            content_based = await self._content_based_recommendations(user, liked, phase_limit)
            generated.extend(content_based)
            log_context["contentBasedCount"] = len(content_based)

        # 3. Fallback to high rated anime
        if len(generated) < limit:
            fallback = await self._high_rated_recommendations(user, limit - len(generated))
            generated.extend(fallback)
            log_context["fallbackCount"] = len(fallback)

        # 4. Persist as one batch; undo partial writes on failure
        generation_id = uuid.uuid4().hex
        insert = asyncio.ensure_future(self.recommendations.insert_batch(generated, generation_id, self.ttl))
        try:
            # The driver keeps writing past a timeout, so the insert task is never cancelled
            stored = await self._write(asyncio.shield(insert), "insert recommendations")
        except DataStoreTimeoutError:
            self._discard_when_settled(insert, user_id, generation_id)
            raise
        except PyMongoError:
            await self._discard_generation(user_id, generation_id)
            raise

        # 5. The new set replaces whatever was still active from earlier runs
        try:
            superseded = await self._write(
                self.recommendations.delete_superseded(user_id, generation_id),
                "delete superseded recommendations",
            )
        except (PyMongoError, DataStoreTimeoutError):
            await self._discard_generation(user_id, generation_id)
            raise

        duration = (time.monotonic() - start_time) * 1000
        logger.info({
            **log_context,
            "message": "Generated recommendations.",
            "generationId": generation_id,
            "recommendationsCount": len(stored),
            "supersededCount": superseded,
            "durationMs": duration,
        })
        return stored

    async def _discard_generation(self, user_id: str, generation_id: str) -> None:
        try:
            removed = await self._write(
                self.recommendations.delete_generation(user_id, generation_id),
                "discard failed generation",
            )
            logger.warning(f"Discarded {removed} records of failed generation {generation_id} for user {user_id}.")
        except (PyMongoError, DataStoreTimeoutError) as e:
            # Leftovers still expire through the TTL index
            logger.error(f"Could not discard failed generation {generation_id} for user {user_id}: {e}", exc_info=True)

    def _discard_when_settled(self, write: asyncio.Future, user_id: str, generation_id: str) -> asyncio.Task:
        """Discards a timed-out generation once its insert has actually finished."""
        async def _wait_then_discard():
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is not None:
                logger.error(f"Timed-out insert of generation {generation_id} failed: {write.exception()}")
            await self._discard_generation(user_id, generation_id)

        task = asyncio.ensure_future(_wait_then_discard())
        _pending_discards.add(task)
        task.add_done_callback(_pending_discards.discard)
        return task

    @asynccontextmanager
    async def _generation_lock(self, user_id: str):
        """Cross-process lock around generation; a no-op without Redis."""
        if self.cache is None:
            yield
            return
        lock = self.cache.generation_lock(
            user_id,
            timeout_seconds=settings.GENERATION_LOCK_TIMEOUT_SECONDS,
            blocking_timeout_seconds=settings.GENERATION_LOCK_TIMEOUT_SECONDS,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.error(f"Redis error acquiring generation lock for user {user_id}: {e}", exc_info=True)
            raise RecommendationServiceError("Could not acquire recommendation generation lock.") from e
        if not acquired:
            raise RecommendationServiceError(f"Timed out waiting for recommendation generation of user {user_id}.")
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                # The lock may have expired already; it will not be held past its timeout
                logger.warning(f"Could not release generation lock for user {user_id}: {e}")

    async def _generate_exclusive(self, user_id: str, limit: int, only_if_short: bool) -> List[RecommendationInDB]:
        async with self._generation_lock(user_id):
            if only_if_short:
                # Another process may have regenerated while we waited for the lock
                active = await self._read(lambda: self.recommendations.count_active(user_id), "count active recommendations")
                if active >= limit:
                    logger.info(f"Skipping regeneration for user {user_id}: {active} active recommendations.")
                    # Callers that joined this flight still get the current set
                    return await self._read(
                        lambda: self.recommendations.get_user_recommendations(user_id, limit),
                        "get user recommendations",
                    )
            return await self._run_generation(user_id, limit)

    # --- Public Service Methods ---

    async def ensure_sufficient_history(self, user_id: str) -> UserInDB:
        """
        Checks the caller-side precondition for explicit generation.

        Raises:
            UserNotFoundError: If the user does not exist.
            InsufficientHistoryError: If the user rated fewer than MIN_RATED_FOR_GENERATION anime.
        """
        user = await self._get_user_or_raise(user_id)
        rated = len(user.rated_entries())
        if rated < MIN_RATED_FOR_GENERATION:
            raise InsufficientHistoryError(
                f"At least {MIN_RATED_FOR_GENERATION} rated anime are needed for recommendations (found {rated})."
            )
        return user

    async def generate_recommendations(
        self, user_id: str, limit: int = settings.DEFAULT_RECOMMENDATION_LIMIT
    ) -> List[RecommendationInDB]:
        """
        Generates a new recommendation set for a user and returns it.

        At most one generation runs per user at a time; concurrent callers
        await the in-flight generation and receive its result.

        Raises:
            UserNotFoundError: If the user does not exist.
            DataStoreTimeoutError: If a data-store call exceeds its timeout.
        """
        return await self.flights.do(
            user_id, lambda: self._generate_exclusive(user_id, limit, only_if_short=False)
        )

    async def get_user_recommendations(
        self,
        user_id: str,
        limit: int = settings.DEFAULT_RECOMMENDATION_LIMIT,
        algorithm: Optional[RecommendationAlgorithm] = None,
    ) -> List[RecommendationRead]:
        """
        Returns the user's active recommendations, best score first, joined with
        their anime. If fewer than `limit` are active, a new set is generated
        first (read-through).
        """
        active = await self._read(lambda: self.recommendations.count_active(user_id), "count active recommendations")
        if active < limit:
            logger.info(f"User {user_id} has {active} active recommendations (< {limit}); regenerating.")
            await self.flights.do(
                user_id, lambda: self._generate_exclusive(user_id, limit, only_if_short=True)
            )
        records = await self._read(
            lambda: self.recommendations.get_user_recommendations(user_id, limit, algorithm),
            "get user recommendations",
        )
        return await self._resolve(records)

    async def _resolve(self, records: List[RecommendationInDB]) -> List[RecommendationRead]:
        """Joins records with their anime and the usernames of contributing similar users."""
        if not records:
            return []
        anime_ids = list({record.animeId for record in records})
        user_ids = list({weight.userId for record in records for weight in record.metadata.similarUsers})

        anime_list, similar_users = await asyncio.gather(
            self._read(lambda: self.anime.find_by_ids(anime_ids), "resolve anime"),
            self._read(lambda: self.users.find_by_ids(user_ids), "resolve similar users"),
        )
        anime_by_id = {anime.id: anime.to_summary() for anime in anime_list}
        usernames = {user.id: user.username for user in similar_users}

        resolved = []
        for record in records:
            metadata = record.metadata.model_copy(update={
                "similarUsers": [
                    weight.model_copy(update={"username": usernames.get(weight.userId)})
                    for weight in record.metadata.similarUsers
                ]
            })
            resolved.append(RecommendationRead(
                id=record.id,
                anime=anime_by_id.get(record.animeId),
                score=record.score,
                algorithm=record.algorithm,
                reason=record.reason,
                metadata=metadata,
                isViewed=record.isViewed,
                createdAt=record.createdAt,
                expiresAt=record.expiresAt,
            ))
        return resolved

    async def mark_recommendation_as_viewed(self, user_id: str, anime_id: str) -> int:
        """Marks the user's unviewed records for `anime_id` as viewed. Safe to repeat."""
        modified = await self._write(self.recommendations.mark_as_viewed(user_id, anime_id), "mark viewed")
        logger.info(f"Marked {modified} recommendations of anime {anime_id} as viewed for user {user_id}.")
        return modified

    async def clear_old_recommendations(self, user_id: str) -> int:
        return await self._write(self.recommendations.clear_old_recommendations(user_id), "clear old recommendations")

    async def find_similar_anime(self, anime_id: str, limit: int = 10) -> List[SimilarAnime]:
        return await self.similarity.find_similar_anime(anime_id, limit)

    async def find_similar_users(self, user_id: str, limit: int = 10) -> List[SimilarUserRead]:
        """Similar users joined with their public identity."""
        similar = await self.similarity.find_similar_users(user_id, limit)
        if not similar:
            return []
        profiles = await self._read(
            lambda: self.users.find_by_ids([s.userId for s in similar]), "resolve similar users"
        )
        by_id = {p.id: UserReadSummary(id=p.id, username=p.username, avatar=p.avatar) for p in profiles}
        return [SimilarUserRead(**s.model_dump(), user=by_id.get(s.userId)) for s in similar]

    async def get_recommendation_stats(self, user_id: str) -> RecommendationStats:
        return await self._read(lambda: self.recommendations.get_stats(user_id), "recommendation stats")
