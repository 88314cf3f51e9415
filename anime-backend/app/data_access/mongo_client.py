# MongoDB connection and repository logic
# backend/app/data_access/mongo_client.py

import logging
import re
from datetime import timedelta
from typing import List, Optional, Dict, Any, Iterable

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.models.anime import AnimeInDB
from app.models.recommendation import (
    RecommendationAlgorithm,
    RecommendationCreate,
    RecommendationInDB,
    RecommendationStats,
)
from app.models.user import UserInDB
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# --- Base Repository ---
class BaseRepository:
    """Common repository logic shared by the collection wrappers."""
    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str):
        self.db = db
        self.collection: AsyncIOMotorCollection = db[collection_name]
        logger.debug(f"Initialized repository for collection: {collection_name}")

    def _check_db(self):
        """Helper to check if DB instance is available."""
        if self.db is None or self.collection is None:
             logger.critical("Database not available for repository.")
             raise ConnectionError("Database connection not available.")

    def _validate_object_id(self, id_str: Any) -> Optional[ObjectId]:
        """Validates a string as a MongoDB ObjectId."""
        if isinstance(id_str, ObjectId):
            return id_str
        if isinstance(id_str, str) and ObjectId.is_valid(id_str):
            return ObjectId(id_str)
        logger.warning(f"Invalid ObjectId format: {id_str}")
        return None

    def _validate_object_ids(self, id_strs: Iterable[Any]) -> List[ObjectId]:
        return [obj_id for value in id_strs if (obj_id := self._validate_object_id(value))]

    def _any_label(self, labels: Iterable[str]) -> Dict[str, Any]:
        """Matches documents holding any of `labels`, ignoring letter case."""
        # Stored genres and moods keep whatever case they were imported with
        return {"$in": [re.compile(f"^{re.escape(label)}$", re.IGNORECASE) for label in labels]}

# --- User Repository (read-only) ---
class UserRepository(BaseRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, collection_name="users")

    async def find_by_id(self, user_id: str) -> Optional[UserInDB]:
        """Finds a single user, including the watchlist."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return None
        try:
            doc = await self.collection.find_one({"_id": obj_id})
            return UserInDB.model_validate(doc) if doc else None
        except PyMongoError as e:
            logger.error(f"DB error finding user by ID {user_id}: {e}", exc_info=True)
            raise

    async def find_by_ids(self, user_ids: List[str]) -> List[UserInDB]:
        """Finds multiple users by id. Unknown or invalid ids are skipped."""
        self._check_db()
        valid_object_ids = self._validate_object_ids(user_ids)
        if not valid_object_ids:
            return []
        try:
            cursor = self.collection.find({"_id": {"$in": valid_object_ids}})
            docs = await cursor.to_list(length=len(valid_object_ids))
            return [UserInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error finding users by IDs {user_ids}: {e}", exc_info=True)
            raise

    async def find_rated_users(self, exclude_user_id: str) -> List[UserInDB]:
        """Finds every other user with at least one rated watchlist entry."""
        self._check_db()
        query: Dict[str, Any] = {"watchlist.rating": {"$gte": 1}}
        obj_id = self._validate_object_id(exclude_user_id)
        if obj_id:
            query["_id"] = {"$ne": obj_id}
        try:
            cursor = self.collection.find(query, {"username": 1, "avatar": 1, "watchlist": 1})
            docs = await cursor.to_list(length=None)
            return [UserInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error finding rated users (excluding {exclude_user_id}): {e}", exc_info=True)
            raise

# --- Anime Repository (read-only) ---
class AnimeRepository(BaseRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, collection_name="anime")

    async def find_by_id(self, anime_id: str) -> Optional[AnimeInDB]:
        """Finds a single anime by its MongoDB ObjectId string."""
        self._check_db()
        obj_id = self._validate_object_id(anime_id)
        if not obj_id:
            return None
        try:
            doc = await self.collection.find_one({"_id": obj_id})
            return AnimeInDB.model_validate(doc) if doc else None
        except PyMongoError as e:
            logger.error(f"DB error finding anime by ID {anime_id}: {e}", exc_info=True)
            raise

    async def find_by_ids(self, anime_ids: List[str]) -> List[AnimeInDB]:
        """Finds multiple anime by a list of MongoDB ObjectId strings."""
        self._check_db()
        valid_object_ids = self._validate_object_ids(anime_ids)
        if not valid_object_ids:
            return []
        try:
            cursor = self.collection.find({"_id": {"$in": valid_object_ids}})
            docs = await cursor.to_list(length=len(valid_object_ids))
            return [AnimeInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error finding anime by IDs {anime_ids}: {e}", exc_info=True)
            raise

    async def find_sharing_features(self, reference: AnimeInDB) -> List[AnimeInDB]:
        """Finds every other anime sharing at least one genre or mood with `reference`."""
        self._check_db()
        or_clauses = []
        if reference.genres:
            or_clauses.append({"genres": self._any_label(reference.genres)})
        if reference.moods:
            or_clauses.append({"moods": self._any_label(reference.moods)})
        if not or_clauses:
            return []
        query = {"_id": {"$ne": ObjectId(reference.id)}, "$or": or_clauses}
        try:
            cursor = self.collection.find(query)
            docs = await cursor.to_list(length=None)
            return [AnimeInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error finding anime similar to {reference.id}: {e}", exc_info=True)
            raise

    async def find_top_rated(
        self, exclude_ids: Iterable[str], min_rating: float, limit: int
    ) -> List[AnimeInDB]:
        """Anime not in `exclude_ids` with rating >= `min_rating`, best rated first."""
        self._check_db()
        if limit <= 0:
            # limit(0) means "no limit" to MongoDB
            return []
        query = {
            "_id": {"$nin": self._validate_object_ids(exclude_ids)},
            "rating": {"$gte": min_rating},
        }
        try:
            cursor = self.collection.find(query).sort("rating", DESCENDING).limit(limit)
            docs = await cursor.to_list(length=limit)
            return [AnimeInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error finding top rated anime: {e}", exc_info=True)
            raise

# --- Recommendation Repository ---
class RecommendationRepository(BaseRepository):
    """
    Persists recommendation records. Every read and write is partitioned by
    userId; records reference users and anime by id only.
    """
    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, collection_name="recommendations")

    async def ensure_indexes(self) -> None:
        """Creates query indexes and the TTL index that reclaims expired records."""
        self._check_db()
        try:
            await self.collection.create_index([("userId", ASCENDING), ("score", DESCENDING)])
            await self.collection.create_index([("userId", ASCENDING), ("algorithm", ASCENDING)])
            await self.collection.create_index([("userId", ASCENDING), ("isViewed", ASCENDING)])
            await self.collection.create_index([("generationId", ASCENDING)])
            await self.collection.create_index([("expiresAt", ASCENDING)], expireAfterSeconds=0)
            logger.info("Recommendation indexes ensured (including TTL on expiresAt).")
        except PyMongoError as e:
            logger.error(f"DB error creating recommendation indexes: {e}", exc_info=True)
            raise

    def _active_query(self, user_obj_id: ObjectId, algorithm: Optional[RecommendationAlgorithm] = None) -> Dict[str, Any]:
        # The TTL monitor runs only periodically, so expiry is also checked on read
        query: Dict[str, Any] = {
            "userId": user_obj_id,
            "isViewed": False,
            "expiresAt": {"$gt": utcnow()},
        }
        if algorithm:
            query["algorithm"] = algorithm.value
        return query

    async def get_user_recommendations(
        self,
        user_id: str,
        limit: int,
        algorithm: Optional[RecommendationAlgorithm] = None,
    ) -> List[RecommendationInDB]:
        """Active (unviewed, unexpired) records for a user, best score first."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id or limit <= 0:
            return []
        try:
            cursor = (
                self.collection.find(self._active_query(obj_id, algorithm))
                .sort("score", DESCENDING)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
            return [RecommendationInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error fetching recommendations for user {user_id}: {e}", exc_info=True)
            raise

    async def count_active(self, user_id: str) -> int:
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return 0
        try:
            return await self.collection.count_documents(self._active_query(obj_id))
        except PyMongoError as e:
            logger.error(f"DB error counting recommendations for user {user_id}: {e}", exc_info=True)
            raise

    async def insert_batch(
        self,
        records: List[RecommendationCreate],
        generation_id: str,
        ttl: timedelta,
    ) -> List[RecommendationInDB]:
        """Inserts one generation's records, all stamped with the same generationId."""
        self._check_db()
        if not records:
            return []
        now = utcnow()
        docs = []
        for record in records:
            doc = record.model_dump(mode="json")
            doc["_id"] = ObjectId()
            doc["userId"] = ObjectId(record.userId)
            doc["animeId"] = ObjectId(record.animeId)
            doc["metadata"]["similarUsers"] = [
                {"userId": ObjectId(weight.userId), "similarity": weight.similarity}
                for weight in record.metadata.similarUsers
            ]
            doc.update({
                "isViewed": False,
                "viewedAt": None,
                "createdAt": now,
                "updatedAt": now,
                "expiresAt": now + ttl,
                "generationId": generation_id,
            })
            docs.append(doc)
        try:
            await self.collection.insert_many(docs, ordered=True)
            logger.info(f"Inserted {len(docs)} recommendations (generation {generation_id}).")
            return [RecommendationInDB.model_validate(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"DB error inserting recommendation batch {generation_id}: {e}", exc_info=True)
            raise

    async def delete_generation(self, user_id: str, generation_id: str) -> int:
        """Removes every record of one generation (used to undo a failed batch)."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return 0
        try:
            result = await self.collection.delete_many({"userId": obj_id, "generationId": generation_id})
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"DB error deleting generation {generation_id}: {e}", exc_info=True)
            raise

    async def delete_superseded(self, user_id: str, generation_id: str) -> int:
        """Deletes the user's still-active records that belong to earlier generations."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return 0
        try:
            result = await self.collection.delete_many({
                "userId": obj_id,
                "isViewed": False,
                "generationId": {"$ne": generation_id},
            })
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"DB error deleting superseded recommendations for user {user_id}: {e}", exc_info=True)
            raise

    async def mark_as_viewed(self, user_id: str, anime_id: str) -> int:
        """
        Flags every unviewed record for (user, anime) as viewed. Records that are
        already viewed keep their original viewedAt, so repeated calls are no-ops.
        """
        self._check_db()
        user_obj_id = self._validate_object_id(user_id)
        anime_obj_id = self._validate_object_id(anime_id)
        if not user_obj_id or not anime_obj_id:
            return 0
        now = utcnow()
        try:
            result = await self.collection.update_many(
                {"userId": user_obj_id, "animeId": anime_obj_id, "isViewed": False},
                {"$set": {"isViewed": True, "viewedAt": now, "updatedAt": now}},
            )
            return result.modified_count
        except PyMongoError as e:
            logger.error(f"DB error marking anime {anime_id} viewed for user {user_id}: {e}", exc_info=True)
            raise

    async def clear_old_recommendations(self, user_id: str) -> int:
        """Deletes the user's viewed or expired records."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return 0
        try:
            result = await self.collection.delete_many({
                "userId": obj_id,
                "$or": [
                    {"isViewed": True},
                    {"expiresAt": {"$lt": utcnow()}},
                ],
            })
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"DB error clearing old recommendations for user {user_id}: {e}", exc_info=True)
            raise

    async def get_stats(self, user_id: str) -> RecommendationStats:
        """Counters over every stored record of the user, viewed and expired included."""
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return RecommendationStats()
        try:
            cursor = self.collection.find(
                {"userId": obj_id},
                {"score": 1, "isViewed": 1, "algorithm": 1, "_id": 0},
            )
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"DB error computing recommendation stats for user {user_id}: {e}", exc_info=True)
            raise

        total = len(docs)
        if total == 0:
            return RecommendationStats()
        viewed = sum(1 for doc in docs if doc.get("isViewed"))
        return RecommendationStats(
            total=total,
            viewed=viewed,
            collaborative=sum(1 for doc in docs if doc.get("algorithm") == RecommendationAlgorithm.COLLABORATIVE.value),
            contentBased=sum(1 for doc in docs if doc.get("algorithm") == RecommendationAlgorithm.CONTENT_BASED.value),
            averageScore=sum(doc.get("score", 0.0) for doc in docs) / total,
            viewRate=round(viewed / total * 100, 1),
        )
