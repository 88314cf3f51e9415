import os

# Settings are loaded at import time, so the environment must be ready first
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "anime_test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DB_READ_RETRIES", "0")

import uuid
from typing import Dict, Iterable, Optional

import pytest
from bson import ObjectId
from fakeredis import FakeAsyncRedis
from mongomock_motor import AsyncMongoMockClient


@pytest.fixture
def db():
    # A unique database per test keeps the in-memory store isolated
    return AsyncMongoMockClient()[f"anime_test_{uuid.uuid4().hex}"]


@pytest.fixture
def make_anime(db):
    async def _make_anime(
        title: str,
        genres: Iterable[str] = (),
        moods: Iterable[str] = (),
        rating: float = 7.0,
    ) -> str:
        anime_id = ObjectId()
        await db["anime"].insert_one({
            "_id": anime_id,
            "title": title,
            "genres": list(genres),
            "moods": list(moods),
            "rating": rating,
            "imageUrl": f"https://img.example/{title}.jpg",
            "synopsis": f"{title} synopsis",
        })
        return str(anime_id)
    return _make_anime


@pytest.fixture
def make_user(db):
    async def _make_user(
        username: str,
        ratings: Optional[Dict[str, Optional[int]]] = None,
    ) -> str:
        user_id = ObjectId()
        watchlist = []
        for anime_id, rating in (ratings or {}).items():
            entry = {"animeId": ObjectId(anime_id), "status": "completed"}
            if rating is not None:
                entry["rating"] = rating
            else:
                entry["status"] = "plan_to_watch"
            watchlist.append(entry)
        await db["users"].insert_one({"_id": user_id, "username": username, "watchlist": watchlist})
        return str(user_id)
    return _make_user


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.aclose()
