import asyncio
from collections import Counter
from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, PyMongoError

from app.core.config import settings
from app.models.recommendation import RecommendationAlgorithm, RecommendationReason
from app.services import recommendation_service
from app.services.errors import DataStoreTimeoutError, InsufficientHistoryError, UserNotFoundError
from app.services.recommendation_service import RecommendationService


@pytest.fixture
async def scenario(make_anime, make_user):
    """
    A target user with five rated anime (three liked) and one user who rates
    them identically. Yields two collaborative candidates, four content-based
    candidates and five high-rated fallback candidates.
    """
    watched = {
        name: await make_anime(name, genres=["action"], rating=8.0)
        for name in ("W1", "W2", "W3", "W4", "W5")
    }
    collaborative = {
        name: await make_anime(name, genres=["romance"], rating=7.5) for name in ("C1", "C2")
    }
    content = {
        name: await make_anime(name, genres=["action"], rating=7.0)
        for name in ("K1", "K2", "K3", "K4")
    }
    fallback = {
        f"H{i}": await make_anime(f"H{i}", genres=["drama"], rating=9.6 - i / 10)
        for i in range(1, 6)
    }
    ratings = {watched["W1"]: 9, watched["W2"]: 8, watched["W3"]: 7, watched["W4"]: 3, watched["W5"]: 2}
    target = await make_user("target", ratings)
    twin = await make_user(
        "twin", {**ratings, collaborative["C1"]: 9, collaborative["C2"]: 8}
    )
    return {
        "target": target,
        "twin": twin,
        "watched": watched,
        "collaborative": collaborative,
        "content": content,
        "fallback": fallback,
    }


async def test_generation_phase_order_and_fallback(db, scenario):
    generated = await RecommendationService(db).generate_recommendations(scenario["target"], limit=10)

    assert len(generated) == 10
    assert [r.reason for r in generated] == (
        [RecommendationReason.SIMILAR_USERS] * 2
        + [RecommendationReason.SIMILAR_GENRES] * 4
        + [RecommendationReason.HIGH_RATED] * 4
    )
    assert [r.algorithm for r in generated][:2] == [RecommendationAlgorithm.COLLABORATIVE] * 2
    assert all(r.algorithm == RecommendationAlgorithm.CONTENT_BASED for r in generated[2:])

    collab_ids = [r.animeId for r in generated[:2]]
    assert collab_ids == [scenario["collaborative"]["C1"], scenario["collaborative"]["C2"]]
    assert set(r.animeId for r in generated[2:6]) == set(scenario["content"].values())
    fallback = scenario["fallback"]
    assert [r.animeId for r in generated[6:]] == [fallback["H1"], fallback["H2"], fallback["H3"], fallback["H4"]]


async def test_generated_records_are_bounded_and_exclude_watchlist(db, scenario):
    generated = await RecommendationService(db).generate_recommendations(scenario["target"], limit=10)

    watched = set(scenario["watched"].values())
    assert all(0.0 <= r.score <= 1.0 for r in generated)
    assert not any(r.animeId in watched for r in generated)
    assert len({r.generationId for r in generated}) == 1
    assert all(r.expiresAt - r.createdAt == timedelta(days=settings.RECOMMENDATION_TTL_DAYS) for r in generated)

    top = generated[0]
    assert top.score == pytest.approx(0.9)
    assert [w.userId for w in top.metadata.similarUsers] == [scenario["twin"]]
    # Content-based scores: 3 liked seeds * (0.4 + 0.3 * (10 - 1))
    assert generated[2].score == pytest.approx(0.93)


async def test_fallback_fills_when_nothing_is_liked(db, make_anime, make_user):
    low = [await make_anime(f"L{i}", genres=["action"], rating=9.0) for i in range(3)]
    top = [await make_anime(f"T{i}", genres=["action"], rating=8.0 + i / 10) for i in range(4)]
    await make_anime("Mediocre", genres=["action"], rating=6.0)
    user = await make_user("picky", {anime_id: 4 for anime_id in low})

    generated = await RecommendationService(db).generate_recommendations(user, limit=3)

    assert all(r.reason == RecommendationReason.HIGH_RATED for r in generated)
    assert [r.animeId for r in generated] == [top[3], top[2], top[1]]


async def test_generation_for_unknown_user(db):
    service = RecommendationService(db)
    with pytest.raises(UserNotFoundError):
        await service.generate_recommendations(str(ObjectId()), limit=5)
    with pytest.raises(UserNotFoundError):
        await service.ensure_sufficient_history(str(ObjectId()))


async def test_insufficient_history(db, make_anime, make_user):
    a = await make_anime("A", genres=["action"])
    b = await make_anime("B", genres=["action"])
    c = await make_anime("C", genres=["action"])
    user = await make_user("newcomer", {a: 9, b: 8, c: None})

    with pytest.raises(InsufficientHistoryError):
        await RecommendationService(db).ensure_sufficient_history(user)


async def test_regeneration_replaces_active_set(db, scenario):
    service = RecommendationService(db)
    first = await service.generate_recommendations(scenario["target"], limit=10)
    second = await service.generate_recommendations(scenario["target"], limit=10)

    docs = await db["recommendations"].find({"userId": ObjectId(scenario["target"])}).to_list(length=None)
    assert len(docs) == 10
    assert {doc["generationId"] for doc in docs} == {second[0].generationId}
    assert first[0].generationId != second[0].generationId


async def test_viewed_records_cleared_on_next_generation(db, scenario):
    service = RecommendationService(db)
    first = await service.generate_recommendations(scenario["target"], limit=10)
    assert await service.mark_recommendation_as_viewed(scenario["target"], first[0].animeId) == 1
    assert await service.mark_recommendation_as_viewed(scenario["target"], first[0].animeId) == 0

    await service.generate_recommendations(scenario["target"], limit=10)

    stats = await service.get_recommendation_stats(scenario["target"])
    assert stats.total == 10
    assert stats.viewed == 0


async def test_failed_insert_leaves_no_partial_batch(db, scenario, monkeypatch):
    service = RecommendationService(db)
    previous = await service.generate_recommendations(scenario["target"], limit=10)
    original_insert = service.recommendations.insert_batch

    async def failing_insert(records, generation_id, ttl):
        await original_insert(records[:3], generation_id, ttl)
        raise PyMongoError("write interrupted")

    monkeypatch.setattr(service.recommendations, "insert_batch", failing_insert)

    with pytest.raises(PyMongoError):
        await service.generate_recommendations(scenario["target"], limit=10)

    docs = await db["recommendations"].find({"userId": ObjectId(scenario["target"])}).to_list(length=None)
    assert len(docs) == 10
    assert {doc["generationId"] for doc in docs} == {previous[0].generationId}


async def test_failed_supersede_discards_new_batch(db, scenario, monkeypatch):
    service = RecommendationService(db)
    previous = await service.generate_recommendations(scenario["target"], limit=10)

    async def failing_delete(user_id, generation_id):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(service.recommendations, "delete_superseded", failing_delete)

    with pytest.raises(PyMongoError):
        await service.generate_recommendations(scenario["target"], limit=10)

    docs = await db["recommendations"].find({"userId": ObjectId(scenario["target"])}).to_list(length=None)
    assert len(docs) == 10
    assert {doc["generationId"] for doc in docs} == {previous[0].generationId}


async def test_timed_out_insert_is_discarded_once_it_lands(db, scenario, monkeypatch):
    service = RecommendationService(db)
    previous = await service.generate_recommendations(scenario["target"], limit=10)
    original_insert = service.recommendations.insert_batch
    released = asyncio.Event()

    async def slow_insert(records, generation_id, ttl):
        await released.wait()
        return await original_insert(records, generation_id, ttl)

    monkeypatch.setattr(service.recommendations, "insert_batch", slow_insert)
    service.timeout_seconds = 0.2

    with pytest.raises(DataStoreTimeoutError):
        await service.generate_recommendations(scenario["target"], limit=10)

    # The write lands after the caller already gave up on it
    released.set()
    await asyncio.gather(*list(recommendation_service._pending_discards))

    docs = await db["recommendations"].find({"userId": ObjectId(scenario["target"])}).to_list(length=None)
    assert len(docs) == 10
    assert {doc["generationId"] for doc in docs} == {previous[0].generationId}


async def test_missing_liked_seed_is_skipped(db, scenario):
    # W1 is liked by the target but no longer in the catalog
    await db["anime"].delete_one({"_id": ObjectId(scenario["watched"]["W1"])})

    generated = await RecommendationService(db).generate_recommendations(scenario["target"], limit=10)

    assert len(generated) == 10
    content = [r for r in generated if r.reason == RecommendationReason.SIMILAR_GENRES]
    assert {r.animeId for r in content} == set(scenario["content"].values())
    # Two remaining seeds * (0.4 + 0.3 * (10 - 1))
    assert content[0].score == pytest.approx(0.62)
    assert sum(r.reason == RecommendationReason.HIGH_RATED for r in generated) == 4


async def test_read_through_generates_then_reuses(db, scenario):
    service = RecommendationService(db)

    first = await service.get_user_recommendations(scenario["target"], limit=10)

    assert len(first) == 10
    assert [r.score for r in first] == sorted((r.score for r in first), reverse=True)
    assert all(r.anime is not None for r in first)
    collaborative = [r for r in first if r.algorithm == RecommendationAlgorithm.COLLABORATIVE]
    assert collaborative[0].metadata.similarUsers[0].username == "twin"

    second = await service.get_user_recommendations(scenario["target"], limit=10)
    assert [r.id for r in second] == [r.id for r in first]


async def test_read_through_with_algorithm_filter(db, scenario):
    service = RecommendationService(db)

    collaborative = await service.get_user_recommendations(
        scenario["target"], limit=10, algorithm=RecommendationAlgorithm.COLLABORATIVE
    )

    assert len(collaborative) == 2
    assert all(r.algorithm == RecommendationAlgorithm.COLLABORATIVE for r in collaborative)


async def test_read_through_unknown_user(db):
    with pytest.raises(UserNotFoundError):
        await RecommendationService(db).get_user_recommendations(str(ObjectId()), limit=5)


async def test_concurrent_generation_runs_once(db, scenario):
    user_id = scenario["target"]

    results = await asyncio.gather(
        RecommendationService(db).generate_recommendations(user_id, limit=10),
        RecommendationService(db).generate_recommendations(user_id, limit=10),
        RecommendationService(db).get_user_recommendations(user_id, limit=10),
    )

    assert [r.id for r in results[0]] == [r.id for r in results[1]]
    docs = await db["recommendations"].find({"userId": ObjectId(user_id)}).to_list(length=None)
    assert len(docs) == 10
    assert Counter(doc["generationId"] for doc in docs) == Counter({results[0][0].generationId: 10})


async def test_similar_users_include_profile(db, scenario):
    similar = await RecommendationService(db).find_similar_users(scenario["target"])

    assert [s.userId for s in similar] == [scenario["twin"]]
    assert similar[0].user.username == "twin"
    assert similar[0].commonAnime == 5


async def test_slow_reads_time_out(db, scenario, monkeypatch):
    service = RecommendationService(db)
    service.timeout_seconds = 0.05

    async def slow_find(user_id):
        await asyncio.sleep(1)

    monkeypatch.setattr(service.users, "find_by_id", slow_find)

    with pytest.raises(DataStoreTimeoutError):
        await service.ensure_sufficient_history(scenario["target"])


async def test_transient_read_failure_is_retried(db, scenario, monkeypatch):
    monkeypatch.setattr(settings, "DB_READ_RETRIES", 1)
    monkeypatch.setattr(settings, "DB_RETRY_BACKOFF_SECONDS", 0)
    service = RecommendationService(db)
    original_find = service.users.find_by_id
    calls = []

    async def flaky_find(user_id):
        calls.append(user_id)
        if len(calls) == 1:
            raise AutoReconnect("primary stepped down")
        return await original_find(user_id)

    monkeypatch.setattr(service.users, "find_by_id", flaky_find)

    user = await service.ensure_sufficient_history(scenario["target"])

    assert user.id == scenario["target"]
    assert len(calls) == 2


async def test_generation_with_redis_lock_and_cache(db, scenario, redis_client):
    service = RecommendationService(db, cache=redis_client)

    generated = await service.generate_recommendations(scenario["target"], limit=10)

    assert len(generated) == 10
    # The lock is released and the seeds' similar-anime lists are cached
    assert not await redis_client.exists(f"rec:lock:{scenario['target']}")
    assert await redis_client.keys("rec:similar:*")


async def test_skipped_regeneration_returns_active_set(db, scenario):
    service = RecommendationService(db)
    generated = await service.generate_recommendations(scenario["target"], limit=10)

    # Another caller regenerated first, so this run finds enough active records
    current = await service._generate_exclusive(scenario["target"], 10, only_if_short=True)

    assert {r.id for r in current} == {r.id for r in generated}
    docs = await db["recommendations"].find({"userId": ObjectId(scenario["target"])}).to_list(length=None)
    assert {doc["generationId"] for doc in docs} == {generated[0].generationId}
