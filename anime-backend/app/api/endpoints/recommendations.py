# backend/app/api/endpoints/recommendations.py

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from app.api.deps import get_current_active_user_id, get_recommendation_service
from app.models.anime import SimilarAnimeResponse
from app.models.recommendation import (
    GenerateRecommendationsRequest,
    GenerateRecommendationsResponse,
    RecommendationAlgorithm,
    RecommendationResponse,
    RecommendationStats,
)
from app.models.user import SimilarUsersResponse
from app.services.errors import AnimeNotFoundError, InsufficientHistoryError, UserNotFoundError
from app.services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)
router = APIRouter()

# Data store timeouts and driver errors are turned into 503 by the app-level handlers.

@router.get(
    "", # GET /api/recommendations
    response_model=RecommendationResponse,
    summary="Get Personalized Recommendations",
    description="Active recommendations for the authenticated user. Regenerates them if too few are active.",
    responses={404: {"description": "User not found"}},
)
async def get_my_recommendations(
    limit: int = Query(20, ge=1, le=100, description="Number of recommendations to return."),
    algorithm: Optional[RecommendationAlgorithm] = Query(None, description="Only return recommendations of this algorithm."),
    current_user_id: str = Depends(get_current_active_user_id),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        recommendations = await recommendation_service.get_user_recommendations(
            user_id=current_user_id,
            limit=limit,
            algorithm=algorithm,
        )
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return RecommendationResponse(
        user_id=current_user_id,
        count=len(recommendations),
        recommendations=recommendations,
    )

@router.post(
    "/generate", # POST /api/recommendations/generate
    response_model=GenerateRecommendationsResponse,
    summary="Generate Recommendations",
    description="Regenerates the authenticated user's recommendations. Requires at least 3 rated anime.",
    responses={
        400: {"description": "Not enough rated anime"},
        404: {"description": "User not found"},
    },
)
async def generate_my_recommendations(
    request: Optional[GenerateRecommendationsRequest] = Body(None),
    current_user_id: str = Depends(get_current_active_user_id),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    limit = request.limit if request else GenerateRecommendationsRequest().limit
    try:
        await recommendation_service.ensure_sufficient_history(current_user_id)
        generated = await recommendation_service.generate_recommendations(current_user_id, limit)
    except InsufficientHistoryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return GenerateRecommendationsResponse(count=len(generated))

@router.get(
    "/similar-users", # GET /api/recommendations/similar-users
    response_model=SimilarUsersResponse,
    summary="Find Similar Users",
    description="Users whose ratings correlate with the authenticated user's ratings.",
)
async def get_similar_users(
    limit: int = Query(10, ge=1, le=50, description="Number of similar users to return."),
    current_user_id: str = Depends(get_current_active_user_id),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    similar = await recommendation_service.find_similar_users(current_user_id, limit)
    return SimilarUsersResponse(count=len(similar), items=similar)

@router.get(
    "/stats", # GET /api/recommendations/stats
    response_model=RecommendationStats,
    summary="Recommendation Statistics",
)
async def get_my_recommendation_stats(
    current_user_id: str = Depends(get_current_active_user_id),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    return await recommendation_service.get_recommendation_stats(current_user_id)

@router.get(
    "/similar/{anime_id}", # GET /api/recommendations/similar/{anime_id}
    response_model=SimilarAnimeResponse,
    summary="Get Similar Anime",
    description="Anime similar to the given one by genres, moods and rating. No authentication required.",
    responses={404: {"description": "Source anime not found"}},
)
async def get_similar_anime(
    anime_id: str = Path(..., description="ID of the reference anime."),
    limit: int = Query(10, ge=1, le=50, description="Number of similar anime to return."),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        similar = await recommendation_service.find_similar_anime(anime_id, limit)
    except AnimeNotFoundError as e:
        logger.warning(f"Cannot get similar anime: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return SimilarAnimeResponse(source_anime_id=anime_id, count=len(similar), items=similar)

@router.post(
    "/{anime_id}/view", # POST /api/recommendations/{anime_id}/view
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Mark Recommendation Viewed",
    description="Marks the authenticated user's recommendations of this anime as viewed. Repeated calls are harmless.",
)
async def mark_recommendation_viewed(
    anime_id: str = Path(..., description="ID of the recommended anime."),
    current_user_id: str = Depends(get_current_active_user_id),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    await recommendation_service.mark_recommendation_as_viewed(current_user_id, anime_id)
