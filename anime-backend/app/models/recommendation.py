# backend/app/models/recommendation.py

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.utils.helpers import stringify_id
from .anime import AnimeReadSummary

# --- Enums ---
class RecommendationAlgorithm(str, Enum):
    """Strategy family that produced a recommendation."""
    COLLABORATIVE = "collaborative"
    CONTENT_BASED = "content-based"
    HYBRID = "hybrid"

class RecommendationReason(str, Enum):
    """Human-facing explanation category for a recommendation."""
    SIMILAR_USERS = "similar_users"
    SIMILAR_GENRES = "similar_genres"
    SIMILAR_MOODS = "similar_moods"
    HIGH_RATED = "high_rated"
    POPULAR = "popular"

# --- Metadata ---
class SimilarUserWeight(BaseModel):
    """A similar user that contributed to a collaborative recommendation."""
    userId: str
    similarity: float
    username: Optional[str] = Field(None, description="Resolved at read time for display.")

    @field_validator("userId", mode="before")
    @classmethod
    def object_id_to_str(cls, v: Any) -> Any:
        return stringify_id(v)

class RecommendationMetadata(BaseModel):
    """Free-form basis of a recommendation."""
    similarUsers: List[SimilarUserWeight] = Field(default_factory=list)
    commonGenres: List[str] = Field(default_factory=list)
    commonMoods: List[str] = Field(default_factory=list)
    averageRating: Optional[float] = None

# --- Model for Creating Recommendations (built by the generator) ---
class RecommendationCreate(BaseModel):
    userId: str
    animeId: str
    score: float = Field(..., ge=0, le=1, description="Match strength, higher is stronger.")
    algorithm: RecommendationAlgorithm
    reason: RecommendationReason
    metadata: RecommendationMetadata = Field(default_factory=RecommendationMetadata)

# --- Model for Internal Use ---
class RecommendationInDB(RecommendationCreate):
    """Recommendation document as stored in the `recommendations` collection."""
    id: str = Field(..., alias="_id")
    isViewed: bool = False
    viewedAt: Optional[datetime] = None
    expiresAt: datetime
    createdAt: datetime
    updatedAt: Optional[datetime] = None
    generationId: Optional[str] = Field(None, description="Batch that produced this record.")

    @field_validator("id", "userId", "animeId", mode="before")
    @classmethod
    def object_id_to_str(cls, v: Any) -> Any:
        return stringify_id(v)

    class Config:
        populate_by_name = True
        from_attributes = True

# --- Models for API Responses ---
class RecommendationRead(BaseModel):
    """A recommendation joined with its anime, as returned to clients."""
    id: str
    anime: Optional[AnimeReadSummary] = Field(None, description="Referenced anime; None if it no longer exists.")
    score: float
    algorithm: RecommendationAlgorithm
    reason: RecommendationReason
    metadata: RecommendationMetadata
    isViewed: bool = False
    createdAt: datetime
    expiresAt: datetime

class RecommendationResponse(BaseModel):
    """Response structure for GET /api/recommendations."""
    user_id: Optional[str] = Field(None, description="User ID for personalized recommendations.")
    count: int = 0
    recommendations: List[RecommendationRead] = Field(
        default_factory=list,
        description="Active recommendations, ordered by score."
    )

class GenerateRecommendationsRequest(BaseModel):
    limit: int = Field(20, ge=1, le=100, description="Number of recommendations to generate.")

class GenerateRecommendationsResponse(BaseModel):
    message: str = "Recommendations generated."
    count: int

class RecommendationStats(BaseModel):
    """Per-user counters over every stored recommendation record."""
    total: int = 0
    viewed: int = 0
    collaborative: int = 0
    contentBased: int = 0
    averageScore: float = 0.0
    viewRate: float = Field(0.0, description="Viewed share of all records, in percent (one decimal).")
