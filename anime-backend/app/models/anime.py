# backend/app/models/anime.py

from typing import List, Optional, Any
from pydantic import BaseModel, Field, field_validator

from app.utils.helpers import normalize_tags, stringify_id

# --- Base Model ---
class AnimeBase(BaseModel):
    """Catalog attributes of an anime used for display and content-based similarity."""
    title: Optional[str] = Field(None, description="Anime title.")
    genres: List[str] = Field(default_factory=list, description="Genres, lower-cased and de-duplicated.")
    moods: List[str] = Field(default_factory=list, description="Mood labels, lower-cased and de-duplicated.")
    rating: float = Field(0.0, ge=0, le=10, description="Aggregate score on a 0-10 scale.")
    imageUrl: Optional[str] = Field(None, description="URL to the cover image.")
    synopsis: Optional[str] = Field(None, description="Short synopsis.")

    @field_validator("genres", "moods", mode="before")
    @classmethod
    def normalize_labels(cls, v: Any) -> List[str]:
        return normalize_tags(v)

    @field_validator("rating", mode="before")
    @classmethod
    def default_missing_rating(cls, v: Any) -> Any:
        return 0.0 if v is None else v

# --- Models for API Responses ---
class AnimeReadSummary(AnimeBase):
    """Anime summary embedded in recommendation and similar-anime responses."""
    id: str = Field(..., description="Internal database ID (MongoDB ObjectId as string).")

# --- Model for Internal Use ---
class AnimeInDB(AnimeBase):
    """Anime document as stored in the `anime` collection."""
    id: str = Field(..., alias="_id", description="Internal database ID (MongoDB ObjectId).")

    @field_validator("id", mode="before")
    @classmethod
    def object_id_to_str(cls, v: Any) -> Any:
        return stringify_id(v)

    def to_summary(self) -> AnimeReadSummary:
        return AnimeReadSummary(**self.model_dump())

    class Config:
        populate_by_name = True # Allows using '_id' field name during population
        from_attributes = True

# --- Item-item similarity result ---
class SimilarAnime(BaseModel):
    """A candidate anime scored against a reference anime."""
    anime: AnimeReadSummary
    genreOverlap: int = Field(..., ge=0, description="Number of genres shared with the reference.")
    moodOverlap: int = Field(..., ge=0, description="Number of moods shared with the reference.")
    ratingGap: float = Field(..., ge=0, description="Absolute difference between the two ratings.")
    totalScore: float = Field(..., description="0.4*genres + 0.3*moods + 0.3*(10 - ratingGap), unnormalized.")

class SimilarAnimeResponse(BaseModel):
    """Response structure for GET /api/recommendations/similar/{anime_id}."""
    source_anime_id: str
    count: int
    items: List[SimilarAnime] = Field(default_factory=list)
