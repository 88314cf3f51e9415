# backend/app/models/user.py

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Set

from pydantic import BaseModel, Field, field_validator

from app.utils.helpers import stringify_id

# --- Watch Status Enum ---
class WatchStatus(str, Enum):
    """Progress of a user on a watchlist entry."""
    PLAN_TO_WATCH = "plan_to_watch"
    WATCHING = "watching"
    COMPLETED = "completed"
    DROPPED = "dropped"

# --- Watchlist ---
class WatchlistEntry(BaseModel):
    """One entry of a user's watchlist. Entries are unique per animeId."""
    animeId: str = Field(..., description="ID of the anime on the watchlist.")
    status: WatchStatus = Field(WatchStatus.PLAN_TO_WATCH, description="Watch progress.")
    rating: Optional[int] = Field(None, ge=1, le=10, description="User's rating, 1-10, if rated.")
    review: Optional[str] = Field(None, description="Optional review text.")
    addedAt: Optional[datetime] = None

    @field_validator("animeId", mode="before")
    @classmethod
    def object_id_to_str(cls, v: Any) -> Any:
        return stringify_id(v)

# --- Model for Internal Use ---
class UserInDB(BaseModel):
    """
    User document as read from the `users` collection. This service never
    writes users; it only consumes their watchlists.
    """
    id: str = Field(..., alias="_id")
    username: Optional[str] = None
    avatar: Optional[str] = None
    watchlist: List[WatchlistEntry] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def object_id_to_str(cls, v: Any) -> Any:
        return stringify_id(v)

    def rated_entries(self) -> List[WatchlistEntry]:
        return [entry for entry in self.watchlist if entry.rating is not None]

    def ratings_by_anime(self) -> Dict[str, int]:
        """Maps animeId -> rating over the rated watchlist entries."""
        return {entry.animeId: entry.rating for entry in self.rated_entries()}

    def watchlist_anime_ids(self) -> Set[str]:
        return {entry.animeId for entry in self.watchlist}

    class Config:
        populate_by_name = True
        from_attributes = True

# --- Models for API Responses ---
class UserReadSummary(BaseModel):
    """Public identity of a user, used when displaying similar users."""
    id: str
    username: Optional[str] = None
    avatar: Optional[str] = None

# --- User-user similarity result ---
class SimilarUser(BaseModel):
    userId: str
    similarity: float = Field(..., ge=-1, le=1, description="Pearson correlation over shared ratings.")
    commonAnime: int = Field(..., ge=0, description="Number of anime both users rated.")

class SimilarUserRead(SimilarUser):
    user: Optional[UserReadSummary] = None

class SimilarUsersResponse(BaseModel):
    count: int
    items: List[SimilarUserRead] = Field(default_factory=list)
