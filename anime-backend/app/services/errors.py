# backend/app/services/errors.py

class RecommendationServiceError(Exception):
    """Base exception for recommendation service errors."""
    pass

class UserNotFoundError(RecommendationServiceError):
    """Raised when the target user id does not resolve."""
    pass

class AnimeNotFoundError(RecommendationServiceError):
    """Raised when a referenced anime id does not resolve."""
    pass

class InsufficientHistoryError(RecommendationServiceError):
    """Raised when a user has too few rated anime to generate recommendations."""
    pass

class DataStoreTimeoutError(RecommendationServiceError):
    """Raised when a data-store round trip exceeds its timeout."""
    pass
