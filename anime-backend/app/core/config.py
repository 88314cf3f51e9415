# Runtime configuration
# backend/app/core/config.py

import logging
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Set up basic logging configuration early
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    """
    Recommendation API settings, read from the environment or a local .env file.
    Names are matched case-insensitively; unknown variables are ignored.
    """
    # --- Project Info ---
    PROJECT_NAME: str = Field("Anime Recommendation API", validation_alias="PROJECT_NAME")
    API_V1_STR: str = Field("/api", validation_alias="API_V1_STR") # Base path for API endpoints
    VERSION: str = Field("1.0.0", validation_alias="APP_VERSION")

    # --- Logging ---
    LOG_LEVEL: str = Field("INFO", validation_alias="LOG_LEVEL")

    # --- Database (MongoDB) ---
    # Use SecretStr to prevent accidental logging of the URI
    MONGODB_URI: SecretStr = Field(..., validation_alias="MONGODB_URI")
    MONGODB_DB_NAME: str = Field("anime_db", validation_alias="MONGODB_DB_NAME")

    # --- Cache (Redis) ---
    # Optional: without Redis, similar-anime results are not cached and
    # generation is only single-flight within one process.
    REDIS_URL: Optional[SecretStr] = Field(None, validation_alias="REDIS_URL")

    # --- Authentication (JWT) ---
    JWT_SECRET: SecretStr = Field(..., validation_alias="JWT_SECRET") # CRITICAL for verifying user tokens
    JWT_ALGORITHM: str = Field("HS256", validation_alias="JWT_ALGORITHM")
    JWT_AUDIENCE: Optional[str] = Field(None, validation_alias="JWT_AUDIENCE")

    # --- Recommendations ---
    RECOMMENDATION_TTL_DAYS: int = Field(
        default=7,
        validation_alias="RECOMMENDATION_TTL_DAYS",
        description="Lifetime of a generated recommendation before it expires"
    )
    DEFAULT_RECOMMENDATION_LIMIT: int = Field(
        default=20,
        validation_alias="DEFAULT_RECOMMENDATION_LIMIT",
        description="Number of recommendations returned/generated when no limit is given"
    )
    GENERATION_LOCK_TIMEOUT_SECONDS: int = Field(
        default=60,
        validation_alias="GENERATION_LOCK_TIMEOUT_SECONDS",
        description="Upper bound on how long a distributed generation lock is held"
    )

    # --- Data store calls ---
    DB_OPERATION_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        validation_alias="DB_OPERATION_TIMEOUT_SECONDS",
        description="Timeout applied to every individual data-store round trip"
    )
    DB_READ_RETRIES: int = Field(
        default=2,
        validation_alias="DB_READ_RETRIES",
        description="Extra attempts for idempotent reads that fail transiently"
    )
    DB_RETRY_BACKOFF_SECONDS: float = Field(
        default=0.2,
        validation_alias="DB_RETRY_BACKOFF_SECONDS",
        description="Initial backoff between read retries, doubled on every attempt"
    )

    # --- Cache Settings ---
    CACHE_TTL_SIMILAR_ANIME: int = Field(
        default=86400,  # 24 hours
        validation_alias="CACHE_TTL_SIMILAR_ANIME",
        description="Time-to-live for cached similar-anime lists in seconds"
    )

    # --- CORS ---
    # Comma-separated; see cors_origins
    BACKEND_CORS_ORIGINS: str = Field("*", validation_alias="BACKEND_CORS_ORIGINS")

    @property
    def cors_origins(self) -> List[str]:
        """BACKEND_CORS_ORIGINS split on commas, e.g. "http://localhost:3000,https://anime.example"."""
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]

    @field_validator("RECOMMENDATION_TTL_DAYS")
    @classmethod
    def check_positive_ttl(cls, v: int) -> int:
        # expiresAt must always land after createdAt
        if v < 1:
            raise ValueError("RECOMMENDATION_TTL_DAYS must be at least 1.")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

@lru_cache()
def get_settings() -> Settings:
    """
    Loads settings once per process. MONGODB_URI and JWT_SECRET have no
    defaults, so a missing one stops startup here instead of on first request.
    """
    try:
        loaded = Settings()
    except ValidationError as e:
        logger.critical(f"Invalid or missing configuration: {e}")
        raise RuntimeError(f"Could not load settings: {e}") from e
    logger.info(
        f"Settings loaded for {loaded.PROJECT_NAME}: database={loaded.MONGODB_DB_NAME}, "
        f"redis={'on' if loaded.REDIS_URL is not None else 'off'}, "
        f"ttl={loaded.RECOMMENDATION_TTL_DAYS}d, cors={loaded.cors_origins}"
    )
    return loaded

settings: Settings = get_settings()
