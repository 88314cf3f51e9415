# /health endpoint

# backend/app/api/endpoints/health.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from app.api.deps import get_db

logger = logging.getLogger(__name__)
router = APIRouter()

class HealthResponse(BaseModel):
    status: str = "ok"
    database: Optional[str] = None

@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Perform a Health Check",
    response_description="Returns the health status of the API.",
)
async def health_check():
    """
    Simple liveness check confirming the API is running.
    Kept dependency-free so it stays fast for probes.
    """
    return HealthResponse(status="ok")

@router.get(
    "/health/db",
    response_model=HealthResponse,
    summary="Check Database Connectivity",
)
async def database_health_check(db: AsyncIOMotorDatabase = Depends(get_db)):
    """Pings MongoDB; reports `degraded` instead of failing when the ping errors."""
    try:
        await db.command("ping")
        return HealthResponse(status="ok", database="ok")
    except PyMongoError as e:
        logger.warning(f"Database ping failed: {e}")
        return HealthResponse(status="degraded", database="unreachable")
