"""
API Router Module - Aggregates all endpoint routers
"""
from fastapi import APIRouter

from app.api.endpoints import health, recommendations

# Create the main API router
api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["Health"])
api_router.include_router(recommendations.router, prefix="/recommendations", tags=["Recommendations"])
