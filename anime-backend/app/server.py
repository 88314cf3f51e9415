"""
FastAPI application for the anime recommendation API.
"""
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from app.api.api import api_router
from app.api.deps import close_connections, initialize_connections
from app.core.config import settings
from app.services.errors import DataStoreTimeoutError, RecommendationServiceError

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}...")
    await initialize_connections()
    yield
    logger.info("Shutting down: closing data store connections...")
    await close_connections()

async def data_store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    # Timeouts and driver errors abort the request, never the process
    logger.error(f"Data store failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Recommendation data store is temporarily unavailable."},
    )

async def recommendation_error_handler(request: Request, exc: RecommendationServiceError) -> JSONResponse:
    logger.error(f"Unhandled recommendation error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )

def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Handlers are matched on the exception's MRO, most specific first
    application.add_exception_handler(DataStoreTimeoutError, data_store_unavailable_handler)
    application.add_exception_handler(PyMongoError, data_store_unavailable_handler)
    application.add_exception_handler(RecommendationServiceError, recommendation_error_handler)

    application.include_router(api_router, prefix=settings.API_V1_STR)

    @application.get("/", status_code=status.HTTP_200_OK)
    async def root():
        """Root endpoint to confirm the API is running."""
        return {"message": f"Welcome to {settings.PROJECT_NAME}", "docs": f"{settings.API_V1_STR}/docs"}

    return application

app = create_app()

# For local development
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.server:app", host="0.0.0.0", port=8080, reload=True)
