"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.database import init_database, close_database, DatabaseManager
from app.api.middleware import add_middleware
from app.api.schemas.common import HealthCheckResponse
from app.admin.admin_routes import admin_router

import structlog

# Setup logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Season Rewards Backend", version=settings.app_version)

    try:
        await init_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        raise

    logger.info("Application startup complete", payment_mode=settings.payment_mode)

    yield

    logger.info("Shutting down application")
    try:
        await close_database()
    except Exception as e:
        logger.error("Shutdown error", error=str(e))

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Season Rewards API",
        version=settings.app_version,
        description="""
        Operator API for closing voting seasons and paying out their rewards.

        ## Authentication

        Admin endpoints take the admin API key or an admin wallet address as a Bearer token:
        ```
        Authorization: Bearer <admin-api-key>
        ```
        """,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan
    )

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and service status"
    )
    async def health_check():
        """Health check endpoint."""
        if await DatabaseManager.health_check():
            return HealthCheckResponse(
                status="healthy",
                version=settings.app_version,
                services={"database": "healthy", "api": "healthy"}
            )

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "version": settings.app_version,
                "services": {"database": "unhealthy", "api": "healthy"}
            }
        )

    # Admin endpoints
    app.include_router(
        admin_router,
        prefix=f"{settings.api_v1_prefix}/admin/seasons",
        tags=["Admin"]
    )

    logger.info("FastAPI application configured successfully")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
