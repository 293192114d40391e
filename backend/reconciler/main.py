"""FastAPI application entry point.

This module configures the FastAPI application with:
- CORS middleware for frontend communication
- API v1 router with all endpoints
- Redis lifecycle management
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reconciler.api.v1.api import api_router
from reconciler.core.config import settings
from reconciler.core.database import close_db
from reconciler.core.redis import close_redis, init_redis, redis_conn

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events.

    Handles:
    - Redis connection pool initialization
    - Graceful shutdown of Redis and database connections
    """
    logger.info(f"Starting {settings.PROJECT_NAME}...")

    try:
        await init_redis()
        logger.info("Redis connection pool initialized")
    except Exception as e:
        # Redirect memory degrades to "not seen"; reconciliation still works
        logger.error(f"Failed to initialize Redis: {e}")

    yield

    logger.info(f"Shutting down {settings.PROJECT_NAME}...")

    try:
        await close_redis()
        logger.info("Redis connection pool closed")
        await close_db()
        logger.info("Database engine disposed")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Reconciles PayWay checkouts with the subscription ledger",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "payway-reconciler"}


@app.get("/api/v1/status")
async def status_check():
    """API status endpoint with service health details."""
    redis_status = "connected" if await redis_conn.ping() else "disconnected"

    return {
        "status": "running",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "redis": redis_status,
        },
    }
