"""Health check endpoints for monitoring."""
from typing import Any, Dict

from fastapi import APIRouter, Depends
from redis import asyncio as aioredis
from sqlalchemy import text

from receiptflow.api.dependencies import get_storage_service
from receiptflow.core.config import settings
from receiptflow.core.database import get_session_factory
from receiptflow.services.storage_service import StorageService

router = APIRouter()


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint (supports GET & HEAD)."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": "1.0.0",
    }


@router.get("/health/detailed")
async def detailed_health_check(storage: StorageService = Depends(get_storage_service)) -> Dict[str, Any]:
    """Detailed health check with service status."""
    health_status: Dict[str, Any] = {"status": "healthy", "services": {}}

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    try:
        redis = aioredis.from_url(settings.REDIS_URL)
        await redis.ping()
        await redis.aclose()
        health_status["services"]["redis"] = "healthy"
    except Exception as e:
        health_status["services"]["redis"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    try:
        if storage.backend == "minio":
            storage._client.bucket_exists(storage.bucket)
        elif not storage.base_dir.is_dir():
            raise FileNotFoundError(str(storage.base_dir))
        health_status["services"]["storage"] = f"healthy ({storage.backend})"
    except Exception as e:
        health_status["services"]["storage"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    return health_status
