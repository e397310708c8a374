"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as exc:
        return f"down: {exc}"


async def _probe_redis() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except Exception as exc:
        return f"down: {exc}"


@router.get("/health")
async def health_check():
    """
    Overall system health.
    The token store is required; Redis only backs queues and rate limits.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _probe_database(),
        "redis": await _probe_redis(),
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
    }
    if health_status["database"] != "up" or health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if settings.BILLING_ENABLED:
        if not settings.STRIPE_SECRET_KEY:
            missing.append("STRIPE_SECRET_KEY")
        if not settings.STRIPE_WEBHOOK_SECRET:
            missing.append("STRIPE_WEBHOOK_SECRET")
    database = await _probe_database()
    if database != "up":
        logger.warning("Readiness probe: database %s", database)
        missing.append("DATABASE")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
