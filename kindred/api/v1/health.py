"""
Health Endpoint
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from kindred.core.logging import get_logger
from kindred.infra.db import get_db
from kindred.infra.redis import ping_redis

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a best-effort check of the database and redis."""
    status = {"api": "ok", "database": "ok", "redis": "ok"}

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        status["database"] = "error"

    try:
        if not await ping_redis():
            status["redis"] = "error"
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        status["redis"] = "error"

    return status
