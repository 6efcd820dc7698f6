"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from datetime import datetime, timezone
import logging

from app.database import get_db
from app.dependencies.services import ServiceContainer, get_container
from app.models.schemas import HealthCheckResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_container),
):
    """
    Health check endpoint to verify system status.

    The analysis endpoints keep working while Ollama is down (they fall
    back to rule-based output), so an unreachable Ollama only marks the
    service as degraded.

    Returns:
        HealthCheckResponse with status of database and Ollama
    """
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "error"

    ollama_status = "ok"
    if services.embedder is None or not await services.embedder.check_health():
        ollama_status = "error"

    overall_status = "healthy" if db_status == "ok" and ollama_status == "ok" else "degraded"

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        ollama=ollama_status,
        timestamp=datetime.now(timezone.utc),
    )
