"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from datetime import datetime, timezone
import logging

from gapscan.database import get_db
from gapscan.models.schemas import HealthCheckResponse
from gapscan.routers.gaps import get_gap_analyzer
from gapscan.services.gap_analyzer import GapAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    analyzer: GapAnalyzer = Depends(get_gap_analyzer),
):
    """
    Health check endpoint to verify system status.

    The suggestion provider is optional: ``disabled`` does not degrade the
    overall status, ``error`` does.

    Returns:
        HealthCheckResponse with status of database, embedding store and
        suggestion provider
    """
    # Check database connection
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "error"

    # Check embedding store
    store_status = "ok"
    try:
        if not await analyzer.embedding_store.is_available():
            store_status = "unavailable"
    except Exception as e:
        logger.error("Embedding store health check failed: %s", e)
        store_status = "error"

    # Check suggestion provider
    if analyzer.suggestions is None:
        suggestion_status = "disabled"
    else:
        try:
            suggestion_status = "ok" if analyzer.suggestions.is_available() else "error"
        except Exception as e:
            logger.error("Suggestion provider health check failed: %s", e)
            suggestion_status = "error"

    # Overall status
    healthy = (
        db_status == "ok"
        and store_status == "ok"
        and suggestion_status in ("ok", "disabled")
    )

    return HealthCheckResponse(
        status="healthy" if healthy else "degraded",
        database=db_status,
        embedding_store=store_status,
        suggestions=suggestion_status,
        timestamp=datetime.now(timezone.utc),
    )
