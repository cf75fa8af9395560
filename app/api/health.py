"""Health check endpoint."""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.database import get_db

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Liveness plus a database round-trip."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        database = "unavailable"
        logger.error(f"[HEALTH] Database check failed - Error: {type(e).__name__}: {str(e)}")

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "clinic": settings.clinic_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
