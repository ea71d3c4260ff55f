"""Health check endpoint."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor import __version__
from secondfactor.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """Report service and database health."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database query failed")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "unreachable", "version": __version__},
        )
    return JSONResponse(
        content={"status": "healthy", "database": "connected", "version": __version__}
    )
