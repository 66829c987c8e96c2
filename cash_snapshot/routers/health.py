from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import get_db

SERVICE_NAME = "cash-snapshot"

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    """Round-trips a trivial query; a store outage surfaces as a 5xx."""
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "service": SERVICE_NAME, "database": "connected"}
