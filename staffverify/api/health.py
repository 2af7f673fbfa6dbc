import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.config import settings
from staffverify.database import get_db
from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest
from staffverify.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    requests = (await db.execute(select(func.count(VerificationRequest.id)))).scalar() or 0
    pending = (
        await db.execute(
            select(func.count(VerificationRequest.id)).where(VerificationRequest.status == "pending")
        )
    ).scalar() or 0
    users = (await db.execute(select(func.count(UserVerificationState.id)))).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        requests_count=requests,
        pending_count=pending,
        users_count=users,
        storage_backend=settings.object_store_backend,
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe, verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unavailable"},
        )
