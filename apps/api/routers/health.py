"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from services.capabilities import capability_modes
from services.credentials import count_by_status

router = APIRouter()

ZERO_ADDRESS = "0x" + "0" * 40


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis, capability provider status and credential counts.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "capabilities": capability_modes(),
        "credentials": {},
    }

    try:
        from database import async_session_maker, engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"

        async with async_session_maker() as db:
            health_status["credentials"] = await count_by_status(db)
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis backs the job queue and run locks; the API still serves without it
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    modes = capability_modes()
    if modes["chain"] == "web3":
        if not settings.RELAYER_PRIVATE_KEY:
            missing.append("RELAYER_PRIVATE_KEY")
        if settings.SBT_CONTRACT_ADDRESS.strip().lower() in ("", ZERO_ADDRESS):
            missing.append("SBT_CONTRACT_ADDRESS")
    if modes["storage"] == "arweave" and not settings.ARWEAVE_WALLET_JWK:
        missing.append("ARWEAVE_WALLET_JWK")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True, "capabilities": modes}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
