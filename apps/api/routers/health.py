"""
Health checks for the API, its database and the optional Redis quota backend.
"""

from typing import Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import is_production, settings
from database import engine
from services.error_sanitizer import sanitize_error_message

router = APIRouter()

REQUIRED_SECRETS = ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "GEMINI_API_KEY")


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return f"down: {sanitize_error_message(exc, production=is_production())}"
    return "up"


async def _check_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return f"down: {sanitize_error_message(exc, production=is_production())}"
    finally:
        await client.aclose()
    return "up"


def _missing_secrets() -> List[str]:
    return [name for name in REQUIRED_SECRETS if not getattr(settings, name, "")]


@router.get("/health")
async def health_check():
    """Overall status; any failed check marks the service degraded."""
    checks: Dict[str, str] = {"database": await _check_database()}
    if settings.QUOTA_BACKEND == "redis":
        checks["redis"] = await _check_redis()

    degraded = any(value != "up" for value in checks.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "quota_backend": settings.QUOTA_BACKEND,
        **checks,
        "missing_configuration": _missing_secrets(),
    }


@router.get("/health/ready")
async def readiness_check():
    """Not ready until payment and generation credentials are configured."""
    missing = _missing_secrets()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
