"""Liveness (/health) and readiness (/health/ready) probes.

Readiness fails only on the database. The webhook retry sweep is reported
but does not gate readiness: without it, deliveries still happen and only
redelivery of failed attempts waits. Provider APIs and subscriber URLs are
never probed.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _database_check() -> tuple[bool, str | None]:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return False, str(exc)
    return True, None


@router.get("/health/ready")
async def readiness_check(request: Request):
    db_ok, db_error = await _database_check()
    scheduler = getattr(request.app.state, "retry_scheduler", None)

    checks: dict = {
        "database": "ok" if db_ok else "error",
        "webhook_retry_sweep": "running" if scheduler is not None and scheduler.running else "stopped",
    }
    if db_error:
        checks["database_error"] = db_error

    return JSONResponse(
        status_code=status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if db_ok else "degraded", "checks": checks},
    )
