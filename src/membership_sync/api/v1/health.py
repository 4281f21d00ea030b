"""Health check endpoints.

Liveness (/health) and readiness (/health/ready). Readiness checks the
local directory database and reports the remote call budget.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.membership_sync.config import get_settings
from src.membership_sync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    checks: dict = {"database": "ok", "engine": "ok", "scheduler": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    sync_engine = getattr(request.app.state, "engine", None)
    if sync_engine is None:
        checks["engine"] = "error"
        checks["scheduler"] = "error"
    else:
        checks["rate_limit"] = sync_engine.rate_limiter.status()
        if not sync_engine.scheduler.running:
            checks["scheduler"] = "stopped"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database and engine are up, 503 otherwise.

    A stopped scheduler degrades nothing here; the sweep can still be run
    through the operator endpoint.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("engine") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
