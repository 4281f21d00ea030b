"""FastAPI application factory.

Creates the app with logging middleware, lifespan events for database
initialization and engine wiring, the daily sweep scheduler, the health
endpoints and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from src.membership_sync.api.middleware.logging import LoggingMiddleware
from src.membership_sync.api.v1 import health
from src.membership_sync.api.v1.router import router as v1_router
from src.membership_sync.config import get_settings
from src.membership_sync.core.database import close_db, get_engine, init_db, make_session_factory
from src.membership_sync.core.logging import configure_structlog
from src.membership_sync.engine import build_engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire the engine, start the scheduler."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    engine = build_engine(settings, make_session_factory(get_engine()))
    app.state.engine = engine

    # The sweep can still be triggered by hand if the scheduler fails
    if not engine.scheduler.start():
        log.warning("startup.scheduler_unavailable")

    log.info("startup.complete", environment=settings.ENVIRONMENT.value)

    yield

    try:
        await engine.aclose()
    except Exception:
        log.warning("shutdown.engine_close_failed", exc_info=True)
    app.state.engine = None

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Membership Sync API",
        version="0.1.0",
        description="Keeps a local membership directory and a remote donor CRM in sync",
        lifespan=lifespan,
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()
