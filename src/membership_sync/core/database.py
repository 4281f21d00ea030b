"""Async SQLAlchemy engine for the local account directory.

Provides:
- Base: Declarative base for all directory tables
- get_engine(): Lazily created engine singleton
- get_session(): Session factory used by repositories
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.membership_sync.config import get_settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.DATABASE_URL, echo=False)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for local directory models."""


# ── Session Factories ───────────────────────────────────────────────────────


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session factory bound to a specific engine.

    Repositories consume the factory with ``async for session in factory()``
    so each operation gets its own short-lived session.
    """

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession on the default engine."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all directory tables if they don't exist."""
    # Import models so their tables are registered on Base.metadata
    from src.membership_sync.directory import models  # noqa: F401
    from src.membership_sync.events import failures  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
