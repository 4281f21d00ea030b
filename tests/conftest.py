"""Shared fixtures for the membership sync tests.

Provides:
- settings: production-mode Settings pointed at the fake CRM
- session_factory: aiosqlite file database (per test) with all tables created
- fake_crm: in-memory CRM served through httpx.MockTransport
- mailer: RecordingMailer that keeps every sent message
- sync_engine: fully wired SyncEngine over the fixtures above, with the
  level catalog and payment mappings loaded into the settings store
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from src.membership_sync.config import Environment, Settings
from src.membership_sync.core.database import init_db, make_session_factory
from src.membership_sync.directory.settings_store import (
    MEMBERSHIP_LEVELS_KEY,
    PAYMENT_MAPPINGS_KEY,
)
from src.membership_sync.engine import SyncEngine, build_engine
from tests.fakes import CRM_URL, LEVELS, PAYMENT_MAPPINGS, FakeCRM, RecordingMailer


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        ENVIRONMENT=Environment.production,
        CRM_API_URL=CRM_URL,
        CRM_API_KEY="test-key",
        CRM_MAX_ATTEMPTS=3,
        CRM_BACKOFF_MIN=0,
        CRM_BACKOFF_MAX=0,
        ORGANIZATION_NAME="Test Society",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # A file database gives every session its own connection, as in production
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def fake_crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest_asyncio.fixture
async def sync_engine(settings, session_factory, fake_crm, mailer) -> AsyncGenerator[SyncEngine, None]:
    engine = build_engine(settings, session_factory, transport=fake_crm.transport(), mailer=mailer)
    await engine.settings_store.set(MEMBERSHIP_LEVELS_KEY, LEVELS)
    await engine.settings_store.set(PAYMENT_MAPPINGS_KEY, PAYMENT_MAPPINGS)
    yield engine
    await engine.aclose()
