"""Persistent key/value settings for business mapping tables.

Holds the membership level catalog (which doubles as the level-name to role
table) and the fund/campaign mapping per payment kind. Reads go through the shared
ReferenceCache; a write invalidates the cached entry for that key, and any
registered write listeners are notified so dependent caches can drop too.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.membership_sync.core.database import SessionFactory
from src.membership_sync.crm.cache import ReferenceCache
from src.membership_sync.directory.models import SettingModel

logger = structlog.get_logger(__name__)

SETTING_CACHE_PREFIX = "setting:"

# Well-known keys
MEMBERSHIP_LEVELS_KEY = "membership_levels"
PAYMENT_MAPPINGS_KEY = "payment_mappings"


class SettingsStore:
    """Cached key/value store backed by the ``settings`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        cache: Shared reference cache.
    """

    def __init__(self, session_factory: SessionFactory, cache: ReferenceCache) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._listeners: list[Callable[[str], None]] = []

    def on_write(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the key after every write."""
        self._listeners.append(listener)

    async def get(self, key: str, default: Any = None) -> Any:
        async def _load() -> Any:
            async for session in self._session_factory():
                model = await session.get(SettingModel, key)
                return model.value if model is not None else None
            return None

        value = await self._cache.remember(f"{SETTING_CACHE_PREFIX}{key}", _load)
        return default if value is None else value

    async def set(self, key: str, value: Any) -> None:
        async for session in self._session_factory():
            model = await session.get(SettingModel, key)
            if model is None:
                session.add(SettingModel(key=key, value=value))
            else:
                model.value = value
            await session.commit()

        self._cache.invalidate(f"{SETTING_CACHE_PREFIX}{key}")
        for listener in self._listeners:
            listener(key)
        logger.info("settings.updated", key=key)
