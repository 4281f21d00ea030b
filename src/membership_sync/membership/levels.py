"""Membership level catalog and business mapping tables.

Level naming is configuration, not code. The catalog (stored under the
``membership_levels`` setting) lists every sellable level with its kind:

    [{"name": "Family Membership", "kind": "family", "family_slots": 4,
      "remote_level_id": "12"},
     {"name": "Individual Membership", "kind": "individual"}]

The kind drives the role table: family levels escalate an account to
``family_owner``, individual levels restrict a family owner back to
``member``. Dependents keep their role whatever level they inherit.

Payment kinds map to fund/campaign names under ``payment_mappings``:

    {"membership": {"fund": "Membership", "campaign": "Membership Fees",
                    "gift_type": "Other Income", "category": "Donation"}}

A missing level or mapping raises ConfigurationMissing; nothing silently
falls back to another fund.
"""

from __future__ import annotations

from enum import Enum

import structlog
from pydantic import BaseModel, ValidationError

from src.membership_sync.core.errors import ConfigurationMissing
from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.schemas import find_by_name
from src.membership_sync.directory.schemas import AccountRole, PaymentKind
from src.membership_sync.directory.settings_store import (
    MEMBERSHIP_LEVELS_KEY,
    PAYMENT_MAPPINGS_KEY,
    SettingsStore,
)

logger = structlog.get_logger(__name__)


class LevelKind(str, Enum):
    FAMILY = "family"
    INDIVIDUAL = "individual"


class LevelDefinition(BaseModel):
    """One sellable membership level."""

    name: str
    kind: LevelKind = LevelKind.INDIVIDUAL
    family_slots: int = 0
    remote_level_id: str | None = None


class PaymentMapping(BaseModel):
    """Fund/campaign names a payment kind is booked against."""

    fund: str
    campaign: str
    gift_type: str = "Other Income"
    category: str = "Donation"


# Level kind -> role the purchasing account ends up with
ROLE_BY_LEVEL_KIND: dict[LevelKind, AccountRole] = {
    LevelKind.FAMILY: AccountRole.FAMILY_OWNER,
    LevelKind.INDIVIDUAL: AccountRole.MEMBER,
}


def role_for_level(level: LevelDefinition, current_role: AccountRole) -> AccountRole:
    """Role an account holds after buying ``level``. Dependents never change role."""
    if current_role == AccountRole.DEPENDENT:
        return current_role
    return ROLE_BY_LEVEL_KIND[level.kind]


class LevelCatalog:
    """Lookups over the configured level catalog and payment mappings.

    Args:
        settings_store: Cached key/value settings.
        client: CRM client, used to resolve remote level ids by name.
    """

    def __init__(self, settings_store: SettingsStore, client: SyncClient) -> None:
        self._settings = settings_store
        self._client = client

    async def levels(self) -> list[LevelDefinition]:
        raw = await self._settings.get(MEMBERSHIP_LEVELS_KEY, default=[])
        try:
            return [LevelDefinition.model_validate(item) for item in raw]
        except (ValidationError, TypeError) as exc:
            raise ConfigurationMissing(MEMBERSHIP_LEVELS_KEY, f"invalid catalog: {exc}") from exc

    async def get_level(self, name: str) -> LevelDefinition:
        """Catalog entry for a level name (case-insensitive).

        Raises:
            ConfigurationMissing: If the level is not in the catalog.
        """
        wanted = name.strip().lower()
        for level in await self.levels():
            if level.name.strip().lower() == wanted:
                return level
        raise ConfigurationMissing(f"{MEMBERSHIP_LEVELS_KEY}.{name}", "unknown membership level")

    async def resolve_remote_level_id(self, level: LevelDefinition) -> str:
        """Remote level id from the catalog, else from the cached CRM level list."""
        if level.remote_level_id:
            return level.remote_level_id
        match = find_by_name(await self._client.list_membership_levels(), level.name)
        if match is None:
            raise ConfigurationMissing(
                f"{MEMBERSHIP_LEVELS_KEY}.{level.name}.remote_level_id",
                "level not found in CRM",
            )
        return match.id

    async def payment_mapping(self, kind: PaymentKind) -> PaymentMapping:
        """Fund/campaign mapping for a payment kind.

        Raises:
            ConfigurationMissing: If the kind has no mapping.
        """
        raw = await self._settings.get(PAYMENT_MAPPINGS_KEY, default={})
        entry = raw.get(kind.value) if isinstance(raw, dict) else None
        if not entry:
            raise ConfigurationMissing(f"{PAYMENT_MAPPINGS_KEY}.{kind.value}")
        try:
            return PaymentMapping.model_validate(entry)
        except ValidationError as exc:
            raise ConfigurationMissing(f"{PAYMENT_MAPPINGS_KEY}.{kind.value}", str(exc)) from exc
