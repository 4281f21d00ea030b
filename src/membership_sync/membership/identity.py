"""Identity resolution -- bind a local account to exactly one remote constituent.

Matching is exact only: a candidate binds when its full name equals the local
name and (when the local email is known) its email equals the local email,
both compared case-insensitively after whitespace normalisation. Search runs
by email first, then by name. No match means a new constituent is created
from the local profile.

A failed resolve raises SyncFailure and never yields a fabricated id; the
account simply stays unlinked until the next attempt.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.schemas import ConstituentCreate, RemoteConstituent
from src.membership_sync.directory.repository import AccountRepository
from src.membership_sync.directory.schemas import Account, AccountProfile, AccountUpdate

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Outcome of a resolve. ``new_constituent`` is True when the record was just created."""

    constituent_id: str
    new_constituent: bool


def _normalize(value: str) -> str:
    return " ".join(value.split()).lower()


def _sort_key(constituent_id: str) -> tuple[int, int | str]:
    if constituent_id.isdigit():
        return (0, int(constituent_id))
    return (1, constituent_id)


def split_name(name: str) -> tuple[str, str]:
    """Split a display name into first and last name on the final space."""
    parts = name.strip().rsplit(" ", 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


class IdentityResolver:
    """Find-or-create remote constituents for local identities.

    Args:
        client: CRM client.
        accounts: Local account repository (used by ``link``).
    """

    def __init__(self, client: SyncClient, accounts: AccountRepository) -> None:
        self._client = client
        self._accounts = accounts

    @staticmethod
    def _exact_matches(
        candidates: list[RemoteConstituent], name: str, email: str
    ) -> list[RemoteConstituent]:
        wanted_name = _normalize(name)
        wanted_email = _normalize(email)
        matches = []
        for candidate in candidates:
            if _normalize(candidate.full_name) != wanted_name:
                continue
            if wanted_email and _normalize(candidate.email) != wanted_email:
                continue
            matches.append(candidate)
        return matches

    async def find(self, name: str, email: str = "") -> str | None:
        """Remote id of the exact match, or None when there is none."""
        searches: list[dict[str, str]] = []
        if email.strip():
            searches.append({"email": email.strip().lower()})
        searches.append({"name": " ".join(name.split())})

        for params in searches:
            candidates = await self._client.search_constituents(**params)
            matches = self._exact_matches(candidates, name, email)
            if not matches:
                continue
            ids = sorted({match.id for match in matches}, key=_sort_key)
            if len(ids) > 1:
                logger.warning(
                    "identity.multiple_exact_matches",
                    name=name,
                    email=email,
                    candidate_ids=ids,
                    chosen=ids[0],
                )
            return ids[0]
        return None

    async def resolve(
        self,
        name: str,
        email: str = "",
        profile: AccountProfile | None = None,
    ) -> Resolution:
        """Bind a local identity to a remote constituent, creating one if needed.

        Args:
            name: Display name; must be non-empty.
            email: Email address; may be empty (name-only search).
            profile: Contact fields for a newly created constituent.

        Raises:
            ValueError: If name is empty.
            SyncFailure: If any remote call fails.
        """
        if not name or not name.strip():
            raise ValueError("IdentityResolver.resolve requires a non-empty name")

        existing = await self.find(name, email)
        if existing is not None:
            logger.info("identity.matched", constituent_id=existing, email=email)
            return Resolution(constituent_id=existing, new_constituent=False)

        profile = profile or AccountProfile()
        first_name, last_name = split_name(name)
        payload = ConstituentCreate(
            first_name=profile.first_name or first_name,
            last_name=profile.last_name or last_name,
            email=email or profile.email,
            phone=re.sub(r"\D", "", profile.phone),
            street=profile.street,
            city=profile.city,
            state=profile.state,
            postal_code=profile.postal_code,
            country=profile.country,
            company=profile.company,
        )
        constituent_id = await self._client.create_constituent(payload)
        logger.info("identity.created", constituent_id=constituent_id, email=email)
        return Resolution(constituent_id=constituent_id, new_constituent=True)

    async def link(self, account: Account) -> tuple[Account, Resolution]:
        """Ensure the account carries a remote constituent id, persisting it locally."""
        if account.remote_constituent_id:
            return account, Resolution(account.remote_constituent_id, new_constituent=False)

        resolution = await self.resolve(
            account.display_name,
            account.email or account.profile.email,
            account.profile,
        )
        account = await self._accounts.update(
            account.id, AccountUpdate(remote_constituent_id=resolution.constituent_id)
        )
        logger.info(
            "identity.linked",
            account_id=account.id,
            constituent_id=resolution.constituent_id,
            new_constituent=resolution.new_constituent,
        )
        return account, resolution
