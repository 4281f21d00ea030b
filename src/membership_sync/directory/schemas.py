"""Pydantic schemas for the local account directory.

Defines the boundary types the engine works with:
- Enums: AccountRole, MembershipState, PaymentMethod, PaymentKind
- Account: local identity with membership fields
- AccountProfile: contact fields used to create a remote constituent
- PaymentRecord / AlreadyRecorded: order-id idempotency anchor
- FamilySlotLedger: per family-owner slot counts
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# ── Enums ───────────────────────────────────────────────────────────────────


class AccountRole(str, Enum):
    """Local directory role of an account."""

    MEMBER = "member"
    FAMILY_OWNER = "family_owner"
    DEPENDENT = "dependent"
    NONE = "none"


class MembershipState(str, Enum):
    """Derived membership lifecycle state (never stored remotely)."""

    ACTIVE = "active"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class PaymentMethod(str, Enum):
    """How an account pays. Only offline accounts get manual reminders."""

    ONLINE = "online"
    OFFLINE = "offline"


class PaymentKind(str, Enum):
    """Business category of a payment; selects the fund/campaign mapping."""

    MEMBERSHIP = "membership"
    CLASS = "class"
    EVENT = "event"


# ── Account ─────────────────────────────────────────────────────────────────


class AccountProfile(BaseModel):
    """Contact fields copied onto a newly created remote constituent."""

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    company: str = ""

    def filled_from(self, other: AccountProfile) -> AccountProfile:
        """Copy with every empty field taken from ``other``."""
        current = self.model_dump()
        for name, value in other.model_dump().items():
            if not current[name] and value:
                current[name] = value
        return AccountProfile(**current)


class Account(BaseModel):
    """A local identity owned by the account directory.

    The engine mutates membership_state, renewal_date, membership_type,
    role and remote_constituent_id; it never creates or deletes accounts.
    """

    id: str
    display_name: str
    email: str = ""
    role: AccountRole = AccountRole.NONE
    remote_constituent_id: str | None = None
    membership_type: str | None = None
    membership_start: date | None = None
    renewal_date: date | None = None
    membership_state: MembershipState = MembershipState.UNKNOWN
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    parent_account_id: str | None = None
    dependent_ids: list[str] = Field(default_factory=list)
    profile: AccountProfile = Field(default_factory=AccountProfile)
    updated_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return bool(self.remote_constituent_id)


class AccountUpdate(BaseModel):
    """Partial update of engine-owned account fields. None means unchanged."""

    role: AccountRole | None = None
    remote_constituent_id: str | None = None
    membership_type: str | None = None
    membership_start: date | None = None
    renewal_date: date | None = None
    membership_state: MembershipState | None = None
    payment_method: PaymentMethod | None = None
    parent_account_id: str | None = None


# ── Payments ────────────────────────────────────────────────────────────────


class PaymentRecord(BaseModel):
    """Immutable mapping of a local order id to the remote gift it produced."""

    order_id: str
    gift_id: str
    constituent_id: str
    kind: PaymentKind
    amount: float
    recorded_at: datetime | None = None


class AlreadyRecorded(BaseModel):
    """Idempotency short-circuit: the order already has a remote gift."""

    order_id: str
    gift_id: str


# ── Family slots ────────────────────────────────────────────────────────────


class FamilySlotLedger(BaseModel):
    """Dependent slot counts for one family owner.

    ``available`` is floored at zero. A stored ``used`` above ``total`` is a
    data-integrity problem and is reported, not repaired.
    """

    owner_id: str
    total: int = 0
    used: int = 0

    @property
    def available(self) -> int:
        remaining = self.total - self.used
        if remaining < 0:
            logger.warning(
                "family_slots.negative_availability",
                owner_id=self.owner_id,
                total=self.total,
                used=self.used,
            )
            return 0
        return remaining
