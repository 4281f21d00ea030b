"""Inbound event payloads and line-item classification.

Order line items carry a category tag. ``classify_line_item`` turns each one
into exactly one member of the closed OrderLine union (MembershipPurchase,
ClassRegistration, EventRegistration); the orchestrator routes on that type
in a single table, so a new category means a new variant plus one route.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Literal, Union

import structlog
from pydantic import BaseModel, Field

from src.membership_sync.directory.schemas import AccountProfile, PaymentKind

logger = structlog.get_logger(__name__)


# ── Inbound payloads ────────────────────────────────────────────────────────


class LineItem(BaseModel):
    """One purchased product on an order."""

    product_id: str
    category_tag: str
    quantity: int = 1
    unit_price: float = 0.0
    product_name: str = ""
    family_slots: int = 0

    @property
    def total(self) -> float:
        return round(self.unit_price * self.quantity, 2)


class OrderCompletedEvent(BaseModel):
    """Emitted by the storefront once an order is paid."""

    local_order_id: str
    account_id: str
    line_items: list[LineItem] = Field(default_factory=list)
    billing_fields: dict[str, str] = Field(default_factory=dict)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    payment_method: str | None = None
    completed_on: date | None = None

    def billing_profile(self) -> AccountProfile:
        """Contact fields from the storefront's billing block."""
        fields = self.billing_fields
        return AccountProfile(
            first_name=fields.get("first_name", ""),
            last_name=fields.get("last_name", ""),
            email=fields.get("email", ""),
            phone=fields.get("phone", ""),
            street=" ".join(
                part for part in (fields.get("address_1", ""), fields.get("address_2", "")) if part
            ),
            city=fields.get("city", ""),
            state=fields.get("state", ""),
            postal_code=fields.get("postcode", ""),
            country=fields.get("country", ""),
            company=fields.get("company", ""),
        )


class RegistrationSubmission(BaseModel):
    """A user-entered registration form (new member, renewal or family member)."""

    account_id: str
    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    company: str = ""
    membership_level: str | None = None
    payment_type: str | None = None
    parent_account_id: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def profile(self) -> AccountProfile:
        return AccountProfile(
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            phone=self.phone,
            street=self.street,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country=self.country,
            company=self.company,
        )


class StatusChangedEvent(BaseModel):
    """Subscription cancelled or otherwise changed status."""

    account_id: str
    new_status: str


# ── Line-item variants ──────────────────────────────────────────────────────


class MembershipPurchase(BaseModel):
    kind: Literal["membership"] = "membership"
    item: LineItem

    @property
    def level_name(self) -> str:
        return self.item.product_name

    @property
    def payment_kind(self) -> PaymentKind:
        return PaymentKind.MEMBERSHIP


class ClassRegistration(BaseModel):
    kind: Literal["class"] = "class"
    item: LineItem

    @property
    def payment_kind(self) -> PaymentKind:
        return PaymentKind.CLASS


class EventRegistration(BaseModel):
    kind: Literal["event"] = "event"
    item: LineItem

    @property
    def payment_kind(self) -> PaymentKind:
        return PaymentKind.EVENT


OrderLine = Union[MembershipPurchase, ClassRegistration, EventRegistration]

# Category tag (and common storefront aliases) -> variant
CATEGORY_VARIANTS: dict[str, type[OrderLine]] = {
    "membership": MembershipPurchase,
    "memberships": MembershipPurchase,
    "class": ClassRegistration,
    "classes": ClassRegistration,
    "language-class": ClassRegistration,
    "event": EventRegistration,
    "events": EventRegistration,
}


def classify_line_item(item: LineItem) -> OrderLine | None:
    """Map a line item to its variant, or None for an untracked category."""
    variant = CATEGORY_VARIANTS.get(item.category_tag.strip().lower())
    if variant is None:
        logger.debug(
            "events.untracked_category",
            product_id=item.product_id,
            category_tag=item.category_tag,
        )
        return None
    return variant(item=item)
