"""Wire schemas for the remote CRM API.

Only the fields this engine produces or consumes are modelled; unknown
fields in responses are ignored. List endpoints wrap their rows in an
``items`` array.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.membership_sync.core.errors import PermanentSyncFailure


class _RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _coerce_id(value: Any) -> str:
    return "" if value is None else str(value)


# ── Constituents ────────────────────────────────────────────────────────────


class RemoteConstituent(_RemoteModel):
    """A constituent as returned by search or fetch."""

    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""

    normalize_id = field_validator("id", mode="before")(_coerce_id)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_api(cls, data: dict) -> RemoteConstituent:
        """Flatten the CRM's nested email list into a primary address."""
        email = data.get("email") or ""
        addresses = data.get("email_addresses") or []
        if not email and addresses:
            email = addresses[0].get("address", "")
        return cls.model_validate({**data, "email": email})


class ConstituentCreate(_RemoteModel):
    """Payload for creating a constituent from a local profile."""

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

    def to_api(self) -> dict:
        payload: dict[str, Any] = {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_org": False,
        }
        if self.email:
            payload["email_addresses"] = [
                {"address": self.email, "email_address_type_id": 1, "is_preferred": True}
            ]
        if self.phone:
            payload["phone_numbers"] = [
                {"number": self.phone, "phone_number_type_id": 1, "is_preferred": True}
            ]
        if self.street or self.city:
            payload["street_addresses"] = [
                {
                    "street": self.street,
                    "city": self.city,
                    "state": self.state,
                    "postal_code": self.postal_code,
                    "country": self.country,
                    "street_address_type_id": 1,
                    "is_preferred": True,
                }
            ]
        if self.company:
            payload["org_name"] = self.company
        return payload


# ── Memberships ─────────────────────────────────────────────────────────────


class MembershipPeriod(_RemoteModel):
    """One row of a constituent's membership history."""

    id: str
    level_id: str = Field(default="", alias="membership_level_id")
    level_name: str = Field(default="", alias="membership_level_name")
    date_start: date | None = None
    finish_date: date | None = None
    note: str = ""

    normalize_ids = field_validator("id", "level_id", mode="before")(_coerce_id)

    @field_validator("note", mode="before")
    @classmethod
    def none_note(cls, value: Any) -> str:
        return value or ""

    def is_current(self, today: date) -> bool:
        """A period with no finish date is open-ended and therefore current."""
        return self.finish_date is None or self.finish_date >= today

    def to_api(self) -> dict:
        return {
            "membership_level_id": self.level_id,
            "membership_level_name": self.level_name,
            "date_start": self.date_start.isoformat() if self.date_start else None,
            "finish_date": self.finish_date.isoformat() if self.finish_date else None,
            "note": self.note,
        }


class MembershipCreate(_RemoteModel):
    level_id: str
    level_name: str
    date_start: date
    finish_date: date
    note: str = ""

    def to_api(self) -> dict:
        return {
            "membership_level_id": self.level_id,
            "membership_level_name": self.level_name,
            "date_start": self.date_start.isoformat(),
            "finish_date": self.finish_date.isoformat(),
            "note": self.note,
        }


# ── Gifts ───────────────────────────────────────────────────────────────────


class GiftCreate(_RemoteModel):
    """A payment/gift tied to a local order through ``external_id``."""

    external_id: str
    received_amount: float
    received_date: date
    fund_id: str
    fund_name: str
    campaign_id: str
    campaign_name: str
    gift_type_id: str = ""
    gift_type_name: str = ""
    gift_category_id: str = ""
    gift_category_name: str = ""
    payment_type_id: str = ""
    payment_type_name: str = ""
    note: str = ""

    def to_api(self) -> dict:
        amount = f"{self.received_amount:.2f}"
        return {
            "external_id": self.external_id,
            "is_anon": False,
            "gift_type_id": self.gift_type_id,
            "gift_type_name": self.gift_type_name,
            "gift_category_id": self.gift_category_id,
            "gift_category_name": self.gift_category_name,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "fund_id": self.fund_id,
            "fund_name": self.fund_name,
            "received_amount": amount,
            "received_date": self.received_date.isoformat(),
            "deductible_amount": amount,
            "deposit_date": self.received_date.isoformat(),
            "deposited_amount": amount,
            "payment_type_id": self.payment_type_id,
            "payment_type_name": self.payment_type_name,
            "note": self.note,
        }


# ── Reference data ──────────────────────────────────────────────────────────


class ReferenceItem(_RemoteModel):
    """A fund, campaign, level, gift type or payment type row."""

    id: str
    name: str = ""
    display_name: str = ""

    normalize_id = field_validator("id", mode="before")(_coerce_id)

    @field_validator("name", "display_name", mode="before")
    @classmethod
    def none_names(cls, value: Any) -> str:
        return value or ""

    def matches(self, name: str) -> bool:
        wanted = name.strip().lower()
        return wanted in (self.name.strip().lower(), self.display_name.strip().lower())


def find_by_name(items: list[ReferenceItem], name: str) -> ReferenceItem | None:
    """First reference row whose name or display name equals ``name`` (case-insensitive)."""
    for item in items:
        if item.matches(name):
            return item
    return None


# ── Parsing helpers ─────────────────────────────────────────────────────────


def extract_items(payload: Any) -> list[dict]:
    """Unwrap a list response. Accepts ``{"items": [...]}`` or a bare list."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        items = payload.get("items", [])
        if isinstance(items, list):
            return items
    raise PermanentSyncFailure("Malformed list response from CRM")


def extract_id(payload: Any) -> str:
    """The id of a created record."""
    if isinstance(payload, dict) and payload.get("id") not in (None, ""):
        return str(payload["id"])
    raise PermanentSyncFailure("CRM response did not include a record id")


def parse_list(model: type[_RemoteModel], payload: Any) -> list:
    """Validate every row of a list response, mapping bad rows to PermanentSyncFailure."""
    try:
        return [model.model_validate(row) for row in extract_items(payload)]
    except ValidationError as exc:
        raise PermanentSyncFailure(f"Malformed {model.__name__} in CRM response: {exc}") from exc
