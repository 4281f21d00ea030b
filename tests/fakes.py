"""Test doubles: an in-memory CRM behind httpx.MockTransport and a recording mailer."""

from __future__ import annotations

import itertools
import json
from datetime import date

import httpx

from src.membership_sync.directory.schemas import (
    Account,
    AccountProfile,
    AccountRole,
    MembershipState,
    PaymentMethod,
)
from src.membership_sync.mail.base import Mailer
from src.membership_sync.mail.models import EmailMessage, SentEmailResult

CRM_URL = "https://crm.test/api/v1"

LEVELS = [
    {"name": "Individual Membership", "kind": "individual", "remote_level_id": "10"},
    {"name": "Family Membership", "kind": "family", "family_slots": 2, "remote_level_id": "11"},
    {"name": "Student Membership", "kind": "individual"},
]

PAYMENT_MAPPINGS = {
    "membership": {"fund": "Membership", "campaign": "Membership Fees"},
    "class": {"fund": "Education", "campaign": "Language Classes"},
    "event": {"fund": "Events", "campaign": "Cultural Events"},
}

REFERENCE_DATA = {
    "funds": [
        {"id": 1, "name": "Membership"},
        {"id": 2, "name": "Education"},
        {"id": 3, "name": "Events"},
    ],
    "campaigns": [
        {"id": 21, "name": "Membership Fees"},
        {"id": 22, "name": "Language Classes"},
        {"id": 23, "name": "Cultural Events"},
    ],
    "gift_types": [{"id": 31, "name": "Other Income"}],
    "gift_categories": [{"id": 41, "name": "Donation"}],
    "payment_types": [
        {"id": 51, "name": "Credit Card"},
        {"id": 52, "name": "PayPal"},
        {"id": 53, "name": "Check"},
    ],
    "membership_levels": [
        {"id": 10, "name": "Individual Membership"},
        {"id": 11, "name": "Family Membership"},
        {"id": 12, "name": "Student Membership"},
    ],
}


# ── Fake CRM ───────────────────────────────────────────────────────────────


class FakeCRM:
    """In-memory stand-in for the remote CRM REST API.

    ``failures`` is a queue of responses returned (in order) before any
    route is served, for retry and error-mapping tests.
    """

    def __init__(self) -> None:
        self.constituents: dict[str, dict] = {}
        self.memberships: dict[str, list[dict]] = {}
        self.gifts: list[tuple[str, dict]] = []
        self.reference: dict[str, list[dict]] = json.loads(json.dumps(REFERENCE_DATA))
        self.calls: list[tuple[str, str]] = []
        self.failures: list[httpx.Response] = []
        self._ids = itertools.count(1001)

    # -- seeding helpers --

    def add_constituent(self, first_name: str, last_name: str, email: str = "") -> str:
        constituent_id = str(next(self._ids))
        self.constituents[constituent_id] = {
            "id": int(constituent_id),
            "first_name": first_name,
            "last_name": last_name,
            "email_addresses": [{"address": email}] if email else [],
        }
        return constituent_id

    def add_membership(
        self,
        constituent_id: str,
        level_name: str,
        start: date,
        finish: date | None,
        level_id: str = "10",
    ) -> str:
        membership_id = str(next(self._ids))
        self.memberships.setdefault(constituent_id, []).append(
            {
                "id": membership_id,
                "membership_level_id": level_id,
                "membership_level_name": level_name,
                "date_start": start.isoformat(),
                "finish_date": finish.isoformat() if finish else None,
                "note": None,
            }
        )
        return membership_id

    def current_periods(self, constituent_id: str, today: date) -> list[dict]:
        return [
            period
            for period in self.memberships.get(constituent_id, [])
            if period["finish_date"] is None or date.fromisoformat(period["finish_date"]) >= today
        ]

    def count(self, method: str, prefix: str = "") -> int:
        return sum(1 for m, path in self.calls if m == method and path.startswith(prefix))

    # -- transport --

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v1/").strip("/")
        self.calls.append((request.method, path))
        if self.failures:
            return self.failures.pop(0)

        body = json.loads(request.content) if request.content else None
        parts = path.split("/")

        if path in self.reference and request.method == "GET":
            return httpx.Response(200, json={"items": self.reference[path]})
        if path == "constituents/search":
            return self._search(request)
        if parts[0] == "constituents" and len(parts) == 1 and request.method == "POST":
            return self._create_constituent(body)
        if parts[0] == "constituents" and len(parts) == 2:
            constituent = self.constituents.get(parts[1])
            if constituent is None:
                return httpx.Response(404, json={"error": "not found"})
            if request.method == "PATCH":
                constituent.update(body or {})
            return httpx.Response(200, json=constituent)
        if parts[0] == "constituents" and len(parts) >= 3 and parts[2] == "memberships":
            return self._memberships(request.method, parts, body)
        if parts[0] == "constituents" and len(parts) == 3 and parts[2] == "gifts":
            gift_id = str(next(self._ids))
            self.gifts.append((parts[1], {**body, "id": gift_id}))
            return httpx.Response(201, json={"id": gift_id})
        return httpx.Response(404, json={"error": f"no route for {request.method} {path}"})

    def _search(self, request: httpx.Request) -> httpx.Response:
        email = request.url.params.get("email", "").lower()
        name = request.url.params.get("name", "").lower()
        rows = []
        for row in self.constituents.values():
            addresses = [a["address"].lower() for a in row.get("email_addresses", [])]
            full_name = f"{row['first_name']} {row['last_name']}".strip().lower()
            if email and email in addresses:
                rows.append(row)
            elif name and name == full_name:
                rows.append(row)
        return httpx.Response(200, json={"items": rows})

    def _create_constituent(self, body: dict) -> httpx.Response:
        constituent_id = str(next(self._ids))
        self.constituents[constituent_id] = {**body, "id": int(constituent_id)}
        return httpx.Response(201, json={"id": int(constituent_id)})

    def _memberships(self, method: str, parts: list[str], body: dict | None) -> httpx.Response:
        periods = self.memberships.setdefault(parts[1], [])
        if method == "GET":
            return httpx.Response(200, json={"items": periods})
        if method == "POST":
            membership_id = str(next(self._ids))
            periods.append({**body, "id": membership_id})
            return httpx.Response(201, json={"id": membership_id})
        if method == "PUT" and len(parts) == 4:
            for period in periods:
                if period["id"] == parts[3]:
                    period.update(body)
                    return httpx.Response(200, json=period)
            return httpx.Response(404, json={"error": "membership not found"})
        return httpx.Response(405)


# ── Recording mailer ───────────────────────────────────────────────────────


class RecordingMailer(Mailer):
    """Mailer that keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    async def send(self, email: EmailMessage) -> SentEmailResult:
        self.sent.append(email)
        return SentEmailResult(message_id=f"msg-{len(self.sent)}")


# ── Helpers ────────────────────────────────────────────────────────────────


def make_account(**overrides) -> Account:
    """Create a test Account with sensible defaults."""
    defaults = {
        "id": "acct-1",
        "display_name": "Ada Lovelace",
        "email": "ada@example.org",
        "role": AccountRole.NONE,
        "membership_state": MembershipState.UNKNOWN,
        "payment_method": PaymentMethod.ONLINE,
        "profile": AccountProfile(first_name="Ada", last_name="Lovelace", email="ada@example.org"),
    }
    defaults.update(overrides)
    return Account(**defaults)
