"""Idempotent payment recording.

The local ``payment_records`` table is the only idempotency guard: an order
id that already has a record short-circuits to AlreadyRecorded without any
remote call. The mapping is persisted only after the remote gift exists, so
a crash in between produces at most a duplicate remote gift on retry (which
operators reconcile), never a lost payment.
"""

from __future__ import annotations

from datetime import date

import structlog

from src.membership_sync.core.errors import ConfigurationMissing
from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.schemas import GiftCreate, ReferenceItem, find_by_name
from src.membership_sync.directory.repository import PaymentRecordRepository
from src.membership_sync.directory.schemas import AlreadyRecorded, PaymentKind, PaymentRecord
from src.membership_sync.directory.settings_store import PAYMENT_MAPPINGS_KEY
from src.membership_sync.membership.levels import LevelCatalog

logger = structlog.get_logger(__name__)

DEFAULT_PAYMENT_TYPE = "Credit Card"

# Storefront payment gateway -> CRM payment type name
PAYMENT_TYPE_BY_METHOD: dict[str, str] = {
    "stripe": "Credit Card",
    "square": "Credit Card",
    "paypal": "PayPal",
    "bacs": "Bank Transfer",
    "cheque": "Check",
    "cod": "Cash",
}


def payment_type_for_method(payment_method: str | None) -> str:
    if not payment_method:
        return DEFAULT_PAYMENT_TYPE
    return PAYMENT_TYPE_BY_METHOD.get(payment_method.lower(), DEFAULT_PAYMENT_TYPE)


class PaymentRecorder:
    """Create at most one remote gift per local order id.

    Args:
        client: CRM client.
        records: PaymentRecord idempotency table.
        catalog: Level catalog holding the payment-kind fund mappings.
    """

    def __init__(
        self,
        client: SyncClient,
        records: PaymentRecordRepository,
        catalog: LevelCatalog,
    ) -> None:
        self._client = client
        self._records = records
        self._catalog = catalog

    async def lookup(self, order_id: str) -> PaymentRecord | None:
        """The recorded payment for an order, if any."""
        return await self._records.get(order_id)

    async def _require(self, list_name: str, wanted: str, kind: PaymentKind) -> ReferenceItem:
        item = find_by_name(await self._client.list_reference(list_name), wanted)
        if item is None:
            raise ConfigurationMissing(
                f"{PAYMENT_MAPPINGS_KEY}.{kind.value}", f"{list_name} '{wanted}' not found in CRM"
            )
        return item

    async def _optional(self, list_name: str, wanted: str) -> ReferenceItem | None:
        item = find_by_name(await self._client.list_reference(list_name), wanted)
        if item is None:
            logger.warning("payments.reference_not_found", list=list_name, name=wanted)
        return item

    async def build_gift(
        self,
        order_id: str,
        amount: float,
        paid_on: date,
        kind: PaymentKind,
        payment_method: str | None = None,
    ) -> GiftCreate:
        """Resolve the fund/campaign mapping for ``kind`` into a gift payload.

        Raises:
            ConfigurationMissing: If the kind has no mapping or its fund or
                campaign does not exist remotely.
        """
        mapping = await self._catalog.payment_mapping(kind)
        fund = await self._require("funds", mapping.fund, kind)
        campaign = await self._require("campaigns", mapping.campaign, kind)
        gift_type = await self._optional("gift_types", mapping.gift_type)
        category = await self._optional("gift_categories", mapping.category)
        type_name = payment_type_for_method(payment_method)
        payment_type = await self._optional("payment_types", type_name)

        return GiftCreate(
            external_id=order_id,
            received_amount=amount,
            received_date=paid_on,
            fund_id=fund.id,
            fund_name=fund.name or mapping.fund,
            campaign_id=campaign.id,
            campaign_name=campaign.name or mapping.campaign,
            gift_type_id=gift_type.id if gift_type else "",
            gift_type_name=mapping.gift_type,
            gift_category_id=category.id if category else "",
            gift_category_name=mapping.category,
            payment_type_id=payment_type.id if payment_type else "",
            payment_type_name=type_name,
            note=f"Website order #{order_id}",
        )

    async def record_payment(
        self,
        constituent_id: str,
        order_id: str,
        amount: float,
        paid_on: date,
        kind: PaymentKind,
        payment_method: str | None = None,
    ) -> str | AlreadyRecorded:
        """Record a payment for a local order exactly once.

        Returns:
            The new remote gift id, or AlreadyRecorded when the order has
            been recorded before (no remote call is made in that case).

        Raises:
            ConfigurationMissing: If the payment kind cannot be mapped.
            SyncFailure: If the remote gift could not be created.
        """
        existing = await self._records.get(order_id)
        if existing is not None:
            logger.info(
                "payments.already_recorded",
                order_id=order_id,
                gift_id=existing.gift_id,
            )
            return AlreadyRecorded(order_id=order_id, gift_id=existing.gift_id)

        gift = await self.build_gift(order_id, amount, paid_on, kind, payment_method)
        gift_id = await self._client.create_gift(constituent_id, gift)

        stored = await self._records.add(
            PaymentRecord(
                order_id=order_id,
                gift_id=gift_id,
                constituent_id=constituent_id,
                kind=kind,
                amount=amount,
            )
        )
        if stored is None:
            # Another trigger recorded the same order while our gift was in flight.
            winner = await self._records.get(order_id)
            logger.warning(
                "payments.duplicate_remote_gift",
                order_id=order_id,
                gift_id=gift_id,
                recorded_gift_id=winner.gift_id if winner else None,
                constituent_id=constituent_id,
            )
            return AlreadyRecorded(order_id=order_id, gift_id=winner.gift_id if winner else gift_id)

        logger.info(
            "payments.recorded",
            order_id=order_id,
            gift_id=gift_id,
            constituent_id=constituent_id,
            kind=kind.value,
            amount=amount,
        )
        return gift_id
