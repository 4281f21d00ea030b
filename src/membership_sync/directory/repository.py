"""Local directory repositories -- async CRUD over the account directory tables.

Every repository takes a session_factory callable (an async generator of
AsyncSession) and opens one short-lived session per operation. Pydantic
schemas are the boundary types; SQLAlchemy models never leave this module.

No repository method ever holds a session open across a remote CRM call.
"""

from __future__ import annotations

from datetime import date

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from src.membership_sync.core.database import SessionFactory
from src.membership_sync.core.errors import AccountNotFound, SlotExhausted, SlotLedgerViolation
from src.membership_sync.directory.models import (
    AccountModel,
    FamilySlotLedgerModel,
    NotificationMarkerModel,
    PaymentRecordModel,
)
from src.membership_sync.directory.schemas import (
    Account,
    AccountProfile,
    AccountRole,
    AccountUpdate,
    FamilySlotLedger,
    MembershipState,
    PaymentKind,
    PaymentMethod,
    PaymentRecord,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_account(model: AccountModel, dependent_ids: list[str]) -> Account:
    """Convert AccountModel to Account schema."""
    return Account(
        id=model.id,
        display_name=model.display_name,
        email=model.email or "",
        role=AccountRole(model.role),
        remote_constituent_id=model.remote_constituent_id,
        membership_type=model.membership_type,
        membership_start=model.membership_start,
        renewal_date=model.renewal_date,
        membership_state=MembershipState(model.membership_state),
        payment_method=PaymentMethod(model.payment_method),
        parent_account_id=model.parent_account_id,
        dependent_ids=dependent_ids,
        profile=AccountProfile.model_validate(model.profile or {}),
        updated_at=model.updated_at,
    )


def _model_to_payment(model: PaymentRecordModel) -> PaymentRecord:
    """Convert PaymentRecordModel to PaymentRecord schema."""
    return PaymentRecord(
        order_id=model.order_id,
        gift_id=model.gift_id,
        constituent_id=model.constituent_id,
        kind=PaymentKind(model.kind),
        amount=model.amount,
        recorded_at=model.recorded_at,
    )


def _model_to_ledger(model: FamilySlotLedgerModel) -> FamilySlotLedger:
    return FamilySlotLedger(owner_id=model.owner_id, total=model.total, used=model.used)


# ── Accounts ────────────────────────────────────────────────────────────────


class AccountRepository:
    """Read and update local accounts.

    Account creation belongs to the host directory; ``upsert_account`` exists
    for the directory's own import path and for tests.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def upsert_account(self, account: Account) -> Account:
        """Insert or replace an account row from a full Account schema."""
        async for session in self._session_factory():
            model = await session.get(AccountModel, account.id)
            if model is None:
                model = AccountModel(id=account.id)
                session.add(model)
            model.display_name = account.display_name
            model.email = account.email
            model.role = account.role.value
            model.remote_constituent_id = account.remote_constituent_id
            model.membership_type = account.membership_type
            model.membership_start = account.membership_start
            model.renewal_date = account.renewal_date
            model.membership_state = account.membership_state.value
            model.payment_method = account.payment_method.value
            model.parent_account_id = account.parent_account_id
            model.profile = account.profile.model_dump()
            await session.commit()
        return await self.require(account.id)

    async def get(self, account_id: str) -> Account | None:
        """Get an account by local id, with its dependent ids resolved."""
        async for session in self._session_factory():
            model = await session.get(AccountModel, account_id)
            if model is None:
                return None
            dependents = await session.execute(
                select(AccountModel.id)
                .where(AccountModel.parent_account_id == account_id)
                .order_by(AccountModel.id)
            )
            return _model_to_account(model, list(dependents.scalars().all()))
        return None

    async def require(self, account_id: str) -> Account:
        """Get an account or raise AccountNotFound."""
        account = await self.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def update(self, account_id: str, data: AccountUpdate) -> Account:
        """Apply a partial update of engine-owned fields.

        Raises:
            AccountNotFound: If the account does not exist.
        """
        values = data.model_dump(exclude_none=True, mode="python")
        for key, value in list(values.items()):
            if hasattr(value, "value"):
                values[key] = value.value

        async for session in self._session_factory():
            model = await session.get(AccountModel, account_id)
            if model is None:
                raise AccountNotFound(account_id)
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()

        logger.debug("accounts.updated", account_id=account_id, fields=sorted(values))
        return await self.require(account_id)

    async def update_profile(
        self,
        account_id: str,
        display_name: str,
        email: str,
        profile: AccountProfile,
    ) -> Account:
        """Replace contact fields from a registration form."""
        async for session in self._session_factory():
            model = await session.get(AccountModel, account_id)
            if model is None:
                raise AccountNotFound(account_id)
            if display_name:
                model.display_name = display_name
            if email:
                model.email = email
            model.profile = profile.model_dump()
            await session.commit()
        return await self.require(account_id)

    async def unlink_parent(self, account_id: str) -> Account:
        """Clear a dependent's parent reference (explicit None is not expressible via update)."""
        async for session in self._session_factory():
            model = await session.get(AccountModel, account_id)
            if model is None:
                raise AccountNotFound(account_id)
            model.parent_account_id = None
            await session.commit()
        return await self.require(account_id)

    async def list_dependents(self, owner_id: str) -> list[Account]:
        """All accounts whose parent is the given family owner."""
        async for session in self._session_factory():
            result = await session.execute(
                select(AccountModel.id)
                .where(AccountModel.parent_account_id == owner_id)
                .order_by(AccountModel.id)
            )
            ids = list(result.scalars().all())
        return [await self.require(account_id) for account_id in ids]

    async def count_dependents(self, owner_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count())
                .select_from(AccountModel)
                .where(AccountModel.parent_account_id == owner_id)
            )
            return int(result.scalar_one())
        return 0

    async def list_sweepable(self, limit: int, after_id: str | None = None) -> list[Account]:
        """One batch of members and family owners that have a renewal date.

        Keyset pagination on id, so accounts leaving the set mid-sweep (after
        deactivation) never shift later batches. Accounts without a renewal
        date are not yet provisioned and are never returned here.
        """
        query = select(AccountModel.id).where(
            AccountModel.role.in_([AccountRole.MEMBER.value, AccountRole.FAMILY_OWNER.value]),
            AccountModel.renewal_date.is_not(None),
        )
        if after_id is not None:
            query = query.where(AccountModel.id > after_id)
        async for session in self._session_factory():
            result = await session.execute(query.order_by(AccountModel.id).limit(limit))
            ids = list(result.scalars().all())
        return [await self.require(account_id) for account_id in ids]


# ── Payment records ─────────────────────────────────────────────────────────


class PaymentRecordRepository:
    """The order-id idempotency table. Append-only."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, order_id: str) -> PaymentRecord | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(PaymentRecordModel).where(PaymentRecordModel.order_id == order_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_payment(model) if model is not None else None
        return None

    async def add(self, record: PaymentRecord) -> PaymentRecord | None:
        """Insert a record. Returns None if a record for the order already exists."""
        async for session in self._session_factory():
            model = PaymentRecordModel(
                order_id=record.order_id,
                gift_id=record.gift_id,
                constituent_id=record.constituent_id,
                kind=record.kind.value,
                amount=record.amount,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(model)
            return _model_to_payment(model)
        return None


# ── Family slot ledger ──────────────────────────────────────────────────────


class FamilySlotRepository:
    """Slot ledger with atomic conditional updates.

    ``consume`` and ``release`` are single UPDATE statements guarded by the
    invariant, so concurrent triggers can never push ``used`` past ``total``
    or below zero.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, owner_id: str) -> FamilySlotLedger:
        """The owner's ledger; an owner without a row has zero slots."""
        async for session in self._session_factory():
            model = await session.get(FamilySlotLedgerModel, owner_id)
            if model is None:
                return FamilySlotLedger(owner_id=owner_id)
            return _model_to_ledger(model)
        return FamilySlotLedger(owner_id=owner_id)

    async def set_total(self, owner_id: str, total: int) -> FamilySlotLedger:
        """Set the owner's purchased slot count.

        A renewal of the same level sets the same total again, so repeated
        purchases never accumulate slots.

        Raises:
            SlotLedgerViolation: If ``total`` is negative or below the slots in use.
        """
        if total < 0:
            raise SlotLedgerViolation(f"Cannot set a negative slot total ({total})")
        async for session in self._session_factory():
            model = await session.get(FamilySlotLedgerModel, owner_id)
            if model is None:
                model = FamilySlotLedgerModel(owner_id=owner_id, total=0, used=0)
                session.add(model)
            if total < (model.used or 0):
                raise SlotLedgerViolation(
                    f"total={total} below used={model.used} for {owner_id}"
                )
            model.total = total
            await session.commit()
        return await self.get(owner_id)

    async def consume(self, owner_id: str) -> FamilySlotLedger:
        """Use one slot.

        Raises:
            SlotExhausted: If no slot is available; the ledger is unchanged.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(FamilySlotLedgerModel)
                .where(
                    FamilySlotLedgerModel.owner_id == owner_id,
                    FamilySlotLedgerModel.used < FamilySlotLedgerModel.total,
                )
                .values(used=FamilySlotLedgerModel.used + 1)
            )
            await session.commit()
            if result.rowcount == 0:
                ledger = await self.get(owner_id)
                raise SlotExhausted(owner_id, ledger.total, ledger.used)
        return await self.get(owner_id)

    async def release(self, owner_id: str) -> FamilySlotLedger:
        """Give one slot back.

        Raises:
            SlotLedgerViolation: If nothing is in use.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(FamilySlotLedgerModel)
                .where(
                    FamilySlotLedgerModel.owner_id == owner_id,
                    FamilySlotLedgerModel.used > 0,
                )
                .values(used=FamilySlotLedgerModel.used - 1)
            )
            await session.commit()
            if result.rowcount == 0:
                raise SlotLedgerViolation(f"No used slot to release for {owner_id}")
        return await self.get(owner_id)

    async def set_used(self, owner_id: str, used: int) -> FamilySlotLedger:
        """Overwrite ``used`` (data repair). Rejects values that break the invariant."""
        ledger = await self.get(owner_id)
        if used < 0 or used > ledger.total:
            raise SlotLedgerViolation(
                f"used={used} outside 0..{ledger.total} for {owner_id}"
            )
        async for session in self._session_factory():
            model = await session.get(FamilySlotLedgerModel, owner_id)
            if model is None:
                model = FamilySlotLedgerModel(owner_id=owner_id, total=0, used=0)
                session.add(model)
            model.used = used
            await session.commit()
        return await self.get(owner_id)


# ── Notification markers ────────────────────────────────────────────────────


class NotificationMarkerRepository:
    """Durable record of which renewal notifications were already handled.

    A sweep claims the marker (insert under the unique constraint) before it
    sends, so two overlapping sweeps can never both send the same reminder.
    """

    PENDING = "pending"

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _where(self, account_id: str, renewal_date: date, day_offset: int):
        return (
            NotificationMarkerModel.account_id == account_id,
            NotificationMarkerModel.renewal_date == renewal_date,
            NotificationMarkerModel.day_offset == day_offset,
        )

    async def outcome(self, account_id: str, renewal_date: date, day_offset: int) -> str | None:
        """Stored outcome of a notification, or None when it was never claimed."""
        async for session in self._session_factory():
            result = await session.execute(
                select(NotificationMarkerModel.outcome).where(
                    *self._where(account_id, renewal_date, day_offset)
                )
            )
            return result.scalar_one_or_none()
        return None

    async def claim(
        self,
        account_id: str,
        renewal_date: date,
        day_offset: int,
        template_id: str,
    ) -> bool:
        """Reserve a notification. Returns False if another run already holds it."""
        async for session in self._session_factory():
            session.add(
                NotificationMarkerModel(
                    account_id=account_id,
                    renewal_date=renewal_date,
                    day_offset=day_offset,
                    template_id=template_id,
                    outcome=self.PENDING,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True
        return False

    async def complete(
        self, account_id: str, renewal_date: date, day_offset: int, outcome: str
    ) -> None:
        """Store the outcome of a claimed notification."""
        async for session in self._session_factory():
            await session.execute(
                update(NotificationMarkerModel)
                .where(*self._where(account_id, renewal_date, day_offset))
                .values(outcome=outcome)
            )
            await session.commit()

    async def release(self, account_id: str, renewal_date: date, day_offset: int) -> None:
        """Drop a claim whose notification was not delivered."""
        async for session in self._session_factory():
            await session.execute(
                delete(NotificationMarkerModel).where(
                    *self._where(account_id, renewal_date, day_offset)
                )
            )
            await session.commit()
