"""Family propagation -- cascade membership state from a family owner to dependents.

Activation copies the owner's membership onto a dependent, consumes one slot
from the owner's ledger and runs the state machine for the dependent without
a payment (the membership cost is attributed once, to the owner's order).
Deactivation closes every current period of every dependent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

import structlog

from src.membership_sync.core.errors import MembershipSyncError, StepError
from src.membership_sync.directory.repository import AccountRepository, FamilySlotRepository
from src.membership_sync.directory.schemas import (
    Account,
    AccountRole,
    AccountUpdate,
    FamilySlotLedger,
)
from src.membership_sync.membership.state_machine import MembershipStateMachine, RenewalResult

logger = structlog.get_logger(__name__)


@dataclass
class CascadeResult:
    dependent: Account
    ledger: FamilySlotLedger
    slot_consumed: bool = False
    renewal: RenewalResult | None = None
    errors: list[StepError] = field(default_factory=list)


class FamilyPropagator:
    """Dependent linking, slot accounting and state cascades.

    Args:
        accounts: Local account repository.
        slots: Family slot ledger repository.
        state_machine: Membership state machine.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        slots: FamilySlotRepository,
        state_machine: MembershipStateMachine,
    ) -> None:
        self._accounts = accounts
        self._slots = slots
        self._state_machine = state_machine

    async def grant_slots(self, owner_id: str, slots: int) -> FamilySlotLedger:
        """Give the owner the slot count of the purchased level (not cumulative)."""
        ledger = await self._slots.set_total(owner_id, slots)
        logger.info(
            "family.slots_granted",
            owner_id=owner_id,
            granted=slots,
            total=ledger.total,
            used=ledger.used,
        )
        return ledger

    async def cascade_activation(
        self,
        primary: Account,
        dependent_id: str,
        today: date | None = None,
    ) -> CascadeResult:
        """Give a dependent the owner's membership.

        A dependent already linked to this owner does not consume another
        slot; its membership is simply re-applied (the existing current
        period is deactivated first, so no duplicate current period remains).

        Raises:
            SlotExhausted: If the owner has no slot left; nothing is changed.
            AccountNotFound: If the dependent does not exist.
            ValueError: If the primary holds no membership to propagate.
        """
        today = today or date.today()
        if primary.role != AccountRole.FAMILY_OWNER or not primary.membership_type:
            raise ValueError(f"Account {primary.id} is not a family owner with a membership")

        dependent = await self._accounts.require(dependent_id)
        slot_consumed = False
        if dependent.parent_account_id == primary.id:
            ledger = await self._slots.get(primary.id)
        else:
            ledger = await self._slots.consume(primary.id)
            slot_consumed = True
            if dependent.parent_account_id:
                await self._release_quietly(dependent.parent_account_id)

        dependent = await self._accounts.update(
            dependent.id,
            AccountUpdate(
                role=AccountRole.DEPENDENT,
                parent_account_id=primary.id,
                membership_type=primary.membership_type,
                membership_start=primary.membership_start,
                renewal_date=primary.renewal_date,
                payment_method=primary.payment_method,
            ),
        )
        logger.info(
            "family.dependent_linked",
            owner_id=primary.id,
            dependent_id=dependent.id,
            slot_consumed=slot_consumed,
            available=ledger.available,
        )

        renewal = await self._state_machine.apply_renewal(
            dependent,
            primary.membership_type,
            primary.membership_start or today,
            price_info=None,
            today=today,
        )
        return CascadeResult(
            dependent=renewal.account,
            ledger=ledger,
            slot_consumed=slot_consumed,
            renewal=renewal,
            errors=list(renewal.errors),
        )

    async def cascade_deactivation(
        self, primary: Account, today: date | None = None
    ) -> list[StepError]:
        """Deactivate every dependent of a cancelled or inactive owner.

        Each dependent is handled independently; one failure does not stop
        the others.
        """
        today = today or date.today()
        errors: list[StepError] = []
        dependents = await self._accounts.list_dependents(primary.id)
        for dependent in dependents:
            try:
                _, step_errors = await self._state_machine.deactivate(
                    dependent, reason="family_owner_inactive", today=today
                )
                errors.extend(step_errors)
            except MembershipSyncError as exc:
                logger.warning(
                    "family.dependent_deactivation_failed",
                    owner_id=primary.id,
                    dependent_id=dependent.id,
                    error=str(exc),
                )
                errors.append(StepError.from_exception("cascade_deactivation", exc))

        logger.info(
            "family.cascade_deactivation",
            owner_id=primary.id,
            dependents=len(dependents),
            errors=len(errors),
        )
        return errors

    async def remove_dependent(
        self, owner: Account, dependent_id: str, today: date | None = None
    ) -> tuple[FamilySlotLedger, list[StepError]]:
        """Detach a dependent: deactivate it, unlink it and give the slot back.

        Raises:
            ValueError: If the account is not a dependent of ``owner``.
        """
        dependent = await self._accounts.require(dependent_id)
        if dependent.parent_account_id != owner.id:
            raise ValueError(f"Account {dependent_id} is not a dependent of {owner.id}")

        dependent, errors = await self._state_machine.deactivate(
            dependent, reason="removed_from_family", today=today
        )
        await self._accounts.unlink_parent(dependent.id)
        await self._accounts.update(dependent.id, AccountUpdate(role=AccountRole.NONE))
        ledger = await self._release_quietly(owner.id)
        logger.info(
            "family.dependent_removed",
            owner_id=owner.id,
            dependent_id=dependent_id,
            available=ledger.available,
        )
        return ledger, errors

    async def resync_slots(self, owner: Account) -> FamilySlotLedger:
        """Recompute ``used`` from the dependents actually linked (data repair)."""
        linked = await self._accounts.count_dependents(owner.id)
        ledger = await self._slots.get(owner.id)
        used = linked
        if linked > ledger.total:
            logger.warning(
                "family.slots_overcommitted",
                owner_id=owner.id,
                linked=linked,
                total=ledger.total,
            )
            used = ledger.total
        if used != ledger.used:
            ledger = await self._slots.set_used(owner.id, used)
            logger.info("family.slots_resynced", owner_id=owner.id, used=used, total=ledger.total)
        return ledger

    async def _release_quietly(self, owner_id: str) -> FamilySlotLedger:
        try:
            return await self._slots.release(owner_id)
        except MembershipSyncError as exc:
            logger.warning("family.slot_release_failed", owner_id=owner_id, error=str(exc))
            return await self._slots.get(owner_id)
