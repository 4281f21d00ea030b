"""Tests for family slot accounting and owner-to-dependent propagation."""

from __future__ import annotations

from datetime import date

import pytest

from src.membership_sync.core.errors import SlotExhausted, SlotLedgerViolation
from src.membership_sync.directory.schemas import (
    AccountProfile,
    AccountRole,
    FamilySlotLedger,
    MembershipState,
)
from tests.fakes import FakeCRM, make_account

TODAY = date(2025, 6, 15)
RENEWAL = date(2026, 6, 15)


async def _owner(sync_engine, slots: int = 2):
    owner = await sync_engine.accounts.upsert_account(
        make_account(
            id="owner",
            role=AccountRole.FAMILY_OWNER,
            membership_type="Family Membership",
            membership_start=TODAY,
            renewal_date=RENEWAL,
            membership_state=MembershipState.ACTIVE,
        )
    )
    if slots:
        await sync_engine.propagator.grant_slots(owner.id, slots)
    return owner


async def _dependent(sync_engine, account_id: str, first_name: str, **overrides):
    email = f"{first_name.lower()}@example.org"
    return await sync_engine.accounts.upsert_account(
        make_account(
            id=account_id,
            display_name=f"{first_name} Lovelace",
            email=email,
            profile=AccountProfile(first_name=first_name, last_name="Lovelace", email=email),
            **overrides,
        )
    )


# ── Ledger ────────────────────────────────────────────────────────────────


class TestSlotLedger:
    def test_available_is_floored_at_zero(self):
        assert FamilySlotLedger(owner_id="x", total=1, used=3).available == 0

    @pytest.mark.asyncio
    async def test_owner_without_ledger_has_no_slots(self, sync_engine):
        with pytest.raises(SlotExhausted) as exc_info:
            await sync_engine.slots.consume("nobody")
        assert exc_info.value.total == 0

    @pytest.mark.asyncio
    async def test_release_below_zero_rejected(self, sync_engine):
        await sync_engine.slots.set_total("owner", 1)
        with pytest.raises(SlotLedgerViolation):
            await sync_engine.slots.release("owner")

    @pytest.mark.asyncio
    async def test_consume_stops_at_total(self, sync_engine):
        await sync_engine.slots.set_total("owner", 2)
        await sync_engine.slots.consume("owner")
        ledger = await sync_engine.slots.consume("owner")
        assert (ledger.total, ledger.used, ledger.available) == (2, 2, 0)
        with pytest.raises(SlotExhausted):
            await sync_engine.slots.consume("owner")
        assert (await sync_engine.slots.get("owner")).used == 2

    @pytest.mark.asyncio
    async def test_consumed_slots_persist_across_sessions(self, sync_engine):
        await sync_engine.slots.set_total("owner", 2)
        await sync_engine.slots.get("owner")
        await sync_engine.slots.consume("owner")
        await sync_engine.slots.get("owner")
        await sync_engine.slots.consume("owner")
        assert (await sync_engine.slots.get("owner")).used == 2

    @pytest.mark.asyncio
    async def test_setting_total_again_does_not_accumulate(self, sync_engine):
        for _ in range(3):
            await sync_engine.propagator.grant_slots("owner", 2)
        ledger = await sync_engine.slots.get("owner")
        assert (ledger.total, ledger.used) == (2, 0)

    @pytest.mark.asyncio
    async def test_total_below_used_rejected(self, sync_engine):
        await sync_engine.slots.set_total("owner", 2)
        await sync_engine.slots.consume("owner")
        await sync_engine.slots.consume("owner")
        with pytest.raises(SlotLedgerViolation):
            await sync_engine.slots.set_total("owner", 1)
        assert (await sync_engine.slots.get("owner")).total == 2

    @pytest.mark.asyncio
    async def test_set_used_rejects_values_outside_total(self, sync_engine):
        await sync_engine.slots.set_total("owner", 2)
        with pytest.raises(SlotLedgerViolation):
            await sync_engine.slots.set_used("owner", 3)


# ── Propagation ───────────────────────────────────────────────────────────


class TestCascadeActivation:
    @pytest.mark.asyncio
    async def test_dependent_inherits_membership_and_consumes_slot(
        self, sync_engine, fake_crm: FakeCRM
    ):
        owner = await _owner(sync_engine)
        await _dependent(sync_engine, "dep-1", "Byron")

        result = await sync_engine.propagator.cascade_activation(owner, "dep-1", today=TODAY)

        assert result.slot_consumed is True
        assert result.errors == []
        assert (await sync_engine.slots.get("owner")).used == 1
        dependent = await sync_engine.accounts.require("dep-1")
        assert dependent.role == AccountRole.DEPENDENT
        assert dependent.parent_account_id == "owner"
        assert dependent.membership_type == "Family Membership"
        assert dependent.renewal_date == RENEWAL
        periods = fake_crm.memberships[dependent.remote_constituent_id]
        assert periods[0]["membership_level_id"] == "11"
        assert "dep-1" in (await sync_engine.accounts.require("owner")).dependent_ids

    @pytest.mark.asyncio
    async def test_already_linked_dependent_consumes_no_slot(self, sync_engine, fake_crm: FakeCRM):
        owner = await _owner(sync_engine)
        await _dependent(sync_engine, "dep-1", "Byron")
        first = await sync_engine.propagator.cascade_activation(owner, "dep-1", today=TODAY)
        second = await sync_engine.propagator.cascade_activation(owner, "dep-1", today=TODAY)

        assert second.slot_consumed is False
        assert (await sync_engine.slots.get("owner")).used == 1
        constituent_id = first.dependent.remote_constituent_id
        assert len(fake_crm.current_periods(constituent_id, TODAY)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_ledger_changes_nothing(self, sync_engine, fake_crm: FakeCRM):
        owner = await _owner(sync_engine, slots=1)
        await _dependent(sync_engine, "dep-1", "Byron")
        await _dependent(sync_engine, "dep-2", "Annabella")
        await sync_engine.propagator.cascade_activation(owner, "dep-1", today=TODAY)
        calls_before = len(fake_crm.calls)

        with pytest.raises(SlotExhausted):
            await sync_engine.propagator.cascade_activation(owner, "dep-2", today=TODAY)

        dependent = await sync_engine.accounts.require("dep-2")
        assert dependent.role == AccountRole.NONE
        assert dependent.parent_account_id is None
        assert (await sync_engine.slots.get("owner")).used == 1
        assert len(fake_crm.calls) == calls_before

    @pytest.mark.asyncio
    async def test_primary_must_be_family_owner(self, sync_engine):
        member = await sync_engine.accounts.upsert_account(
            make_account(id="member", role=AccountRole.MEMBER, membership_type="Individual Membership")
        )
        await _dependent(sync_engine, "dep-1", "Byron")
        with pytest.raises(ValueError):
            await sync_engine.propagator.cascade_activation(member, "dep-1", today=TODAY)


class TestFamilyMaintenance:
    @pytest.mark.asyncio
    async def test_remove_dependent_releases_slot(self, sync_engine):
        owner = await _owner(sync_engine)
        await _dependent(sync_engine, "dep-1", "Byron")
        await sync_engine.propagator.cascade_activation(owner, "dep-1", today=TODAY)

        ledger, errors = await sync_engine.propagator.remove_dependent(owner, "dep-1", today=TODAY)

        assert errors == []
        assert ledger.used == 0
        dependent = await sync_engine.accounts.require("dep-1")
        assert dependent.parent_account_id is None
        assert dependent.role == AccountRole.NONE
        assert dependent.membership_state == MembershipState.INACTIVE

    @pytest.mark.asyncio
    async def test_remove_rejects_foreign_dependent(self, sync_engine):
        owner = await _owner(sync_engine)
        await _dependent(sync_engine, "dep-1", "Byron", parent_account_id="someone-else")
        with pytest.raises(ValueError):
            await sync_engine.propagator.remove_dependent(owner, "dep-1", today=TODAY)

    @pytest.mark.asyncio
    async def test_resync_counts_linked_dependents(self, sync_engine):
        owner = await _owner(sync_engine, slots=3)
        await _dependent(
            sync_engine, "dep-1", "Byron", role=AccountRole.DEPENDENT, parent_account_id="owner"
        )
        await _dependent(
            sync_engine, "dep-2", "Annabella", role=AccountRole.DEPENDENT, parent_account_id="owner"
        )
        ledger = await sync_engine.propagator.resync_slots(owner)
        assert (ledger.total, ledger.used) == (3, 2)

    @pytest.mark.asyncio
    async def test_cascade_deactivation_reaches_every_dependent(self, sync_engine):
        owner = await _owner(sync_engine)
        for account_id, name in (("dep-1", "Byron"), ("dep-2", "Annabella")):
            await _dependent(sync_engine, account_id, name)
            await sync_engine.propagator.cascade_activation(owner, account_id, today=TODAY)

        errors = await sync_engine.propagator.cascade_deactivation(owner, today=TODAY)

        assert errors == []
        for account_id in ("dep-1", "dep-2"):
            dependent = await sync_engine.accounts.require(account_id)
            assert dependent.membership_state == MembershipState.INACTIVE
            assert dependent.role == AccountRole.DEPENDENT
