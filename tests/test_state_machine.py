"""Tests for the membership state machine: derived state, renewal and deactivation."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from src.membership_sync.crm.schemas import MembershipPeriod
from src.membership_sync.directory.schemas import (
    AccountRole,
    AlreadyRecorded,
    MembershipState,
    PaymentKind,
)
from src.membership_sync.membership.state_machine import (
    PriceInfo,
    add_one_year,
    current_period,
    evaluate,
)
from tests.fakes import FakeCRM, make_account

TODAY = date(2025, 6, 15)

STATE_ORDER = [
    MembershipState.ACTIVE,
    MembershipState.DUE_SOON,
    MembershipState.OVERDUE,
    MembershipState.INACTIVE,
]


def _period(period_id: str, finish: date | None) -> MembershipPeriod:
    return MembershipPeriod(id=period_id, date_start=date(2024, 1, 1), finish_date=finish)


# ── Derived state ─────────────────────────────────────────────────────────


class TestEvaluate:
    @pytest.mark.parametrize(
        ("days_until_renewal", "expected"),
        [
            (31, MembershipState.ACTIVE),
            (30, MembershipState.DUE_SOON),
            (0, MembershipState.DUE_SOON),
            (-1, MembershipState.OVERDUE),
            (-29, MembershipState.OVERDUE),
            (-30, MembershipState.INACTIVE),
            (-400, MembershipState.INACTIVE),
        ],
    )
    def test_windows(self, days_until_renewal, expected):
        renewal = TODAY + timedelta(days=days_until_renewal)
        assert evaluate(renewal, TODAY) == expected

    def test_no_renewal_date_is_unknown(self):
        assert evaluate(None, TODAY) == MembershipState.UNKNOWN

    def test_later_remote_finish_date_wins(self):
        renewal = TODAY - timedelta(days=40)
        period = _period("1", TODAY + timedelta(days=60))
        assert evaluate(renewal, TODAY, period) == MembershipState.ACTIVE

    def test_state_never_moves_backwards_as_time_passes(self):
        renewal = date(2025, 3, 1)
        ranks = [
            STATE_ORDER.index(evaluate(renewal, renewal + timedelta(days=offset)))
            for offset in range(-60, 90)
        ]
        assert ranks == sorted(ranks)


class TestCalendar:
    def test_one_year_later(self):
        assert add_one_year(date(2024, 3, 1)) == date(2025, 3, 1)

    def test_leap_day_maps_to_february_28(self):
        assert add_one_year(date(2024, 2, 29)) == date(2025, 2, 28)

    def test_current_period_picks_latest_finish(self):
        periods = [
            _period("old", TODAY - timedelta(days=1)),
            _period("a", TODAY + timedelta(days=10)),
            _period("b", TODAY + timedelta(days=100)),
        ]
        assert current_period(periods, TODAY).id == "b"

    def test_open_ended_period_is_current(self):
        periods = [_period("a", TODAY + timedelta(days=10)), _period("open", None)]
        assert current_period(periods, TODAY).id == "open"

    def test_no_current_period(self):
        assert current_period([_period("old", TODAY - timedelta(days=5))], TODAY) is None


# ── Renewal ───────────────────────────────────────────────────────────────


class TestApplyRenewal:
    @pytest.mark.asyncio
    async def test_first_membership_creates_constituent_and_period(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        result = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )

        assert result.ok
        assert result.new_constituent is True
        periods = fake_crm.memberships[result.constituent_id]
        assert len(periods) == 1
        assert periods[0]["membership_level_id"] == "10"
        assert periods[0]["date_start"] == "2025-06-15"
        assert periods[0]["finish_date"] == "2026-06-15"

        stored = await sync_engine.accounts.require(account.id)
        assert stored.role == AccountRole.MEMBER
        assert stored.membership_type == "Individual Membership"
        assert stored.renewal_date == date(2026, 6, 15)
        assert stored.membership_state == MembershipState.ACTIVE
        assert stored.remote_constituent_id == result.constituent_id

    @pytest.mark.asyncio
    async def test_renewal_closes_existing_period_first(self, sync_engine, fake_crm: FakeCRM):
        constituent_id = fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        old_id = fake_crm.add_membership(
            constituent_id, "Individual Membership", date(2024, 7, 1), date(2025, 7, 1)
        )
        account = await sync_engine.accounts.upsert_account(
            make_account(remote_constituent_id=constituent_id, role=AccountRole.MEMBER)
        )

        result = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", date(2025, 7, 1), today=TODAY
        )

        assert result.ok
        assert result.deactivated_period_ids == [old_id]
        old = next(p for p in fake_crm.memberships[constituent_id] if p["id"] == old_id)
        assert old["finish_date"] == "2025-06-14"
        assert "Deactivated by membership-sync" in old["note"]
        current = fake_crm.current_periods(constituent_id, TODAY)
        assert [p["id"] for p in current] == [result.membership_id]

    @pytest.mark.asyncio
    async def test_repeated_renewal_leaves_one_current_period(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        first = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )
        account = await sync_engine.accounts.require(account.id)
        await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )
        assert len(fake_crm.current_periods(first.constituent_id, TODAY)) == 1

    @pytest.mark.asyncio
    async def test_identical_renewal_reuses_open_period(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        first = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )
        account = await sync_engine.accounts.require(account.id)

        again = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )

        assert again.ok
        assert again.period_reused is True
        assert again.membership_id == first.membership_id
        assert again.deactivated_period_ids == []
        assert len(fake_crm.memberships[first.constituent_id]) == 1
        assert fake_crm.count("PUT") == 0

    @pytest.mark.asyncio
    async def test_different_level_is_not_reused(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        first = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )
        account = await sync_engine.accounts.require(account.id)

        upgrade = await sync_engine.state_machine.apply_renewal(
            account, "Family Membership", TODAY, today=TODAY
        )

        assert upgrade.period_reused is False
        assert upgrade.deactivated_period_ids == [first.membership_id]
        current = fake_crm.current_periods(first.constituent_id, TODAY)
        assert [p["id"] for p in current] == [upgrade.membership_id]

    @pytest.mark.asyncio
    async def test_payment_recorded_once_per_order(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        price = PriceInfo(order_id="5001", amount=25, paid_on=TODAY, payment_method="paypal")

        first = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, price, today=TODAY
        )
        assert isinstance(first.payment, str)
        assert len(fake_crm.gifts) == 1
        _, gift = fake_crm.gifts[0]
        assert gift["external_id"] == "5001"
        assert gift["received_amount"] == "25.00"
        assert gift["fund_id"] == "1"
        assert gift["campaign_id"] == "21"
        assert gift["payment_type_name"] == "PayPal"
        assert gift["note"] == "Website order #5001"

        account = await sync_engine.accounts.require(account.id)
        second = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, price, today=TODAY
        )
        assert isinstance(second.payment, AlreadyRecorded)
        assert second.payment.gift_id == first.payment
        assert len(fake_crm.gifts) == 1

    @pytest.mark.asyncio
    async def test_unknown_level_writes_nothing_remotely(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        result = await sync_engine.state_machine.apply_renewal(
            account, "Platinum Membership", TODAY, today=TODAY
        )
        assert [error.step for error in result.errors] == ["level"]
        assert result.errors[0].error_type == "ConfigurationMissing"
        assert fake_crm.count("POST", "constituents/") == 0
        assert fake_crm.count("PUT") == 0

    @pytest.mark.asyncio
    async def test_remote_level_id_resolved_by_name(self, sync_engine, fake_crm: FakeCRM):
        account = await sync_engine.accounts.upsert_account(make_account())
        result = await sync_engine.state_machine.apply_renewal(
            account, "Student Membership", TODAY, today=TODAY
        )
        assert result.ok
        assert fake_crm.memberships[result.constituent_id][0]["membership_level_id"] == "12"

    @pytest.mark.asyncio
    async def test_level_kind_drives_role(self, sync_engine):
        account = await sync_engine.accounts.upsert_account(make_account())
        await sync_engine.state_machine.apply_renewal(
            account, "Family Membership", TODAY, today=TODAY
        )
        account = await sync_engine.accounts.require(account.id)
        assert account.role == AccountRole.FAMILY_OWNER

        await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, today=TODAY
        )
        account = await sync_engine.accounts.require(account.id)
        assert account.role == AccountRole.MEMBER

    @pytest.mark.asyncio
    async def test_payment_kind_without_mapping_is_reported(self, sync_engine, fake_crm: FakeCRM):
        await sync_engine.settings_store.set("payment_mappings", {})
        account = await sync_engine.accounts.upsert_account(make_account())
        price = PriceInfo(order_id="5002", amount=10, paid_on=TODAY, kind=PaymentKind.MEMBERSHIP)
        result = await sync_engine.state_machine.apply_renewal(
            account, "Individual Membership", TODAY, price, today=TODAY
        )
        assert [error.step for error in result.errors] == ["payment"]
        # The period was still created and the account updated
        assert result.membership_id is not None
        assert fake_crm.gifts == []


# ── Deactivation ──────────────────────────────────────────────────────────


class TestDeactivate:
    @pytest.mark.asyncio
    async def test_member_downgraded_and_period_closed(self, sync_engine, fake_crm: FakeCRM):
        constituent_id = fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        fake_crm.add_membership(constituent_id, "Individual Membership", date(2025, 1, 1), date(2026, 1, 1))
        account = await sync_engine.accounts.upsert_account(
            make_account(remote_constituent_id=constituent_id, role=AccountRole.MEMBER)
        )

        updated, errors = await sync_engine.state_machine.deactivate(account, "test", today=TODAY)

        assert errors == []
        assert updated.role == AccountRole.NONE
        assert updated.membership_state == MembershipState.INACTIVE
        assert fake_crm.current_periods(constituent_id, TODAY) == []

    @pytest.mark.asyncio
    async def test_dependent_keeps_role(self, sync_engine):
        account = await sync_engine.accounts.upsert_account(
            make_account(role=AccountRole.DEPENDENT, parent_account_id="owner-1")
        )
        updated, _ = await sync_engine.state_machine.deactivate(account, "test", today=TODAY)
        assert updated.role == AccountRole.DEPENDENT
        assert updated.membership_state == MembershipState.INACTIVE
