"""Tests for IdentityResolver exact matching, creation and linking."""

from __future__ import annotations

import pytest

from src.membership_sync.directory.schemas import AccountProfile
from src.membership_sync.membership.identity import split_name
from tests.fakes import FakeCRM, make_account


class TestSplitName:
    def test_splits_on_last_space(self):
        assert split_name("Mary Ann Evans") == ("Mary Ann", "Evans")

    def test_single_word(self):
        assert split_name("Cher") == ("Cher", "")


class TestResolve:
    @pytest.mark.asyncio
    async def test_exact_email_match_binds_existing(self, sync_engine, fake_crm: FakeCRM):
        existing = fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        resolution = await sync_engine.identity.resolve("ada  lovelace", " ADA@example.org ")
        assert resolution.constituent_id == existing
        assert resolution.new_constituent is False
        assert fake_crm.count("POST", "constituents") == 0

    @pytest.mark.asyncio
    async def test_name_search_used_when_email_unknown(self, sync_engine, fake_crm: FakeCRM):
        existing = fake_crm.add_constituent("Grace", "Hopper")
        resolution = await sync_engine.identity.resolve("Grace Hopper")
        assert resolution.constituent_id == existing
        assert fake_crm.count("GET", "constituents/search") == 1

    @pytest.mark.asyncio
    async def test_near_match_never_binds(self, sync_engine, fake_crm: FakeCRM):
        fake_crm.add_constituent("Grace", "Hopper")
        resolution = await sync_engine.identity.resolve("Grace Hopper", "grace@navy.mil")
        assert resolution.new_constituent is True
        assert len(fake_crm.constituents) == 2

    @pytest.mark.asyncio
    async def test_multiple_exact_matches_pick_lowest_id(self, sync_engine, fake_crm: FakeCRM):
        first = fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        resolution = await sync_engine.identity.resolve("Ada Lovelace", "ada@example.org")
        assert resolution.constituent_id == first

    @pytest.mark.asyncio
    async def test_no_match_creates_constituent_from_profile(self, sync_engine, fake_crm: FakeCRM):
        profile = AccountProfile(
            first_name="Alan",
            last_name="Turing",
            phone="+44 (0) 123-456",
            street="1 Bletchley Park",
            city="Milton Keynes",
        )
        resolution = await sync_engine.identity.resolve("Alan Turing", "alan@example.org", profile)
        assert resolution.new_constituent is True
        created = fake_crm.constituents[resolution.constituent_id]
        assert created["first_name"] == "Alan"
        assert created["last_name"] == "Turing"
        assert created["email_addresses"][0]["address"] == "alan@example.org"
        assert created["phone_numbers"][0]["number"] == "440123456"
        assert created["street_addresses"][0]["city"] == "Milton Keynes"

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, sync_engine):
        with pytest.raises(ValueError):
            await sync_engine.identity.resolve("  ", "someone@example.org")


class TestLink:
    @pytest.mark.asyncio
    async def test_link_persists_remote_id_once(self, sync_engine, fake_crm: FakeCRM):
        await sync_engine.accounts.upsert_account(make_account())
        account = await sync_engine.accounts.require("acct-1")

        linked, resolution = await sync_engine.identity.link(account)
        assert linked.remote_constituent_id == resolution.constituent_id
        stored = await sync_engine.accounts.require("acct-1")
        assert stored.remote_constituent_id == resolution.constituent_id

        calls_before = len(fake_crm.calls)
        again, second = await sync_engine.identity.link(stored)
        assert second.constituent_id == resolution.constituent_id
        assert second.new_constituent is False
        assert len(fake_crm.calls) == calls_before
