"""Tests for conduit_pipeline.contacts."""

from __future__ import annotations

import pytest
from sqlalchemy import update

from conduit_pipeline.contacts import ContactDecision, SuggestedContactDeriver
from conduit_pipeline.db import SuggestedContact
from conduit_pipeline.models import AccountContext
from conduit_pipeline.store import PipelineStore
from tests.conftest import add_counterparty


class TestSuggestedContactDeriver:
    @pytest.mark.asyncio
    async def test_new_sender_is_added(self, store: PipelineStore, account: AccountContext):
        deriver = SuggestedContactDeriver(store)
        decision = await deriver.derive(account.organization_id, address="  Sam@NewFund.test ", display_name="Sam")

        assert decision is ContactDecision.ADDED
        row = await store.get_suggested_contact(account.organization_id, "sam@newfund.test")
        assert row.address == "sam@newfund.test"
        assert row.name == "Sam"

    @pytest.mark.asyncio
    async def test_name_falls_back_to_address(self, store: PipelineStore, account: AccountContext):
        await SuggestedContactDeriver(store).derive(account.organization_id, address="anon@x.test")
        row = await store.get_suggested_contact(account.organization_id, "anon@x.test")
        assert row.name == "anon@x.test"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", [None, "", "   "])
    async def test_missing_address(self, store: PipelineStore, account: AccountContext, address):
        decision = await SuggestedContactDeriver(store).derive(account.organization_id, address=address)
        assert decision is ContactDecision.NO_ADDRESS

    @pytest.mark.asyncio
    async def test_connected_mailbox_is_not_suggested(self, store: PipelineStore, account: AccountContext):
        decision = await SuggestedContactDeriver(store).derive(
            account.organization_id,
            address="Owner@Acme.test",
            display_name="Owner",
        )

        assert decision is ContactDecision.OWN_ADDRESS
        assert await store.get_suggested_contact(account.organization_id, "owner@acme.test") is None

    @pytest.mark.asyncio
    async def test_known_counterparty_is_not_suggested(self, db, store: PipelineStore, account: AccountContext):
        await add_counterparty(db, account.organization_id, email="jane@fund.test")
        decision = await SuggestedContactDeriver(store).derive(account.organization_id, address="JANE@fund.test")

        assert decision is ContactDecision.KNOWN_COUNTERPARTY
        assert await store.get_suggested_contact(account.organization_id, "jane@fund.test") is None

    @pytest.mark.asyncio
    async def test_dismissed_is_never_revived(self, db, store: PipelineStore, account: AccountContext):
        deriver = SuggestedContactDeriver(store)
        await deriver.derive(account.organization_id, address="spam@x.test", display_name="Spam")
        async with db.session() as session:
            await session.execute(update(SuggestedContact).values(is_dismissed=True))
            await session.commit()

        decision = await deriver.derive(account.organization_id, address="spam@x.test", display_name="Spam Again")
        assert decision is ContactDecision.DISMISSED
        row = await store.get_suggested_contact(account.organization_id, "spam@x.test")
        assert row.name == "Spam"
        assert row.is_dismissed is True

    @pytest.mark.asyncio
    async def test_repeat_sender_yields_one_row(self, store: PipelineStore, account: AccountContext):
        deriver = SuggestedContactDeriver(store)
        for _ in range(3):
            await deriver.derive(account.organization_id, address="sam@x.test")
        row = await store.get_suggested_contact(account.organization_id, "sam@x.test")
        assert row is not None
