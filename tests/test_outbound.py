"""Tests for conduit_pipeline.outbound."""

from __future__ import annotations

import pytest

from conduit_pipeline.errors import SourceError
from conduit_pipeline.models import AccountContext
from conduit_pipeline.outbound import OutboundRequestSender
from conduit_pipeline.store import PipelineStore
from tests.conftest import FakeSource, add_outbound_request


class TestOutboundRequestSender:
    @pytest.mark.asyncio
    async def test_pending_requests_are_sent(self, db, store: PipelineStore, account: AccountContext):
        request_id = await add_outbound_request(db, account.organization_id)
        source = FakeSource()

        report = await OutboundRequestSender(store, source).send_pending(account.organization_id)

        assert report.sent == 1
        assert report.errors == []
        assert source.sent == [("jane@fund.test", "Wire details", "Could you confirm your allocation?")]
        row = await store.get_request(request_id)
        assert row.status == "sent"
        assert row.thread_id == "<sent-1@acme.test>"
        assert row.sent_at is not None

    @pytest.mark.asyncio
    async def test_send_failure_is_collected(self, db, store: PipelineStore, account: AccountContext):
        request_id = await add_outbound_request(db, account.organization_id, target_address="bob@x.test")
        source = FakeSource()
        source.send_error = SourceError("SMTP rejected")

        report = await OutboundRequestSender(store, source).send_pending(account.organization_id)

        assert report.sent == 0
        assert report.errors == ["Request bob@x.test: SMTP rejected"]
        assert (await store.get_request(request_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_nothing_pending(self, store: PipelineStore, account: AccountContext):
        report = await OutboundRequestSender(store, FakeSource()).send_pending(account.organization_id)
        assert report.sent == 0
