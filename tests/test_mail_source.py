"""Tests for conduit_mail.source."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conduit_mail.config import MailConfig
from conduit_mail.source import ImapMessageSource, ImapSourceFactory
from conduit_pipeline.errors import SourceError
from conduit_pipeline.models import AccountContext, SentMessage
from tests.conftest import build_eml


def _source(uids: list[str], *, page_size: int = 2) -> tuple[ImapMessageSource, AsyncMock, AsyncMock]:
    imap = AsyncMock()
    imap.search.return_value = uids
    smtp = AsyncMock()
    return ImapMessageSource(imap, smtp, page_size=page_size), imap, smtp


class TestListMessages:
    @pytest.mark.asyncio
    async def test_pages_newest_first(self):
        source, imap, _ = _source(["1", "2", "3", "4", "5"])

        first = await source.list_messages("ALL")
        second = await source.list_messages("ALL", first.next_page_token)
        third = await source.list_messages("ALL", second.next_page_token)

        assert first.ids == ["5", "4"]
        assert first.next_page_token == "4"
        assert second.ids == ["3", "2"]
        assert third.ids == ["1"]
        assert third.next_page_token is None
        imap.search.assert_awaited_once_with("ALL")

    @pytest.mark.asyncio
    async def test_page_boundary_stable_when_mail_arrives(self):
        source, _, _ = _source(["1", "2", "3", "4"])
        first = await source.list_messages("ALL")

        fresh, *_ = _source(["1", "2", "3", "4", "5", "6"])
        second = await fresh.list_messages("ALL", first.next_page_token)

        assert second.ids == ["2", "1"]

    @pytest.mark.asyncio
    async def test_empty_mailbox(self):
        source, _, _ = _source([])
        page = await source.list_messages("ALL")
        assert page.ids == []
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_bad_page_token(self):
        source, _, _ = _source(["1"])
        with pytest.raises(SourceError):
            await source.list_messages("ALL", "abc")


class TestDetailAndMarker:
    @pytest.mark.asyncio
    async def test_detail_is_parsed(self):
        source, imap, _ = _source([])
        imap.fetch.return_value = build_eml()

        detail = await source.get_message_detail("12")

        imap.fetch.assert_awaited_once_with("12")
        assert detail.provider_message_id == "12"
        assert detail.from_address == "jane@fund.test"

    @pytest.mark.asyncio
    async def test_missing_message(self):
        source, imap, _ = _source([])
        imap.fetch.return_value = None
        with pytest.raises(SourceError, match="not found"):
            await source.get_message_detail("12")

    @pytest.mark.asyncio
    async def test_sync_marker_and_query(self):
        source, imap, _ = _source([])
        imap.uid_next.return_value = "501"

        assert await source.get_current_sync_marker() == "501"
        assert source.query_since("501") == "UID 501:*"
        assert source.query_since("opaque") is None

    @pytest.mark.asyncio
    async def test_send_delegates_to_smtp(self):
        source, _, smtp = _source([])
        smtp.send.return_value = SentMessage(thread_id="<a@b>", message_id="<a@b>")

        sent = await source.send_message("jane@fund.test", "Hi", "Body")

        smtp.send.assert_awaited_once_with("jane@fund.test", "Hi", "Body")
        assert sent.thread_id == "<a@b>"


class TestImapSourceFactory:
    @pytest.mark.asyncio
    async def test_open_connects_and_disconnects(self, db, account: AccountContext):
        factory = ImapSourceFactory(db, MailConfig())

        with patch("conduit_mail.source.AsyncImapClient") as MockClient:
            imap = MockClient.return_value
            imap.connect = AsyncMock()
            imap.disconnect = AsyncMock()
            async with factory.open(account) as source:
                assert isinstance(source, ImapMessageSource)
                imap.connect.assert_awaited_once()
                imap.disconnect.assert_not_awaited()

        MockClient.assert_called_once()
        assert MockClient.call_args.args[1:] == ("owner@acme.test", "token-1")
        imap.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnects_when_body_raises(self, db, account: AccountContext):
        factory = ImapSourceFactory(db, MailConfig())

        with patch("conduit_mail.source.AsyncImapClient") as MockClient:
            imap = MagicMock()
            imap.connect = AsyncMock()
            imap.disconnect = AsyncMock()
            MockClient.return_value = imap
            with pytest.raises(RuntimeError):
                async with factory.open(account):
                    raise RuntimeError("boom")

        imap.disconnect.assert_awaited_once()
