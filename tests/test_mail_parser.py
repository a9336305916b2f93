"""Tests for conduit_mail.parser."""

from __future__ import annotations

from datetime import UTC, datetime

from conduit_mail.parser import MimeParser
from tests.conftest import build_eml


class TestMimeParser:
    def test_plain_message(self):
        detail = MimeParser().parse(build_eml(), "100")

        assert detail.provider_message_id == "100"
        assert detail.from_address == "jane@fund.test"
        assert detail.from_name == "Jane Doe"
        assert detail.to_addresses == ["owner@acme.test"]
        assert detail.subject == "Series A allocation"
        assert detail.body_text.strip() == "We are in for $250K."
        assert detail.body_html is None
        assert detail.received_at == datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert detail.has_attachments is False

    def test_new_thread_uses_own_message_id(self):
        detail = MimeParser().parse(build_eml(message_id="<root@fund.test>"), "1")
        assert detail.thread_id == "<root@fund.test>"

    def test_reply_uses_first_reference(self):
        raw = build_eml(
            message_id="<reply-2@fund.test>",
            in_reply_to="<reply-1@acme.test>",
            references="<root@acme.test> <reply-1@acme.test>",
        )
        assert MimeParser().parse(raw, "2").thread_id == "<root@acme.test>"

    def test_in_reply_to_without_references(self):
        raw = build_eml(message_id="<reply@fund.test>", in_reply_to="<sent-1@acme.test>")
        assert MimeParser().parse(raw, "3").thread_id == "<sent-1@acme.test>"

    def test_alternative_bodies(self):
        detail = MimeParser().parse(build_eml(body="plain", html="<p>rich</p>"), "4")
        assert detail.body_text.strip() == "plain"
        assert "<p>rich</p>" in detail.body_html

    def test_missing_date_defaults_to_now(self):
        before = datetime.now(UTC)
        detail = MimeParser().parse(build_eml(date=None), "5")
        assert detail.received_at >= before
