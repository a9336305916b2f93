"""Tests for conduit_mail.smtp_client."""

from __future__ import annotations

import smtplib
from unittest.mock import patch

import pytest

from conduit_mail.config import SmtpConfig
from conduit_mail.smtp_client import AsyncSmtpSender
from conduit_pipeline.errors import SourceError


@pytest.fixture
def sender() -> AsyncSmtpSender:
    return AsyncSmtpSender(SmtpConfig(host="smtp.test.com", port=587), "owner@acme.test", "access-1")


class TestAsyncSmtpSender:
    @pytest.mark.asyncio
    async def test_send_uses_starttls_and_xoauth2(self, sender: AsyncSmtpSender):
        with patch("conduit_mail.smtp_client.smtplib.SMTP") as MockSMTP:
            smtp = MockSMTP.return_value.__enter__.return_value
            sent = await sender.send("jane@fund.test", "Wire details", "Please confirm.")

        MockSMTP.assert_called_once_with("smtp.test.com", 587, timeout=30.0)
        smtp.starttls.assert_called_once()
        mechanism, callback = smtp.auth.call_args.args
        assert mechanism == "XOAUTH2"
        assert callback() == "user=owner@acme.test\x01auth=Bearer access-1\x01\x01"

        message = smtp.send_message.call_args.args[0]
        assert message["To"] == "jane@fund.test"
        assert message["Subject"] == "Wire details"
        assert sent.message_id == message["Message-ID"]
        assert sent.thread_id == sent.message_id
        assert sent.message_id.endswith("@acme.test>")

    @pytest.mark.asyncio
    async def test_smtp_failure_is_source_error(self, sender: AsyncSmtpSender):
        with patch("conduit_mail.smtp_client.smtplib.SMTP") as MockSMTP:
            smtp = MockSMTP.return_value.__enter__.return_value
            smtp.send_message.side_effect = smtplib.SMTPRecipientsRefused({"jane@fund.test": (550, b"no")})
            with pytest.raises(SourceError, match="jane@fund.test"):
                await sender.send("jane@fund.test", "Hi", "Body")
