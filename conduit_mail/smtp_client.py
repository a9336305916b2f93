"""Async SMTP sender wrapping stdlib smtplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import structlog

from conduit_pipeline.errors import SourceError
from conduit_pipeline.models import SentMessage

from .config import SmtpConfig
from .imap_client import xoauth2_string

logger = structlog.get_logger()


class AsyncSmtpSender:
    """Sends plain-text messages as the account owner over XOAUTH2.

    Every message gets a fresh ``Message-ID``; as the root of any reply
    chain it doubles as the thread id.
    """

    def __init__(self, config: SmtpConfig, address: str, access_token: str) -> None:
        self._config = config
        self._address = address
        self._access_token = access_token

    async def send(self, to: str, subject: str, body: str) -> SentMessage:
        domain = self._address.rpartition("@")[2] or None
        message = EmailMessage()
        message["From"] = self._address
        message["To"] = to
        message["Subject"] = subject
        message["Date"] = formatdate(localtime=False)
        message["Message-ID"] = make_msgid(domain=domain)
        message.set_content(body)

        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise SourceError(f"SMTP send to {to} failed: {exc}") from exc

        message_id = message["Message-ID"]
        logger.info("smtp_message_sent", to=to, message_id=message_id)
        return SentMessage(thread_id=message_id, message_id=message_id)

    def _send_sync(self, message: EmailMessage) -> None:
        auth = xoauth2_string(self._address, self._access_token).decode()
        with smtplib.SMTP(
            self._config.host,
            self._config.port,
            timeout=self._config.timeout_seconds,
        ) as smtp:
            smtp.ehlo()
            if self._config.starttls:
                smtp.starttls()
                smtp.ehlo()
            smtp.auth("XOAUTH2", lambda challenge=None: auth)
            smtp.send_message(message)
