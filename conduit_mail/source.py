"""IMAP/SMTP implementation of :class:`~conduit_pipeline.interface.MessageSource`.

Listing is newest first.  The page token is the lowest UID already handed
out, and the next page continues strictly below it, so mail arriving between
calls never shifts a page boundary.  The sync marker is the mailbox's
``UIDNEXT``; a later poll lists ``UID <marker>:*``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from conduit_pipeline.config import RetryConfig
from conduit_pipeline.db import Database
from conduit_pipeline.errors import SourceError
from conduit_pipeline.interface import MessageSource, MessageSourceFactory
from conduit_pipeline.models import AccountContext, MessageDetail, MessagePage, SentMessage

from .config import MailConfig
from .imap_client import AsyncImapClient
from .oauth import TokenRefresher
from .parser import MimeParser
from .smtp_client import AsyncSmtpSender

logger = structlog.get_logger()


class ImapMessageSource(MessageSource):
    def __init__(
        self,
        imap: AsyncImapClient,
        smtp: AsyncSmtpSender,
        *,
        page_size: int = 200,
        parser: MimeParser | None = None,
    ) -> None:
        self._imap = imap
        self._smtp = smtp
        self._page_size = page_size
        self._parser = parser or MimeParser()
        self._search_cache: dict[str, list[str]] = {}

    async def list_messages(self, query: str, page_token: str | None = None) -> MessagePage:
        below: int | None = None
        if page_token:
            try:
                below = int(page_token)
            except ValueError:
                raise SourceError(f"Invalid page token: {page_token!r}") from None

        uids = self._search_cache.get(query)
        if uids is None:
            uids = await self._imap.search(query)
            self._search_cache[query] = uids

        newest_first = [uid for uid in reversed(uids) if below is None or int(uid) < below]
        page = newest_first[: self._page_size]
        has_more = len(newest_first) > len(page)
        return MessagePage(ids=page, next_page_token=page[-1] if has_more else None)

    async def get_message_detail(self, message_id: str) -> MessageDetail:
        raw = await self._imap.fetch(message_id)
        if raw is None:
            raise SourceError(f"Message UID {message_id} not found")
        return self._parser.parse(raw, message_id)

    async def get_current_sync_marker(self) -> str:
        return await self._imap.uid_next()

    async def send_message(self, to: str, subject: str, body: str) -> SentMessage:
        return await self._smtp.send(to, subject, body)

    def query_since(self, marker: str) -> str | None:
        return f"UID {marker}:*" if marker.isdigit() else None


class ImapSourceFactory(MessageSourceFactory):
    """Opens an authenticated :class:`ImapMessageSource` per account."""

    def __init__(self, db: Database, config: MailConfig, retry: RetryConfig | None = None) -> None:
        self._config = config
        self._tokens = TokenRefresher(db, config.oauth, retry)

    @asynccontextmanager
    async def open(self, account: AccountContext) -> AsyncIterator[ImapMessageSource]:
        token = await self._tokens.access_token(account.account_id)
        imap = AsyncImapClient(self._config.imap, account.address, token)
        await imap.connect()
        try:
            yield ImapMessageSource(
                imap,
                AsyncSmtpSender(self._config.smtp, account.address, token),
                page_size=self._config.imap.page_size,
            )
        finally:
            await imap.disconnect()
