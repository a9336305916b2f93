"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re

import structlog

from conduit_pipeline.errors import SourceError

from .config import ImapConfig

logger = structlog.get_logger()

_UIDNEXT_RE = re.compile(rb"UIDNEXT\s+(\d+)")


def xoauth2_string(address: str, access_token: str) -> bytes:
    """SASL XOAUTH2 initial response (unencoded; imaplib/smtplib base64 it)."""
    return f"user={address}\x01auth=Bearer {access_token}\x01\x01".encode()


class AsyncImapClient:
    """Async-friendly IMAP client authenticated with an OAuth2 access token.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Calls on one
    connection are serialized with a lock since imaplib is not re-entrant.
    """

    def __init__(self, config: ImapConfig, address: str, access_token: str) -> None:
        self._config = config
        self._address = address
        self._access_token = access_token
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, authenticate, and select the configured mailbox."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise SourceError(f"IMAP connection failed: {exc}") from exc
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
        )

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port)
        auth = xoauth2_string(self._address, self._access_token)
        self._conn.authenticate("XOAUTH2", lambda _challenge: auth)
        status, _ = self._conn.select(self._config.mailbox, readonly=True)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select mailbox {self._config.mailbox}")

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except imaplib.IMAP4.error:
            pass
        try:
            self._conn.logout()
        except imaplib.IMAP4.error:
            pass

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def search(self, criteria: str) -> list[str]:
        """Return the UIDs matching *criteria*, ascending."""
        return await self._call(self._search_sync, criteria)

    async def fetch(self, uid: str) -> bytes | None:
        """Return the RFC 822 bytes of *uid*, or ``None`` if it no longer exists."""
        return await self._call(self._fetch_sync, uid)

    async def uid_next(self) -> str:
        """Return the mailbox's ``UIDNEXT`` value."""
        return await self._call(self._uid_next_sync)

    async def _call(self, fn, *args):
        if self._conn is None:
            raise SourceError("IMAP client is not connected")
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except (imaplib.IMAP4.error, OSError) as exc:
                raise SourceError(f"IMAP command failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_sync(self, criteria: str) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SEARCH {criteria!r} returned {status}")
        if not data or not data[0]:
            return []
        uids = [uid.decode() for uid in data[0].split()]
        return sorted(uids, key=int)

    def _fetch_sync(self, uid: str) -> bytes | None:
        assert self._conn is not None
        status, msg_data = self._conn.uid("FETCH", uid, "(BODY.PEEK[])")
        if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
            return None
        return msg_data[0][1]

    def _uid_next_sync(self) -> str:
        assert self._conn is not None
        status, data = self._conn.status(self._config.mailbox, "(UIDNEXT)")
        match = _UIDNEXT_RE.search(data[0]) if status == "OK" and data and data[0] else None
        if match is None:
            raise imaplib.IMAP4.error(f"STATUS UIDNEXT unavailable: {data!r}")
        return match.group(1).decode()
