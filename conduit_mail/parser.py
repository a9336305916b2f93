"""MIME parser: raw RFC 822 bytes -> :class:`MessageDetail`.

Walks the whole message once to pick the first plain-text and HTML bodies
and to note whether any attachment is present.  The thread id is the root of
the ``References`` chain, which is what every reply in a conversation
shares; a message that starts a thread is its own root.
"""

from __future__ import annotations

import email
import email.policy
import email.utils
from datetime import UTC, datetime
from email.message import EmailMessage

from conduit_pipeline.models import MessageDetail


def thread_root(msg: EmailMessage) -> str | None:
    """First ``References`` id, else ``In-Reply-To``, else the ``Message-ID``."""
    for header in ("References", "In-Reply-To", "Message-ID"):
        value = str(msg.get(header, "") or "").split()
        if value:
            return value[0].strip()
    return None


class MimeParser:
    """Stateless parser for fetched messages."""

    def parse(self, raw_bytes: bytes, provider_message_id: str) -> MessageDetail:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        from_name, from_address = email.utils.parseaddr(str(msg.get("From", "")))
        body_text, body_html = self._extract_bodies(msg)

        return MessageDetail(
            provider_message_id=provider_message_id,
            thread_id=thread_root(msg),
            from_address=from_address.lower(),
            from_name=from_name or None,
            to_addresses=self._parse_address_list(msg.get("To")),
            cc_addresses=self._parse_address_list(msg.get("Cc")),
            subject=str(msg.get("Subject", "") or ""),
            body_text=body_text,
            body_html=body_html,
            received_at=self._parse_date(msg.get("Date")),
            has_attachments=self._has_attachments(msg),
        )

    def _extract_bodies(self, msg: EmailMessage) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_disposition() == "attachment":
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _has_attachments(self, msg: EmailMessage) -> bool:
        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_disposition() == "attachment" or part.get_filename():
                return True
        return False

    def _parse_date(self, header_value: object) -> datetime:
        if header_value:
            try:
                parsed = email.utils.parsedate_to_datetime(str(header_value))
            except (TypeError, ValueError):
                parsed = None
            if parsed is not None:
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        return datetime.now(UTC)

    def _parse_address_list(self, header_value: object) -> list[str]:
        if not header_value:
            return []
        return [addr.lower() for _, addr in email.utils.getaddresses([str(header_value)]) if addr]
