"""Suggested contacts derived from senders that match no known counterparty."""

from __future__ import annotations

import uuid
from enum import Enum

import structlog

from .store import PipelineStore

logger = structlog.get_logger()


class ContactDecision(str, Enum):
    ADDED = "added"
    NO_ADDRESS = "no_address"
    OWN_ADDRESS = "own_address"
    KNOWN_COUNTERPARTY = "known_counterparty"
    DISMISSED = "dismissed"


class SuggestedContactDeriver:
    """Decides whether a sender becomes (or refreshes) a suggested contact.

    Safe to call once per ingested message: the write is an upsert keyed by
    the lowercased address, and dismissed addresses are never revived.
    """

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def derive(
        self,
        organization_id: uuid.UUID,
        *,
        address: str | None,
        display_name: str | None = None,
        source_message_id: uuid.UUID | None = None,
        extracted_name: str | None = None,
        extracted_firm: str | None = None,
    ) -> ContactDecision:
        normalized = (address or "").strip().lower()
        if not normalized:
            return ContactDecision.NO_ADDRESS

        if normalized in await self._store.connected_addresses(organization_id):
            return ContactDecision.OWN_ADDRESS

        if await self._store.find_counterparty_by_address(organization_id, normalized) is not None:
            return ContactDecision.KNOWN_COUNTERPARTY

        if await self._store.is_address_dismissed(organization_id, normalized):
            return ContactDecision.DISMISSED

        name = extracted_name or display_name or normalized
        await self._store.upsert_suggested_contact(
            organization_id,
            address=normalized,
            name=name,
            firm=extracted_firm,
            source_message_id=source_message_id,
        )
        logger.debug("suggested_contact_upserted", address=normalized)
        return ContactDecision.ADDED
