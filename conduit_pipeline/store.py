"""Repository over the pipeline tables.

Every method opens its own short-lived session and commits before
returning, so the effects of a chunk are durable item by item and an
interrupted invocation never leaves half a chunk in an open transaction.

Idempotency lives here rather than in the callers: message inserts are
``ON CONFLICT DO NOTHING`` on ``(organization_id, provider_message_id)``,
parse records upsert on ``message_id`` and suggested contacts upsert on
``(organization_id, address)``.  Overlapping invocations therefore converge
instead of colliding.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .db.engine import Database
from .db.models import (
    Counterparty,
    Deal,
    MailAccount,
    OutboundRequest,
    ParseRecord,
    RawMessage,
    SuggestedContact,
    User,
)
from .models import (
    CounterpartyContext,
    DealContext,
    ExtractionContext,
    Intent,
    MessageDetail,
    OutboundStatus,
    ProcessingStatus,
    StoredMessage,
)

logger = structlog.get_logger()


def _insert(session: AsyncSession, model: type):
    """Dialect-specific ``INSERT`` supporting ``ON CONFLICT`` clauses."""
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def _now() -> datetime:
    return datetime.now(UTC)


class PipelineStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        async with self._db.session() as session:
            return (
                await session.execute(select(User).where(User.id == user_id))
            ).scalar_one_or_none()

    async def get_active_account(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> MailAccount | None:
        """Return the user's active account, or the organization's first one."""
        stmt = select(MailAccount).where(
            MailAccount.organization_id == organization_id,
            MailAccount.is_active.is_(True),
        )
        if user_id is not None:
            stmt = stmt.order_by(case((MailAccount.user_id == user_id, 0), else_=1))
        stmt = stmt.order_by(MailAccount.created_at).limit(1)
        async with self._db.session() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_active_accounts(self) -> list[MailAccount]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MailAccount)
                .where(MailAccount.is_active.is_(True))
                .order_by(MailAccount.created_at)
            )
            return list(result.scalars().all())

    async def connected_addresses(self, organization_id: uuid.UUID) -> set[str]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MailAccount.address).where(
                    MailAccount.organization_id == organization_id,
                    MailAccount.is_active.is_(True),
                )
            )
            return {address.lower() for address in result.scalars().all()}

    async def save_sync_marker(self, account_id: uuid.UUID, marker: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(MailAccount)
                .where(MailAccount.id == account_id)
                .values(sync_marker=marker, last_sync_at=_now())
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Raw messages
    # ------------------------------------------------------------------

    async def filter_new_ids(
        self,
        organization_id: uuid.UUID,
        provider_ids: Sequence[str],
    ) -> list[str]:
        """Return the ids not yet stored for the organization, in input order."""
        if not provider_ids:
            return []
        async with self._db.session() as session:
            result = await session.execute(
                select(RawMessage.provider_message_id).where(
                    RawMessage.organization_id == organization_id,
                    RawMessage.provider_message_id.in_(list(provider_ids)),
                )
            )
            seen = set(result.scalars().all())

        fresh: list[str] = []
        for provider_id in provider_ids:
            if provider_id not in seen:
                seen.add(provider_id)
                fresh.append(provider_id)
        return fresh

    async def insert_message(
        self,
        organization_id: uuid.UUID,
        account_id: uuid.UUID | None,
        detail: MessageDetail,
    ) -> StoredMessage | None:
        """Insert *detail*; return ``None`` when the provider id is already stored."""
        message_id = uuid.uuid4()
        async with self._db.session() as session:
            stmt = (
                _insert(session, RawMessage)
                .values(
                    id=message_id,
                    organization_id=organization_id,
                    account_id=account_id,
                    provider_message_id=detail.provider_message_id,
                    thread_id=detail.thread_id,
                    from_address=detail.from_address,
                    from_name=detail.from_name,
                    to_addresses=detail.to_addresses,
                    cc_addresses=detail.cc_addresses,
                    subject=detail.subject,
                    body_text=detail.body_text,
                    body_html=detail.body_html,
                    received_at=detail.received_at,
                    has_attachments=detail.has_attachments,
                    created_at=_now(),
                )
                .on_conflict_do_nothing(
                    index_elements=["organization_id", "provider_message_id"],
                )
                .returning(RawMessage.id)
            )
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if inserted is None:
            logger.debug(
                "raw_message_duplicate_skipped",
                provider_message_id=detail.provider_message_id,
            )
            return None

        return StoredMessage(
            id=inserted,
            organization_id=organization_id,
            provider_message_id=detail.provider_message_id,
            thread_id=detail.thread_id,
            from_address=detail.from_address,
            from_name=detail.from_name,
            subject=detail.subject,
            body_text=detail.body_text,
            body_html=detail.body_html,
            received_at=detail.received_at,
        )

    async def recent_messages(self, organization_id: uuid.UUID, limit: int) -> list[StoredMessage]:
        async with self._db.session() as session:
            result = await session.execute(
                select(RawMessage)
                .where(RawMessage.organization_id == organization_id)
                .order_by(RawMessage.received_at.desc())
                .limit(limit)
            )
            return [StoredMessage.model_validate(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Parse records
    # ------------------------------------------------------------------

    def _unparsed_filter(self, stmt, organization_id: uuid.UUID, attempted_before: datetime | None):
        stmt = stmt.outerjoin(ParseRecord, ParseRecord.message_id == RawMessage.id).where(
            RawMessage.organization_id == organization_id,
            or_(
                ParseRecord.id.is_(None),
                ParseRecord.status != ProcessingStatus.SUCCESS.value,
            ),
        )
        if attempted_before is not None:
            stmt = stmt.where(
                or_(ParseRecord.id.is_(None), ParseRecord.updated_at < attempted_before),
            )
        return stmt

    async def count_unparsed(
        self,
        organization_id: uuid.UUID,
        *,
        attempted_before: datetime | None = None,
    ) -> int:
        """Count messages with no ``success`` parse record.

        With *attempted_before*, messages whose record was touched at or
        after that instant are left out: they already had their attempt in
        the current run.
        """
        stmt = self._unparsed_filter(
            select(func.count(RawMessage.id)),
            organization_id,
            attempted_before,
        )
        async with self._db.session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def list_unparsed(
        self,
        organization_id: uuid.UUID,
        limit: int,
        *,
        attempted_before: datetime | None = None,
    ) -> list[StoredMessage]:
        stmt = self._unparsed_filter(select(RawMessage), organization_id, attempted_before)
        stmt = stmt.order_by(RawMessage.received_at.desc()).limit(limit)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [StoredMessage.model_validate(row) for row in result.scalars().all()]

    async def begin_parse(self, message_id: uuid.UUID, model_version: str) -> None:
        """Create or reset the parse record for *message_id* in ``processing``."""
        now = _now()
        reset: dict[str, Any] = {
            "status": ProcessingStatus.PROCESSING.value,
            "counterparty_id": None,
            "deal_id": None,
            "intent": None,
            "commitment_amount": None,
            "sentiment": None,
            "questions": None,
            "entities": None,
            "confidence": None,
            "mean_confidence": None,
            "has_wire_details": False,
            "reasoning": None,
            "error_message": None,
            "model_version": model_version,
            "parsed_at": None,
            "updated_at": now,
        }
        async with self._db.session() as session:
            stmt = (
                _insert(session, ParseRecord)
                .values(id=uuid.uuid4(), message_id=message_id, is_answered=False, **reset)
                .on_conflict_do_update(index_elements=["message_id"], set_=reset)
            )
            await session.execute(stmt)
            await session.commit()

    async def complete_parse(self, message_id: uuid.UUID, **fields: Any) -> None:
        fields.setdefault("updated_at", _now())
        async with self._db.session() as session:
            await session.execute(
                update(ParseRecord).where(ParseRecord.message_id == message_id).values(**fields)
            )
            await session.commit()

    async def fail_parse(self, message_id: uuid.UUID, error: str) -> None:
        await self.complete_parse(
            message_id,
            status=ProcessingStatus.FAILED.value,
            error_message=error,
        )

    async def get_parse_record(self, message_id: uuid.UUID) -> ParseRecord | None:
        async with self._db.session() as session:
            return (
                await session.execute(select(ParseRecord).where(ParseRecord.message_id == message_id))
            ).scalar_one_or_none()

    async def mark_questions_answered(
        self,
        organization_id: uuid.UUID,
        thread_ids: Iterable[str],
    ) -> int:
        """Flag unanswered ``question`` records in *thread_ids* as answered."""
        threads = list(thread_ids)
        if not threads:
            return 0
        in_threads = select(RawMessage.id).where(
            RawMessage.organization_id == organization_id,
            RawMessage.thread_id.in_(threads),
        )
        async with self._db.session() as session:
            result = await session.execute(
                update(ParseRecord)
                .where(
                    ParseRecord.message_id.in_(in_threads),
                    ParseRecord.intent == Intent.QUESTION.value,
                    ParseRecord.is_answered.is_(False),
                )
                .values(is_answered=True, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Relationship graph
    # ------------------------------------------------------------------

    async def load_context(
        self,
        organization_id: uuid.UUID,
        *,
        counterparty_limit: int,
        deal_limit: int,
        deal_statuses: Sequence[str],
    ) -> ExtractionContext:
        async with self._db.session() as session:
            counterparties = await session.execute(
                select(Counterparty)
                .where(Counterparty.organization_id == organization_id)
                .order_by(Counterparty.name)
                .limit(counterparty_limit)
            )
            deals = await session.execute(
                select(Deal)
                .where(Deal.organization_id == organization_id, Deal.status.in_(list(deal_statuses)))
                .order_by(Deal.created_at.desc())
                .limit(deal_limit)
            )
            return ExtractionContext(
                counterparties=[CounterpartyContext.model_validate(c) for c in counterparties.scalars().all()],
                deals=[DealContext.model_validate(d) for d in deals.scalars().all()],
            )

    async def find_counterparty_by_address(
        self,
        organization_id: uuid.UUID,
        address: str,
    ) -> uuid.UUID | None:
        """Case-insensitive exact match on a counterparty's address."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Counterparty.id)
                .where(
                    Counterparty.organization_id == organization_id,
                    func.lower(Counterparty.email) == address.strip().lower(),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def touch_counterparty(self, counterparty_id: uuid.UUID, at: datetime) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Counterparty)
                .where(Counterparty.id == counterparty_id)
                .values(last_interaction_at=at)
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Suggested contacts
    # ------------------------------------------------------------------

    async def is_address_dismissed(self, organization_id: uuid.UUID, address: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(SuggestedContact.id).where(
                    SuggestedContact.organization_id == organization_id,
                    SuggestedContact.address == address.lower(),
                    SuggestedContact.is_dismissed.is_(True),
                )
            )
            return result.scalar_one_or_none() is not None

    async def upsert_suggested_contact(
        self,
        organization_id: uuid.UUID,
        *,
        address: str,
        name: str,
        firm: str | None,
        source_message_id: uuid.UUID | None,
    ) -> None:
        """Insert or refresh the suggestion for *address*; dismissed rows stay untouched."""
        now = _now()
        async with self._db.session() as session:
            stmt = _insert(session, SuggestedContact).values(
                id=uuid.uuid4(),
                organization_id=organization_id,
                address=address.lower(),
                name=name,
                firm=firm,
                source_message_id=source_message_id,
                is_dismissed=False,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["organization_id", "address"],
                set_={
                    "name": stmt.excluded.name,
                    "firm": func.coalesce(stmt.excluded.firm, SuggestedContact.firm),
                    "source_message_id": stmt.excluded.source_message_id,
                    "updated_at": now,
                },
                where=SuggestedContact.is_dismissed.is_(False),
            )
            await session.execute(stmt)
            await session.commit()

    async def get_suggested_contact(
        self,
        organization_id: uuid.UUID,
        address: str,
    ) -> SuggestedContact | None:
        async with self._db.session() as session:
            return (
                await session.execute(
                    select(SuggestedContact).where(
                        SuggestedContact.organization_id == organization_id,
                        SuggestedContact.address == address.lower(),
                    )
                )
            ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------

    async def pending_requests(self, organization_id: uuid.UUID) -> list[OutboundRequest]:
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboundRequest)
                .where(
                    OutboundRequest.organization_id == organization_id,
                    OutboundRequest.status == OutboundStatus.PENDING.value,
                )
                .order_by(OutboundRequest.created_at)
            )
            return list(result.scalars().all())

    async def mark_request_sent(
        self,
        request_id: uuid.UUID,
        *,
        thread_id: str,
        message_id: str,
    ) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(OutboundRequest)
                .where(OutboundRequest.id == request_id)
                .values(
                    status=OutboundStatus.SENT.value,
                    thread_id=thread_id,
                    message_id=message_id,
                    sent_at=_now(),
                )
            )
            await session.commit()

    async def sent_requests_for_threads(
        self,
        organization_id: uuid.UUID,
        thread_ids: Iterable[str],
    ) -> list[OutboundRequest]:
        threads = list(thread_ids)
        if not threads:
            return []
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboundRequest).where(
                    OutboundRequest.organization_id == organization_id,
                    OutboundRequest.status == OutboundStatus.SENT.value,
                    OutboundRequest.thread_id.in_(threads),
                )
            )
            return list(result.scalars().all())

    async def mark_request_answered(
        self,
        request_id: uuid.UUID,
        *,
        reply_message_id: uuid.UUID,
        reply_body: str | None,
        answered_at: datetime,
    ) -> bool:
        """Move a ``sent`` request to ``answered``; ``False`` if it already moved on."""
        async with self._db.session() as session:
            result = await session.execute(
                update(OutboundRequest)
                .where(
                    OutboundRequest.id == request_id,
                    OutboundRequest.status == OutboundStatus.SENT.value,
                )
                .values(
                    status=OutboundStatus.ANSWERED.value,
                    reply_message_id=reply_message_id,
                    reply_body=reply_body,
                    answered_at=answered_at,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def get_request(self, request_id: uuid.UUID) -> OutboundRequest | None:
        async with self._db.session() as session:
            return (
                await session.execute(select(OutboundRequest).where(OutboundRequest.id == request_id))
            ).scalar_one_or_none()
