"""Extraction engine: one message in, one settled parse record out.

For each message the engine

1. upserts the parse record in ``processing``;
2. calls the injected :class:`~conduit_pipeline.interface.ClassificationService`
   under a timeout;
3. resolves the counterparty and deal against the context (ids the model
   invents are discarded; an unmatched address gets a case-insensitive
   lookup against all known counterparties);
4. triages the mean confidence into ``success`` or ``manual_review``;
5. persists every extracted field.

Any exception from steps 2-5 is written to the record as ``failed`` and
re-raised, so a record is never left in ``processing`` and the batch caller
still sees the error.  Touching the counterparty's last-interaction time and
suggesting unmatched senders happen afterwards and are best-effort.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from .contacts import SuggestedContactDeriver
from .interface import ClassificationService
from .models import (
    ExtractionContext,
    ExtractionResult,
    Intent,
    ProcessingStatus,
    StoredMessage,
)
from .store import PipelineStore
from .triage import TriagePolicy

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExtractionOutcome:
    message_id: uuid.UUID
    status: ProcessingStatus
    mean_confidence: float
    counterparty_id: uuid.UUID | None = None
    deal_id: uuid.UUID | None = None
    intent: Intent | None = None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "Classification timed out"
    return str(exc) or type(exc).__name__


class ExtractionEngine:
    def __init__(
        self,
        store: PipelineStore,
        classifier: ClassificationService,
        triage: TriagePolicy,
        *,
        contacts: SuggestedContactDeriver | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._triage = triage
        self._contacts = contacts
        self._timeout = timeout_seconds

    async def extract(self, message: StoredMessage, context: ExtractionContext) -> ExtractionOutcome:
        await self._store.begin_parse(message.id, self._classifier.model_version)

        try:
            async with asyncio.timeout(self._timeout):
                result = await self._classifier.classify(message, context)

            counterparty_id = await self._resolve_counterparty(message.organization_id, result, context)
            deal_id = self._resolve_deal(result, context)
            mean, status = self._triage.decide(result.confidence)

            await self._store.complete_parse(
                message.id,
                status=status.value,
                counterparty_id=counterparty_id,
                deal_id=deal_id,
                intent=result.intent.value if result.intent else None,
                commitment_amount=result.commitment_amount,
                sentiment=result.sentiment.value if result.sentiment else None,
                questions=list(result.questions),
                entities={
                    "counterparty": result.counterparty.model_dump(mode="json"),
                    "deal": result.deal.model_dump(mode="json"),
                },
                confidence=result.confidence.model_dump(),
                mean_confidence=round(mean, 3),
                has_wire_details=result.has_wire_details,
                reasoning=result.reasoning,
                error_message=None,
                parsed_at=datetime.now(UTC),
            )
        except Exception as exc:
            logger.warning(
                "extraction_failed",
                message_id=str(message.id),
                error=_describe(exc),
            )
            await self._record_failure(message.id, exc)
            raise

        outcome = ExtractionOutcome(
            message_id=message.id,
            status=status,
            mean_confidence=mean,
            counterparty_id=counterparty_id,
            deal_id=deal_id,
            intent=result.intent,
        )
        logger.info(
            "extraction_complete",
            message_id=str(message.id),
            status=status.value,
            mean_confidence=round(mean, 3),
            deal_matched=deal_id is not None,
        )
        await self._after_extraction(message, result, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Match resolution
    # ------------------------------------------------------------------

    async def _resolve_counterparty(
        self,
        organization_id: uuid.UUID,
        result: ExtractionResult,
        context: ExtractionContext,
    ) -> uuid.UUID | None:
        matched = result.counterparty.matched_id
        if matched is not None and matched in context.counterparty_ids():
            return matched
        if matched is not None:
            logger.info("classifier_counterparty_id_unknown", matched_id=str(matched))

        # The context is capped, so a known address may simply not have been offered.
        address = (result.counterparty.email or "").strip()
        if not address:
            return None
        return await self._store.find_counterparty_by_address(organization_id, address)

    @staticmethod
    def _resolve_deal(result: ExtractionResult, context: ExtractionContext) -> uuid.UUID | None:
        matched = result.deal.matched_id
        if matched is not None and matched in context.deal_ids():
            return matched
        return None

    # ------------------------------------------------------------------
    # Failure and side effects
    # ------------------------------------------------------------------

    async def _record_failure(self, message_id: uuid.UUID, exc: BaseException) -> None:
        try:
            await self._store.fail_parse(message_id, _describe(exc))
        except Exception:
            logger.exception("parse_failure_not_recorded", message_id=str(message_id))

    async def _after_extraction(
        self,
        message: StoredMessage,
        result: ExtractionResult,
        outcome: ExtractionOutcome,
    ) -> None:
        if outcome.counterparty_id is not None:
            try:
                await self._store.touch_counterparty(outcome.counterparty_id, message.received_at)
            except Exception as exc:
                logger.warning(
                    "counterparty_touch_failed",
                    counterparty_id=str(outcome.counterparty_id),
                    error=str(exc),
                )
            return

        if self._contacts is None:
            return
        try:
            await self._contacts.derive(
                message.organization_id,
                address=message.from_address,
                display_name=message.from_name,
                source_message_id=message.id,
                extracted_name=result.counterparty.name,
                extracted_firm=result.counterparty.firm,
            )
        except Exception as exc:
            logger.warning(
                "suggested_contact_failed",
                message_id=str(message.id),
                error=str(exc),
            )
