"""Resumable backfill state machine: ``ingest`` -> ``parse`` -> ``finalize``.

The orchestrator keeps no state between calls.  Each :meth:`step` rebuilds
what it needs from the caller's cursor, does one bounded chunk of work,
commits it item by item through the store, and returns the cursor for the
next call.  Callers loop until ``done`` is true; stopping early is always
safe because every write is a dedup-guarded insert or an upsert.

Phase transitions hand back a ``None`` cursor: the next phase starts from
the datastore rather than from anything carried over.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import structlog

from .batch import run_batched
from .config import PipelineConfig
from .contacts import ContactDecision, SuggestedContactDeriver
from .correlation import QuestionAnswerDetector, ThreadAnswerCorrelator
from .cursor import IngestCursor, ParseCursor, decode_cursor, encode_cursor
from .errors import CursorError
from .extraction import ExtractionEngine, ExtractionOutcome
from .interface import ClassificationService, MessageSource
from .models import (
    AccountContext,
    ChunkStats,
    Phase,
    Progress,
    StepResult,
    StoredMessage,
)
from .store import PipelineStore
from .triage import TriagePolicy

logger = structlog.get_logger()

# Added to the progress denominator while the provider still has pages.
UNLISTED_ESTIMATE = 500


class BackfillOrchestrator:
    def __init__(
        self,
        store: PipelineStore,
        source: MessageSource,
        engine: ExtractionEngine,
        config: PipelineConfig,
        *,
        contacts: SuggestedContactDeriver | None = None,
        correlator: ThreadAnswerCorrelator | None = None,
        answers: QuestionAnswerDetector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._source = source
        self._engine = engine
        self._config = config
        self._contacts = contacts or SuggestedContactDeriver(store)
        self._correlator = correlator or ThreadAnswerCorrelator(store)
        self._answers = answers or QuestionAnswerDetector(store)
        self._clock = clock

    @property
    def source(self) -> MessageSource:
        return self._source

    @property
    def config(self) -> PipelineConfig:
        return self._config

    async def step(
        self,
        account: AccountContext,
        phase: Phase | str,
        cursor: str | None = None,
    ) -> StepResult:
        """Run one chunk of *phase* and return where the next call starts."""
        try:
            phase = Phase(phase)
        except ValueError:
            raise CursorError(f"Unknown backfill phase: {phase!r}") from None
        decoded = decode_cursor(cursor, expected=phase)

        log = logger.bind(organization_id=str(account.organization_id), phase=phase.value)
        log.info("backfill_step_started", resumed=decoded is not None)

        if phase is Phase.INGEST:
            result = await self._ingest_step(account, decoded)  # type: ignore[arg-type]
        elif phase is Phase.PARSE:
            result = await self._parse_step(account, decoded)  # type: ignore[arg-type]
        else:
            result = await self._finalize_step(account)

        log.info(
            "backfill_step_complete",
            next_phase=result.phase.value,
            done=result.done,
            ingested=result.stats.messages_ingested,
            parsed=result.stats.messages_parsed,
            errors=len(result.stats.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def _ingest_step(self, account: AccountContext, cursor: IngestCursor | None) -> StepResult:
        cursor = cursor or IngestCursor()
        stats = ChunkStats()
        deadline = self._clock() + self._config.step_time_budget_seconds

        queue = list(cursor.pending_ids)
        page_token = cursor.page_token
        exhausted = cursor.pages_exhausted
        total_listed = cursor.total_listed

        pages = 0
        while not queue and not exhausted and pages < self._config.max_pages_per_step:
            # A listing failure leaves no next cursor to report, so it aborts the call.
            page = await self._source.list_messages(self._config.backfill_query, page_token)
            pages += 1
            stats.messages_listed += len(page.ids)
            total_listed += len(page.ids)
            page_token = page.next_page_token
            exhausted = page_token is None
            queue = await self._store.filter_new_ids(account.organization_id, page.ids)

        chunk = queue[: self._config.ingest_chunk_size]
        remainder = queue[self._config.ingest_chunk_size :]
        if chunk:
            _, deferred = await self.ingest_ids(account, chunk, stats, deadline=deadline)
            remainder = deferred + remainder

        ingested = cursor.ingested_so_far + stats.messages_ingested
        if not remainder and exhausted:
            return StepResult(
                phase=Phase.PARSE,
                cursor=None,
                stats=stats,
                progress=Progress(
                    current=ingested,
                    total=ingested,
                    message=f"Ingestion complete ({ingested} new). Starting AI parsing...",
                ),
            )

        next_cursor = IngestCursor(
            page_token=page_token,
            pending_ids=remainder,
            pages_exhausted=exhausted,
            total_listed=total_listed,
            ingested_so_far=ingested,
        )
        estimate = ingested + len(remainder) + (0 if exhausted else UNLISTED_ESTIMATE)
        return StepResult(
            phase=Phase.INGEST,
            cursor=encode_cursor(next_cursor),
            stats=stats,
            progress=Progress(
                current=ingested,
                total=max(estimate, total_listed),
                message=f"Scanning inbox ({ingested} new messages found)...",
            ),
        )

    async def ingest_ids(
        self,
        account: AccountContext,
        provider_ids: Sequence[str],
        stats: ChunkStats,
        *,
        deadline: float | None = None,
    ) -> tuple[list[StoredMessage], list[str]]:
        """Fetch and store *provider_ids*.

        Returns the newly stored messages and the ids left unprocessed
        because *deadline* passed.  At least one id is always attempted so
        a resumed call makes progress.  Per-id failures are appended to
        ``stats.errors``; duplicates are skipped silently.
        """
        stored: list[StoredMessage] = []
        for position, provider_id in enumerate(provider_ids):
            if deadline is not None and position > 0 and self._clock() >= deadline:
                logger.info("ingest_deadline_reached", deferred=len(provider_ids) - position)
                return stored, list(provider_ids[position:])

            try:
                async with asyncio.timeout(self._config.detail_timeout_seconds):
                    detail = await self._source.get_message_detail(provider_id)
                message = await self._store.insert_message(
                    account.organization_id,
                    account.account_id,
                    detail,
                )
            except Exception as exc:
                reason = "detail fetch timed out" if isinstance(exc, TimeoutError) else str(exc)
                logger.warning("ingest_item_failed", provider_message_id=provider_id, error=reason)
                stats.errors.append(f"Message {provider_id}: {reason}")
                continue

            if message is None:
                continue
            stats.messages_ingested += 1
            stored.append(message)
            await self._suggest_contact(message, stats)

        return stored, []

    async def _suggest_contact(self, message: StoredMessage, stats: ChunkStats) -> None:
        try:
            decision = await self._contacts.derive(
                message.organization_id,
                address=message.from_address,
                display_name=message.from_name,
                source_message_id=message.id,
            )
        except Exception as exc:
            logger.warning("suggested_contact_failed", message_id=str(message.id), error=str(exc))
            return
        if decision is ContactDecision.ADDED:
            stats.suggested_contacts += 1

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    async def _parse_step(self, account: AccountContext, cursor: ParseCursor | None) -> StepResult:
        organization_id = account.organization_id
        if cursor is None:
            started_at = datetime.now(UTC)
            total = await self._store.count_unparsed(organization_id)
            cursor = ParseCursor(total_to_parse=total, started_at=started_at)
            logger.info("parse_phase_started", total_to_parse=total)

        stats = ChunkStats()
        messages = await self._store.list_unparsed(
            organization_id,
            self._config.parse_chunk_size,
            attempted_before=cursor.started_at,
        )
        if not messages:
            return self._finalize_next(cursor, stats)

        outcomes = await self.classify(account, messages, stats)

        cursor = cursor.model_copy(
            update={
                "attempted_so_far": cursor.attempted_so_far + len(messages),
                "parsed_so_far": cursor.parsed_so_far + len(outcomes),
                "deals_matched": cursor.deals_matched + stats.deals_matched,
            },
        )
        remaining = await self._store.count_unparsed(
            organization_id,
            attempted_before=cursor.started_at,
        )
        if remaining == 0:
            return self._finalize_next(cursor, stats)

        return StepResult(
            phase=Phase.PARSE,
            cursor=encode_cursor(cursor),
            stats=stats,
            progress=Progress(
                current=cursor.attempted_so_far,
                total=max(cursor.total_to_parse, cursor.attempted_so_far + remaining),
                message=f"Parsing with AI ({cursor.deals_matched} deals matched)...",
            ),
        )

    def _finalize_next(self, cursor: ParseCursor, stats: ChunkStats) -> StepResult:
        return StepResult(
            phase=Phase.FINALIZE,
            cursor=None,
            stats=stats,
            progress=Progress(
                current=cursor.attempted_so_far,
                total=max(cursor.total_to_parse, cursor.attempted_so_far),
                message=f"Parsing complete ({cursor.deals_matched} deals matched). Finalizing...",
            ),
        )

    async def classify(
        self,
        account: AccountContext,
        messages: Sequence[StoredMessage],
        stats: ChunkStats,
    ) -> list[ExtractionOutcome]:
        """Run *messages* through the extraction engine with bounded concurrency."""
        context = await self._store.load_context(
            account.organization_id,
            counterparty_limit=self._config.counterparty_context_limit,
            deal_limit=self._config.deal_context_limit,
            deal_statuses=self._config.open_deal_statuses,
        )
        outcome = await run_batched(
            list(messages),
            lambda message: self._engine.extract(message, context),
            concurrency=self._config.classify_concurrency,
        )
        stats.messages_parsed += len(outcome.results)
        stats.deals_matched += sum(1 for r in outcome.results if r.deal_id is not None)
        for failure in outcome.errors:
            stats.errors.append(f"Parse {failure.item.from_address}: {failure.error}")
        return outcome.results

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize_step(self, account: AccountContext) -> StepResult:
        stats = ChunkStats()
        await self.finalize(account, stats)
        return StepResult(
            phase=Phase.FINALIZE,
            done=True,
            cursor=None,
            stats=stats,
            progress=Progress(message="Backfill complete!"),
        )

    async def finalize(
        self,
        account: AccountContext,
        stats: ChunkStats,
        messages: Sequence[StoredMessage] | None = None,
        *,
        sync_marker: str | None = None,
        advance_marker: bool = True,
    ) -> None:
        """Correlate replies and persist the sync marker.

        Runs over *messages* when given (a poll's fresh messages), otherwise
        over the organization's most recent messages.  Each part is
        best-effort: failures are logged and reported in ``stats.errors``.

        *sync_marker* is saved when given; otherwise the source's current
        marker is read now.  With ``advance_marker=False`` the stored marker
        is left as it was.
        """
        organization_id = account.organization_id
        if messages is None:
            messages = await self._store.recent_messages(
                organization_id,
                self._config.correlation_lookback,
            )

        try:
            stats.requests_answered += await self._correlator.correlate(organization_id, messages)
        except Exception as exc:
            logger.exception("reply_correlation_failed")
            stats.errors.append(f"Reply correlation: {exc}")

        try:
            stats.questions_answered += await self._answers.detect(organization_id, messages)
        except Exception as exc:
            logger.exception("question_answer_detection_failed")
            stats.errors.append(f"Question answer detection: {exc}")

        if not advance_marker:
            logger.info("sync_marker_held", account_id=str(account.account_id))
            return
        try:
            marker = sync_marker or await self._source.get_current_sync_marker()
            await self._store.save_sync_marker(account.account_id, marker)
        except Exception as exc:
            logger.exception("sync_marker_save_failed")
            stats.errors.append(f"Sync marker: {exc}")


def build_orchestrator(
    store: PipelineStore,
    source: MessageSource,
    classifier: ClassificationService,
    config: PipelineConfig,
) -> BackfillOrchestrator:
    """Wire the default collaborators around one source and classifier."""
    contacts = SuggestedContactDeriver(store)
    engine = ExtractionEngine(
        store,
        classifier,
        TriagePolicy(config.triage),
        contacts=contacts,
        timeout_seconds=config.classify_timeout_seconds,
    )
    return BackfillOrchestrator(store, source, engine, config, contacts=contacts)
