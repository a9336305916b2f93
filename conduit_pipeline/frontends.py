"""The three ways a caller drives the orchestrator.

* :func:`run_poll` - one short call: send pending requests, ingest what is
  new since the last sync, classify what has no successful parse yet,
  correlate replies, save the sync marker.
* :func:`stream_backfill` - walk every phase in one long-lived call,
  yielding :class:`StreamEvent` frames as it goes.
* :func:`run_backfill_step` - the orchestrator's raw per-call contract for
  callers that persist the cursor and invoke repeatedly.

None of them holds its own ingestion or parsing logic.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

import structlog

from .models import (
    AccountContext,
    ChunkStats,
    Phase,
    PollSummary,
    StepResult,
    StreamEvent,
)
from .orchestrator import BackfillOrchestrator
from .outbound import OutboundRequestSender
from .store import PipelineStore

logger = structlog.get_logger()


async def run_backfill_step(
    orchestrator: BackfillOrchestrator,
    account: AccountContext,
    phase: Phase | str,
    cursor: str | None,
) -> StepResult:
    return await orchestrator.step(account, phase, cursor)


async def run_poll(
    orchestrator: BackfillOrchestrator,
    store: PipelineStore,
    account: AccountContext,
) -> ChunkStats:
    """Single-shot incremental poll for one account."""
    stats = ChunkStats()
    config = orchestrator.config
    source = orchestrator.source
    log = logger.bind(organization_id=str(account.organization_id), account_id=str(account.account_id))

    report = await OutboundRequestSender(store, source).send_pending(account.organization_id)
    stats.requests_sent += report.sent
    stats.errors.extend(report.errors)

    query = None
    if account.sync_marker:
        query = source.query_since(account.sync_marker)
    query = query or config.poll_query

    # Read before listing: mail arriving mid-poll must sit at or above the saved marker.
    marker: str | None = None
    try:
        marker = await source.get_current_sync_marker()
    except Exception as exc:
        log.warning("sync_marker_read_failed", error=str(exc))
        stats.errors.append(f"Sync marker: {exc}")

    new_ids: list[str] = []
    page_token: str | None = None
    for _ in range(config.max_pages_per_step):
        page = await source.list_messages(query, page_token)
        stats.messages_listed += len(page.ids)
        new_ids.extend(await store.filter_new_ids(account.organization_id, page.ids))
        page_token = page.next_page_token
        if page_token is None:
            break
    truncated = page_token is not None
    if truncated:
        log.warning("poll_page_limit_reached", pages=config.max_pages_per_step)

    fresh, _ = await orchestrator.ingest_ids(account, new_ids, stats)

    unparsed = await store.list_unparsed(account.organization_id, config.poll_parse_limit)
    if unparsed:
        await orchestrator.classify(account, unparsed, stats)

    await orchestrator.finalize(
        account,
        stats,
        fresh,
        sync_marker=marker,
        advance_marker=marker is not None and not truncated,
    )
    log.info(
        "poll_complete",
        listed=stats.messages_listed,
        ingested=stats.messages_ingested,
        parsed=stats.messages_parsed,
        errors=len(stats.errors),
    )
    return stats


async def poll_accounts(
    accounts: Sequence[AccountContext],
    poll_one: Callable[[AccountContext], Awaitable[ChunkStats]],
) -> PollSummary:
    """Poll every account in turn; one account failing never stops the rest."""
    summary = PollSummary()
    for account in accounts:
        try:
            stats = await poll_one(account)
        except Exception as exc:
            logger.exception("account_poll_failed", account_id=str(account.account_id))
            summary.stats.errors.append(f"Account {account.address}: {exc}")
            continue
        summary.accounts_processed += 1
        summary.stats.absorb(stats)
    return summary


async def stream_backfill(
    orchestrator: BackfillOrchestrator,
    account: AccountContext,
) -> AsyncIterator[StreamEvent]:
    """Drive all three phases to completion, yielding progress as it goes.

    Ends with exactly one ``complete`` or ``error`` event.  The ``error``
    event carries the last good phase and cursor so the caller can resume
    through the chunked contract instead of starting over.
    """
    phase = Phase.INGEST
    cursor: str | None = None
    totals = ChunkStats()

    yield StreamEvent(event="status", data={"phase": phase.value, "message": "Scanning inbox..."})
    try:
        while True:
            result = await orchestrator.step(account, phase, cursor)
            totals.absorb(result.stats)

            if result.done:
                yield StreamEvent(
                    event="complete",
                    data={
                        "message": result.progress.message,
                        "stats": totals.model_dump(),
                    },
                )
                return

            if result.phase is not phase:
                yield StreamEvent(
                    event="status",
                    data={"phase": result.phase.value, "message": result.progress.message},
                )
            yield StreamEvent(
                event="progress",
                data={
                    "phase": result.phase.value,
                    **result.progress.model_dump(),
                    "stats": totals.model_dump(),
                },
            )
            phase, cursor = result.phase, result.cursor
    except Exception as exc:
        logger.exception("stream_backfill_failed", phase=phase.value)
        yield StreamEvent(
            event="error",
            data={
                "error": str(exc),
                "phase": phase.value,
                "cursor": cursor,
                "stats": totals.model_dump(),
            },
        )
