"""Scheduler-triggered poll across every active mail account."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends

from conduit_api.auth import verify_cron_secret
from conduit_api.config import Settings
from conduit_api.deps import get_classifier, get_settings, get_source_factory, get_store
from conduit_api.routers.sync import server_error
from conduit_api.schemas import CronPollOut
from conduit_pipeline.frontends import poll_accounts, run_poll
from conduit_pipeline.interface import ClassificationService, MessageSourceFactory
from conduit_pipeline.models import AccountContext, ChunkStats
from conduit_pipeline.orchestrator import build_orchestrator
from conduit_pipeline.store import PipelineStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])


@router.post(
    "/poll",
    response_model=CronPollOut,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_poll(
    store: Annotated[PipelineStore, Depends(get_store)],
    classifier: Annotated[ClassificationService, Depends(get_classifier)],
    sources: Annotated[MessageSourceFactory, Depends(get_source_factory)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    async def poll_one(account: AccountContext) -> ChunkStats:
        async with sources.open(account) as source:
            orchestrator = build_orchestrator(store, source, classifier, settings.pipeline)
            return await run_poll(orchestrator, store, account)

    try:
        accounts = [
            AccountContext(
                organization_id=row.organization_id,
                account_id=row.id,
                address=row.address,
                sync_marker=row.sync_marker,
            )
            for row in await store.list_active_accounts()
        ]
        summary = await poll_accounts(accounts, poll_one)
    except Exception as exc:
        logger.exception("cron_poll_failed")
        return server_error(exc)

    logger.info(
        "cron_poll_complete",
        accounts=summary.accounts_processed,
        ingested=summary.stats.messages_ingested,
        errors=len(summary.stats.errors),
    )
    return CronPollOut(
        message=f"Polled {summary.accounts_processed} accounts",
        accounts_processed=summary.accounts_processed,
        stats=summary.stats,
    )
