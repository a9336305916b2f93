"""Per-user sync endpoints: poll, chunked backfill step, streaming backfill."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from conduit_api.config import Settings
from conduit_api.deps import get_account, get_classifier, get_settings, get_source_factory, get_store
from conduit_api.schemas import BackfillStepIn, ErrorOut, PollOut
from conduit_pipeline.errors import ConfigurationError, CursorError
from conduit_pipeline.frontends import run_backfill_step, run_poll, stream_backfill
from conduit_pipeline.interface import ClassificationService, MessageSourceFactory
from conduit_pipeline.models import AccountContext, ChunkStats, StepResult, StreamEvent
from conduit_pipeline.orchestrator import build_orchestrator
from conduit_pipeline.store import PipelineStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def server_error(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content=ErrorOut(error=str(exc)).model_dump())


def format_sse(event: StreamEvent) -> str:
    return f"event: {event.event}\ndata: {json.dumps(event.data, default=str)}\n\n"


@router.post("/poll", response_model=PollOut)
async def poll_inbox(
    account: Annotated[AccountContext, Depends(get_account)],
    store: Annotated[PipelineStore, Depends(get_store)],
    classifier: Annotated[ClassificationService, Depends(get_classifier)],
    sources: Annotated[MessageSourceFactory, Depends(get_source_factory)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Ingest and classify what arrived since the last sync."""
    try:
        async with sources.open(account) as source:
            orchestrator = build_orchestrator(store, source, classifier, settings.pipeline)
            stats = await run_poll(orchestrator, store, account)
    except (ConfigurationError, CursorError):
        raise
    except Exception as exc:
        logger.exception("poll_failed", account_id=str(account.account_id))
        return server_error(exc)

    return PollOut(
        message=f"Ingested {stats.messages_ingested} new messages, parsed {stats.messages_parsed}",
        stats=stats,
    )


@router.post("/backfill", response_model=StepResult)
async def backfill_step(
    body: BackfillStepIn,
    account: Annotated[AccountContext, Depends(get_account)],
    store: Annotated[PipelineStore, Depends(get_store)],
    classifier: Annotated[ClassificationService, Depends(get_classifier)],
    sources: Annotated[MessageSourceFactory, Depends(get_source_factory)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Run one backfill chunk; call again with the returned cursor until ``done``."""
    try:
        async with sources.open(account) as source:
            orchestrator = build_orchestrator(store, source, classifier, settings.pipeline)
            return await run_backfill_step(orchestrator, account, body.phase, body.cursor)
    except (ConfigurationError, CursorError):
        raise
    except Exception as exc:
        logger.exception("backfill_step_failed", phase=body.phase)
        return server_error(exc)


@router.get("/backfill/stream")
async def backfill_stream(
    account: Annotated[AccountContext, Depends(get_account)],
    store: Annotated[PipelineStore, Depends(get_store)],
    classifier: Annotated[ClassificationService, Depends(get_classifier)],
    sources: Annotated[MessageSourceFactory, Depends(get_source_factory)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Walk the whole backfill in one connection as server-sent events."""

    async def event_stream() -> AsyncIterator[str]:
        try:
            async with sources.open(account) as source:
                orchestrator = build_orchestrator(store, source, classifier, settings.pipeline)
                async for event in stream_backfill(orchestrator, account):
                    yield format_sse(event)
        except Exception as exc:
            logger.exception("backfill_stream_failed", account_id=str(account.account_id))
            yield format_sse(
                StreamEvent(
                    event="error",
                    data={"error": str(exc), "stats": ChunkStats().model_dump()},
                )
            )

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
