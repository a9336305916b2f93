"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from conduit_api.config import Settings
from conduit_api.schemas import ErrorOut
from conduit_mail.source import ImapSourceFactory
from conduit_pipeline.classifier import AnthropicClassifier, create_anthropic_client
from conduit_pipeline.db import Database
from conduit_pipeline.errors import ConfigurationError, CursorError
from conduit_pipeline.store import PipelineStore

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: database, AI client, source factory. Shutdown: dispose."""
    settings: Settings = app.state.settings
    db = Database(settings.database_url)
    app.state.db = db
    app.state.store = PipelineStore(db)
    logger.info("database_engine_created")

    client = create_anthropic_client(settings.classifier)
    app.state.classifier = AnthropicClassifier(client, settings.classifier, settings.pipeline.retry)
    app.state.source_factory = ImapSourceFactory(db, settings.mail, settings.pipeline.retry)
    logger.info("pipeline_collaborators_created", model=settings.classifier.model)
    yield
    await client.close()
    await db.close()
    logger.info("shutdown_complete")


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    logger.info("request_rejected", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorOut(error=str(exc)).model_dump(),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Conduit Pipeline API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(ConfigurationError, _bad_request)
    app.add_exception_handler(CursorError, _bad_request)

    from conduit_api.routers.cron import router as cron_router
    from conduit_api.routers.sync import router as sync_router

    app.include_router(sync_router)
    app.include_router(cron_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "conduit-api"}

    return app
