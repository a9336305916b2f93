"""FastAPI dependency-injection helpers.

Long-lived collaborators (store, classifier, source factory) are built once
in the app lifespan and read from ``app.state`` here.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request

from conduit_api.auth import get_current_user
from conduit_api.config import Settings
from conduit_pipeline.errors import ConfigurationError
from conduit_pipeline.interface import ClassificationService, MessageSourceFactory
from conduit_pipeline.models import AccountContext
from conduit_pipeline.store import PipelineStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> PipelineStore:
    return request.app.state.store


def get_classifier(request: Request) -> ClassificationService:
    return request.app.state.classifier


def get_source_factory(request: Request) -> MessageSourceFactory:
    return request.app.state.source_factory


async def get_account(
    user_id: Annotated[UUID, Depends(get_current_user)],
    store: Annotated[PipelineStore, Depends(get_store)],
) -> AccountContext:
    """Resolve the caller's organization and active mail account."""
    user = await store.get_user(user_id)
    if user is None or user.organization_id is None:
        raise ConfigurationError("No organization found for this user")

    account = await store.get_active_account(user.organization_id, user_id)
    if account is None:
        raise ConfigurationError("No mail account connected for this organization")

    return AccountContext(
        organization_id=user.organization_id,
        account_id=account.id,
        address=account.address,
        sync_marker=account.sync_marker,
    )
