"""Request / response bodies for the pipeline endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from conduit_pipeline.models import ChunkStats, Phase


# --- Backfill ---


class BackfillStepIn(BaseModel):
    phase: str = Field(default=Phase.INGEST.value, description="ingest, parse or finalize")
    cursor: str | None = Field(default=None, description="Opaque cursor returned by the previous step")


# --- Poll ---


class PollOut(BaseModel):
    message: str
    stats: ChunkStats


class CronPollOut(BaseModel):
    message: str
    accounts_processed: int
    stats: ChunkStats


# --- Errors ---


class ErrorOut(BaseModel):
    """Every failure response still carries a stats object."""

    error: str
    stats: ChunkStats = Field(default_factory=ChunkStats)
