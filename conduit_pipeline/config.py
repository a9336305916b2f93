"""Pipeline configuration loaded from environment variables.

Every chunk size, concurrency cap and triage threshold is a pydantic-settings
field so it can be tuned per deployment without a code change.  The defaults
are the values the pipeline has been run with in the field, not measured
optima.
"""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

CONFIDENCE_FIELDS = ("counterparty", "deal", "intent", "amount")


class RetryConfig(BaseSettings):
    """Retry / backoff settings for transport calls, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per transport call")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=20.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class TriageConfig(BaseSettings):
    """Accept / manual-review decision settings."""

    model_config = {"env_prefix": "TRIAGE_"}

    review_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Mean confidence below which an extraction goes to manual review",
    )
    confidence_fields: list[str] = Field(
        default_factory=lambda: ["counterparty", "deal", "intent"],
        description="Confidence fields averaged into the triage score",
    )

    @field_validator("confidence_fields")
    @classmethod
    def _known_fields(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one confidence field is required")
        unknown = sorted(set(value) - set(CONFIDENCE_FIELDS))
        if unknown:
            raise ValueError(f"unknown confidence fields: {', '.join(unknown)}")
        return value


class ClassifierConfig(BaseSettings):
    """Anthropic classification adapter settings."""

    model_config = {"env_prefix": "CLASSIFIER_"}

    api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Anthropic API key",
    )
    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model id sent to the Messages API",
    )
    model_version: str = Field(
        default="claude-haiku-4.5-v1",
        description="Version label recorded on every parse record",
    )
    max_tokens: int = Field(default=1000, description="Completion token cap")
    temperature: float = Field(default=0.1, description="Sampling temperature")
    timeout_seconds: float = Field(default=60.0, description="HTTP timeout for one API call")


class PipelineConfig(BaseSettings):
    """Root configuration for the ingestion / classification pipeline."""

    model_config = {"env_prefix": "PIPELINE_"}

    # --- Chunking -----------------------------------------------------------
    ingest_chunk_size: int = Field(
        default=30,
        ge=1,
        description="Messages fetched and stored per ingest step",
    )
    parse_chunk_size: int = Field(
        default=10,
        ge=1,
        description="Messages classified per parse step",
    )
    classify_concurrency: int = Field(
        default=5,
        ge=1,
        description="Concurrent classification calls inside one parse step",
    )
    max_pages_per_step: int = Field(
        default=20,
        ge=1,
        description="Provider pages with no new ids skipped before an ingest step yields",
    )

    # --- Queries ------------------------------------------------------------
    backfill_query: str = Field(
        default="ALL",
        description="Source query used by a full backfill",
    )
    poll_query: str = Field(
        default="UNSEEN",
        description="Source query used by a poll when the account has no sync marker",
    )
    poll_parse_limit: int = Field(
        default=50,
        ge=1,
        description="Unparsed messages classified by a single poll",
    )

    # --- Time budget --------------------------------------------------------
    step_time_budget_seconds: float = Field(
        default=50.0,
        description="Soft deadline for one ingest step",
    )
    detail_timeout_seconds: float = Field(
        default=20.0,
        description="Timeout for fetching one message detail",
    )
    classify_timeout_seconds: float = Field(
        default=45.0,
        description="Timeout for classifying one message",
    )

    # --- Context ------------------------------------------------------------
    counterparty_context_limit: int = Field(
        default=500,
        description="Known counterparties included in the classification context",
    )
    deal_context_limit: int = Field(
        default=100,
        description="Open deals included in the classification context",
    )
    open_deal_statuses: list[str] = Field(
        default_factory=lambda: ["draft", "active"],
        description="Deal statuses offered to the classifier as match candidates",
    )
    correlation_lookback: int = Field(
        default=500,
        description="Recent messages scanned for replies when a backfill finalizes",
    )

    triage: TriageConfig = Field(default_factory=TriageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
