"""API configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from conduit_mail.config import MailConfig
from conduit_pipeline.config import ClassifierConfig, PipelineConfig


class Settings(BaseSettings):
    """Top-level settings for the pipeline API.

    All env vars are prefixed with ``CONDUIT_API_``.
    Example: ``CONDUIT_API_JWT_SECRET=mysecret``.  The nested groups read
    their own prefixes (``PIPELINE_``, ``CLASSIFIER_``, ``IMAP_``, ...).
    """

    model_config = SettingsConfigDict(env_prefix="CONDUIT_API_")

    # --- Database -----------------------------------------------------------
    database_url: str = Field(
        description="Async SQLAlchemy URL of the relational store",
    )

    # --- JWT ----------------------------------------------------------------
    jwt_secret: str = Field(
        description="Secret key used to verify JWT access tokens",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm",
    )
    jwt_access_token_expire_minutes: int = Field(
        default=30,
        description="Access token lifetime in minutes",
    )

    # --- Cron ---------------------------------------------------------------
    cron_secret: str | None = Field(
        default=None,
        description="Bearer value the scheduler sends to the cron poll endpoint",
    )

    # --- Pipeline -----------------------------------------------------------
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    mail: MailConfig = Field(default_factory=MailConfig)

    # --- Server -------------------------------------------------------------
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )
