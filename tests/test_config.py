"""Tests for the pydantic-settings configuration classes."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conduit_api.config import Settings
from conduit_mail.config import ImapConfig, MailConfig
from conduit_pipeline.config import ClassifierConfig, PipelineConfig, TriageConfig


class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()
        assert config.ingest_chunk_size == 30
        assert config.parse_chunk_size == 10
        assert config.classify_concurrency == 5
        assert config.triage.review_threshold == 0.7
        assert config.triage.confidence_fields == ["counterparty", "deal", "intent"]
        assert config.open_deal_statuses == ["draft", "active"]

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_INGEST_CHUNK_SIZE", "50")
        monkeypatch.setenv("PIPELINE_CLASSIFY_CONCURRENCY", "2")
        config = PipelineConfig()
        assert config.ingest_chunk_size == 50
        assert config.classify_concurrency == 2

    def test_nested_triage_reads_own_prefix(self, monkeypatch):
        monkeypatch.setenv("TRIAGE_REVIEW_THRESHOLD", "0.8")
        assert PipelineConfig().triage.review_threshold == 0.8

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValidationError):
            PipelineConfig(classify_concurrency=0)

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            TriageConfig(review_threshold=1.5)


class TestClassifierConfig:
    def test_api_key_is_secret(self, monkeypatch):
        monkeypatch.setenv("CLASSIFIER_API_KEY", "sk-test")
        config = ClassifierConfig()
        assert config.api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(config)


class TestMailConfig:
    def test_defaults(self):
        config = MailConfig()
        assert config.imap.host == "imap.gmail.com"
        assert config.imap.port == 993
        assert config.smtp.port == 587
        assert config.oauth.refresh_margin_seconds == 300

    def test_imap_env(self, monkeypatch):
        monkeypatch.setenv("IMAP_HOST", "imap.corp.test")
        monkeypatch.setenv("IMAP_PAGE_SIZE", "50")
        config = ImapConfig()
        assert config.host == "imap.corp.test"
        assert config.page_size == 50


class TestApiSettings:
    def test_required_fields(self, monkeypatch):
        monkeypatch.delenv("CONDUIT_API_DATABASE_URL", raising=False)
        monkeypatch.delenv("CONDUIT_API_JWT_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings()

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_API_DATABASE_URL", "sqlite+aiosqlite://")
        monkeypatch.setenv("CONDUIT_API_JWT_SECRET", "s3cret")
        monkeypatch.setenv("CONDUIT_API_CRON_SECRET", "cron")
        settings = Settings()
        assert settings.database_url == "sqlite+aiosqlite://"
        assert settings.cron_secret == "cron"
        assert settings.jwt_algorithm == "HS256"
        assert settings.pipeline.parse_chunk_size == 10
