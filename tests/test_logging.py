"""Tests for conduit_pipeline.logging."""

from __future__ import annotations

import json
import logging

import structlog

from conduit_pipeline.logging import mask_secrets, setup_logging


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_level_case_insensitive(self):
        setup_logging(json=False, level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1

    def test_client_libraries_are_quieted(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("anthropic").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_uvicorn_records_reach_root(self):
        uvicorn_logger = logging.getLogger("uvicorn.access")
        uvicorn_logger.addHandler(logging.StreamHandler())
        uvicorn_logger.propagate = False

        setup_logging()

        assert uvicorn_logger.handlers == []
        assert uvicorn_logger.propagate is True

    def test_event_carries_service_and_fields(self, capsys):
        setup_logging(json=True, level="INFO", service="conduit-test")
        structlog.get_logger("conduit_test").info("backfill_step_started", phase="ingest")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "backfill_step_started"
        assert event["phase"] == "ingest"
        assert event["service"] == "conduit-test"
        assert event["level"] == "info"

    def test_stdlib_records_are_rendered_as_json(self, capsys):
        setup_logging(json=True, level="INFO")
        logging.getLogger("uvicorn.error").warning("Started server process")

        event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert event["event"] == "Started server process"
        assert event["level"] == "warning"


class TestMaskSecrets:
    def test_credentials_are_masked(self):
        event = mask_secrets(None, "info", {"event": "token_refreshed", "access_token": "ya29.x", "account": "a1"})
        assert event == {"event": "token_refreshed", "access_token": "***", "account": "a1"}

    def test_empty_values_are_left_alone(self):
        assert mask_secrets(None, "info", {"event": "e", "refresh_token": None}) == {"event": "e", "refresh_token": None}
