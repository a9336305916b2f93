"""Conduit ingestion / classification pipeline.

Public API re-exported here for convenience::

    from conduit_pipeline import BackfillOrchestrator, PipelineConfig, build_orchestrator
"""

from .batch import BatchFailure, BatchOutcome, run_batched
from .classifier import AnthropicClassifier, create_anthropic_client, parse_extraction
from .config import ClassifierConfig, PipelineConfig, RetryConfig, TriageConfig
from .contacts import ContactDecision, SuggestedContactDeriver
from .correlation import QuestionAnswerDetector, ThreadAnswerCorrelator
from .cursor import IngestCursor, ParseCursor, decode_cursor, encode_cursor
from .db import Database
from .errors import (
    ClassificationError,
    ConfigurationError,
    CursorError,
    ExtractionValidationError,
    PipelineError,
    SourceError,
    TokenRefreshError,
)
from .extraction import ExtractionEngine, ExtractionOutcome
from .frontends import poll_accounts, run_backfill_step, run_poll, stream_backfill
from .interface import ClassificationService, MessageSource, MessageSourceFactory
from .logging import setup_logging
from .models import (
    AccountContext,
    ChunkStats,
    ExtractionContext,
    ExtractionResult,
    MessageDetail,
    MessagePage,
    Phase,
    PollSummary,
    ProcessingStatus,
    Progress,
    SentMessage,
    StepResult,
    StoredMessage,
    StreamEvent,
)
from .orchestrator import BackfillOrchestrator, build_orchestrator
from .outbound import OutboundRequestSender
from .retry import with_retry
from .store import PipelineStore
from .triage import TriagePolicy, mean_confidence, triage

__all__ = [
    "AccountContext",
    "AnthropicClassifier",
    "BackfillOrchestrator",
    "BatchFailure",
    "BatchOutcome",
    "ChunkStats",
    "ClassificationError",
    "ClassificationService",
    "ClassifierConfig",
    "ConfigurationError",
    "ContactDecision",
    "CursorError",
    "Database",
    "ExtractionContext",
    "ExtractionEngine",
    "ExtractionOutcome",
    "ExtractionResult",
    "ExtractionValidationError",
    "IngestCursor",
    "MessageDetail",
    "MessagePage",
    "MessageSource",
    "MessageSourceFactory",
    "OutboundRequestSender",
    "ParseCursor",
    "Phase",
    "PipelineConfig",
    "PipelineError",
    "PipelineStore",
    "PollSummary",
    "ProcessingStatus",
    "Progress",
    "QuestionAnswerDetector",
    "RetryConfig",
    "SentMessage",
    "SourceError",
    "StepResult",
    "StoredMessage",
    "StreamEvent",
    "SuggestedContactDeriver",
    "ThreadAnswerCorrelator",
    "TokenRefreshError",
    "TriageConfig",
    "TriagePolicy",
    "build_orchestrator",
    "create_anthropic_client",
    "decode_cursor",
    "encode_cursor",
    "mean_confidence",
    "parse_extraction",
    "poll_accounts",
    "run_backfill_step",
    "run_batched",
    "run_poll",
    "setup_logging",
    "triage",
    "with_retry",
]
