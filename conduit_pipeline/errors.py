"""Exception hierarchy for the pipeline.

``ConfigurationError`` and ``CursorError`` are caller mistakes and end an
invocation before any work is done.  The remaining types describe failures of
a single external call; the orchestrator records them per item and carries on.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """The organization or mail account needed for an invocation is missing."""


class CursorError(PipelineError):
    """A backfill cursor could not be decoded or does not match its phase."""


class SourceError(PipelineError):
    """The message source failed to list, fetch or send a message."""


class TokenRefreshError(SourceError):
    """An OAuth access token could not be refreshed."""


class ClassificationError(PipelineError):
    """The classification service call failed at the transport or provider level."""


class ExtractionValidationError(ClassificationError):
    """The classification service answered with output that violates the extraction schema."""
