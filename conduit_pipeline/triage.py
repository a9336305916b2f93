"""Accept / manual-review triage over per-field extraction confidence."""

from __future__ import annotations

from collections.abc import Sequence

from .config import TriageConfig
from .models import Confidence, ProcessingStatus


def mean_confidence(confidence: Confidence, fields: Sequence[str]) -> float:
    """Average the named confidence fields."""
    if not fields:
        raise ValueError("at least one confidence field is required")
    return sum(getattr(confidence, name) for name in fields) / len(fields)


def triage(mean: float, threshold: float = 0.7) -> ProcessingStatus:
    """``manual_review`` strictly below *threshold*, ``success`` at or above it."""
    if mean < threshold:
        return ProcessingStatus.MANUAL_REVIEW
    return ProcessingStatus.SUCCESS


class TriagePolicy:
    """Applies :func:`triage` with the configured threshold and field set."""

    def __init__(self, config: TriageConfig | None = None) -> None:
        self._config = config or TriageConfig()

    @property
    def threshold(self) -> float:
        return self._config.review_threshold

    def decide(self, confidence: Confidence) -> tuple[float, ProcessingStatus]:
        mean = mean_confidence(confidence, self._config.confidence_fields)
        return mean, triage(mean, self._config.review_threshold)
