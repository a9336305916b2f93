"""Anthropic-backed classification adapter.

The client is constructed once per process (:func:`create_anthropic_client`)
and handed to :class:`AnthropicClassifier`; nothing in this module keeps a
module-level client.
"""

from __future__ import annotations

import re

import anthropic
import structlog
from pydantic import ValidationError

from .config import ClassifierConfig, RetryConfig
from .errors import ClassificationError, ExtractionValidationError
from .interface import ClassificationService
from .models import ExtractionContext, ExtractionResult, StoredMessage
from .prompts import build_extraction_prompt
from .retry import with_retry

logger = structlog.get_logger()

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

RETRYABLE_API_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


def create_anthropic_client(config: ClassifierConfig) -> anthropic.AsyncAnthropic:
    """Build the process-wide async client.  Retries are handled by tenacity."""
    return anthropic.AsyncAnthropic(
        api_key=config.api_key.get_secret_value() or None,
        timeout=config.timeout_seconds,
        max_retries=0,
    )


def parse_extraction(raw_text: str) -> ExtractionResult:
    """Validate the model's answer against :class:`ExtractionResult`.

    A single surrounding Markdown code fence is tolerated; anything else
    that is not the exact schema raises :class:`ExtractionValidationError`.
    """
    text = raw_text.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    if not text:
        raise ExtractionValidationError("Classifier returned an empty response")
    try:
        return ExtractionResult.model_validate_json(text)
    except ValidationError as exc:
        raise ExtractionValidationError(
            f"Classifier output failed validation ({exc.error_count()} errors): {exc}"
        ) from exc


class AnthropicClassifier(ClassificationService):
    """Classifies messages with a single Messages API call each."""

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        config: ClassifierConfig,
        retry: RetryConfig | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._create = with_retry(
            retry or RetryConfig(),
            retryable_exceptions=RETRYABLE_API_ERRORS,
        )(self._create_message)

    @property
    def model_version(self) -> str:
        return self._config.model_version

    async def classify(
        self,
        message: StoredMessage,
        context: ExtractionContext,
    ) -> ExtractionResult:
        prompt = build_extraction_prompt(message, context)
        try:
            response = await self._create(prompt)
        except anthropic.APIError as exc:
            raise ClassificationError(f"Claude API error: {exc}") from exc

        raw_text = "".join(block.text for block in response.content if block.type == "text")
        logger.debug(
            "classification_response_received",
            message_id=str(message.id),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return parse_extraction(raw_text)

    async def _create_message(self, prompt: str) -> anthropic.types.Message:
        return await self._client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
