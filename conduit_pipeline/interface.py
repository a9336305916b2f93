"""Abstract collaborators the pipeline drives.

The orchestrator never talks to a mailbox or a model provider directly; it
calls these interfaces, and concrete adapters (``conduit_mail`` for IMAP/SMTP,
:class:`~conduit_pipeline.classifier.AnthropicClassifier` for the model) are
injected at process start.
"""

from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager

from .models import (
    AccountContext,
    ExtractionContext,
    ExtractionResult,
    MessageDetail,
    MessagePage,
    SentMessage,
    StoredMessage,
)


class MessageSource(abc.ABC):
    """A mailbox the pipeline can list, read, and send through."""

    @abc.abstractmethod
    async def list_messages(self, query: str, page_token: str | None = None) -> MessagePage:
        """Return one page of message ids matching *query*, newest first.

        ``next_page_token`` is ``None`` on the last page.
        """
        ...

    @abc.abstractmethod
    async def get_message_detail(self, message_id: str) -> MessageDetail:
        """Fetch the full content of one message."""
        ...

    @abc.abstractmethod
    async def get_current_sync_marker(self) -> str:
        """Return an opaque marker a later poll can resume from."""
        ...

    @abc.abstractmethod
    async def send_message(self, to: str, subject: str, body: str) -> SentMessage:
        """Send a new message and return its thread and message ids."""
        ...

    def query_since(self, marker: str) -> str | None:
        """Translate a sync marker into a listing query.

        Sources that cannot list incrementally return ``None`` and the
        poll falls back to its configured unread query.
        """
        return None


class MessageSourceFactory(abc.ABC):
    """Opens a :class:`MessageSource` for one mail account."""

    @abc.abstractmethod
    def open(self, account: AccountContext) -> AbstractAsyncContextManager[MessageSource]:
        """Return an async context manager yielding a connected source."""
        ...


class ClassificationService(abc.ABC):
    """Turns one message plus context into a validated extraction."""

    @property
    @abc.abstractmethod
    def model_version(self) -> str:
        """Version label recorded on parse records produced by this service."""
        ...

    @abc.abstractmethod
    async def classify(
        self,
        message: StoredMessage,
        context: ExtractionContext,
    ) -> ExtractionResult:
        """Classify *message*.

        Raises :class:`~conduit_pipeline.errors.ClassificationError` on
        transport or provider failure and
        :class:`~conduit_pipeline.errors.ExtractionValidationError` when the
        answer does not conform to :class:`ExtractionResult`.
        """
        ...
