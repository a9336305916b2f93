"""Pydantic models shared by every pipeline stage.

Three groups live here:

* what a message source hands the pipeline (``MessageDetail``,
  ``MessagePage``, ``SentMessage``) and what the store hands back
  (``StoredMessage``);
* the classification contract: the context offered to the classifier and the
  strictly validated ``ExtractionResult`` it must answer with;
* the per-invocation reporting types (``ChunkStats``, ``Progress``,
  ``StepResult``, ``StreamEvent``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"


class Intent(str, Enum):
    INTERESTED = "interested"
    COMMITTED = "committed"
    DECLINED = "declined"
    QUESTION = "question"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    URGENT = "urgent"


class OutboundStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ANSWERED = "answered"


class Phase(str, Enum):
    INGEST = "ingest"
    PARSE = "parse"
    FINALIZE = "finalize"


# ------------------------------------------------------------------
# Message source contract
# ------------------------------------------------------------------


class MessagePage(BaseModel):
    """One page of provider message ids, newest first."""

    ids: list[str] = Field(default_factory=list)
    next_page_token: str | None = None


class MessageDetail(BaseModel):
    """Everything the pipeline stores about one provider message."""

    provider_message_id: str
    thread_id: str | None = None
    from_address: str
    from_name: str | None = None
    to_addresses: list[str] = Field(default_factory=list)
    cc_addresses: list[str] = Field(default_factory=list)
    subject: str = ""
    body_text: str | None = None
    body_html: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    has_attachments: bool = False


class SentMessage(BaseModel):
    thread_id: str
    message_id: str


class StoredMessage(BaseModel):
    """A message as persisted in the raw message store."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    provider_message_id: str
    thread_id: str | None = None
    from_address: str
    from_name: str | None = None
    subject: str = ""
    body_text: str | None = None
    body_html: str | None = None
    received_at: datetime


@dataclass(frozen=True)
class AccountContext:
    """The organization and mailbox an invocation works on behalf of."""

    organization_id: uuid.UUID
    account_id: uuid.UUID
    address: str
    sync_marker: str | None = None


# ------------------------------------------------------------------
# Classification contract
# ------------------------------------------------------------------


class CounterpartyContext(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str | None = None
    firm: str | None = None


class DealContext(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    company_name: str | None = None
    status: str


class ExtractionContext(BaseModel):
    """Known counterparties and open deals the classifier may match against."""

    counterparties: list[CounterpartyContext] = Field(default_factory=list)
    deals: list[DealContext] = Field(default_factory=list)

    def counterparty_ids(self) -> set[uuid.UUID]:
        return {c.id for c in self.counterparties}

    def deal_ids(self) -> set[uuid.UUID]:
        return {d.id for d in self.deals}


class ExtractedCounterparty(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    name: str | None
    email: str | None
    firm: str | None
    matched_id: uuid.UUID | None


class ExtractedDeal(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    name: str | None
    matched_id: uuid.UUID | None


class Confidence(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    counterparty: float = Field(ge=0.0, le=1.0)
    deal: float = Field(ge=0.0, le=1.0)
    intent: float = Field(ge=0.0, le=1.0)
    amount: float = Field(ge=0.0, le=1.0)


class ExtractionResult(BaseModel):
    """Structured summary of one message produced by the classifier.

    Validated in strict mode: a field of the wrong type, an intent or
    sentiment outside the closed set, or a confidence outside ``0..1`` is a
    schema violation, never coerced.
    """

    model_config = ConfigDict(strict=True, extra="forbid")

    counterparty: ExtractedCounterparty
    deal: ExtractedDeal
    intent: Intent | None
    commitment_amount: float | None
    sentiment: Sentiment | None
    questions: list[str]
    has_wire_details: bool
    confidence: Confidence
    reasoning: str


# ------------------------------------------------------------------
# Invocation reporting
# ------------------------------------------------------------------


class ChunkStats(BaseModel):
    """Counters for one invocation.  A zeroed instance is the error skeleton."""

    messages_listed: int = 0
    messages_ingested: int = 0
    messages_parsed: int = 0
    deals_matched: int = 0
    suggested_contacts: int = 0
    requests_sent: int = 0
    requests_answered: int = 0
    questions_answered: int = 0
    errors: list[str] = Field(default_factory=list)

    def absorb(self, other: ChunkStats) -> None:
        """Add *other*'s counters and errors into this instance."""
        for name in type(self).model_fields:
            if name == "errors":
                self.errors.extend(other.errors)
            else:
                setattr(self, name, getattr(self, name) + getattr(other, name))


class Progress(BaseModel):
    current: int = 0
    total: int = 0
    message: str = ""


class StepResult(BaseModel):
    """What one orchestrator invocation returns to its caller."""

    phase: Phase
    done: bool = False
    cursor: str | None = None
    stats: ChunkStats = Field(default_factory=ChunkStats)
    progress: Progress = Field(default_factory=Progress)


class PollSummary(BaseModel):
    accounts_processed: int = 0
    stats: ChunkStats = Field(default_factory=ChunkStats)


class StreamEvent(BaseModel):
    """One frame of a streaming backfill: ``status``, ``progress``, ``complete`` or ``error``."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
