"""Shared test fixtures for the pipeline test suite."""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from conduit_api.app import create_app
from conduit_api.auth import create_access_token
from conduit_api.config import Settings
from conduit_pipeline.config import PipelineConfig, RetryConfig
from conduit_pipeline.db import (
    Counterparty,
    Database,
    Deal,
    MailAccount,
    Organization,
    OutboundRequest,
    User,
)
from conduit_pipeline.errors import SourceError
from conduit_pipeline.interface import ClassificationService, MessageSource, MessageSourceFactory
from conduit_pipeline.models import (
    AccountContext,
    ExtractionContext,
    ExtractionResult,
    MessageDetail,
    MessagePage,
    SentMessage,
    StoredMessage,
)
from conduit_pipeline.store import PipelineStore

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


# ------------------------------------------------------------------
# Database
# ------------------------------------------------------------------


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def store(db: Database) -> PipelineStore:
    return PipelineStore(db)


@pytest.fixture
async def user_id(db: Database) -> uuid.UUID:
    org = Organization(name="Acme Capital")
    user = User(email="owner@acme.test")
    async with db.session() as session:
        session.add(org)
        await session.flush()
        user.organization_id = org.id
        session.add(user)
        await session.commit()
    return user.id


@pytest.fixture
async def account(db: Database, user_id: uuid.UUID) -> AccountContext:
    async with db.session() as session:
        user = await session.get(User, user_id)
        row = MailAccount(
            organization_id=user.organization_id,
            user_id=user_id,
            address="owner@acme.test",
            access_token="token-1",
            refresh_token="refresh-1",
            token_expires_at=datetime.now(UTC) + timedelta(hours=1),
        )
        session.add(row)
        await session.commit()
    return AccountContext(
        organization_id=row.organization_id,
        account_id=row.id,
        address=row.address,
    )


async def add_counterparty(
    db: Database,
    organization_id: uuid.UUID,
    *,
    name: str = "Jane Doe",
    email: str | None = "jane@fund.test",
    firm: str | None = "Fund LP",
) -> uuid.UUID:
    row = Counterparty(organization_id=organization_id, name=name, email=email, firm=firm)
    async with db.session() as session:
        session.add(row)
        await session.commit()
    return row.id


async def add_deal(
    db: Database,
    organization_id: uuid.UUID,
    *,
    name: str = "Series A",
    status: str = "active",
) -> uuid.UUID:
    row = Deal(organization_id=organization_id, name=name, company_name="Widgets Inc", status=status)
    async with db.session() as session:
        session.add(row)
        await session.commit()
    return row.id


async def add_outbound_request(
    db: Database,
    organization_id: uuid.UUID,
    *,
    target_address: str = "jane@fund.test",
    status: str = "pending",
    thread_id: str | None = None,
) -> uuid.UUID:
    row = OutboundRequest(
        organization_id=organization_id,
        target_address=target_address,
        subject="Wire details",
        body="Could you confirm your allocation?",
        status=status,
        thread_id=thread_id,
    )
    async with db.session() as session:
        session.add(row)
        await session.commit()
    return row.id


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def make_detail(
    provider_id: str,
    *,
    from_address: str = "jane@fund.test",
    from_name: str | None = "Jane Doe",
    thread_id: str | None = None,
    subject: str | None = None,
    body_text: str = "Happy to commit $500K to the round.",
    minutes: int = 0,
) -> MessageDetail:
    return MessageDetail(
        provider_message_id=provider_id,
        thread_id=thread_id or f"thread-{provider_id}",
        from_address=from_address,
        from_name=from_name,
        to_addresses=["owner@acme.test"],
        subject=subject or f"Message {provider_id}",
        body_text=body_text,
        received_at=BASE_TIME + timedelta(minutes=minutes),
    )


def make_stored(
    organization_id: uuid.UUID,
    *,
    from_address: str = "jane@fund.test",
    thread_id: str | None = "thread-1",
    minutes: int = 0,
    body_text: str | None = "Sounds good",
) -> StoredMessage:
    return StoredMessage(
        id=uuid.uuid4(),
        organization_id=organization_id,
        provider_message_id=str(uuid.uuid4()),
        thread_id=thread_id,
        from_address=from_address,
        from_name=None,
        subject="Re: Series A",
        body_text=body_text,
        received_at=BASE_TIME + timedelta(minutes=minutes),
    )


def extraction_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "counterparty": {"name": "Jane Doe", "email": "jane@fund.test", "firm": "Fund LP", "matched_id": None},
        "deal": {"name": "Series A", "matched_id": None},
        "intent": "committed",
        "commitment_amount": 500000,
        "sentiment": "positive",
        "questions": [],
        "has_wire_details": False,
        "confidence": {"counterparty": 0.9, "deal": 0.9, "intent": 0.9, "amount": 0.8},
        "reasoning": "Explicit commitment with an amount.",
    }
    payload.update(overrides)
    return payload


def make_extraction(**overrides: Any) -> ExtractionResult:
    return ExtractionResult.model_validate_json(json.dumps(extraction_payload(**overrides)))


def build_eml(
    *,
    subject: str = "Series A allocation",
    from_addr: str = "Jane Doe <Jane@Fund.test>",
    to_addr: str = "owner@acme.test",
    body: str = "We are in for $250K.",
    message_id: str = "<msg-001@fund.test>",
    in_reply_to: str | None = None,
    references: str | None = None,
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
    html: str | None = None,
) -> bytes:
    if html is None:
        msg = MIMEText(body, "plain")
    else:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(html, "html"))
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    return msg.as_bytes()


# ------------------------------------------------------------------
# Fake collaborators
# ------------------------------------------------------------------


class FakeSource(MessageSource):
    """In-memory mailbox listing ids newest first with an offset page token."""

    def __init__(self, details: list[MessageDetail] | None = None, *, page_size: int = 50) -> None:
        self.details = {d.provider_message_id: d for d in details or []}
        self.order = [d.provider_message_id for d in details or []]
        self.page_size = page_size
        self.failing: set[str] = set()
        self.sent: list[tuple[str, str, str]] = []
        self.send_error: Exception | None = None
        self.queries: list[str] = []
        self.detail_calls: list[str] = []
        self.marker = "1001"

    def add(self, detail: MessageDetail) -> None:
        self.details[detail.provider_message_id] = detail
        self.order.insert(0, detail.provider_message_id)

    async def list_messages(self, query: str, page_token: str | None = None) -> MessagePage:
        self.queries.append(query)
        offset = int(page_token or 0)
        ids = self.order[offset : offset + self.page_size]
        more = offset + self.page_size < len(self.order)
        return MessagePage(ids=ids, next_page_token=str(offset + self.page_size) if more else None)

    async def get_message_detail(self, message_id: str) -> MessageDetail:
        self.detail_calls.append(message_id)
        if message_id in self.failing:
            raise SourceError(f"fetch failed for {message_id}")
        return self.details[message_id]

    async def get_current_sync_marker(self) -> str:
        return self.marker

    async def send_message(self, to: str, subject: str, body: str) -> SentMessage:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to, subject, body))
        thread = f"<sent-{len(self.sent)}@acme.test>"
        return SentMessage(thread_id=thread, message_id=thread)

    def query_since(self, marker: str) -> str | None:
        return f"since:{marker}"


class FakeSourceFactory(MessageSourceFactory):
    def __init__(self, source: FakeSource, *, error: Exception | None = None) -> None:
        self.source = source
        self.error = error
        self.opened: list[AccountContext] = []

    @asynccontextmanager
    async def open(self, account: AccountContext):
        self.opened.append(account)
        if self.error is not None:
            raise self.error
        yield self.source


class FakeClassifier(ClassificationService):
    """Returns a canned extraction per sender address, or raises a canned error."""

    def __init__(self, default: ExtractionResult | None = None) -> None:
        self.default = default or make_extraction()
        self.by_sender: dict[str, ExtractionResult | Exception] = {}
        self.calls: list[tuple[StoredMessage, ExtractionContext]] = []

    @property
    def model_version(self) -> str:
        return "fake-model-v1"

    async def classify(self, message: StoredMessage, context: ExtractionContext) -> ExtractionResult:
        self.calls.append((message, context))
        answer = self.by_sender.get(message.from_address, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        ingest_chunk_size=3,
        parse_chunk_size=2,
        classify_concurrency=2,
        retry=RetryConfig(max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.01),
    )


# ------------------------------------------------------------------
# API
# ------------------------------------------------------------------


@pytest.fixture
def api_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        jwt_secret="test-secret",
        cron_secret="cron-secret",
        pipeline=PipelineConfig(ingest_chunk_size=3, parse_chunk_size=2),
    )


@pytest.fixture
def source_factory(fake_source: FakeSource) -> FakeSourceFactory:
    return FakeSourceFactory(fake_source)


@pytest.fixture
async def app(api_settings, store: PipelineStore, fake_classifier: FakeClassifier, source_factory):
    """Application with collaborators set on ``app.state``; the lifespan is not started."""
    application = create_app(api_settings)
    application.state.store = store
    application.state.classifier = fake_classifier
    application.state.source_factory = source_factory
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def make_auth_headers(user_id: uuid.UUID, settings: Settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, settings)}"}
