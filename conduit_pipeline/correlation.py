"""Thread-based reply correlation.

Two detectors run over a batch of freshly ingested messages:

``ThreadAnswerCorrelator``
    closes ``sent`` outbound requests when their original target replies in
    the same thread.  Only a message *from* the target counts; an auto-ack or
    the requester's own follow-up in the thread never closes a request.

``QuestionAnswerDetector``
    marks ``question`` parse records answered once one of the organization's
    own mailboxes has replied in that thread.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence

import structlog

from .models import StoredMessage
from .store import PipelineStore

logger = structlog.get_logger()


def _by_thread(messages: Sequence[StoredMessage]) -> dict[str, list[StoredMessage]]:
    grouped: dict[str, list[StoredMessage]] = defaultdict(list)
    for message in messages:
        if message.thread_id:
            grouped[message.thread_id].append(message)
    return grouped


class ThreadAnswerCorrelator:
    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def correlate(self, organization_id: uuid.UUID, messages: Sequence[StoredMessage]) -> int:
        """Return the number of outbound requests moved to ``answered``."""
        threads = _by_thread(messages)
        if not threads:
            return 0

        requests = await self._store.sent_requests_for_threads(organization_id, threads.keys())
        answered = 0
        for request in requests:
            target = request.target_address.strip().lower()
            replies = [
                m for m in threads.get(request.thread_id or "", [])
                if m.from_address.strip().lower() == target
            ]
            if not replies:
                continue

            reply = min(replies, key=lambda m: m.received_at)
            moved = await self._store.mark_request_answered(
                request.id,
                reply_message_id=reply.id,
                reply_body=reply.body_text,
                answered_at=reply.received_at,
            )
            if moved:
                answered += 1
                logger.info(
                    "outbound_request_answered",
                    request_id=str(request.id),
                    thread_id=request.thread_id,
                )
        return answered


class QuestionAnswerDetector:
    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def detect(self, organization_id: uuid.UUID, messages: Sequence[StoredMessage]) -> int:
        """Return the number of question records marked answered."""
        own_addresses = await self._store.connected_addresses(organization_id)
        replied_threads = {
            m.thread_id
            for m in messages
            if m.thread_id and m.from_address.strip().lower() in own_addresses
        }
        if not replied_threads:
            return 0

        count = await self._store.mark_questions_answered(organization_id, replied_threads)
        if count:
            logger.info("questions_marked_answered", count=count)
        return count
