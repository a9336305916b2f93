"""Sends pending outbound requests through the message source."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import structlog

from .interface import MessageSource
from .store import PipelineStore

logger = structlog.get_logger()


@dataclass
class SendReport:
    sent: int = 0
    errors: list[str] = field(default_factory=list)


class OutboundRequestSender:
    """Moves ``pending`` requests to ``sent``, recording the thread to watch for replies."""

    def __init__(self, store: PipelineStore, source: MessageSource) -> None:
        self._store = store
        self._source = source

    async def send_pending(self, organization_id: uuid.UUID) -> SendReport:
        report = SendReport()
        for request in await self._store.pending_requests(organization_id):
            try:
                sent = await self._source.send_message(
                    request.target_address,
                    request.subject,
                    request.body,
                )
                await self._store.mark_request_sent(
                    request.id,
                    thread_id=sent.thread_id,
                    message_id=sent.message_id,
                )
            except Exception as exc:
                logger.warning(
                    "outbound_request_send_failed",
                    request_id=str(request.id),
                    error=str(exc),
                )
                report.errors.append(f"Request {request.target_address}: {exc}")
                continue
            report.sent += 1
            logger.info(
                "outbound_request_sent",
                request_id=str(request.id),
                thread_id=sent.thread_id,
            )
        return report
