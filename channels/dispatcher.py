"""
Intent Dispatcher — delivers the engine's OutboundIntents through a MessageSender.

Intents are sent in order; a retryable ChannelError is retried with
exponential backoff, anything else is logged and the remaining intents
are still attempted so one bad message does not silence the turn.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Optional

from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import ChannelError, MessageSender
from models.schemas import IntentKind, MediaRef, OutboundIntent

logger = structlog.get_logger()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ChannelError) and exc.retryable


@dataclass
class DeliveryReport:
    sent: list[str] = field(default_factory=list)          # intent ids
    failed: dict[str, str] = field(default_factory=dict)   # intent id → error

    @property
    def ok(self) -> bool:
        return not self.failed


class IntentDispatcher:

    def __init__(self, sender: MessageSender, max_attempts: int = 3, backoff_max: float = 10.0):
        self._sender = sender
        self._max_attempts = max_attempts
        self._backoff_max = backoff_max

    async def deliver(self, intents: list[OutboundIntent]) -> DeliveryReport:
        report = DeliveryReport()
        for intent in intents:
            try:
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception(_is_retryable),
                    stop=stop_after_attempt(self._max_attempts),
                    wait=wait_exponential(multiplier=0.5, max=self._backoff_max),
                    reraise=True,
                ):
                    with attempt:
                        await self._send_one(intent)
                report.sent.append(intent.id)
            except Exception as e:
                report.failed[intent.id] = str(e)
                logger.error("intent_delivery_failed",
                             intent_id=intent.id, to=intent.to,
                             kind=intent.kind.value, error=str(e))
        return report

    async def _send_one(self, intent: OutboundIntent) -> Optional[str]:
        if intent.kind == IntentKind.BUTTONS:
            return await self._sender.send_buttons(
                intent.to, intent.text, intent.buttons, connection_id=intent.connection_id)
        if intent.kind == IntentKind.MEDIA:
            media = MediaRef(id=intent.metadata.get("document_id", intent.id),
                             mime_type=intent.mime_type, url=intent.media_url,
                             caption=intent.text)
            return await self._sender.send_media(intent.to, media, connection_id=intent.connection_id)
        return await self._sender.send_text(intent.to, intent.text, connection_id=intent.connection_id)
