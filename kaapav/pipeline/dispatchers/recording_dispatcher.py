"""
Recording Dispatcher — keeps every outbound message in memory.

Used by tests and local demos in place of the WhatsApp dispatcher.
Sends can be made to fail, or to block until released, to exercise
the pipeline's failure and timeout paths.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict

from kaapav.pipeline.channels import (
    ChannelDispatcher,
    DeliveryResult,
    OutboundMessage,
)

logger = logging.getLogger("pipeline.dispatchers.recording")


class RecordingDispatcher(ChannelDispatcher):
    """Stores messages per recipient and returns sequential message ids."""

    channel_name = "whatsapp"

    def __init__(self, channel_name: str | None = None) -> None:
        if channel_name:
            self.channel_name = channel_name
        # recipient → messages, in send order
        self._sent: dict[str, list[OutboundMessage]] = defaultdict(list)
        self._ids = itertools.count(1)
        self.fail_with: str | None = None
        self.gate: asyncio.Event | None = None

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error=self.fail_with,
            )
        self._sent[message.recipient].append(message)
        message_id = f"wamid.rec{next(self._ids)}"
        logger.debug("Recorded %s → %s (%s)", message.kind.value,
                     message.recipient, message_id)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=message.recipient,
            message_id=message_id,
        )

    def messages(self, recipient: str) -> list[OutboundMessage]:
        return list(self._sent.get(recipient, []))

    def bodies(self, recipient: str) -> list[str]:
        return [m.body for m in self._sent.get(recipient, [])]

    @property
    def total_sent(self) -> int:
        return sum(len(v) for v in self._sent.values())

    def clear(self, recipient: str | None = None) -> None:
        if recipient:
            self._sent.pop(recipient, None)
        else:
            self._sent.clear()
