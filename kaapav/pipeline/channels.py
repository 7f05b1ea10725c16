"""
Channel Abstractions — outbound delivery and inbound parsing.

The pipeline never builds provider payloads itself.  It hands an
OutboundMessage to the DispatcherRegistry and reads back a
DeliveryResult; provider specifics live in ``dispatchers/``.  Inbound
webhooks go the other way through a ChannelIngest.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from kaapav.pipeline.events import InboundEvent, StatusUpdate

logger = logging.getLogger("pipeline.channels")

DEFAULT_CHANNEL = "whatsapp"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  OUTBOUND — delivering replies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class MessageKind(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"
    MEDIA = "media"
    TEMPLATE = "template"


class OutboundMessage(BaseModel):
    """A reply the pipeline wants delivered to one phone number."""

    recipient: str
    kind: MessageKind = MessageKind.TEXT
    channel: str = DEFAULT_CHANNEL
    body: str = ""
    buttons: list[dict[str, str]] = Field(default_factory=list)  # [{"id", "title"}]
    header: Optional[str] = None
    footer: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # list:     {"button": "...", "sections": [...]}
    # media:    {"media_type": "image", "link": "...", "caption": "..."}
    # template: {"name": "...", "language": "en", "components": [...]}


class DeliveryResult(BaseModel):
    """Outcome of a single delivery attempt."""

    success: bool
    channel: str
    recipient: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract outbound channel."""

    channel_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver one message. Must not raise — return DeliveryResult."""

    async def close(self) -> None:
        """Release network resources.  Default: nothing to release."""


class DispatcherRegistry:
    """
    Registry of active ChannelDispatchers.

    Callers use ``dispatch()`` and never talk to a channel directly.
    Each dispatch gets one retry after a short pause.
    """

    def __init__(self, retry_delay: float = 0.5) -> None:
        self._dispatchers: dict[str, ChannelDispatcher] = {}
        self._retry_delay = retry_delay

    def register(self, dispatcher: ChannelDispatcher) -> None:
        name = dispatcher.channel_name
        self._dispatchers[name] = dispatcher
        logger.info("Registered channel dispatcher: %s", name)

    def unregister(self, channel_name: str) -> None:
        self._dispatchers.pop(channel_name, None)

    def get(self, channel_name: str) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel_name)

    @property
    def registered_channels(self) -> list[str]:
        return list(self._dispatchers.keys())

    async def dispatch(self, message: OutboundMessage) -> DeliveryResult:
        """Route one message to its channel's dispatcher (with single retry)."""
        dispatcher = self.get(message.channel)
        if dispatcher is None:
            logger.warning("No dispatcher for channel '%s'", message.channel)
            return DeliveryResult(
                success=False,
                channel=message.channel,
                recipient=message.recipient,
                error=f"No dispatcher registered for channel '{message.channel}'",
            )

        last_error = "Dispatch failed after retry"
        for attempt in range(2):
            try:
                result = await dispatcher.send(message)
            except Exception as exc:
                last_error = str(exc)
                logger.warning("Dispatcher '%s' raised (attempt %d): %s",
                               message.channel, attempt + 1, exc)
            else:
                if result.success or attempt == 1:
                    return result
                last_error = result.error or last_error
                logger.warning("Dispatch to %s on %s failed (attempt 1), retrying",
                               message.recipient, message.channel)
            if attempt == 0:
                await asyncio.sleep(self._retry_delay)

        return DeliveryResult(
            success=False,
            channel=message.channel,
            recipient=message.recipient,
            error=last_error,
        )

    async def close(self) -> None:
        for dispatcher in self._dispatchers.values():
            try:
                await dispatcher.close()
            except Exception as exc:
                logger.warning("Closing dispatcher %s failed: %s",
                               dispatcher.channel_name, exc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  INBOUND — provider webhooks into InboundEvents
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class IngestBatch(BaseModel):
    """Everything one webhook delivery contained."""

    events: list[InboundEvent] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)


class ChannelIngest(ABC):
    """Abstract inbound channel."""

    channel_name: str = ""

    @abstractmethod
    def parse(self, raw_input: dict[str, Any]) -> IngestBatch:
        """Parse a provider webhook body.  Malformed parts are skipped."""
