"""
Inbound Event — the one object that enters the conversation pipeline.

Every message the WhatsApp Cloud API delivers (text, tap on a button,
list pick, media, catalog order, …) is parsed into an InboundEvent.
The provider's message id is the idempotency key; the sender's phone
number keys the conversation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class InboundType(str, Enum):
    """Message types the pipeline distinguishes."""

    TEXT = "text"
    INTERACTIVE = "interactive"
    BUTTON = "button"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    ORDER = "order"
    LOCATION = "location"
    CONTACTS = "contacts"
    REACTION = "reaction"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> InboundType:
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN


# Acknowledged with a fixed notice, no state change
MEDIA_TYPES = {
    InboundType.IMAGE,
    InboundType.VIDEO,
    InboundType.AUDIO,
    InboundType.DOCUMENT,
    InboundType.STICKER,
}

# Payload carries an action id to normalise
ACTION_TYPES = {
    InboundType.INTERACTIVE,
    InboundType.BUTTON,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InboundEvent(BaseModel):
    """
    Immutable inbound message.

    payload keys by type:
      text         {"text"}
      interactive  {"kind", "id", "title"}   kind is button_reply | list_reply
      button       {"payload", "text"}
      media        {"media_id", "caption", "mime_type", "text"}
      order        {"catalog_id", "items", "text"}
      location     {"latitude", "longitude", "name", "address"}
    """

    model_config = {"frozen": True}

    id: str
    type: InboundType
    sender: str
    payload: dict[str, Any] = Field(default_factory=dict)
    contact_name: Optional[str] = None
    arrived_at: datetime = Field(default_factory=_now)

    # ── Convenience factories ──

    @classmethod
    def text_message(cls, event_id: str, sender: str, text: str, **kw) -> InboundEvent:
        return cls(id=event_id, type=InboundType.TEXT, sender=sender,
                   payload={"text": text}, **kw)

    @classmethod
    def button_reply(
        cls, event_id: str, sender: str, button_id: str, title: str = "", **kw,
    ) -> InboundEvent:
        return cls(
            id=event_id,
            type=InboundType.INTERACTIVE,
            sender=sender,
            payload={"kind": "button_reply", "id": button_id, "title": title},
            **kw,
        )

    # ── Accessors ──

    @property
    def conversation_id(self) -> str:
        return self.sender

    @property
    def text(self) -> str:
        """Best human-readable text for the event (empty when none)."""
        return str(self.payload.get("text") or "")

    @property
    def action_payload(self) -> str:
        """
        The raw action id carried by an interactive/button event.

        Button replies prefer the id and fall back to the title; list
        replies carry only the id; template buttons carry ``payload``.
        """
        if self.type == InboundType.BUTTON:
            return str(self.payload.get("payload") or self.payload.get("text") or "")
        return str(self.payload.get("id") or self.payload.get("title") or "")

    def is_media(self) -> bool:
        return self.type in MEDIA_TYPES


class StatusUpdate(BaseModel):
    """Delivery receipt for a message we sent (sent/delivered/read/failed)."""

    model_config = {"frozen": True}

    message_id: str
    recipient: str
    status: str
    timestamp: datetime = Field(default_factory=_now)
    error: Optional[str] = None
