"""
WhatsApp Cloud API Dispatcher — delivers replies via the Graph API.

Configuration (environment variables, see kaapav.settings):
  WHATSAPP_TOKEN      — permanent/system-user access token
  WHATSAPP_PHONE_ID   — sender phone number id
  GRAPH_API_VERSION   — e.g. "v20.0"

Without a token the dispatcher runs in stub mode: sends are logged and
reported as successful with a synthetic message id.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from kaapav import settings
from kaapav.pipeline.channels import (
    ChannelDispatcher,
    DeliveryResult,
    MessageKind,
    OutboundMessage,
)

logger = logging.getLogger("pipeline.dispatchers.whatsapp")

GRAPH_BASE_URL = "https://graph.facebook.com"
MAX_BUTTON_TITLE = 20
MAX_BUTTONS = 3
MAX_TEXT_BODY = 4096


class WhatsAppDispatcher(ChannelDispatcher):
    """Delivers OutboundMessages through the WhatsApp Cloud API."""

    channel_name = "whatsapp"

    def __init__(
        self,
        token: str | None = None,
        phone_id: str | None = None,
        api_version: str | None = None,
        *,
        timeout: float = 4.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token if token is not None else settings.WHATSAPP_TOKEN
        self._phone_id = phone_id if phone_id is not None else settings.WHATSAPP_PHONE_ID
        self._api_version = api_version or settings.GRAPH_API_VERSION
        self._timeout = timeout
        self._client = client

    @property
    def stub_mode(self) -> bool:
        return not self._token or not self._phone_id

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self._api_version}/{self._phone_id}/messages"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if not message.recipient:
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error="No recipient phone number",
            )

        try:
            payload = build_payload(message)
        except ValueError as exc:
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error=str(exc),
            )

        if self.stub_mode:
            logger.info("WhatsApp stub: %s → %s: %s",
                        message.kind.value, message.recipient, message.body[:80])
            return DeliveryResult(
                success=True,
                channel=self.channel_name,
                recipient=message.recipient,
                message_id=f"stub.{uuid.uuid4().hex}",
                error="stub_mode",
            )

        try:
            resp = await self._get_client().post(
                self.messages_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._token}"},
            )
            data = resp.json() if resp.content else {}
            if resp.status_code >= 400:
                error = (data.get("error") or {}).get("message") or f"HTTP {resp.status_code}"
                logger.error("WhatsApp send to %s rejected: %s",
                             message.recipient, error)
                return DeliveryResult(
                    success=False,
                    channel=self.channel_name,
                    recipient=message.recipient,
                    error=error,
                )
            message_id = ((data.get("messages") or [{}])[0]).get("id")
            logger.info("WhatsApp %s sent: id=%s → %s",
                        message.kind.value, message_id, message.recipient)
            return DeliveryResult(
                success=True,
                channel=self.channel_name,
                recipient=message.recipient,
                message_id=message_id,
            )
        except Exception as exc:
            logger.error("WhatsApp send error: %s", exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error=str(exc),
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_payload(message: OutboundMessage) -> dict[str, Any]:
    """Graph API JSON body for an OutboundMessage."""
    base: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": message.recipient,
    }
    meta = message.metadata

    if message.kind == MessageKind.TEXT:
        base["type"] = "text"
        base["text"] = {"body": message.body[:MAX_TEXT_BODY], "preview_url": True}
        return base

    if message.kind == MessageKind.BUTTONS:
        if not message.buttons:
            raise ValueError("Button message without buttons")
        interactive: dict[str, Any] = {
            "type": "button",
            "body": {"text": message.body},
            "action": {
                "buttons": [
                    {"type": "reply",
                     "reply": {"id": b["id"], "title": b.get("title", "")[:MAX_BUTTON_TITLE]}}
                    for b in message.buttons[:MAX_BUTTONS]
                ],
            },
        }
        if message.header:
            interactive["header"] = {"type": "text", "text": message.header}
        if message.footer:
            interactive["footer"] = {"text": message.footer}
        base["type"] = "interactive"
        base["interactive"] = interactive
        return base

    if message.kind == MessageKind.LIST:
        sections = meta.get("sections") or []
        if not sections:
            raise ValueError("List message without sections")
        interactive = {
            "type": "list",
            "body": {"text": message.body},
            "action": {"button": meta.get("button", "Choose"), "sections": sections},
        }
        if message.header:
            interactive["header"] = {"type": "text", "text": message.header}
        if message.footer:
            interactive["footer"] = {"text": message.footer}
        base["type"] = "interactive"
        base["interactive"] = interactive
        return base

    if message.kind == MessageKind.MEDIA:
        media_type = meta.get("media_type", "image")
        media: dict[str, Any] = {}
        if meta.get("media_id"):
            media["id"] = meta["media_id"]
        elif meta.get("link"):
            media["link"] = meta["link"]
        else:
            raise ValueError("Media message without id or link")
        caption = meta.get("caption") or message.body
        if caption and media_type in ("image", "video", "document"):
            media["caption"] = caption
        base["type"] = media_type
        base[media_type] = media
        return base

    if message.kind == MessageKind.TEMPLATE:
        if not meta.get("name"):
            raise ValueError("Template message without name")
        base["type"] = "template"
        base["template"] = {
            "name": meta["name"],
            "language": {"code": meta.get("language", "en")},
            "components": meta.get("components", []),
        }
        return base

    raise ValueError(f"Unsupported message kind: {message.kind}")
