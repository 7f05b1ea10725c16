"""
WhatsApp Ingest — converts Cloud API webhook bodies into InboundEvents.

Expected webhook body (abridged):
{
  "object": "whatsapp_business_account",
  "entry": [{
    "changes": [{
      "field": "messages",
      "value": {
        "contacts": [{"wa_id": "919800000001", "profile": {"name": "Asha"}}],
        "messages": [{"from": "919800000001", "id": "wamid.X",
                      "timestamp": "1700000000", "type": "text",
                      "text": {"body": "hi"}}],
        "statuses": [{"id": "wamid.Y", "status": "delivered",
                      "timestamp": "1700000005", "recipient_id": "9198..."}]
      }
    }]
  }]
}

One delivery may carry several messages and statuses.  Anything that
does not parse is logged and skipped; the rest of the batch survives.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from kaapav.pipeline.channels import ChannelIngest, IngestBatch
from kaapav.pipeline.events import (
    MEDIA_TYPES,
    InboundEvent,
    InboundType,
    StatusUpdate,
)

logger = logging.getLogger("pipeline.ingest.whatsapp")


def _timestamp(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def extract_payload(msg_type: InboundType, msg: dict[str, Any]) -> dict[str, Any]:
    """Type-specific content of one webhook message, flattened."""
    if msg_type == InboundType.TEXT:
        return {"text": (msg.get("text") or {}).get("body", "")}

    if msg_type in MEDIA_TYPES:
        media = msg.get(msg_type.value) or {}
        caption = media.get("caption") or ""
        return {
            "media_id": media.get("id"),
            "mime_type": media.get("mime_type"),
            "caption": caption,
            "text": caption or f"[{msg_type.value}]",
        }

    if msg_type == InboundType.INTERACTIVE:
        interactive = msg.get("interactive") or {}
        kind = interactive.get("type", "")
        reply = interactive.get(kind) or {}
        return {
            "kind": kind,
            "id": reply.get("id", ""),
            "title": reply.get("title", ""),
            "text": reply.get("title", ""),
        }

    if msg_type == InboundType.BUTTON:
        button = msg.get("button") or {}
        return {"payload": button.get("payload", ""), "text": button.get("text", "")}

    if msg_type == InboundType.ORDER:
        order = msg.get("order") or {}
        items = order.get("product_items") or []
        return {
            "catalog_id": order.get("catalog_id"),
            "items": items,
            "text": order.get("text") or f"[order: {len(items)} items]",
        }

    if msg_type == InboundType.LOCATION:
        loc = msg.get("location") or {}
        return {
            "latitude": loc.get("latitude"),
            "longitude": loc.get("longitude"),
            "name": loc.get("name"),
            "address": loc.get("address"),
            "text": loc.get("name") or loc.get("address") or "[location]",
        }

    if msg_type == InboundType.CONTACTS:
        contacts = msg.get("contacts") or []
        names = [((c.get("name") or {}).get("formatted_name") or "") for c in contacts]
        return {"contacts": contacts, "text": ", ".join(n for n in names if n) or "[contacts]"}

    if msg_type == InboundType.REACTION:
        reaction = msg.get("reaction") or {}
        return {
            "emoji": reaction.get("emoji"),
            "message_id": reaction.get("message_id"),
            "text": reaction.get("emoji") or "",
        }

    return {"raw": msg, "text": ""}


class WhatsAppIngest(ChannelIngest):
    """Parses WhatsApp Cloud API webhook deliveries."""

    channel_name = "whatsapp"

    def parse(self, raw_input: dict[str, Any]) -> IngestBatch:
        batch = IngestBatch()
        for entry in raw_input.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field", "messages") != "messages":
                    continue
                value = change.get("value") or {}
                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts") or []
                }
                for msg in value.get("messages") or []:
                    event = self._to_event(msg, names)
                    if event is not None:
                        batch.events.append(event)
                for status in value.get("statuses") or []:
                    update = self._to_status(status)
                    if update is not None:
                        batch.statuses.append(update)

        logger.debug("Parsed webhook: %d messages, %d statuses",
                     len(batch.events), len(batch.statuses))
        return batch

    def _to_event(self, msg: dict[str, Any], names: dict[str, Any]) -> InboundEvent | None:
        sender = msg.get("from")
        if not sender:
            logger.warning("Webhook message without sender skipped: %s", msg.get("id"))
            return None
        msg_type = InboundType.parse(msg.get("type"))
        try:
            return InboundEvent(
                id=msg.get("id") or "",
                type=msg_type,
                sender=sender,
                payload=extract_payload(msg_type, msg),
                contact_name=names.get(sender),
                arrived_at=_timestamp(msg.get("timestamp")),
            )
        except Exception as exc:
            logger.warning("Unparseable webhook message %s skipped: %s", msg.get("id"), exc)
            return None

    def _to_status(self, status: dict[str, Any]) -> StatusUpdate | None:
        if not status.get("id") or not status.get("status"):
            return None
        errors = status.get("errors") or []
        error = None
        if errors:
            error = errors[0].get("title") or errors[0].get("message")
        return StatusUpdate(
            message_id=status["id"],
            recipient=status.get("recipient_id", ""),
            status=status["status"],
            timestamp=_timestamp(status.get("timestamp")),
            error=error,
        )
