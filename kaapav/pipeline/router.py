"""
Action Router — decides what to send for an inbound event and sends it.

Routing by inbound type:
  interactive/button  normalise the payload id → route (unknown → main menu)
  text                first message → main menu; otherwise translate, then
                      order id beats keyword table beats main menu
  media               fixed acknowledgement, no state change
  order               catalog order flow, independent of state

``route()`` itself is a dispatch over ACTION_TABLE: MENU effects move the
conversation into that menu's flow, LINK and TEXT effects leave state
alone.

The router never writes ConversationState.  Every route returns a
RouteResult carrying the transition (flow, step, extra) and the pipeline
applies it inside the conversation slot, only when routing finished in
time.

After every send that reached the gateway the router writes the audit
trail (OutboundRecord, chat summary, telemetry).  Those writes are best
effort: once a reply is out it is never "undone" by a local failure.

A RoutingAttempt is shared with the Timeout Guard.  Once it is marked
abandoned, no new send starts.  A send already in flight when the
deadline passes can still land after the fallback notice.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from kaapav.pipeline import telemetry as tm
from kaapav.pipeline.actions import (
    Action,
    Effect,
    extract_order_id,
    match_keyword,
    normalize_action,
    spec_for,
)
from kaapav.pipeline.errors import GatewaySendFailure, PersistenceFailure
from kaapav.pipeline.events import ACTION_TYPES, InboundEvent, InboundType
from kaapav.pipeline.menus import MenuService, SendEffect
from kaapav.pipeline.state import (
    ConversationState,
    ConversationStore,
    OrderItem,
    OrderRecord,
    OutboundRecord,
    persist,
)
from kaapav.pipeline.telemetry import NullTelemetry, TelemetrySink
from kaapav.pipeline.translation import PassThroughTranslator, Translator

logger = logging.getLogger("pipeline.router")

DEFAULT_LANGUAGE = "en"

FALLBACK_TEXT = (
    "⚠️ Something went wrong on our end.\n\n"
    "Please try again or type 'menu' to start over.\n\n"
    "If the issue persists, our team will assist you shortly."
)
RATE_LIMIT_TEXT = (
    "⏱️ Please wait a moment between messages.\n\n"
    "We're here to help - just give us a second to respond!"
)
MEDIA_ACK_TEXT = "✅ Received your {media_type}. Our team will review and respond shortly."
ORDER_NOT_FOUND_TEXT = (
    "❌ *Order Not Found*\n\n"
    "Order ID: {order_id}\n\n"
    "Please check the Order ID and try again.\n"
    "Format: KP-XXXXX"
)
ORDER_LOOKUP_FAILED_TEXT = (
    "⚠️ Unable to fetch order details right now.\n\n"
    "Please try again in a moment or contact our support team."
)
ORDER_SAVE_FAILED_TEXT = (
    "⚠️ We received your order but encountered an issue saving it.\n\n"
    "Please contact our support team for assistance."
)

STATUS_EMOJI = {
    "pending": "⏳",
    "confirmed": "✅",
    "processing": "⚙️",
    "shipped": "🚚",
    "delivered": "📦",
    "cancelled": "❌",
}


class RoutingAttempt:
    """Per-event routing handle; the Timeout Guard flips ``abandoned``."""

    def __init__(self, event_id: str = "") -> None:
        self.event_id = event_id
        self.abandoned = False
        self.sends = 0

    def abandon(self) -> None:
        self.abandoned = True


class RouteResult(BaseModel):
    """Whether a reply went out, and the state transition routing asks for."""

    replied: bool = False
    flow: Optional[str] = None
    step: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.replied

    @property
    def changes_state(self) -> bool:
        return self.flow is not None or self.step is not None or bool(self.extra)

    def with_extra(self, extra: dict[str, Any]) -> RouteResult:
        return self.model_copy(update={"extra": {**extra, **self.extra}})


def format_amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def new_order_id(now_ms: int | None = None) -> str:
    """``KP-`` followed by the last 8 digits of the epoch millis."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return f"KP-{str(now_ms)[-8:]}"


class ActionRouter:
    def __init__(
        self,
        store: ConversationStore,
        menus: MenuService,
        *,
        telemetry: Optional[TelemetrySink] = None,
        translator: Optional[Translator] = None,
    ) -> None:
        self._store = store
        self._menus = menus
        self._telemetry = telemetry or NullTelemetry()
        self._translator = translator or PassThroughTranslator()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  ACTIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def route(
        self,
        action: Action | None,
        conversation_id: str,
        language: str = DEFAULT_LANGUAGE,
        attempt: RoutingAttempt | None = None,
    ) -> RouteResult:
        """
        Send whatever ``action`` calls for.  A sent MENU reply carries the
        (flow, "menu") transition.

        Raises GatewaySendFailure when the gateway rejects the reply.
        """
        attempt = attempt or RoutingAttempt()
        spec = spec_for(action)
        label = action.value if action is not None else Action.MAIN_MENU.value

        if spec.effect == Effect.MENU:
            effect = await self._send(
                attempt, conversation_id,
                lambda: self._menus.send_menu(conversation_id, language, spec.target),
            )
        elif spec.effect == Effect.LINK:
            effect = await self._send(
                attempt, conversation_id,
                lambda: self._menus.send_link(conversation_id, language, spec.target),
            )
        else:
            body = self._menus.render_text(spec.target)
            effect = await self._send(
                attempt, conversation_id,
                lambda: self._menus.send_text(conversation_id, body, language=language),
            )

        if effect is None:
            return RouteResult()
        await self._after_send(conversation_id, effect, label)

        if spec.effect == Effect.MENU:
            return RouteResult(replied=True, flow=spec.flow, step="menu")
        return RouteResult(replied=True)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  INBOUND BY TYPE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def route_event(
        self,
        event: InboundEvent,
        state: ConversationState,
        *,
        first_message: bool = False,
        attempt: RoutingAttempt | None = None,
    ) -> RouteResult:
        """Route one inbound event.  ``replied`` is False when the type gets no reply."""
        attempt = attempt or RoutingAttempt(event.id)
        phone = event.conversation_id
        language = state.language or DEFAULT_LANGUAGE

        if event.type in ACTION_TYPES:
            raw = event.action_payload
            await self._emit(tm.BUTTON_PRESSED, {"phone": phone, "button_id": raw})
            action = normalize_action(raw)
            if action is None:
                logger.info("Unknown action id %r from %s, sending main menu", raw, phone)
                action = Action.MAIN_MENU
            return await self.route(action, phone, language, attempt)

        if event.type == InboundType.TEXT:
            return await self._route_text(event, state, first_message, attempt)

        if event.is_media():
            await self._emit(tm.MEDIA_RECEIVED, {
                "phone": phone,
                "type": event.type.value,
                "media_id": event.payload.get("media_id"),
            })
            body = MEDIA_ACK_TEXT.format(media_type=event.type.value)
            effect = await self._send(
                attempt, phone,
                lambda: self._menus.send_text(phone, body, language=language),
            )
            if effect is None:
                return RouteResult()
            await self._after_send(phone, effect, "MEDIA_ACK")
            return RouteResult(replied=True)

        if event.type == InboundType.ORDER:
            return RouteResult(replied=await self.handle_catalog_order(event, attempt))

        logger.debug("No route for %s message from %s", event.type.value, phone)
        return RouteResult()

    async def _route_text(
        self,
        event: InboundEvent,
        state: ConversationState,
        first_message: bool,
        attempt: RoutingAttempt,
    ) -> RouteResult:
        phone = event.conversation_id
        language = state.language or DEFAULT_LANGUAGE
        text = event.text.strip()

        translated = text
        lang_change: dict[str, Any] = {}
        try:
            translation = await self._translator.to_english(text)
            translated = translation.translated or text
            if translation.detected_lang and translation.detected_lang != state.language:
                language = translation.detected_lang
                lang_change = {"lang": language}
        except Exception as exc:
            logger.warning("Translation failed for %s, using original text: %s", phone, exc)

        if first_message:
            logger.info("First message from %s, sending main menu", phone)
            result = await self.route(Action.MAIN_MENU, phone, language, attempt)
            return result.with_extra(lang_change)

        order_id = extract_order_id(text) or extract_order_id(translated)
        if order_id:
            replied = await self.handle_order_inquiry(phone, order_id, attempt)
            return RouteResult(replied=replied, extra=lang_change)

        action = match_keyword(translated) or Action.MAIN_MENU
        await self._emit(tm.TEXT_ROUTED, {
            "phone": phone,
            "text": text[:200],
            "action": action.value,
        })
        result = await self.route(action, phone, language, attempt)
        return result.with_extra(lang_change)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  ORDERS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def handle_order_inquiry(
        self, conversation_id: str, order_id: str, attempt: RoutingAttempt | None = None,
    ) -> bool:
        attempt = attempt or RoutingAttempt()
        logger.info("Order inquiry %s from %s", order_id, conversation_id)
        try:
            order = await self._store.get_order(order_id)
        except Exception as exc:
            logger.error("Order lookup %s failed: %s", order_id, exc, exc_info=True)
            return await self._reply(attempt, conversation_id, ORDER_LOOKUP_FAILED_TEXT,
                                     "ORDER_LOOKUP_FAILED")

        if order is None:
            await self._emit(tm.ORDER_NOT_FOUND, {"phone": conversation_id, "order_id": order_id})
            return await self._reply(attempt, conversation_id,
                                     ORDER_NOT_FOUND_TEXT.format(order_id=order_id),
                                     "ORDER_NOT_FOUND")

        sent = await self._reply(attempt, conversation_id, self.order_status_text(order),
                                 "ORDER_STATUS")
        await self._emit(tm.ORDER_INQUIRY, {
            "phone": conversation_id,
            "order_id": order.order_id,
            "status": order.status,
        })
        return sent

    def order_status_text(self, order: OrderRecord) -> str:
        status = (order.status or "").lower()
        lines = [
            "📦 *Order Status*",
            "",
            f"Order ID: *{order.order_id}*",
            f"Status: {STATUS_EMOJI.get(status, '📋')} {status.upper()}",
            f"Date: {order.created_at.strftime('%d/%m/%Y')}",
        ]
        if order.total:
            lines.append(f"Total: ₹{format_amount(order.total)}")
        if order.item_count:
            lines.append(f"Items: {order.item_count}")
        text = "\n".join(lines) + "\n"

        if order.tracking_id:
            text += "\n🚚 *Tracking Information*\n"
            text += f"Tracking ID: {order.tracking_id}\n"
            if order.courier:
                text += f"Courier: {order.courier}\n"
            text += f"\nTrack your order:\n{order.tracking_url or self._menus.links.tracking}"
        elif status in ("pending", "confirmed"):
            text += ("\n⏳ Your order will be shipped soon.\n"
                     "You'll receive tracking details once dispatched.")
        return text

    async def handle_catalog_order(
        self, event: InboundEvent, attempt: RoutingAttempt | None = None,
    ) -> bool:
        """Persist a WhatsApp catalog order and confirm it."""
        attempt = attempt or RoutingAttempt(event.id)
        phone = event.conversation_id
        items = [
            OrderItem(
                product_id=str(raw.get("product_retailer_id") or raw.get("product_id") or ""),
                quantity=int(raw.get("quantity") or 1),
                item_price=float(raw.get("item_price") or 0),
                currency=raw.get("currency") or "INR",
            )
            for raw in event.payload.get("items") or []
        ]
        order = OrderRecord(
            order_id=new_order_id(),
            phone=phone,
            customer_name=event.contact_name or "",
            items=items,
            item_count=len(items),
            total=sum(item.line_total for item in items),
            status="pending",
        )

        try:
            await self._store.insert_order(order)
        except Exception as exc:
            logger.error("Saving order %s for %s failed: %s",
                         order.order_id, phone, exc, exc_info=True)
            return await self._reply(attempt, phone, ORDER_SAVE_FAILED_TEXT, "ORDER_SAVE_FAILED")

        body = (
            "🎉 *Order Received!*\n\n"
            f"Order ID: *{order.order_id}*\n"
            f"Items: {order.item_count}\n"
            f"Total: ₹{format_amount(order.total)}\n\n"
            "We'll confirm your order shortly with payment details.\n\n"
            "Track your order anytime by sending your Order ID."
        )
        sent = await self._reply(attempt, phone, body, "ORDER_CONFIRMATION")

        payload = {
            "phone": phone,
            "order_id": order.order_id,
            "items": order.item_count,
            "total": order.total,
        }
        await self._emit(tm.ORDER_RECEIVED, payload)
        await tm.gather_quietly(self._telemetry.post_webhook(tm.WEBHOOK_ORDER_CREATED, {
            **payload,
            "customer_name": order.customer_name,
            "catalog_id": event.payload.get("catalog_id"),
        }))
        return sent

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  NOTICES (never raise)
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def send_fallback(self, conversation_id: str) -> bool:
        return await self._send_notice(conversation_id, FALLBACK_TEXT, "FALLBACK")

    async def send_rate_limit_notice(self, conversation_id: str) -> bool:
        return await self._send_notice(conversation_id, RATE_LIMIT_TEXT, "RATE_LIMIT_NOTICE")

    async def _send_notice(self, conversation_id: str, body: str, label: str) -> bool:
        try:
            effect = await self._menus.send_text(conversation_id, body)
        except Exception as exc:
            logger.error("%s send to %s raised: %s", label, conversation_id, exc, exc_info=True)
            return False
        if not effect.success:
            logger.error("%s send to %s failed: %s", label, conversation_id, effect.error)
            return False
        await self._after_send(conversation_id, effect, label)
        return True

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  INTERNAL
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _send(
        self,
        attempt: RoutingAttempt,
        conversation_id: str,
        send: Callable[[], Awaitable[SendEffect]],
    ) -> SendEffect | None:
        """Run one send unless the attempt was abandoned.  Failure raises."""
        if attempt.abandoned:
            logger.info("Attempt %s abandoned, not sending to %s",
                        attempt.event_id, conversation_id)
            return None
        attempt.sends += 1
        effect = await send()
        if not effect.success:
            raise GatewaySendFailure(conversation_id, effect.error)
        return effect

    async def _reply(
        self, attempt: RoutingAttempt, conversation_id: str, body: str, label: str,
    ) -> bool:
        effect = await self._send(
            attempt, conversation_id,
            lambda: self._menus.send_text(conversation_id, body),
        )
        if effect is None:
            return False
        await self._after_send(conversation_id, effect, label)
        return True

    async def _after_send(self, conversation_id: str, effect: SendEffect, label: str) -> None:
        message_id = effect.message_id or f"local.{uuid.uuid4().hex}"
        record = OutboundRecord.from_send(
            message_id, conversation_id, effect.record_type, effect.body, effect.buttons,
        )
        try:
            await persist(self._store.insert_outbound(record), f"Outbound audit {message_id}")
            await persist(
                self._store.touch_chat(
                    conversation_id,
                    message=effect.body,
                    message_type=record.message_type,
                    direction="outgoing",
                ),
                f"Chat summary {conversation_id}",
            )
        except PersistenceFailure as exc:
            logger.error("%s", exc)

        await self._emit(tm.OUTGOING_MESSAGE, {
            "phone": conversation_id,
            "message_id": message_id,
            "type": record.message_type,
            "action": label,
        })
        await tm.gather_quietly(
            self._telemetry.append_log(tm.outbound_log_row(conversation_id, label))
        )

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        payload = {**payload, "ts": datetime.now(timezone.utc).isoformat()}
        await tm.gather_quietly(self._telemetry.emit(event, payload))
