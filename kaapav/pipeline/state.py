"""
Conversation State Store — per-phone state plus the audit trail around it.

ConversationState is the single source of truth for "which menu is this
customer in".  It is created lazily as (main, start), only ever changed
by merge, and never deleted.

The store also owns the records the router writes around each message:
inbound/outbound audit rows, catalog orders and the per-chat summary the
dashboard lists.  ``ConversationStore`` is the seam for a real database;
``InMemoryConversationStore`` is the shipped implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import BaseModel, Field

from kaapav.pipeline.errors import PersistenceFailure

logger = logging.getLogger("pipeline.state")

T = TypeVar("T")

DEFAULT_FLOW = "main"
DEFAULT_STEP = "start"
MAX_OUTBOUND_BODY = 4000


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  MODELS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConversationState(BaseModel):
    flow: str = DEFAULT_FLOW
    step: str = DEFAULT_STEP
    extra: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def language(self) -> Optional[str]:
        return self.extra.get("lang")

    def merged(
        self,
        *,
        flow: Optional[str] = None,
        step: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> ConversationState:
        """
        New state with ``flow``/``step`` replaced when given and ``extra``
        overlaid key by key.  Applying the same merge twice is a no-op.
        """
        return ConversationState(
            flow=flow if flow is not None else self.flow,
            step=step if step is not None else self.step,
            extra={**self.extra, **(extra or {})},
            updated_at=_now(),
        )


class InboundRecord(BaseModel):
    message_id: str
    phone: str
    message_type: str
    text: str = ""
    button_id: Optional[str] = None
    button_text: Optional[str] = None
    media_id: Optional[str] = None
    contact_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class OutboundRecord(BaseModel):
    message_id: str
    phone: str
    message_type: str
    text: str = ""
    button_id: Optional[str] = None
    button_text: Optional[str] = None
    status: str = "sent"
    timestamp: datetime = Field(default_factory=_now)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_send(
        cls,
        message_id: str,
        phone: str,
        kind: str,
        body: str,
        buttons: list[dict[str, str]] | None = None,
    ) -> OutboundRecord:
        """
        Audit row for a send.  Bodies are capped at 4000 chars; button
        sends keep the first id and all titles joined with " | ".
        """
        buttons = buttons or []
        return cls(
            message_id=message_id,
            phone=phone,
            message_type="buttons" if kind == "interactive" else kind,
            text=(body or "")[:MAX_OUTBOUND_BODY],
            button_id=buttons[0].get("id") if buttons else None,
            button_text=" | ".join(b.get("title", "") for b in buttons) if buttons else None,
        )


class OrderItem(BaseModel):
    product_id: str
    quantity: int = 1
    item_price: float = 0.0
    currency: str = "INR"

    @property
    def line_total(self) -> float:
        return self.item_price * self.quantity


class OrderRecord(BaseModel):
    order_id: str
    phone: str
    customer_name: str = ""
    items: list[OrderItem] = Field(default_factory=list)
    item_count: int = 0
    total: float = 0.0
    status: str = "pending"
    tracking_id: Optional[str] = None
    tracking_url: Optional[str] = None
    courier: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class ChatSummary(BaseModel):
    phone: str
    customer_name: str = ""
    last_message: str = ""
    last_message_type: str = "text"
    last_direction: str = "incoming"
    last_timestamp: datetime = Field(default_factory=_now)
    total_messages: int = 0
    unread_count: int = 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  STORE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


async def persist(op: Awaitable[T], what: str) -> T:
    """Await a store call, re-raising any failure as PersistenceFailure."""
    try:
        return await op
    except PersistenceFailure:
        raise
    except Exception as exc:
        raise PersistenceFailure(f"{what} failed: {exc}") from exc


class ConversationStore(ABC):
    """Durable storage seam.  Implementations may raise on I/O errors."""

    @abstractmethod
    async def get_state(self, phone: str) -> ConversationState | None: ...

    @abstractmethod
    async def save_state(self, phone: str, state: ConversationState) -> None: ...

    @abstractmethod
    async def has_inbound(self, phone: str) -> bool:
        """True if any inbound message from ``phone`` was ever recorded."""

    @abstractmethod
    async def insert_inbound(self, record: InboundRecord) -> None: ...

    @abstractmethod
    async def insert_outbound(self, record: OutboundRecord) -> None: ...

    @abstractmethod
    async def update_outbound_status(
        self,
        message_id: str,
        status: str,
        timestamp: datetime,
        error: str | None = None,
    ) -> bool:
        """Apply a delivery receipt.  False if the message is unknown."""

    @abstractmethod
    async def insert_order(self, order: OrderRecord) -> None: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> OrderRecord | None: ...

    @abstractmethod
    async def get_chat_summary(self, phone: str) -> ChatSummary | None: ...

    @abstractmethod
    async def save_chat_summary(self, summary: ChatSummary) -> None: ...

    # ── Shared behaviour ──

    async def get_or_create_state(self, phone: str) -> ConversationState:
        state = await self.get_state(phone)
        if state is None:
            state = ConversationState()
            await self.save_state(phone, state)
            logger.info("Created conversation state for %s", phone)
        return state

    async def update_state(
        self,
        phone: str,
        *,
        flow: str | None = None,
        step: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ConversationState:
        current = await self.get_state(phone) or ConversationState()
        new_state = current.merged(flow=flow, step=step, extra=extra)
        await self.save_state(phone, new_state)
        return new_state

    async def touch_chat(
        self,
        phone: str,
        *,
        message: str,
        message_type: str,
        direction: str,
        customer_name: str | None = None,
    ) -> ChatSummary:
        """Roll a message into the chat summary.  Incoming bumps unread."""
        summary = await self.get_chat_summary(phone) or ChatSummary(phone=phone)
        summary.last_message = (message or "")[:200]
        summary.last_message_type = message_type
        summary.last_direction = direction
        summary.last_timestamp = _now()
        summary.total_messages += 1
        if direction == "incoming":
            summary.unread_count += 1
        if customer_name:
            summary.customer_name = customer_name
        await self.save_chat_summary(summary)
        return summary


class InMemoryConversationStore(ConversationStore):
    """Dict-backed store for a single process (dev, tests, demos)."""

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}
        self._inbound: dict[str, list[InboundRecord]] = {}
        self._outbound: dict[str, OutboundRecord] = {}
        self._orders: dict[str, OrderRecord] = {}
        self._chats: dict[str, ChatSummary] = {}

    async def get_state(self, phone: str) -> ConversationState | None:
        state = self._states.get(phone)
        return state.model_copy(deep=True) if state else None

    async def save_state(self, phone: str, state: ConversationState) -> None:
        self._states[phone] = state.model_copy(deep=True)

    async def has_inbound(self, phone: str) -> bool:
        return bool(self._inbound.get(phone))

    async def insert_inbound(self, record: InboundRecord) -> None:
        self._inbound.setdefault(record.phone, []).append(record)

    async def insert_outbound(self, record: OutboundRecord) -> None:
        self._outbound[record.message_id] = record

    async def update_outbound_status(
        self,
        message_id: str,
        status: str,
        timestamp: datetime,
        error: str | None = None,
    ) -> bool:
        record = self._outbound.get(message_id)
        if record is None:
            return False
        record.status = status
        if status == "delivered":
            record.delivered_at = timestamp
        elif status == "read":
            record.read_at = timestamp
        elif status == "failed":
            record.failed_at = timestamp
            record.error = error
        return True

    async def insert_order(self, order: OrderRecord) -> None:
        self._orders[order.order_id] = order

    async def get_order(self, order_id: str) -> OrderRecord | None:
        return self._orders.get(order_id)

    async def get_chat_summary(self, phone: str) -> ChatSummary | None:
        summary = self._chats.get(phone)
        return summary.model_copy() if summary else None

    async def save_chat_summary(self, summary: ChatSummary) -> None:
        self._chats[summary.phone] = summary

    # ── Inspection (dashboard / tests) ──

    def inbound_for(self, phone: str) -> list[InboundRecord]:
        return list(self._inbound.get(phone, []))

    def outbound_for(self, phone: str) -> list[OutboundRecord]:
        return [r for r in self._outbound.values() if r.phone == phone]

    def orders_for(self, phone: str) -> list[OrderRecord]:
        return [o for o in self._orders.values() if o.phone == phone]
