"""
Conversation Pipeline — the control loop for every inbound message.

  inbound event
    → Dedup Gate                     duplicate → dropped
    → Sequencer (one slot per phone)
        load state, record inbound
        → Rate Limiter               rejected → deferred "slow down" notice
        → Timeout Guard(Action Router)
              reply sent / no reply  → state transition applied
              timeout or failure     → fallback notice, state untouched

Every inbound event ends in exactly one of: a substantive reply, the
fallback notice, a (deferred) rate-limit notice, or silence.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Optional

from kaapav.pipeline import telemetry as tm
from kaapav.pipeline.channels import IngestBatch
from kaapav.pipeline.dedup import DedupGate
from kaapav.pipeline.errors import (
    DuplicateEvent,
    PersistenceFailure,
    RateLimited,
    RoutingFailure,
    RoutingTimeout,
)
from kaapav.pipeline.events import InboundEvent, StatusUpdate
from kaapav.pipeline.queue import ConversationSequencer
from kaapav.pipeline.rate_limit import FeedbackScheduler, RateLimiter
from kaapav.pipeline.router import ActionRouter, RouteResult, RoutingAttempt
from kaapav.pipeline.state import (
    ConversationState,
    ConversationStore,
    InboundRecord,
    persist,
)
from kaapav.pipeline.telemetry import NullTelemetry, TelemetrySink
from kaapav.pipeline.timeout import DEFAULT_TIMEOUT_MS, TimeoutGuard

logger = logging.getLogger("pipeline.core")

MAX_EVENT_LOG = 1000


class Outcome(str, Enum):
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    REPLIED = "replied"
    NO_REPLY = "no_reply"
    FALLBACK = "fallback"


class ConversationPipeline:
    """
    Owns one instance of every pipeline component.

    Usage:
        pipeline = ConversationPipeline(dedup=..., limiter=..., router=..., store=...)
        outcome = await pipeline.process(event)
    """

    def __init__(
        self,
        *,
        dedup: DedupGate,
        limiter: RateLimiter,
        router: ActionRouter,
        store: ConversationStore,
        sequencer: Optional[ConversationSequencer] = None,
        guard: Optional[TimeoutGuard] = None,
        telemetry: Optional[TelemetrySink] = None,
        feedback: Optional[FeedbackScheduler] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._dedup = dedup
        self._limiter = limiter
        self._router = router
        self._store = store
        self._sequencer = sequencer or ConversationSequencer()
        self._guard = guard or TimeoutGuard(timeout_ms)
        self._telemetry = telemetry or NullTelemetry()
        self._feedback = feedback or FeedbackScheduler(limiter, router.send_rate_limit_notice)
        self._timeout_ms = timeout_ms

        self._event_log: list[dict[str, Any]] = []
        self._metrics: dict[str, Any] = {
            "events_processed": 0,
            "duplicates": 0,
            "rate_limited": 0,
            "timeouts": 0,
            "failures": 0,
            "fallbacks_sent": 0,
            "replies_sent": 0,
            "status_updates": 0,
            "persistence_failures": 0,
            "routing_times": [],
        }

    @property
    def sequencer(self) -> ConversationSequencer:
        return self._sequencer

    @property
    def feedback(self) -> FeedbackScheduler:
        return self._feedback

    # ── Public API ──

    async def process(self, event: InboundEvent) -> Outcome:
        """Run one inbound event through the whole pipeline."""
        try:
            await self._check_duplicate(event)
        except DuplicateEvent:
            self._metrics["duplicates"] += 1
            self._log_event(event, Outcome.DUPLICATE, None)
            await self._emit(tm.MESSAGE_DUPLICATE, {"phone": event.sender, "message_id": event.id})
            return Outcome.DUPLICATE

        return await self._sequencer.enqueue(
            event.conversation_id, lambda: self._process_in_slot(event),
        )

    async def process_batch(self, batch: IngestBatch) -> list[Outcome]:
        """
        Apply a parsed webhook delivery.

        Events for the same phone keep their order; different phones run
        concurrently.  Status receipts are applied first.
        """
        for update in batch.statuses:
            await self.apply_status(update)

        by_phone: dict[str, list[InboundEvent]] = {}
        for event in batch.events:
            by_phone.setdefault(event.conversation_id, []).append(event)

        async def _in_order(events: list[InboundEvent]) -> list[Outcome]:
            return [await self.process(e) for e in events]

        results = await asyncio.gather(*(_in_order(evts) for evts in by_phone.values()))
        return [outcome for group in results for outcome in group]

    async def apply_status(self, update: StatusUpdate) -> bool:
        """Record a delivery receipt on the matching outbound record."""
        self._metrics["status_updates"] += 1
        try:
            return await persist(
                self._store.update_outbound_status(
                    update.message_id, update.status, update.timestamp, update.error,
                ),
                f"Status update {update.message_id}",
            )
        except PersistenceFailure as exc:
            self._metrics["persistence_failures"] += 1
            logger.warning("%s", exc)
            return False

    async def stop(self) -> None:
        await self._feedback.stop()
        await self._sequencer.stop()
        await self._guard.drain()
        logger.info("ConversationPipeline stopped")

    # ── Slot ──

    async def _process_in_slot(self, event: InboundEvent) -> Outcome:
        phone = event.conversation_id
        self._metrics["events_processed"] += 1

        state = await self._load_state(phone)
        first_message = await self._is_first_message(phone)
        await self._record_inbound(event)
        await self._emit(tm.USER_TYPING, {"phone": phone, "message_id": event.id})

        try:
            await self._check_rate_limit(phone)
        except RateLimited:
            self._metrics["rate_limited"] += 1
            self._feedback.schedule(phone)
            self._log_event(event, Outcome.RATE_LIMITED, None)
            await self._emit(tm.ROUTER_SKIP_RL, {"phone": phone, "message_id": event.id})
            return Outcome.RATE_LIMITED

        attempt = RoutingAttempt(event.id)
        t0 = time.monotonic()
        try:
            result = await self._route(event, state, first_message, attempt)
        except RoutingTimeout as exc:
            self._metrics["timeouts"] += 1
            self._log_event(event, Outcome.FALLBACK, str(exc))
            await self._emit(tm.PROCESSING_TIMEOUT, {
                "phone": phone,
                "message_id": event.id,
                "timeout_ms": exc.timeout_ms,
            })
            await self._send_fallback(phone)
            return Outcome.FALLBACK
        except RoutingFailure as exc:
            self._metrics["failures"] += 1
            self._log_event(event, Outcome.FALLBACK, str(exc))
            await self._emit(tm.ROUTE_ERROR, {
                "phone": phone,
                "message_id": event.id,
                "error": str(exc),
            })
            await self._send_fallback(phone)
            return Outcome.FALLBACK

        self._track_time(time.monotonic() - t0)
        await self._apply_transition(phone, result)
        if result.replied:
            self._metrics["replies_sent"] += 1
        outcome = Outcome.REPLIED if result.replied else Outcome.NO_REPLY
        self._log_event(event, outcome, attempt.sends)
        return outcome

    async def _route(
        self,
        event: InboundEvent,
        state: ConversationState,
        first_message: bool,
        attempt: RoutingAttempt,
    ) -> RouteResult:
        try:
            return await self._guard.with_deadline(
                self._router.route_event(
                    event, state, first_message=first_message, attempt=attempt,
                ),
                self._timeout_ms,
                on_abandon=attempt.abandon,
                label=f"{event.type.value}:{event.id}",
            )
        except RoutingTimeout:
            raise
        except Exception as exc:
            logger.error("Routing %s for %s failed: %s",
                         event.id, event.conversation_id, exc, exc_info=True)
            raise RoutingFailure(f"{type(exc).__name__}: {exc}") from exc

    # ── Internal ──

    async def _check_duplicate(self, event: InboundEvent) -> None:
        if await self._dedup.is_duplicate(event.id):
            raise DuplicateEvent(event.id)

    async def _check_rate_limit(self, phone: str) -> None:
        if not await self._limiter.try_acquire(phone):
            raise RateLimited(phone)

    async def _load_state(self, phone: str) -> ConversationState:
        try:
            return await persist(self._store.get_or_create_state(phone), f"State load {phone}")
        except PersistenceFailure as exc:
            self._metrics["persistence_failures"] += 1
            logger.error("%s, routing with default state", exc)
            return ConversationState()

    async def _is_first_message(self, phone: str) -> bool:
        try:
            return not await persist(self._store.has_inbound(phone), f"Inbound history {phone}")
        except PersistenceFailure as exc:
            self._metrics["persistence_failures"] += 1
            logger.warning("%s, assuming returning customer", exc)
            return False

    async def _apply_transition(self, phone: str, result: RouteResult) -> None:
        """Merge routing's state change.  Only runs inside the phone's slot."""
        if not result.changes_state:
            return
        try:
            await persist(
                self._store.update_state(
                    phone, flow=result.flow, step=result.step, extra=result.extra or None,
                ),
                f"State update {phone}",
            )
        except PersistenceFailure as exc:
            self._metrics["persistence_failures"] += 1
            logger.error("%s", exc)

    async def _record_inbound(self, event: InboundEvent) -> None:
        record = InboundRecord(
            message_id=event.id,
            phone=event.sender,
            message_type=event.type.value,
            text=event.text,
            button_id=event.payload.get("id") or event.payload.get("payload"),
            button_text=event.payload.get("title"),
            media_id=event.payload.get("media_id"),
            contact_name=event.contact_name,
            timestamp=event.arrived_at,
        )
        try:
            await persist(self._store.insert_inbound(record), f"Inbound audit {event.id}")
            await persist(
                self._store.touch_chat(
                    event.sender,
                    message=event.text,
                    message_type=event.type.value,
                    direction="incoming",
                    customer_name=event.contact_name,
                ),
                f"Chat summary {event.sender}",
            )
        except PersistenceFailure as exc:
            self._metrics["persistence_failures"] += 1
            logger.error("%s", exc)

    async def _send_fallback(self, phone: str) -> None:
        if await self._router.send_fallback(phone):
            self._metrics["fallbacks_sent"] += 1

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        await tm.gather_quietly(self._telemetry.emit(event, payload))

    def _track_time(self, elapsed: float) -> None:
        times = self._metrics["routing_times"]
        times.append(elapsed)
        if len(times) > 200:
            self._metrics["routing_times"] = times[-100:]

    def _log_event(self, event: InboundEvent, outcome: Outcome, detail: Any) -> None:
        """Append to the in-memory event log (health endpoint, debugging)."""
        self._event_log.append(
            {
                "event_id": event.id,
                "type": event.type.value,
                "phone": event.sender,
                "outcome": outcome.value,
                "detail": detail,
                "timestamp": event.arrived_at.isoformat(),
            }
        )
        if len(self._event_log) > MAX_EVENT_LOG:
            self._event_log = self._event_log[-(MAX_EVENT_LOG // 2):]

    # ── Observability ──

    def get_event_log(self, phone: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if phone:
            entries = [e for e in self._event_log if e["phone"] == phone]
        else:
            entries = list(self._event_log)
        return entries[-limit:]

    def get_metrics(self) -> dict[str, Any]:
        metrics = dict(self._metrics)
        times = metrics.pop("routing_times")
        if times:
            metrics["routing_summary"] = {
                "count": len(times),
                "avg_ms": round(sum(times) / len(times) * 1000, 1),
                "max_ms": round(max(times) * 1000, 1),
                "min_ms": round(min(times) * 1000, 1),
            }
        metrics["active_conversations"] = self._sequencer.active_count
        metrics["abandoned_in_flight"] = self._guard.abandoned_count
        metrics["dedup_cache_size"] = self._dedup.local_size
        metrics["dedup_store_errors"] = self._dedup.store_errors
        return metrics

    def health_check(self) -> dict[str, Any]:
        checks: dict[str, Any] = {
            "store_available": self._store is not None,
            "events_processed": self._metrics["events_processed"],
            "failures": self._metrics["failures"],
            "timeouts": self._metrics["timeouts"],
            "active_conversations": self._sequencer.active_count,
        }
        checks["healthy"] = checks["store_available"]
        return checks
