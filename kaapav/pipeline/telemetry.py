"""
Telemetry Emitter — best-effort fan-out of pipeline lifecycle events.

Three sinks, all optional:
  subscribers   in-process callbacks (dashboard live feed, tests)
  webhook       JSON POST {"event", "data", "ts"} to an external URL
  row writer    append-only rows, e.g. a spreadsheet log

Nothing here ever raises into the pipeline.  A failed sink is logged at
debug level and forgotten.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger("pipeline.telemetry")

# Event names
MESSAGE_DUPLICATE = "message_duplicate"
USER_TYPING = "user_typing"
ROUTER_SKIP_RL = "router_skip_rl"
PROCESSING_TIMEOUT = "processing_timeout"
ROUTE_ERROR = "route_error"
BUTTON_PRESSED = "button_pressed"
TEXT_ROUTED = "text_routed"
MEDIA_RECEIVED = "media_received"
ORDER_RECEIVED = "order_received"
ORDER_NOT_FOUND = "order_not_found"
ORDER_INQUIRY = "order_inquiry"
OUTGOING_MESSAGE = "outgoing_message"

WEBHOOK_ORDER_CREATED = "wa_order_created"


class TelemetrySink(ABC):
    @abstractmethod
    async def emit(self, event: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    async def post_webhook(self, event: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    async def append_log(self, row: list[Any]) -> None: ...


class NullTelemetry(TelemetrySink):
    """Used when no telemetry is configured."""

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        return None

    async def post_webhook(self, event: str, payload: dict[str, Any]) -> None:
        return None

    async def append_log(self, row: list[Any]) -> None:
        return None


Subscriber = Callable[[str, dict[str, Any]], Any]
RowWriter = Callable[[list[Any]], Any]


class TelemetryEmitter(TelemetrySink):
    def __init__(
        self,
        *,
        webhook_url: str = "",
        row_writer: Optional[RowWriter] = None,
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._row_writer = row_writer
        self._timeout = timeout
        self._client = client
        self._subscribers: list[Subscriber] = []
        self._failures = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback ``(event, payload)``.  Returns an unsubscribe."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def failures(self) -> int:
        return self._failures

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._failures += 1
                logger.debug("Telemetry subscriber failed on %s: %s", event, exc)

    async def post_webhook(self, event: str, payload: dict[str, Any]) -> None:
        if not self._webhook_url:
            return
        body = {
            "event": event,
            "data": payload,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        try:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=self._timeout)
            resp = await self._client.post(self._webhook_url, json=body)
            if resp.status_code >= 400:
                self._failures += 1
                logger.debug("Telemetry webhook %s returned %d", event, resp.status_code)
        except Exception as exc:
            self._failures += 1
            logger.debug("Telemetry webhook %s failed: %s", event, exc)

    async def append_log(self, row: list[Any]) -> None:
        if self._row_writer is None:
            return
        try:
            result = self._row_writer(row)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._failures += 1
            logger.debug("Telemetry row write failed: %s", exc)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def outbound_log_row(phone: str, action: str) -> list[Any]:
    """``[iso_ts, "OUT", phone, "action", action]``"""
    return [datetime.now(timezone.utc).isoformat(), "OUT", phone, "action", action]


async def gather_quietly(*aws) -> None:
    """Run sink calls concurrently; exceptions are logged, never raised."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.debug("Telemetry call failed: %s", result)
