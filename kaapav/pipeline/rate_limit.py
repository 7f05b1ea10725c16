"""
Rate Limiter — minimum spacing between outbound replies per conversation.

A permitted send claims ``rl:win:{phone}`` (first writer wins, expires
after the interval) and records its time under ``rl:{phone}`` for 60 s.
A rejected attempt writes nothing, so a burst cannot push the window
forward indefinitely.

FeedbackScheduler handles the "please slow down" notice: it fires once
the window has reopened and re-checks the limiter, so the notice itself
never breaks the spacing rule.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from kaapav.pipeline.ttl_store import TTLStore

logger = logging.getLogger("pipeline.rate_limit")

DEFAULT_INTERVAL_MS = 900
DEFAULT_TTL_SECONDS = 60
FEEDBACK_GRACE_MS = 100


class RateLimiter:
    """Per-conversation minimum interval between sends."""

    def __init__(
        self,
        store: TTLStore,
        *,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._interval_ms = interval_ms
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    async def try_acquire(self, conversation_id: str) -> bool:
        """
        True and stamp "now" if the interval has elapsed; False otherwise.

        The window key is claimed with a conditional write, so of several
        concurrent callers for one conversation only the first wins.
        """
        if self._interval_ms <= 0:
            return True
        now_ms = int(self._clock() * 1000)
        try:
            if not await self._store.add(
                f"rl:win:{conversation_id}", str(now_ms), self._interval_ms / 1000,
            ):
                return False
            await self._store.put(f"rl:{conversation_id}", str(now_ms), self._ttl)
        except Exception as exc:
            logger.warning("Rate limit store error for %s, allowing: %s",
                           conversation_id, exc)
        return True


FeedbackSender = Callable[[str], Awaitable[None]]


class FeedbackScheduler:
    """
    One-shot delayed "slow down" notices keyed by conversation.

    Several can be pending for the same conversation; each re-checks the
    limiter when it fires and stays silent if the window is still closed.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        send_notice: FeedbackSender,
        *,
        grace_ms: int = FEEDBACK_GRACE_MS,
    ) -> None:
        self._limiter = limiter
        self._send_notice = send_notice
        self._grace_ms = grace_ms
        self._pending: dict[str, set[asyncio.Task]] = {}

    def schedule(self, conversation_id: str) -> asyncio.Task:
        delay = (self._limiter.interval_ms + self._grace_ms) / 1000
        task = asyncio.create_task(self._fire(conversation_id, delay))
        tasks = self._pending.setdefault(conversation_id, set())
        tasks.add(task)
        task.add_done_callback(lambda t: self._forget(conversation_id, t))
        return task

    def pending(self, conversation_id: str) -> int:
        return len(self._pending.get(conversation_id, ()))

    async def stop(self) -> None:
        tasks = [t for ts in self._pending.values() for t in ts]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    # ── Internal ──

    async def _fire(self, conversation_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            if not await self._limiter.try_acquire(conversation_id):
                logger.debug("Feedback for %s skipped, window still closed",
                             conversation_id)
                return
            await self._send_notice(conversation_id)
        except Exception as exc:
            logger.error("Rate-limit feedback to %s failed: %s",
                         conversation_id, exc, exc_info=True)

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        tasks = self._pending.get(conversation_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            self._pending.pop(conversation_id, None)
