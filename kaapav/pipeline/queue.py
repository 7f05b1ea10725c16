"""
Per-Conversation Sequencer — single-flight execution per phone number.

Each conversation has a chain: every enqueued unit of work waits for the
one before it, then runs.  Work for different conversations runs
concurrently.  A failed unit never blocks the ones behind it.

The registry holds only the tail of each chain and drops it once the
tail settles, so idle conversations cost nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger("pipeline.queue")

# A zero-argument callable producing the coroutine to run in the slot
Work = Callable[[], Awaitable[Any]]


class ConversationSequencer:
    """
    Keyed registry ``conversation_id → tail task``.

    Usage:
        seq = ConversationSequencer()
        result = await seq.enqueue(phone, lambda: pipeline.handle(event))
    """

    def __init__(self, slow_threshold_seconds: float = 10.0) -> None:
        self._chains: dict[str, asyncio.Task] = {}
        self._depth: dict[str, int] = {}
        self._slow_threshold = slow_threshold_seconds

    # ── Public API ──

    async def enqueue(self, conversation_id: str, work: Work) -> Any:
        """
        Run ``work`` once every earlier unit for this conversation settled.

        Returns the work's result, or raises its exception.
        """
        previous = self._chains.get(conversation_id)
        self._depth[conversation_id] = self._depth.get(conversation_id, 0) + 1

        chain = asyncio.ensure_future(self._run_after(conversation_id, previous, work))
        self._chains[conversation_id] = chain
        chain.add_done_callback(lambda t: self._settled(conversation_id, t))
        logger.debug("Enqueued work for %s (depth=%d)",
                     conversation_id, self._depth[conversation_id])
        return await chain

    @property
    def active_conversations(self) -> list[str]:
        """Conversation ids with queued or running work."""
        return list(self._chains.keys())

    @property
    def active_count(self) -> int:
        return len(self._chains)

    def queue_depth(self, conversation_id: str) -> int:
        """Units queued or running for a conversation.  0 if idle."""
        return self._depth.get(conversation_id, 0)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let pending chains drain, cancelling whatever outlives ``timeout``."""
        tails = list(self._chains.values())
        if not tails:
            return
        _, still_running = await asyncio.wait(tails, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Sequencer stop cancelled %d chains", len(still_running))
        logger.info("ConversationSequencer stopped")

    # ── Internal ──

    async def _run_after(
        self, conversation_id: str, previous: asyncio.Task | None, work: Work,
    ) -> Any:
        if previous is not None and not previous.done():
            # asyncio.wait never raises the awaited task's exception
            await asyncio.wait([previous])
        t0 = time.monotonic()
        try:
            return await work()
        finally:
            elapsed = time.monotonic() - t0
            if elapsed > self._slow_threshold:
                logger.warning("Slow work for %s took %.1fs", conversation_id, elapsed)

    def _settled(self, conversation_id: str, chain: asyncio.Task) -> None:
        remaining = self._depth.get(conversation_id, 1) - 1
        if remaining > 0:
            self._depth[conversation_id] = remaining
        else:
            self._depth.pop(conversation_id, None)
        # Only the current tail may remove the entry
        if self._chains.get(conversation_id) is chain:
            del self._chains[conversation_id]
            logger.debug("Chain for %s drained", conversation_id)
