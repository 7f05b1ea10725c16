"""
Timeout Guard — bounds how long routing may hold a conversation slot.

The work is never cancelled.  Once the deadline passes it keeps running
in the background; a late result is dropped and a late exception is
logged.  Callers pass ``on_abandon`` to stop the work from starting any
new side effects.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from kaapav.pipeline.errors import RoutingTimeout

logger = logging.getLogger("pipeline.timeout")

DEFAULT_TIMEOUT_MS = 5000


class TimeoutGuard:
    def __init__(self, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self._default_timeout_ms = default_timeout_ms
        self._bg_tasks: set[asyncio.Task] = set()
        self._timeouts = 0

    async def with_deadline(
        self,
        work: Awaitable[Any],
        timeout_ms: Optional[int] = None,
        *,
        on_abandon: Optional[Callable[[], None]] = None,
        label: str = "",
    ) -> Any:
        """
        Await ``work`` for at most ``timeout_ms``.

        Raises RoutingTimeout when the deadline wins.  Exceptions raised
        by ``work`` in time propagate unchanged.
        """
        timeout_ms = self._default_timeout_ms if timeout_ms is None else timeout_ms
        task = asyncio.ensure_future(work)
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task in done:
            return task.result()

        self._timeouts += 1
        if on_abandon is not None:
            on_abandon()
        self._bg_tasks.add(task)
        task.add_done_callback(self._late_completion(label))
        logger.warning("Deadline of %dms passed for %s, abandoning", timeout_ms, label or task)
        raise RoutingTimeout(timeout_ms)

    @property
    def abandoned_count(self) -> int:
        """Abandoned work still running in the background."""
        return len(self._bg_tasks)

    @property
    def timeouts(self) -> int:
        return self._timeouts

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait briefly for abandoned work, cancel the rest (shutdown only)."""
        tasks = list(self._bg_tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _late_completion(self, label: str) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            self._bg_tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Abandoned work %s failed late: %s", label, exc,
                             exc_info=exc)
            else:
                logger.info("Abandoned work %s finished late, result discarded", label)
        return _done
