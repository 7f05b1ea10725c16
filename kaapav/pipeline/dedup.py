"""
Dedup Gate — drops inbound events the provider redelivers.

WhatsApp retries webhooks aggressively, so the same message id can
arrive several times within seconds, sometimes on different workers.

Two tiers:
  local   insertion-ordered set, bounded; overflow evicts the oldest half
  durable TTLStore ``seen:{id}``, authoritative across workers

Durable errors degrade to local-only dedup: a message is then processed
rather than risk silently dropping it.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from kaapav.pipeline.ttl_store import TTLStore

logger = logging.getLogger("pipeline.dedup")

DEFAULT_TTL_SECONDS = 3600
DEFAULT_CACHE_SIZE = 5000


class DedupGate:
    """Answers "has this event id been seen in the last hour?"."""

    def __init__(
        self,
        store: TTLStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_local: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._max_local = max_local
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._store_errors = 0

    async def is_duplicate(self, event_id: str) -> bool:
        """
        True if ``event_id`` was already recorded, else record it.

        Empty ids are never duplicates: there is nothing to key on.
        """
        if not event_id:
            return False

        if event_id in self._seen:
            return True

        try:
            created = await self._store.add(f"seen:{event_id}", "1", self._ttl)
        except Exception as exc:
            self._store_errors += 1
            logger.warning(
                "Dedup store unavailable for %s, local cache only: %s",
                event_id, exc,
            )
            created = True

        self._remember(event_id)
        if not created:
            logger.info("Duplicate event %s (seen by durable store)", event_id)
        return not created

    @property
    def local_size(self) -> int:
        return len(self._seen)

    @property
    def store_errors(self) -> int:
        return self._store_errors

    # ── Internal ──

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        if len(self._seen) > self._max_local:
            for _ in range(len(self._seen) // 2):
                self._seen.popitem(last=False)
            logger.debug("Dedup cache trimmed to %d entries", len(self._seen))
