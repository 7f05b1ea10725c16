"""
TTL Store — small key/value store with per-key expiry.

Backs the Dedup Gate (``seen:{message_id}``) and the Rate Limiter
(``rl:win:{phone}``, ``rl:{phone}``).  TTLs are in seconds and may be
fractional.  Two implementations:

  InMemoryTTLStore  single-process, used in dev and tests
  RedisTTLStore     shared across workers, uses SET NX EX/PX for
                    first-writer-wins conditional writes
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger("pipeline.ttl_store")


class TTLStore(ABC):
    """Abstract key/value store where every write carries a TTL."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value for ``key`` or None if absent/expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        """Unconditionally write ``key`` with a fresh TTL."""

    @abstractmethod
    async def add(self, key: str, value: str, ttl_seconds: float) -> bool:
        """
        Write ``key`` only if it is not already present.

        Returns True if this call created the key, False if another
        writer got there first.
        """


class InMemoryTTLStore(TTLStore):
    """Process-local TTL store.  Expired keys are dropped lazily on access."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}  # key → (value, expires_at)
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def add(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_seconds)
            return True

    def purge_expired(self) -> int:
        """Drop every expired key.  Returns the number removed."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if now >= exp]
        for k in expired:
            self._data.pop(k, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisTTLStore(TTLStore):
    """TTL store on Redis.  The client is created lazily from the URL."""

    def __init__(
        self,
        url: str,
        *,
        socket_timeout: float = 0.5,
        key_prefix: str = "kaapav:",
        client=None,
    ) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._prefix = key_prefix
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis_async

            self._client = redis_async.Redis.from_url(
                self._url,
                socket_timeout=self._socket_timeout,
                decode_responses=True,
            )
            logger.info("Redis TTL store connected: %s", self._url)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> str | None:
        return await self._get_client().get(self._key(key))

    @staticmethod
    def _expiry(ttl_seconds: float) -> dict[str, int]:
        # sub-second windows need PX
        if float(ttl_seconds).is_integer():
            return {"ex": int(ttl_seconds)}
        return {"px": int(ttl_seconds * 1000)}

    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        await self._get_client().set(self._key(key), value, **self._expiry(ttl_seconds))

    async def add(self, key: str, value: str, ttl_seconds: float) -> bool:
        created = await self._get_client().set(
            self._key(key), value, nx=True, **self._expiry(ttl_seconds),
        )
        return bool(created)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
