"""
Pipeline Setup — builds and wires every pipeline component.

``build_pipeline()`` is the explicit-dependency factory (tests use it
directly).  ``initialize_pipeline()`` is called once at app startup and
fills the module-level singletons from kaapav.settings.
"""

from __future__ import annotations

import logging
from typing import Optional

from kaapav import settings
from kaapav.pipeline.channels import ChannelDispatcher, DispatcherRegistry
from kaapav.pipeline.dedup import DedupGate
from kaapav.pipeline.ingest import WhatsAppIngest
from kaapav.pipeline.menus import MenuService, StoreLinks
from kaapav.pipeline.pipeline import ConversationPipeline
from kaapav.pipeline.queue import ConversationSequencer
from kaapav.pipeline.rate_limit import RateLimiter
from kaapav.pipeline.router import ActionRouter
from kaapav.pipeline.state import ConversationStore, InMemoryConversationStore
from kaapav.pipeline.telemetry import TelemetryEmitter, TelemetrySink
from kaapav.pipeline.timeout import TimeoutGuard
from kaapav.pipeline.translation import Translator
from kaapav.pipeline.ttl_store import InMemoryTTLStore, RedisTTLStore, TTLStore

logger = logging.getLogger("pipeline.setup")

# Module-level singletons (set during initialize)
_pipeline: ConversationPipeline | None = None
_dispatcher_registry: DispatcherRegistry | None = None
_store: ConversationStore | None = None
_ttl_store: TTLStore | None = None
_telemetry: TelemetryEmitter | None = None
_ingest: WhatsAppIngest | None = None


def build_pipeline(
    *,
    dispatchers: DispatcherRegistry,
    store: Optional[ConversationStore] = None,
    ttl_store: Optional[TTLStore] = None,
    telemetry: Optional[TelemetrySink] = None,
    translator: Optional[Translator] = None,
    links: Optional[StoreLinks] = None,
    rate_limit_ms: int = 900,
    timeout_ms: int = 5000,
    dedupe_ttl_seconds: int = 3600,
    rate_limit_ttl_seconds: int = 60,
    seen_cache_size: int = 5000,
) -> ConversationPipeline:
    """Wire a pipeline from explicit collaborators.  Absent ones are no-ops."""
    store = store or InMemoryConversationStore()
    ttl_store = ttl_store or InMemoryTTLStore()

    menus = MenuService(dispatchers, links)
    router = ActionRouter(store, menus, telemetry=telemetry, translator=translator)
    return ConversationPipeline(
        dedup=DedupGate(ttl_store, ttl_seconds=dedupe_ttl_seconds, max_local=seen_cache_size),
        limiter=RateLimiter(ttl_store, interval_ms=rate_limit_ms,
                            ttl_seconds=rate_limit_ttl_seconds),
        router=router,
        store=store,
        sequencer=ConversationSequencer(),
        guard=TimeoutGuard(timeout_ms),
        telemetry=telemetry,
        timeout_ms=timeout_ms,
    )


async def initialize_pipeline(
    dispatcher: Optional[ChannelDispatcher] = None,
) -> ConversationPipeline:
    """
    Build the process-wide pipeline from settings.

    ``dispatcher`` overrides the WhatsApp dispatcher (local demos, tests).
    """
    global _pipeline, _dispatcher_registry, _store, _ttl_store, _telemetry, _ingest

    logger.info("Initializing KAAPAV conversation pipeline...")

    # 1. Dispatchers
    _dispatcher_registry = DispatcherRegistry()
    if dispatcher is None:
        from kaapav.pipeline.dispatchers.whatsapp_dispatcher import WhatsAppDispatcher

        dispatcher = WhatsAppDispatcher()
        if dispatcher.stub_mode:
            logger.warning("WhatsApp credentials not set — dispatcher in stub mode")
    _dispatcher_registry.register(dispatcher)

    # 2. Stores
    _store = InMemoryConversationStore()
    if settings.REDIS_URL:
        _ttl_store = RedisTTLStore(settings.REDIS_URL)
    else:
        _ttl_store = InMemoryTTLStore()
        logger.info("REDIS_URL not set — dedup and rate limits are per-process")

    # 3. Telemetry
    _telemetry = TelemetryEmitter(webhook_url=settings.TELEMETRY_WEBHOOK_URL)

    # 4. Pipeline
    _pipeline = build_pipeline(
        dispatchers=_dispatcher_registry,
        store=_store,
        ttl_store=_ttl_store,
        telemetry=_telemetry,
        rate_limit_ms=settings.RATE_LIMIT_MS,
        timeout_ms=settings.MESSAGE_TIMEOUT_MS,
        dedupe_ttl_seconds=settings.DEDUPE_TTL_SECONDS,
        rate_limit_ttl_seconds=settings.RATE_LIMIT_TTL_SECONDS,
        seen_cache_size=settings.SEEN_CACHE_SIZE,
    )
    _ingest = WhatsAppIngest()

    logger.info(
        "Pipeline initialized: channels=%s, ttl_store=%s",
        _dispatcher_registry.registered_channels,
        type(_ttl_store).__name__,
    )
    return _pipeline


async def shutdown_pipeline() -> None:
    """Drain in-flight work and close network clients."""
    global _pipeline
    if _pipeline:
        await _pipeline.stop()
    if _dispatcher_registry:
        await _dispatcher_registry.close()
    if _telemetry:
        await _telemetry.close()
    if isinstance(_ttl_store, RedisTTLStore):
        await _ttl_store.close()
    _pipeline = None
    logger.info("Pipeline shutdown complete")


def get_pipeline() -> ConversationPipeline | None:
    return _pipeline


def get_dispatcher_registry() -> DispatcherRegistry | None:
    return _dispatcher_registry


def get_store() -> ConversationStore | None:
    return _store


def get_telemetry() -> TelemetryEmitter | None:
    return _telemetry


def get_ingest() -> WhatsAppIngest | None:
    return _ingest
