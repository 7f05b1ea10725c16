"""
Shared fixtures for pipeline component tests.

Everything runs in-process: in-memory stores, a RecordingDispatcher in
place of WhatsApp, and a TelemetryEmitter whose subscriber captures
every emitted event.
"""

import pytest

from kaapav.pipeline.channels import DispatcherRegistry
from kaapav.pipeline.dispatchers.recording_dispatcher import RecordingDispatcher
from kaapav.pipeline.menus import MenuService, StoreLinks
from kaapav.pipeline.router import ActionRouter
from kaapav.pipeline.setup import build_pipeline
from kaapav.pipeline.state import InMemoryConversationStore
from kaapav.pipeline.telemetry import TelemetryEmitter


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def registry(recorder):
    reg = DispatcherRegistry(retry_delay=0)
    reg.register(recorder)
    return reg


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def emitted():
    """(event_name, payload) tuples in emission order."""
    return []


@pytest.fixture
def telemetry(emitted):
    emitter = TelemetryEmitter()
    emitter.subscribe(lambda event, payload: emitted.append((event, payload)))
    return emitter


@pytest.fixture
def menus(registry):
    return MenuService(registry, StoreLinks())


@pytest.fixture
def router(store, menus, telemetry):
    return ActionRouter(store, menus, telemetry=telemetry)


@pytest.fixture
def make_pipeline(registry, store, telemetry):
    """Factory; rate limiting is off unless a test asks for it."""

    def _make(**overrides):
        overrides.setdefault("rate_limit_ms", 0)
        overrides.setdefault("telemetry", telemetry)
        return build_pipeline(dispatchers=registry, store=store, **overrides)

    return _make
