"""
Shared fixtures for the service-level test suite.

The app starts exactly as in production, with the WhatsApp dispatcher in
stub mode (no token) and in-process TTL stores (no REDIS_URL), so tests
run fast and offline.
"""

import time

import pytest
from fastapi.testclient import TestClient

from kaapav import settings


@pytest.fixture
def test_client(monkeypatch):
    """FastAPI TestClient with startup/shutdown hooks run around each test."""
    monkeypatch.setattr(settings, "WHATSAPP_TOKEN", "")
    monkeypatch.setattr(settings, "WHATSAPP_PHONE_ID", "")
    monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "kaapav-verify")
    monkeypatch.setattr(settings, "REDIS_URL", "")
    monkeypatch.setattr(settings, "TELEMETRY_WEBHOOK_URL", "")
    monkeypatch.setattr(settings, "RATE_LIMIT_MS", 0)

    from kaapav.app import app

    with TestClient(app) as client:
        yield client


def _poll(predicate, timeout: float = 2.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def wait_for():
    """Poll until ``predicate()`` is truthy; webhook processing is async."""
    return _poll
