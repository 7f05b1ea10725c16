"""
Tests for the Telemetry Emitter.  No sink failure may reach the caller.
"""

import json

import httpx
import pytest

from kaapav.pipeline.telemetry import (
    NullTelemetry,
    TelemetryEmitter,
    gather_quietly,
    outbound_log_row,
)


class TestSubscribers:

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self):
        emitter = TelemetryEmitter()
        seen = []

        async def async_sub(event, payload):
            seen.append(("async", event))

        emitter.subscribe(lambda event, payload: seen.append(("sync", event)))
        emitter.subscribe(async_sub)

        await emitter.emit("user_typing", {"phone": "91"})
        assert seen == [("sync", "user_typing"), ("async", "user_typing")]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_contained(self):
        emitter = TelemetryEmitter()
        seen = []

        def broken(event, payload):
            raise RuntimeError("dashboard gone")

        emitter.subscribe(broken)
        emitter.subscribe(lambda event, payload: seen.append(event))

        await emitter.emit("route_error", {})

        assert seen == ["route_error"]
        assert emitter.failures == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        emitter = TelemetryEmitter()
        seen = []
        unsubscribe = emitter.subscribe(lambda event, payload: seen.append(event))

        unsubscribe()
        unsubscribe()
        await emitter.emit("user_typing", {})

        assert seen == []


class TestWebhook:

    @pytest.mark.asyncio
    async def test_posts_event_envelope(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        emitter = TelemetryEmitter(webhook_url="https://hooks.example/kaapav", client=client)

        await emitter.post_webhook("wa_order_created", {"order_id": "KP-12345678"})
        await emitter.close()

        assert bodies[0]["event"] == "wa_order_created"
        assert bodies[0]["data"] == {"order_id": "KP-12345678"}
        assert "ts" in bodies[0]
        assert emitter.failures == 0

    @pytest.mark.asyncio
    async def test_webhook_errors_counted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/down":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        failing = TelemetryEmitter(webhook_url="https://hooks.example/500", client=client)
        down = TelemetryEmitter(webhook_url="https://hooks.example/down", client=client)

        await failing.post_webhook("x", {})
        await down.post_webhook("x", {})
        await client.aclose()

        assert failing.failures == 1
        assert down.failures == 1

    @pytest.mark.asyncio
    async def test_no_url_is_a_noop(self):
        emitter = TelemetryEmitter()
        await emitter.post_webhook("x", {})
        assert emitter.failures == 0


class TestRowWriter:

    @pytest.mark.asyncio
    async def test_rows_appended(self):
        rows = []
        emitter = TelemetryEmitter(row_writer=rows.append)

        await emitter.append_log(outbound_log_row("91", "MAIN_MENU"))

        assert rows[0][1:] == ["OUT", "91", "action", "MAIN_MENU"]

    @pytest.mark.asyncio
    async def test_row_writer_failure_contained(self):
        async def broken(row):
            raise OSError("sheet locked")

        emitter = TelemetryEmitter(row_writer=broken)
        await emitter.append_log(["x"])
        assert emitter.failures == 1


class TestHelpers:

    @pytest.mark.asyncio
    async def test_null_telemetry(self):
        sink = NullTelemetry()
        await sink.emit("x", {})
        await sink.post_webhook("x", {})
        await sink.append_log([])

    @pytest.mark.asyncio
    async def test_gather_quietly_swallows(self):
        async def boom():
            raise RuntimeError("nope")

        async def fine():
            return 1

        await gather_quietly(boom(), fine())
