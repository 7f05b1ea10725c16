"""
Tests for the dispatcher registry and the channel dispatchers.

Tests cover:
  - Registry: register/get, one retry, missing channel, raising dispatcher
  - RecordingDispatcher bookkeeping
  - WhatsApp payload building per message kind
  - WhatsApp stub mode and Graph API calls (httpx.MockTransport)
"""

import json

import httpx
import pytest

from kaapav.pipeline.channels import (
    ChannelDispatcher,
    DeliveryResult,
    DispatcherRegistry,
    MessageKind,
    OutboundMessage,
)
from kaapav.pipeline.dispatchers.recording_dispatcher import RecordingDispatcher
from kaapav.pipeline.dispatchers.whatsapp_dispatcher import WhatsAppDispatcher, build_payload

PHONE = "919800000001"


class CountingDispatcher(ChannelDispatcher):
    channel_name = "whatsapp"

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def send(self, message):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _result(success: bool, error: str | None = None) -> DeliveryResult:
    return DeliveryResult(success=success, channel="whatsapp", recipient=PHONE,
                          message_id="wamid.ok" if success else None, error=error)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Registry
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDispatcherRegistry:

    def test_register_and_get(self):
        registry = DispatcherRegistry()
        recorder = RecordingDispatcher()
        registry.register(recorder)

        assert registry.get("whatsapp") is recorder
        assert registry.registered_channels == ["whatsapp"]

        registry.unregister("whatsapp")
        assert registry.get("whatsapp") is None

    @pytest.mark.asyncio
    async def test_retry_once_then_succeed(self):
        dispatcher = CountingDispatcher([_result(False, "busy"), _result(True)])
        registry = DispatcherRegistry(retry_delay=0)
        registry.register(dispatcher)

        result = await registry.dispatch(OutboundMessage(recipient=PHONE, body="hi"))

        assert result.success
        assert dispatcher.calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retry(self):
        dispatcher = CountingDispatcher([_result(False, "busy"), _result(False, "still busy")])
        registry = DispatcherRegistry(retry_delay=0)
        registry.register(dispatcher)

        result = await registry.dispatch(OutboundMessage(recipient=PHONE, body="hi"))

        assert not result.success
        assert result.error == "still busy"
        assert dispatcher.calls == 2

    @pytest.mark.asyncio
    async def test_raising_dispatcher_becomes_failure(self):
        dispatcher = CountingDispatcher([RuntimeError("boom"), RuntimeError("boom again")])
        registry = DispatcherRegistry(retry_delay=0)
        registry.register(dispatcher)

        result = await registry.dispatch(OutboundMessage(recipient=PHONE, body="hi"))

        assert not result.success
        assert result.error == "boom again"

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        registry = DispatcherRegistry()
        result = await registry.dispatch(
            OutboundMessage(recipient=PHONE, body="hi", channel="sms"),
        )
        assert not result.success
        assert "sms" in result.error


class TestRecordingDispatcher:

    @pytest.mark.asyncio
    async def test_records_per_recipient(self):
        recorder = RecordingDispatcher()
        first = await recorder.send(OutboundMessage(recipient=PHONE, body="one"))
        await recorder.send(OutboundMessage(recipient="9100", body="two"))

        assert first.message_id == "wamid.rec1"
        assert recorder.bodies(PHONE) == ["one"]
        assert recorder.total_sent == 2

        recorder.clear(PHONE)
        assert recorder.total_sent == 1

    @pytest.mark.asyncio
    async def test_fail_with(self):
        recorder = RecordingDispatcher()
        recorder.fail_with = "blocked"

        result = await recorder.send(OutboundMessage(recipient=PHONE, body="x"))

        assert not result.success
        assert result.error == "blocked"
        assert recorder.total_sent == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  WhatsApp
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBuildPayload:

    def test_text(self):
        payload = build_payload(OutboundMessage(recipient=PHONE, body="hello"))
        assert payload["type"] == "text"
        assert payload["to"] == PHONE
        assert payload["text"]["body"] == "hello"

    def test_buttons_capped(self):
        message = OutboundMessage(
            recipient=PHONE,
            kind=MessageKind.BUTTONS,
            body="Pick",
            footer="footer",
            buttons=[{"id": f"B{i}", "title": "A very long button title here"} for i in range(4)],
        )
        interactive = build_payload(message)["interactive"]

        buttons = interactive["action"]["buttons"]
        assert len(buttons) == 3
        assert all(len(b["reply"]["title"]) <= 20 for b in buttons)
        assert interactive["footer"] == {"text": "footer"}

    def test_buttons_required(self):
        with pytest.raises(ValueError):
            build_payload(OutboundMessage(recipient=PHONE, kind=MessageKind.BUTTONS, body="x"))

    def test_list(self):
        sections = [{"title": "Rings", "rows": [{"id": "R1", "title": "Gold"}]}]
        message = OutboundMessage(recipient=PHONE, kind=MessageKind.LIST, body="Choose",
                                  metadata={"button": "Browse", "sections": sections})
        interactive = build_payload(message)["interactive"]
        assert interactive["type"] == "list"
        assert interactive["action"] == {"button": "Browse", "sections": sections}

    def test_media_by_link(self):
        message = OutboundMessage(recipient=PHONE, kind=MessageKind.MEDIA, body="New in",
                                  metadata={"media_type": "image",
                                            "link": "https://cdn.example/r1.jpg"})
        payload = build_payload(message)
        assert payload["type"] == "image"
        assert payload["image"] == {"link": "https://cdn.example/r1.jpg", "caption": "New in"}

    def test_media_requires_source(self):
        with pytest.raises(ValueError):
            build_payload(OutboundMessage(recipient=PHONE, kind=MessageKind.MEDIA))

    def test_template(self):
        message = OutboundMessage(recipient=PHONE, kind=MessageKind.TEMPLATE,
                                  metadata={"name": "order_update", "language": "en_US"})
        template = build_payload(message)["template"]
        assert template["name"] == "order_update"
        assert template["language"] == {"code": "en_US"}


class TestWhatsAppDispatcher:

    @pytest.mark.asyncio
    async def test_stub_mode_without_token(self):
        dispatcher = WhatsAppDispatcher(token="", phone_id="")
        assert dispatcher.stub_mode

        result = await dispatcher.send(OutboundMessage(recipient=PHONE, body="hi"))

        assert result.success
        assert result.message_id.startswith("stub.")

    @pytest.mark.asyncio
    async def test_missing_recipient(self):
        dispatcher = WhatsAppDispatcher(token="", phone_id="")
        result = await dispatcher.send(OutboundMessage(recipient="", body="hi"))
        assert not result.success

    @pytest.mark.asyncio
    async def test_posts_to_graph_api(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.HBg1"}]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WhatsAppDispatcher(token="T0K", phone_id="1234", api_version="v20.0",
                                        client=client)

        result = await dispatcher.send(OutboundMessage(recipient=PHONE, body="hi"))
        await dispatcher.close()

        assert result.success
        assert result.message_id == "wamid.HBg1"
        assert seen["url"] == "https://graph.facebook.com/v20.0/1234/messages"
        assert seen["auth"] == "Bearer T0K"
        assert seen["body"]["text"]["body"] == "hi"

    @pytest.mark.asyncio
    async def test_graph_error_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WhatsAppDispatcher(token="T0K", phone_id="1234", client=client)

        result = await dispatcher.send(OutboundMessage(recipient=PHONE, body="hi"))
        await dispatcher.close()

        assert not result.success
        assert result.error == "Invalid parameter"

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WhatsAppDispatcher(token="T0K", phone_id="1234", client=client)

        result = await dispatcher.send(OutboundMessage(recipient=PHONE, body="hi"))
        await dispatcher.close()

        assert not result.success
        assert "unreachable" in result.error
