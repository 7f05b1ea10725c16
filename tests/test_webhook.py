"""
Tests for the WhatsApp webhook endpoints — verification and deliveries.
"""

from kaapav.pipeline.setup import get_pipeline, get_store

PHONE = "919800000001"


def _text_delivery(message_id: str, text: str, sender: str = PHONE) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA",
            "changes": [{
                "field": "messages",
                "value": {
                    "contacts": [{"wa_id": sender, "profile": {"name": "Asha"}}],
                    "messages": [{
                        "from": sender,
                        "id": message_id,
                        "timestamp": "1700000000",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }


# ────────────────────────────── Verification ────────────────────────


class TestVerify:
    """GET /webhook"""

    def test_echoes_challenge(self, test_client):
        resp = test_client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "kaapav-verify",
            "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token_rejected(self, test_client):
        resp = test_client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "guess",
            "hub.challenge": "1",
        })
        assert resp.status_code == 403


# ────────────────────────────── Deliveries ──────────────────────────


class TestDelivery:
    """POST /webhook"""

    def test_text_message_gets_main_menu(self, test_client, wait_for):
        resp = test_client.post("/webhook", json=_text_delivery("wamid.svc1", "hello"))

        assert resp.status_code == 200
        assert resp.json() == {"status": "received", "messages": 1, "statuses": 0}

        store = get_store()
        assert wait_for(lambda: len(store.outbound_for(PHONE)) == 1)
        assert store.inbound_for(PHONE)[0].contact_name == "Asha"
        assert store.outbound_for(PHONE)[0].button_id == "JEWELLERY_MENU"

    def test_redelivery_processed_once(self, test_client, wait_for):
        body = _text_delivery("wamid.svc2", "hello")
        test_client.post("/webhook", json=body)
        test_client.post("/webhook", json=body)

        pipeline = get_pipeline()
        assert wait_for(lambda: pipeline.get_metrics()["duplicates"] == 1)
        assert len(get_store().inbound_for(PHONE)) == 1

    def test_status_only_delivery(self, test_client):
        body = {
            "entry": [{"changes": [{"field": "messages", "value": {
                "statuses": [{"id": "wamid.out", "status": "delivered",
                              "timestamp": "1700000005", "recipient_id": PHONE}],
            }}]}],
        }
        resp = test_client.post("/webhook", json=body)

        assert resp.status_code == 200
        assert resp.json() == {"status": "received", "messages": 0, "statuses": 1}

    def test_unreadable_body_acknowledged(self, test_client):
        resp = test_client.post("/webhook", json={"entry": "garbage"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}

    def test_empty_delivery(self, test_client):
        resp = test_client.post("/webhook", json={"object": "whatsapp_business_account"})
        assert resp.json() == {"status": "received", "messages": 0, "statuses": 0}
