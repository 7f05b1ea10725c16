"""
Tests for the health and pipeline status endpoints.
"""

from kaapav.pipeline.setup import get_pipeline


class TestHealth:
    """GET / and GET /health"""

    def test_root(self, test_client):
        resp = test_client.get("/")
        assert resp.status_code == 200
        data = resp.json()
        assert "status" in data
        assert data["endpoints"]["webhook"] == "/webhook"

    def test_health(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "kaapav-whatsapp"
        assert data["pipeline"]["healthy"] is True


class TestPipelineStatus:
    """GET /api/pipeline/status, GET /api/pipeline/events/{phone}"""

    def test_status(self, test_client):
        resp = test_client.get("/api/pipeline/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["channels"] == ["whatsapp"]
        assert data["metrics"]["events_processed"] == 0
        assert data["active_conversations"] == []

    def test_events_for_phone(self, test_client, wait_for):
        phone = "919800000009"
        test_client.post("/webhook", json={"entry": [{"changes": [{"value": {
            "messages": [{"from": phone, "id": "wamid.ev1", "type": "text",
                          "text": {"body": "hi"}}],
        }}]}]})

        pipeline = get_pipeline()
        assert wait_for(lambda: len(pipeline.get_event_log(phone)) == 1)

        resp = test_client.get(f"/api/pipeline/events/{phone}", params={"limit": 5})
        assert resp.status_code == 200
        assert resp.json()["queued"] == 0
        events = resp.json()["events"]
        assert events[0]["event_id"] == "wamid.ev1"
        assert events[0]["outcome"] == "replied"

    def test_unavailable_before_startup(self):
        from fastapi.testclient import TestClient

        from kaapav.app import app

        client = TestClient(app)  # no context manager: startup never runs
        assert client.get("/api/pipeline/status").status_code == 503
        assert client.get("/health").json()["status"] == "degraded"
        assert client.post("/webhook", json={}).status_code == 503
