"""
Tests for the conversation replay endpoint, health probes and metrics.
"""

from conftest import TEST_PHONE
from rentbot.config import settings


class TestMessagesReplay:
    """GET /messages."""

    def test_empty_log(self, client):
        response = client.get("/messages")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_replay_in_order_with_state(self, client, chat):
        chat.say("hi")
        chat.say("2")

        data = client.get("/messages", params={"phone": TEST_PHONE}).json()["data"]

        assert [m["body_text"] for m in data if m["author"] == "user"] == ["hi", "2"]
        assert [m["meta"]["state"] for m in data if m["author"] == "system"] == [
            "AWAITING_MENU_CHOICE", "SEARCH_WAIT_AREA_BUDGET",
        ]
        assert all(m["meta"].get("handled") for m in data if m["author"] == "user")

    def test_phone_filter_accepts_local_format(self, client, chat):
        chat.say("hi")

        response = client.get("/messages", params={"phone": "0771234567"})

        assert response.json()["total"] == 2

    def test_other_phone_excluded(self, client, chat):
        chat.say("hi")

        assert client.get("/messages", params={"phone": "263779999999"}).json()["total"] == 0

    def test_pagination(self, client, chat):
        for text in ["hi", "xyz", "xyz"]:
            chat.say(text)

        page = client.get("/messages", params={"limit": 2, "offset": 2}).json()

        assert page["total"] == 6
        assert len(page["data"]) == 2
        assert page["data"][0]["author"] == "user"

    def test_limit_validation(self, client):
        assert client.get("/messages", params={"limit": 0}).status_code == 422
        assert client.get("/messages", params={"limit": 101}).status_code == 422
        assert client.get("/messages", params={"offset": -1}).status_code == 422


class TestHealth:
    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_verify_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "WHATSAPP_VERIFY_TOKEN not configured"


class TestMetrics:
    def test_metrics_exposed(self, client, chat):
        chat.say("hi")

        body = client.get("/metrics").text

        assert "webhook_requests_total" in body
        assert 'whatsapp_sends_total{kind="buttons",outcome="ok"}' in body
        assert "conversation_transitions_total" in body
