"""
Tests for the /webhooks/whatsapp endpoints.

Tests cover:
- Subscription verification handshake (GET)
- X-Hub-Signature-256 checking, logged or enforced
- Dedup of provider-retried deliveries
- Ignored payloads, plain Flow ping and turn failures
- The free-message send window
"""

import json
import time

import pytest

from conftest import TEST_PHONE, cloud_text_payload, compute_signature, post_webhook
from rentbot.config import settings
from rentbot.conversation import ConversationRouter
from rentbot.models import Message
from rentbot.state_store import AWAITING_MENU_CHOICE, state_history
from rentbot.utils import verify_hmac_signature


class TestWebhookVerification:
    """GET /webhooks/whatsapp handshake."""

    def test_matching_token_returns_challenge(self, client):
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )

        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token_forbidden(self, client):
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )

        assert response.status_code == 403

    def test_unconfigured_token_is_server_error(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "")

        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )

        assert response.status_code == 500


class TestWebhookSignature:
    """X-Hub-Signature-256 handling."""

    def test_valid_signature_processed(self, client, gateway):
        response = post_webhook(client, cloud_text_payload("hi", "wamid.sig.1"))

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["state"] == AWAITING_MENU_CHOICE
        assert len(gateway.requests) == 1

    def test_bad_signature_only_logged_by_default(self, client, gateway):
        body = json.dumps(cloud_text_payload("hi", "wamid.sig.2"))

        response = client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
        )

        assert response.status_code == 200
        assert response.json()["note"] == "menu-sent"

    def test_bad_signature_rejected_when_enforced(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_ENFORCE_SIGNATURE", True)
        body = json.dumps(cloud_text_payload("hi", "wamid.sig.3"))

        response = client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": compute_signature(body, "wrong")},
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}
        assert gateway.requests == []

    def test_missing_signature_rejected_when_enforced(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_ENFORCE_SIGNATURE", True)

        response = post_webhook(client, cloud_text_payload("hi", "wamid.sig.4"), signed=False)

        assert response.status_code == 401

    def test_non_ascii_signature_only_logged(self, client, gateway):
        body = json.dumps(cloud_text_payload("hi", "wamid.sig.5"))

        response = client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=\u00e9".encode("latin-1")},
        )

        assert response.status_code == 200
        assert response.json()["note"] == "menu-sent"

    def test_non_ascii_signature_rejected_when_enforced(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_ENFORCE_SIGNATURE", True)
        body = json.dumps(cloud_text_payload("hi", "wamid.sig.6"))

        response = client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=\u00e9".encode("latin-1")},
        )

        assert response.status_code == 401

    def test_verify_hmac_signature_non_ascii(self):
        assert verify_hmac_signature(b"{}", "sha256=\u00e9", "app-secret") is False


class TestWebhookDedup:
    """Provider retries of the same message id."""

    def test_retry_yields_one_reply_and_one_transition(self, client, gateway, db):
        payload = cloud_text_payload("hi", "wamid.dup.1")

        first = post_webhook(client, payload)
        second = post_webhook(client, payload)

        assert first.json()["note"] == "menu-sent"
        assert second.status_code == 200
        assert second.json()["note"] == "dedupe-skip"
        assert len(gateway.requests) == 1
        assert state_history(db, TEST_PHONE) == [AWAITING_MENU_CHOICE]

    def test_handled_flag_persisted(self, client, db):
        post_webhook(client, cloud_text_payload("hi", "wamid.dup.2"))

        stored = db.query(Message).filter(Message.external_id == "wamid.dup.2").one()
        assert stored.meta["handled"] is True
        assert stored.author == "user"
        assert stored.body_text == "hi"

    def test_id_less_payload_processed_every_time(self, client, gateway):
        payload = {"user_message": "hi", "from": "0771234567"}

        post_webhook(client, payload)
        post_webhook(client, payload)

        assert len(gateway.requests) == 2


class TestWebhookIgnored:
    """Deliveries with nothing to route."""

    def test_status_update_ignored(self, client, gateway):
        payload = {
            "entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.x", "status": "delivered"}]}}]}],
        }

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "note": "ignored-status-update", "state": None}
        assert gateway.requests == []

    def test_unknown_shape_ignored(self, client, gateway):
        response = post_webhook(client, {"hello": "world"})

        assert response.json()["note"] == "ignored-no-id-or-phone"
        assert gateway.requests == []

    def test_invalid_json_acknowledged(self, client):
        response = client.post(
            "/webhooks/whatsapp",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["note"] == "invalid-json"

    def test_numeric_conversation_id_processed(self, client, gateway):
        payload = cloud_text_payload("hi", "wamid.conv.1")
        payload["conversation_id"] = 7

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json()["note"] == "menu-sent"
        assert len(gateway.requests) == 1

    def test_plain_ping(self, client, gateway):
        response = post_webhook(client, {"action": "PING"})

        assert response.status_code == 200
        assert response.json() == {"data": {"status": "active"}}
        assert gateway.requests == []


class TestSendWindow:
    """Free-form replies only within WHATSAPP_FREE_WINDOW_MS of the inbound message."""

    def test_stale_message_not_answered(self, client, gateway, db):
        two_days_ago = int(time.time()) - 2 * 24 * 3600

        response = post_webhook(client, cloud_text_payload("hi", "wamid.old.1", timestamp=two_days_ago))

        assert response.json()["note"] == "window-closed"
        assert gateway.requests == []
        stored = db.query(Message).filter(Message.external_id == "wamid.old.1").one()
        assert stored.meta["needsFollowUp"] is True
        assert state_history(db, TEST_PHONE) == []

    def test_window_override(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_FREE_WINDOW_MS", 60_000)
        five_minutes_ago = int(time.time()) - 300

        response = post_webhook(client, cloud_text_payload("hi", "wamid.old.2", timestamp=five_minutes_ago))

        assert response.json()["note"] == "window-closed"
        assert gateway.requests == []


class TestTurnFailures:
    """Router failures never surface as 5xx."""

    def test_unexpected_error_logged_and_acknowledged(self, client, gateway, monkeypatch):
        def explode(self, message, snapshot):
            raise RuntimeError("boom")

        monkeypatch.setattr(ConversationRouter, "plan", explode)

        response = post_webhook(client, cloud_text_payload("hi", "wamid.err.1"))

        assert response.status_code == 200
        assert response.json()["note"] == "turn-error-logged"
        assert gateway.requests == []

    def test_template_required_flagged(self, client, db):
        from conftest import RecordingGateway
        from rentbot.main import app, get_gateway

        app.dependency_overrides[get_gateway] = lambda: RecordingGateway(error_code=131047)

        post_webhook(client, cloud_text_payload("hi", "wamid.tmpl.1"))

        stored = db.query(Message).filter(Message.external_id == "wamid.tmpl.1").one()
        assert stored.meta["templateRequired"] is True
        assert stored.meta["sendResults"][0]["template_required"] is True


@pytest.mark.parametrize("raw_phone", ["+263 77 123 4567", "0771234567", "771234567"])
def test_phone_formats_share_one_conversation(client, db, raw_phone):
    post_webhook(client, {"user_message": "hi", "from": raw_phone, "message_id": f"legacy-{raw_phone}"})

    assert state_history(db, TEST_PHONE) == [AWAITING_MENU_CHOICE]


def test_failed_sends_logged(client, caplog):
    from conftest import RecordingGateway
    from rentbot.main import app, get_gateway

    app.dependency_overrides[get_gateway] = lambda: RecordingGateway(error_code=131047)

    with caplog.at_level("WARNING", logger="rentbot.main"):
        post_webhook(client, cloud_text_payload("hi", "wamid.fail.1"))

    assert any("failed sends" in record.getMessage() for record in caplog.records)
